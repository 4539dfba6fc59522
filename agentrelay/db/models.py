"""SQLAlchemy ORM models for the agent relay state database.

Defines the agent coordination records (agents, events, conversations,
messages) plus the social/marketplace entities they reference. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.

Timestamps are ISO8601 UTC strings with fixed microsecond precision so that
lexical comparison in SQL matches chronological order.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def to_iso(value: datetime) -> str:
    """Format a datetime as a fixed-width ISO8601 UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse an ISO8601 string written by to_iso()."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(utc_now())


# Enums matching the database schema constraints


class AgentStatus(str, Enum):
    """Lifecycle of an external agent.

    Lifecycle: UNCLAIMED -> ACTIVE -> SUSPENDED
    """

    UNCLAIMED = "UNCLAIMED"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class AgentEventType(str, Enum):
    """Kinds of work offered to an agent."""

    CONNECTION_REQUEST = "CONNECTION_REQUEST"
    NEGOTIATION_OFFER = "NEGOTIATION_OFFER"
    NEGOTIATION_TURN = "NEGOTIATION_TURN"
    NEW_MESSAGE = "NEW_MESSAGE"


class AgentEventStatus(str, Enum):
    """Status values for agent events.

    Lifecycle: PENDING -> DELIVERED -> DECIDED
               PENDING/DELIVERED -> EXPIRED
    """

    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    DECIDED = "DECIDED"
    EXPIRED = "EXPIRED"


OPEN_EVENT_STATUSES = (AgentEventStatus.PENDING.value, AgentEventStatus.DELIVERED.value)
TERMINAL_EVENT_STATUSES = (AgentEventStatus.DECIDED.value, AgentEventStatus.EXPIRED.value)

_OPEN_EVENT_PREDICATE = text("status IN ('PENDING', 'DELIVERED')")


class ConversationStatus(str, Enum):
    """Lifecycle of an agent conversation."""

    ACTIVE = "ACTIVE"
    DECIDED = "DECIDED"
    EXPIRED = "EXPIRED"


class MessageRole(str, Enum):
    """Speaker of a message, from the owning agent's point of view."""

    AGENT = "AGENT"
    USER = "USER"
    SYSTEM = "SYSTEM"


class ConnectionRequestStatus(str, Enum):
    PENDING = "PENDING"
    IN_CONVERSATION = "IN_CONVERSATION"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ConnectionCategory(str, Enum):
    NETWORKING = "NETWORKING"
    COLLABORATION = "COLLABORATION"
    HIRING = "HIRING"
    BUSINESS = "BUSINESS"
    SOCIAL = "SOCIAL"
    OTHER = "OTHER"


class NegotiationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ListingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    ARCHIVED = "ARCHIVED"


class PaymentStatus(str, Enum):
    """Stake transaction lifecycle: PENDING -> SETTLED | REFUNDED."""

    PENDING = "PENDING"
    SETTLED = "SETTLED"
    REFUNDED = "REFUNDED"


class NotificationType(str, Enum):
    CONNECTION_REQUEST = "CONNECTION_REQUEST"
    CONNECTION_ACCEPTED = "CONNECTION_ACCEPTED"
    CONNECTION_REJECTED = "CONNECTION_REJECTED"
    AGENT_DECISION = "AGENT_DECISION"
    NEGOTIATION_UPDATE = "NEGOTIATION_UPDATE"
    PAYMENT_SETTLED = "PAYMENT_SETTLED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Users and profiles (owned by the web application, referenced here)


class User(Base):
    """Human account. Authentication lives in the upstream web layer."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    profile: Mapped["Profile | None"] = relationship(
        "Profile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    agent: Mapped["Agent | None"] = relationship(
        "Agent", back_populates="owner", uselist=False
    )

    def public_profile(self) -> dict[str, Any]:
        """Snapshot of the profile fields an agent may see."""
        profile = self.profile
        return {
            "username": self.username,
            "displayName": (profile.display_name if profile else None) or self.username,
            "bio": (profile.bio if profile else None) or "",
            "interests": profile.interest_list if profile else [],
        }

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, username={self.username!r})>"


class Profile(Base):
    """Public profile and payment settings of a user.

    Attributes:
        interests: JSON-encoded list of interest strings.
        payment_account_id: Account on the payment rail (nullable).
        require_stake..daily_max_stake: Incoming connection payment policy.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    intent: Mapped[str | None] = mapped_column(Text, nullable=True)
    interests: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    require_stake: Mapped[bool] = mapped_column(nullable=False, default=False)
    min_stake: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_stake: Mapped[float] = mapped_column(Float, nullable=False, default=10.0)
    daily_max_stake: Mapped[float] = mapped_column(Float, nullable=False, default=50.0)

    user: Mapped["User"] = relationship("User", back_populates="profile")

    @property
    def interest_list(self) -> list[str]:
        """Parse interests JSON string to list."""
        if not self.interests:
            return []
        try:
            return json.loads(self.interests)
        except (json.JSONDecodeError, TypeError):
            return []

    @interest_list.setter
    def interest_list(self, value: list[str]) -> None:
        self.interests = json.dumps(value) if value else None


# Agent coordination core


class Agent(Base):
    """External decision-making principal.

    Attributes:
        api_key_hash: SHA-256 of the raw credential (never the credential).
        api_key_prefix: Display prefix of the credential.
        status: UNCLAIMED, ACTIVE or SUSPENDED.
        user_id: Owning human (null while unclaimed). At most one agent per user.
        claim_token: One-time claim token, cleared once claimed.
        gateway_url / gateway_token / webhook_enabled: Webhook push target.
        last_seen_at: Bumped on every successful authentication.
        payment_account_id / chat_account_id: Linked external accounts.
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    api_key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgentStatus.UNCLAIMED.value
    )
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    claim_token: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)

    gateway_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    gateway_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_enabled: Mapped[bool] = mapped_column(nullable=False, default=False)

    last_seen_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chat_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    owner: Mapped["User | None"] = relationship("User", back_populates="agent")

    __table_args__ = (Index("idx_agents_status", "status"),)

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r}, name={self.name!r}, status={self.status!r})>"


class AgentConversation(Base):
    """A thread scoped to one agent's point of view.

    Two conversations sharing a chat_thread_id belong to the two agents on
    either side of a chat and hold mirrored message histories.
    """

    __tablename__ = "agent_conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationStatus.ACTIVE.value
    )
    connection_request_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("connection_requests.id", ondelete="SET NULL"), nullable=True
    )
    negotiation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("negotiations.id", ondelete="SET NULL"), nullable=True
    )
    chat_thread_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    peer_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    decision_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    messages: Mapped[list["AgentMessage"]] = relationship(
        "AgentMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="AgentMessage.sequence",
    )

    __table_args__ = (
        UniqueConstraint("agent_id", "chat_thread_id", name="uq_agent_conv_thread"),
        Index("idx_agent_conv_agent_updated", "agent_id", "updated_at"),
        Index("idx_agent_conv_peer", "agent_id", "peer_user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AgentConversation(id={self.id!r}, agent_id={self.agent_id!r}, "
            f"thread={self.chat_thread_id!r})>"
        )


class AgentMessage(Base):
    """Append-only message within one conversation."""

    __tablename__ = "agent_messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_agent_msg_conv_seq"),
        Index("idx_agent_msg_conv_seq", "conversation_id", "sequence"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("agent_conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped["AgentConversation"] = relationship(
        "AgentConversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return (
            f"<AgentMessage(id={self.id!r}, role={self.role!r}, "
            f"seq={self.sequence})>"
        )


class AgentEvent(Base):
    """A unit of work offered to exactly one agent.

    Attributes:
        payload_json: Type-specific snapshot (see services.payloads).
        decision_json: Decision body once DECIDED.
        expires_at: Fixed at creation; never extended.
        webhook_attempts: Number of HTTP push attempts actually made.
        last_webhook_at: Timestamp of the most recent push attempt.
    """

    __tablename__ = "agent_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgentEventStatus.PENDING.value
    )
    connection_request_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("connection_requests.id", ondelete="SET NULL"), nullable=True
    )
    negotiation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("negotiations.id", ondelete="SET NULL"), nullable=True
    )
    conversation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("agent_conversations.id", ondelete="SET NULL"), nullable=True
    )
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    decision_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[str] = mapped_column(String(50), nullable=False)
    webhook_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_webhook_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    agent: Mapped["Agent"] = relationship("Agent")
    conversation: Mapped["AgentConversation | None"] = relationship("AgentConversation")
    connection_request: Mapped["ConnectionRequest | None"] = relationship("ConnectionRequest")
    negotiation: Mapped["Negotiation | None"] = relationship("Negotiation")

    __table_args__ = (
        Index(
            "uq_agent_events_open_request",
            "connection_request_id",
            "agent_id",
            unique=True,
            sqlite_where=_OPEN_EVENT_PREDICATE,
            postgresql_where=_OPEN_EVENT_PREDICATE,
        ),
        Index(
            "uq_agent_events_open_negotiation",
            "negotiation_id",
            "agent_id",
            unique=True,
            sqlite_where=_OPEN_EVENT_PREDICATE,
            postgresql_where=_OPEN_EVENT_PREDICATE,
        ),
        Index("idx_agent_events_agent_status", "agent_id", "status", "created_at"),
        Index("idx_agent_events_expires_at", "expires_at"),
    )

    @property
    def payload(self) -> dict[str, Any]:
        """Parse payload JSON to dict."""
        return json.loads(self.payload_json) if self.payload_json else {}

    @property
    def decision(self) -> dict[str, Any] | None:
        """Parse decision JSON to dict."""
        return json.loads(self.decision_json) if self.decision_json else None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_EVENT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<AgentEvent(id={self.id!r}, type={self.type!r}, "
            f"status={self.status!r})>"
        )


# Domain entities referenced by events


class ConnectionRequest(Base):
    """A request from one user to connect with another."""

    __tablename__ = "connection_requests"
    __table_args__ = (
        UniqueConstraint("from_user_id", "to_user_id", name="uq_connection_request_pair"),
        Index("idx_connection_requests_to_user", "to_user_id", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    from_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    to_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionCategory.OTHER.value
    )
    intent: Mapped[str] = mapped_column(Text, nullable=False)
    stake_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionRequestStatus.PENDING.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    from_user: Mapped["User"] = relationship("User", foreign_keys=[from_user_id])
    to_user: Mapped["User"] = relationship("User", foreign_keys=[to_user_id])

    def __repr__(self) -> str:
        return f"<ConnectionRequest(id={self.id!r}, status={self.status!r})>"


class Connection(Base):
    """Bidirectional connection between two users."""

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_a_id", "user_b_id", name="uq_connection_pair"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_a_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_b_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )


class MessageThread(Base):
    """Human direct-message thread created when a connection is accepted."""

    __tablename__ = "message_threads"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    participants: Mapped[list["MessageThreadParticipant"]] = relationship(
        "MessageThreadParticipant",
        back_populates="thread",
        cascade="all, delete-orphan",
    )


class MessageThreadParticipant(Base):
    __tablename__ = "message_thread_participants"
    __table_args__ = (
        UniqueConstraint("thread_id", "user_id", name="uq_thread_participant"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("message_threads.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    thread: Mapped["MessageThread"] = relationship(
        "MessageThread", back_populates="participants"
    )


class Listing(Base):
    """Marketplace listing."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    seller_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ListingStatus.ACTIVE.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )


class Negotiation(Base):
    """Buyer/seller negotiation over a listing.

    Attributes:
        last_actor_agent_id: Agent whose decision was recorded most recently.
            Counter-turns are routed to the other side.
    """

    __tablename__ = "negotiations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    listing_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    buyer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    seller_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    offer_price: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NegotiationStatus.ACTIVE.value
    )
    last_actor_agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    listing: Mapped["Listing"] = relationship("Listing")
    buyer: Mapped["User"] = relationship("User", foreign_keys=[buyer_id])
    seller: Mapped["User"] = relationship("User", foreign_keys=[seller_id])

    def __repr__(self) -> str:
        return f"<Negotiation(id={self.id!r}, status={self.status!r})>"


class Notification(Base):
    """In-app notification for a human user.

    Attributes:
        dedupe_key: Optional idempotency key; unique when set.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(200), nullable=True, unique=True)
    read: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    @property
    def metadata_dict(self) -> dict[str, Any]:
        return json.loads(self.metadata_json) if self.metadata_json else {}


class PaymentTransaction(Base):
    """Stake attached to a connection request."""

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connection_requests.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    from_account: Mapped[str] = mapped_column(String(64), nullable=False)
    to_account: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    settled_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    refunded_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    connection_request: Mapped["ConnectionRequest"] = relationship("ConnectionRequest")
