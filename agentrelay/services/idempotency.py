"""Identifier and idempotency key generation.

Id generation is injected (rather than read from a module-level counter) so
thread ids and delivery keys are deterministic under test.
"""

from collections.abc import Callable
from itertools import count
from uuid import uuid4

IdFactory = Callable[[], str]


def uuid_factory() -> str:
    """Default id factory: random UUID4 string."""
    return str(uuid4())


def sequential_factory(prefix: str = "id") -> IdFactory:
    """Build a monotonic id factory: 'prefix-1', 'prefix-2', ..."""
    counter = count(1)
    return lambda: f"{prefix}-{next(counter)}"


def generate_delivery_key(event_id: str) -> str:
    """Generate the webhook Idempotency-Key for an event.

    Identical across every push attempt for the same event, so receivers
    can de-duplicate at-least-once deliveries.

    Args:
        event_id: UUID of the agent event.

    Returns:
        Idempotency key string: 'agent-event:{event_id}'.
    """
    return f"agent-event:{event_id}"
