"""Command-line interface for the agent relay."""
