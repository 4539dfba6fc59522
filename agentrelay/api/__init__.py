"""HTTP surface of the agent relay."""
