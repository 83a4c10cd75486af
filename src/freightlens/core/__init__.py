"""Core primitives shared across freightlens."""
