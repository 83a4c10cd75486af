"""Agent loop orchestration."""
