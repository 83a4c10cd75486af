"""Access policy, output validation and message guarding."""
