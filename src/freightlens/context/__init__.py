"""Per-request schema and knowledge compilers."""
