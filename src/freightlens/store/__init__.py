"""Tenant-scoped DuckDB store and query guardrails."""
