"""HTTP API for the report builder."""
