"""Agent contracts shared by every layer of the report builder."""
