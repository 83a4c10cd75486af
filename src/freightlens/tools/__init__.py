"""Tool definitions, analysis helpers and the tool executor."""
