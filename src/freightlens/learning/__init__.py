"""Learning extraction and persistence."""
