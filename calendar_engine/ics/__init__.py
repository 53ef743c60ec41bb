"""ICS serialization and parsing."""
