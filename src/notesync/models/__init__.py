"""Domain and database models for notesync."""
