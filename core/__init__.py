"""Process, database, storage and settings helpers shared by the backup tool."""
