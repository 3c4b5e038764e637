"""Infrastructure shared by chatsync services: audit log, database, secrets."""
