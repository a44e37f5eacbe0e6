"""SQLite storage layer shared by the queue and the LLM gateway."""
