"""HTTP API over the job queue and the LLM gateway."""
