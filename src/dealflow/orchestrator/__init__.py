"""Engine job queue: registry, durable jobs, retries and dead letters."""
