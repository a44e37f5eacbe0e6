"""LLM control plane: response cache, cost caps, rate limits and retries."""
