"""Domain exceptions shared by the queue, the gateway and the HTTP layer."""

from __future__ import annotations


class DealflowError(Exception):
    """Base class for dealflow errors."""


class EngineNotFoundOrDisabled(DealflowError):
    """Submission targeted an engine that is unknown or switched off."""

    def __init__(self, engine_id: str, *, disabled: bool = False) -> None:
        self.engine_id = engine_id
        self.disabled = disabled
        state = "disabled" if disabled else "not found"
        super().__init__(f"Engine {engine_id!r} is {state}.")


class QueueNotConfigured(DealflowError):
    """No registered engine owns the queue."""

    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"No engine is configured for queue {queue_name!r}.")


class EngineInvocationError(DealflowError):
    """Downstream engine call failed; the job goes through retry handling."""

    def __init__(self, engine_id: str, message: str, *, status_code: int | None = None) -> None:
        self.engine_id = engine_id
        self.status_code = status_code
        super().__init__(message)


class ProviderError(DealflowError):
    """Model provider returned an error response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
