"""HTTP error type and the mapping from domain rejections to status codes."""

from __future__ import annotations

from dealflow.orchestrator.models import QueueJobResult


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    @classmethod
    def not_found(cls, code: str, message: str) -> ApiError:
        return cls(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


_REJECTIONS: dict[str, tuple[str, int]] = {
    "unknown_engine": ("ENGINE_NOT_FOUND", 422),
    "engine_disabled": ("ENGINE_DISABLED", 409),
    "invalid_request": ("REQ_VALIDATION_FAILED", 422),
    "not_found": ("DLQ_NOT_FOUND", 404),
    "already_replayed": ("DLQ_ALREADY_REPLAYED", 409),
}


def rejection_error(result: QueueJobResult) -> ApiError:
    """Translate a failed submission or replay into an ``ApiError``."""

    code, status = _REJECTIONS.get(result.reason or "", ("REQ_REJECTED", 422))
    return ApiError(
        code=code,
        message=result.error or "request rejected",
        error_class="business_rule" if status == 409 else "validation",
        retryable=False,
        http_status=status,
    )
