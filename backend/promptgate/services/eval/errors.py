"""Service-layer errors surfaced synchronously to callers."""
from __future__ import annotations

INVALID_INPUT = "INVALID_INPUT"
NOT_FOUND = "NOT_FOUND"


class EvalServiceError(RuntimeError):
    def __init__(self, message: str = "", *, code: str = INVALID_INPUT) -> None:
        super().__init__(message or code)
        self.code = code


def invalid_input(message: str = "") -> EvalServiceError:
    return EvalServiceError(message, code=INVALID_INPUT)


def not_found(message: str = "") -> EvalServiceError:
    return EvalServiceError(message, code=NOT_FOUND)
