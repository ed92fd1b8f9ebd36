"""Factory error taxonomy."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

ErrorCode = Literal[
    "INVALID_INPUT",
    "DEPTH_EXCEEDED",
    "SPAWN_FAILED",
    "CANCELLED",
    "RUNTIME_ERROR",
    "CONFIRMATION_REJECTED",
    "NOT_FOUND",
]


class FactoryErrorDetails(BaseModel):
    """Structured error payload surfaced in run records and tool results."""

    code: ErrorCode
    message: str
    recoverable: bool = True


class FactoryError(Exception):
    """Raised at the call site for validation, depth and program failures."""

    def __init__(self, code: ErrorCode, message: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.details = FactoryErrorDetails(code=code, message=message, recoverable=recoverable)

    @property
    def code(self) -> str:
        return self.details.code

    def __repr__(self) -> str:
        return f"FactoryError({self.details.code!r}, {self.details.message!r})"
