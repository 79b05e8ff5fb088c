from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

from warden.api.schemas import Envelope, ErrorBody
from warden.service.errors import ErrorCode, ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Tagged outcome of a public auth operation: either ``value`` or ``error``."""

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: T) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "AuthResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None

    @property
    def retry_after(self) -> Optional[int]:
        return getattr(self.error, "retry_after", None)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def to_envelope(self) -> Envelope:
        if self.error is not None:
            body = ErrorBody(
                code=self.error.code.value,
                message=self.error.message,
                details=self.error.detail or None,
            )
            return Envelope(status="error", error=body)
        return Envelope(status="ok", data=_dump(self.value))


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if isinstance(value, dict):
        return {key: _dump(item) for key, item in value.items()}
    return value
