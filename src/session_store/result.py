"""Uniform result type returned by every driver operation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DriverResult:
    """Outcome of a driver operation.

    Truthy on success, falsy on failure, so callers can write
    ``if not await driver.write(sid, data): ...``.

    Attributes:
        ok: Whether the operation succeeded.
        data: Session payload (``read`` only; empty otherwise).
        error: Diagnostic message when the operation failed.
    """

    ok: bool
    data: str = ""
    error: str | None = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, data: str = "") -> DriverResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> DriverResult:
        return cls(ok=False, error=error)
