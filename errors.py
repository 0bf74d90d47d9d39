"""
errors.py
Exception types raised by the domain layer and handled by the UI/CLI entry points.
"""

from __future__ import annotations

import pydantic


class SpotnetError(Exception):
    """Base class for all application errors."""


class ValidationError(SpotnetError):
    """Input rejected before any mutation."""

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError) -> "ValidationError":
        messages = []
        for err in exc.errors():
            field = ".".join(str(p) for p in err.get("loc", ()))
            msg = err.get("msg", "invalid value")
            messages.append(f"{field}: {msg}" if field else msg)
        return cls("; ".join(messages))


class NotFoundError(SpotnetError):
    def __init__(self, entity: str, entity_id: int):
        super().__init__(f"{entity.capitalize()} not found")
        self.entity = entity
        self.entity_id = entity_id


class PaymentError(SpotnetError):
    """Database failure while recording a payment; nothing was committed."""


class AuthenticationError(SpotnetError):
    """Credentials rejected or session not authenticated."""
