"""Exceptions raised by the heist service layer."""

from __future__ import annotations

from uuid import UUID


class HeistError(Exception):
    """Base class for heist domain failures."""


class InsufficientTokensError(HeistError):
    """Raised when a token debit finds fewer tokens than required."""

    def __init__(self, user_id: UUID, *, required: int, available: int) -> None:
        super().__init__(f"User {user_id} holds {available} heist tokens, {required} required")
        self.user_id = user_id
        self.required = required
        self.available = available


class ItemPurchaseError(HeistError):
    """Raised when an item purchase cannot be completed."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class HeistConflictError(HeistError):
    """Raised when the store reports a serialization conflict or lock timeout."""
