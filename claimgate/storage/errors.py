from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write was refused by a uniqueness or referential rule of the store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmail(ConstraintViolation):
    def __init__(self, email: str) -> None:
        super().__init__("account with this email already exists", {"field": "email"})
        self.email = email


class MissingAccount(ConstraintViolation):
    def __init__(self, account_id: str) -> None:
        super().__init__("account does not exist", {"account_id": account_id})
        self.account_id = account_id


__all__ = ["ConstraintViolation", "DuplicateEmail", "MissingAccount"]
