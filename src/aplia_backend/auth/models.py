"""
aplia_backend.auth.models

Auth domain models.

Responsibilities:
- Define the authenticated identity type (`Principal`) injected into endpoints.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """
    Authenticated caller identity. `user_id` is the tenant key for every owned row.
    """

    user_id: uuid.UUID
    roles: frozenset[str]
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    def owns(self, owner_id: uuid.UUID) -> bool:
        return owner_id == self.user_id or self.is_admin
