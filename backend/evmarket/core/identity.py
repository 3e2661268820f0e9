"""
Identity of the acting user as delivered by the external auth provider.
"""

from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class UserRole(str, Enum):
    """Application roles."""

    CUSTOMER = "customer"
    DEALER = "dealer"
    ADMIN = "admin"

    @classmethod
    def from_string(cls, value: str) -> "UserRole":
        """
        Convert string to UserRole.

        Raises:
            ValueError: If value is not a known role
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join(r.value for r in cls)
            raise ValueError(
                f"Invalid user role: {value}. Valid values are: {valid_values}"
            )

    @property
    def is_staff(self) -> bool:
        """Dealers and admins act on behalf of the business."""
        return self in (UserRole.DEALER, UserRole.ADMIN)


class AuthenticatedUser(BaseModel):
    """The opaque "current user + role" fact handed to services."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    role: UserRole
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_dealer(self) -> bool:
        return self.role == UserRole.DEALER


SYSTEM_USER = AuthenticatedUser(
    id=UUID(int=0),
    role=UserRole.ADMIN,
    name="system",
)
