"""
User model - the local projection of accounts issued by the auth collaborator.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import String, Enum as SAEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, TimestampMixin


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

    @property
    def is_admin(self) -> bool:
        return self in (UserRole.ADMIN, UserRole.SUPER_ADMIN)


ADMIN_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class User(Base, UUIDMixin, TimestampMixin):
    """A storefront account. Only identity and role matter to the order engine."""
    __tablename__ = "users"

    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole, native_enum=False, length=20),
        default=UserRole.CUSTOMER,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_user_role", "role"),
    )
