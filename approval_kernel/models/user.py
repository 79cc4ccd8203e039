"""
Module: approval_kernel.models.user
Responsibility: ORM persistence for users (requesters and approvers).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Email addresses are unique (case-insensitive; stored lowercased).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from approval_kernel.domain.approval import User


class UserModel(TrackedBase):
    """Persistent user record."""

    __tablename__ = "users"

    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    department: Mapped[str] = mapped_column(String(100), default="", nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.email}>"

    def to_dto(self) -> User:
        from approval_kernel.domain.approval import User as UserDTO

        return UserDTO(
            user_id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            department=self.department,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: User) -> UserModel:
        return cls(
            id=dto.user_id,
            name=dto.name,
            email=dto.email.lower(),
            role=dto.role,
            department=dto.department,
            created_at=dto.created_at,
            updated_at=dto.created_at,
        )
