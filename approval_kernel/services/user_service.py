"""
UserService -- requesters and approver candidates.

Responsibility:
    Stores users so requests can be listed per requester/approver and
    approver candidates can be offered when authoring templates.  Identity
    and authentication are resolved outside the kernel.

Architecture position:
    Kernel > Services.

Failure modes:
    - DuplicateUserError: email already registered (case-insensitive).
    - InvalidRequestError: blank name or malformed email.
    - UserNotFoundError: unknown or deleted user.
"""

from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID, uuid4

from approval_kernel.domain.approval import User
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.exceptions import DuplicateUserError, InvalidRequestError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.user_service")

DEFAULT_APPROVER_ROLE_KEYWORDS: tuple[str, ...] = ("manager", "director", "supervisor")


class UserService:
    """User registration and approver lookup."""

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Clock | None = None,
        approver_role_keywords: Sequence[str] = DEFAULT_APPROVER_ROLE_KEYWORDS,
    ):
        self._repo = repository
        self._clock = clock or SystemClock()
        self._keywords = tuple(k.lower() for k in approver_role_keywords)

    def create_user(
        self,
        name: str,
        email: str,
        role: str = "",
        department: str = "",
    ) -> User:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise InvalidRequestError("name", "must not be empty")
        if "@" not in email:
            raise InvalidRequestError("email", f"not an email address: {email!r}")

        with self._repo.atomic():
            if self._repo.get_user_by_email(email) is not None:
                raise DuplicateUserError(email)
            user = User(
                user_id=uuid4(),
                name=name,
                email=email,
                role=role,
                department=department,
                created_at=self._clock.now(),
            )
            self._repo.add_user(user)

        logger.info(
            "user_created",
            extra={"user_id": str(user.user_id), "role": role, "department": department},
        )
        return user

    def get_user(self, user_id: UUID) -> User:
        return self._repo.get_user(user_id)

    def get_user_by_email(self, email: str) -> User | None:
        return self._repo.get_user_by_email(email.strip())

    def list_users(self) -> list[User]:
        return self._repo.list_users()

    def list_approvers(self) -> list[User]:
        """Users whose role names one of the approver role keywords."""
        return [u for u in self._repo.list_users() if self.is_approver_role(u.role)]

    def is_approver_role(self, role: str) -> bool:
        role = (role or "").lower()
        return any(keyword in role for keyword in self._keywords)
