# payroll_core/common/roles.py
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from payroll_core.common.errors import ValidationError


class Role(str, enum.Enum):
    ADMIN = "admin"
    HR = "hr"
    HR_MANAGER = "hr_manager"
    EMPLOYEE = "employee"

    @classmethod
    def parse(cls, raw) -> "Role":
        if isinstance(raw, Role):
            return raw
        key = (str(raw or "")).strip().lower().replace("-", "_")
        # identity providers spell it "HRManager"
        if key == "hrmanager":
            key = "hr_manager"
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown role {raw!r}") from None


def is_manager_capable(role: Role) -> bool:
    """Who may approve structures and approve/release payslips."""
    if role is Role.ADMIN or role is Role.HR_MANAGER:
        return True
    if role is Role.HR or role is Role.EMPLOYEE:
        return False
    raise ValidationError(f"Unhandled role {role!r}")


def can_author_payroll(role: Role) -> bool:
    """Who may create compensation structures and payslips."""
    if role is Role.ADMIN or role is Role.HR or role is Role.HR_MANAGER:
        return True
    if role is Role.EMPLOYEE:
        return False
    raise ValidationError(f"Unhandled role {role!r}")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as handed over by the identity provider."""
    user_id: int
    role: Role
    email: Optional[str] = None

    @classmethod
    def of(cls, user_id: int, role, email: Optional[str] = None) -> "Actor":
        return cls(user_id=user_id, role=Role.parse(role), email=email)

    @property
    def manager_capable(self) -> bool:
        return is_manager_capable(self.role)

    def owns(self, employee) -> bool:
        return employee is not None and employee.user_id is not None and employee.user_id == self.user_id
