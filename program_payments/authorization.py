"""
Authorization Module

Identities arrive from an external identity provider; the engine only sees
an opaque user id, an email and an admin flag. AuthorizationPolicy decides
what an identity may do and is passed explicitly into the service rather
than read from ambient global state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .errors import AuthorizationError, NotFoundError
from .programs import Program, ProgramStatus


class Permission(Enum):
    """Operations gated by the policy"""
    # Learner permissions
    CREATE_PROGRAM = "create_program"
    PAY_PROGRAM = "pay_program"
    VIEW_OWN_PROGRAMS = "view_own_programs"

    # Admin permissions
    APPROVE_PROGRAM = "approve_program"
    REVOKE_PROGRAM = "revoke_program"
    DELETE_PROGRAM = "delete_program"
    VIEW_ALL_PROGRAMS = "view_all_programs"
    SEND_REMINDER = "send_reminder"
    VIEW_STATS = "view_stats"
    RUN_SWEEPS = "run_sweeps"


LEARNER_PERMISSIONS: FrozenSet[Permission] = frozenset({
    Permission.CREATE_PROGRAM,
    Permission.PAY_PROGRAM,
    Permission.VIEW_OWN_PROGRAMS,
})

ADMIN_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as resolved by the identity provider"""
    user_id: str
    email: str = ""
    name: str = ""
    is_admin: bool = False


SYSTEM_IDENTITY = Identity(user_id="system", email="", name="System", is_admin=True)


class AuthorizationPolicy:
    """
    Admin-email based policy.

    An identity is an administrator when the identity provider flagged it
    so, or when its email is in the configured admin list.
    """

    def __init__(self, admin_emails: Iterable[str] = ()):
        self.admin_emails = frozenset(email.strip().lower() for email in admin_emails if email.strip())

    def is_admin(self, identity: Optional[Identity]) -> bool:
        if identity is None:
            return False
        return identity.is_admin or (identity.email or "").lower() in self.admin_emails

    def permissions_for(self, identity: Optional[Identity]) -> FrozenSet[Permission]:
        if identity is None or not identity.user_id:
            return frozenset()
        if self.is_admin(identity):
            return ADMIN_PERMISSIONS
        return LEARNER_PERMISSIONS

    def has_permission(self, identity: Optional[Identity], permission: Permission) -> bool:
        return permission in self.permissions_for(identity)

    def require(self, identity: Optional[Identity], permission: Permission) -> None:
        """Raise AuthorizationError unless identity holds permission"""
        if not self.has_permission(identity, permission):
            who = identity.email or identity.user_id if identity else "anonymous"
            raise AuthorizationError(f"{who} is not allowed to {permission.value}")

    def require_owner(self, identity: Identity, program: Program) -> None:
        """
        Learners may only act on their own programs. A foreign program is
        reported as missing so its existence is not disclosed.
        """
        if program.user_id != identity.user_id and not self.is_admin(identity):
            raise NotFoundError(f"Program {program.id} not found")

    def can_delete(self, identity: Optional[Identity], program: Program) -> bool:
        """
        Whether to offer deletion. The engine allows deleting any program;
        this policy only offers it for programs that left the pending state.
        """
        return self.is_admin(identity) and program.status != ProgramStatus.PENDING
