"""
Role-Based Access Control Module

Users are keyed by the identity id issued by the external identity
provider. The ledger core only ever sees a resolved Caller (identity id plus
role); every authorization decision goes through ``authorize``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ForbiddenError, InvalidArgumentError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class Role(Enum):
    """Caller roles"""
    CUSTOMER = "CUSTOMER"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"


STAFF_ROLES: FrozenSet[Role] = frozenset({Role.EMPLOYEE, Role.ADMIN})
ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.ADMIN})


@dataclass(frozen=True)
class Caller:
    """Resolved identity of the party making a request"""
    caller_id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass
class User(StorageRecord):
    """Application user, one per identity-provider id"""
    email: str
    first_name: str = ""
    last_name: str = ""
    role: Role = Role.CUSTOMER

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_caller(self) -> Caller:
        return Caller(caller_id=self.id, role=self.role)

    @classmethod
    def from_dict(cls, data) -> 'User':
        data = dict(data)
        data['role'] = Role(data['role'])
        return super().from_dict(data)


def authorize(
    caller: Caller,
    owner_id: Optional[str] = None,
    required_roles: FrozenSet[Role] = STAFF_ROLES
) -> None:
    """
    Single authorization policy for the ledger core.

    Passes when the caller holds one of ``required_roles`` or, when an
    ``owner_id`` is given, when the caller is that owner.

    Raises:
        ForbiddenError: caller has neither the role nor the ownership
    """
    if caller.role in required_roles:
        return
    if owner_id is not None and caller.caller_id == owner_id:
        return
    raise ForbiddenError("Forbidden", caller_id=caller.caller_id)


class UserManager:
    """Registers users and resolves identity ids to callers"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users_table = "users"
        self.logger = get_logger("banking.users")

    def register_user(
        self,
        identity_id: str,
        email: str,
        first_name: str = "",
        last_name: str = "",
        role: Role = Role.CUSTOMER
    ) -> User:
        """
        Register a user on first sign-in. Idempotent: an already registered
        identity returns the stored user unchanged.
        """
        if not identity_id:
            raise InvalidArgumentError("Identity id is required")
        if not email or "@" not in email:
            raise InvalidArgumentError("A valid email is required")

        with self.storage.atomic():
            existing = self.storage.load(self.users_table, identity_id)
            if existing:
                return User.from_dict(existing)

            now = datetime.now(timezone.utc)
            user = User(
                id=identity_id,
                created_at=now,
                updated_at=now,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role
            )
            self.storage.insert(self.users_table, user.id, user.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.USER_REGISTERED,
                entity_type="user",
                entity_id=user.id,
                metadata={"email": email, "role": role.value},
                user_id=user.id
            )

        log_action(self.logger, "info", "User registered",
                   user_id=user.id, action="register_user", resource=f"user:{user.id}")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by identity id"""
        data = self.storage.load(self.users_table, user_id)
        if data:
            return User.from_dict(data)
        return None

    def resolve_caller(self, identity_id: str) -> Caller:
        """Resolve an authenticated identity id to a Caller"""
        user = self.get_user(identity_id)
        if not user:
            raise NotFoundError("User not found", user_id=identity_id)
        return user.to_caller()

    def list_users(self, caller: Caller) -> List[User]:
        """List all users (staff only)"""
        authorize(caller)
        users = [User.from_dict(d) for d in self.storage.load_all(self.users_table)]
        return sorted(users, key=lambda u: u.created_at)

    def set_role(self, caller: Caller, user_id: str, role: Role) -> User:
        """Change a user's role (admin only)"""
        authorize(caller, required_roles=ADMIN_ONLY)

        with self.storage.atomic():
            data = self.storage.load_for_update(self.users_table, user_id)
            if not data:
                raise NotFoundError("User not found", user_id=user_id)

            user = User.from_dict(data)
            old_role = user.role
            user.role = role
            user.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.users_table, user.id, user.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.USER_ROLE_CHANGED,
                entity_type="user",
                entity_id=user.id,
                metadata={"old_role": old_role.value, "new_role": role.value},
                user_id=caller.caller_id
            )

        log_action(self.logger, "info", f"User role changed to {role.value}",
                   user_id=caller.caller_id, action="set_role", resource=f"user:{user_id}")
        return user
