"""
Access control for workflow actors.

Holds the user table, password hashing for signature re-authentication and
role checks for case actions. Identifying the caller of an HTTP request is
left to the deployment's auth middleware.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from passlib.context import CryptContext
from sqlalchemy import JSON, Boolean, Column, DateTime, String
from sqlalchemy.orm import Session

from .db import Base, utcnow
from .exceptions import NotFound, PermissionDenied

logger = logging.getLogger(__name__)


class UserDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for users who act on and sign cases."""

    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    email = Column(String(200), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    roles = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


@dataclass
class User:
    """Represents a workflow actor."""

    id: str
    email: str
    name: str
    roles: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, row: UserDB) -> "User":
        return cls(
            id=row.id,
            email=row.email,
            name=row.name,
            roles=list(row.roles or []),
            is_active=row.is_active,
            created_at=row.created_at,
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        """Check if user has any of the specified roles."""
        return any(self.has_role(r) for r in roles)


class UserDirectory:
    """Stores users and checks their credentials and roles."""

    def __init__(self, password_scheme: str = "pbkdf2_sha256"):
        self.pwd_context = CryptContext(schemes=[password_scheme], deprecated="auto")

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def add_user(
        self,
        session: Session,
        user_id: str,
        email: str,
        name: str,
        password: str,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> User:
        """Create a user with a hashed password."""
        row = UserDB(
            id=user_id,
            email=email,
            name=name,
            roles=list(roles or []),
            is_active=is_active,
            password_hash=self.hash_password(password),
        )
        session.add(row)
        session.flush()
        logger.info("Created user %s with roles %s", user_id, row.roles)
        return User.from_db(row)

    def find(self, session: Session, user_id: str) -> Optional[UserDB]:
        return session.get(UserDB, user_id)

    def get(self, session: Session, user_id: str) -> User:
        """Get a user or raise NotFound."""
        row = self.find(session, user_id)
        if row is None:
            raise NotFound("User", user_id)
        return User.from_db(row)

    def check_password(self, session: Session, user_id: str, password: str) -> bool:
        """True when the user exists and the password matches its hash."""
        row = self.find(session, user_id)
        if row is None or not password:
            return False
        return bool(self.pwd_context.verify(password, row.password_hash))

    def require_roles(self, user: User, roles: Iterable[str], action: str) -> None:
        """Raise PermissionDenied unless the user is active and holds a role."""
        roles = list(roles)
        if not user.is_active:
            logger.warning("Inactive user %s attempted '%s'", user.id, action)
            raise PermissionDenied(user.id, action, roles)
        if roles and not user.has_any_role(roles):
            logger.warning(
                "User %s lacks roles %s required for '%s'", user.id, roles, action
            )
            raise PermissionDenied(user.id, action, roles)
