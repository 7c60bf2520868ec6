"""Authentication and authorization.

Passwords are hashed with ``werkzeug.security``; sessions are stateless
HS256 JWTs signed with ``JWT_SECRET``.  The ``require_auth`` decorator
decodes the bearer token once per request, resolves role and employee link
from the current user row, and stores the resulting ``AuthContext`` on
``flask.g``; route handlers pass that context explicitly into the service
calls that need to know who is acting.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

import jwt
from flask import current_app, g, request
from sqlalchemy import func, select
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidReferenceError,
)
from .db import SessionLocal
from .models import Employee, User

logger = logging.getLogger(__name__)

ROLE_EMPLOYEE = "Employee"
ROLE_LIBRARIAN = "Librarian"
ROLE_ADMIN = "Admin"
ROLES = (ROLE_EMPLOYEE, ROLE_LIBRARIAN, ROLE_ADMIN)
STAFF_ROLES = (ROLE_ADMIN, ROLE_LIBRARIAN)


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    username: str
    role: str
    employee_id: Optional[int] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        logger.warning("Empty password hash on record")
        return False
    return check_password_hash(password_hash, password)


def create_token(user: User, settings) -> tuple[str, datetime]:
    """Return (token, expires_at) for the given user."""
    now = datetime.utcnow()
    expires_at = now + timedelta(minutes=settings["JWT_EXP_MINUTES"])
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "employee_id": user.employee_id,
        "jti": uuid.uuid4().hex,
        "iss": settings["JWT_ISSUER"],
        "aud": settings["JWT_AUDIENCE"],
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings["JWT_SECRET"], algorithm=settings["JWT_ALGORITHM"])
    return token, expires_at


def decode_token(token: str, settings) -> AuthContext:
    try:
        claims = jwt.decode(
            token,
            settings["JWT_SECRET"],
            algorithms=[settings["JWT_ALGORITHM"]],
            audience=settings["JWT_AUDIENCE"],
            issuer=settings["JWT_ISSUER"],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    try:
        user_id = int(claims["sub"])
    except (KeyError, ValueError):
        raise AuthenticationError("Invalid token")

    return AuthContext(
        user_id=user_id,
        username=claims.get("username", ""),
        role=claims.get("role", ROLE_EMPLOYEE),
        employee_id=claims.get("employee_id"),
    )


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def load_context(claims: AuthContext) -> AuthContext:
    """
    Re-read role and employee link from the user row; a token can outlive
    the employee link it was issued with.
    """
    session = SessionLocal()
    try:
        user = session.get(User, claims.user_id)
        if user is None or not user.is_active:
            logger.warning("Token for missing or inactive user %s", claims.user_id)
            raise AuthenticationError("User account is no longer active")
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=user.role,
            employee_id=user.employee_id,
        )
    finally:
        session.close()


def optional_auth() -> Optional[AuthContext]:
    """Decode the bearer token if one was sent, else None."""
    token = _bearer_token()
    if token is None:
        return None
    return load_context(decode_token(token, current_app.config))


def require_auth(*roles):
    """
    Route decorator: reject requests without a valid bearer token (401) or
    whose role is not in ``roles`` (403).  Empty ``roles`` admits any user.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            auth = optional_auth()
            if auth is None:
                raise AuthenticationError("Authentication required")
            if roles and auth.role not in roles:
                logger.warning(
                    "User %s (role %s) denied on %s", auth.username, auth.role, request.path
                )
                raise ForbiddenError("You do not have permission to perform this action")
            g.auth = auth
            return func(*args, **kwargs)

        return wrapper

    return decorator


class AuthService:
    def __init__(self, session, settings):
        self.session = session
        self.settings = settings

    def _token_response(self, user):
        token, expires_at = create_token(user, self.settings)
        return {
            "token": token,
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "expiresAt": expires_at.isoformat(),
        }

    def has_any_users(self) -> bool:
        return self.session.execute(select(User.id).limit(1)).first() is not None

    def login(self, username, password):
        logger.info("Login attempt for %s", username)
        user = self.session.execute(
            select(User).where(
                func.lower(User.username) == username.lower(),
                User.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if not user:
            logger.warning("Unknown or inactive user: %s", username)
            return None
        if not verify_password(password, user.password_hash):
            logger.warning("Wrong password for user: %s", username)
            return None

        user.last_login_at = datetime.utcnow()
        self.session.commit()
        logger.info("User %s (id %s) logged in", user.username, user.id)
        return self._token_response(user)

    def register(self, username, email, password, role=None, employee_id=None, auth=None):
        """
        The first account is created without credentials and always becomes
        an Admin.  Afterwards only staff may register users.
        """
        if self.has_any_users():
            if auth is None:
                raise AuthenticationError("Authentication required to register new users")
            if not auth.is_staff:
                raise ForbiddenError("Only administrators and librarians can register users")
            role = role or ROLE_EMPLOYEE
        else:
            logger.info("No users yet, bootstrapping %s as Admin", username)
            role = ROLE_ADMIN

        taken = self.session.execute(
            select(User.id).where(func.lower(User.username) == username.lower())
        ).first()
        if taken:
            raise ConflictError("A user with this username already exists")
        taken = self.session.execute(
            select(User.id).where(func.lower(User.email) == email.lower())
        ).first()
        if taken:
            raise ConflictError("A user with this email already exists")

        if employee_id is not None:
            if self.session.get(Employee, employee_id) is None:
                raise InvalidReferenceError("Employee with the given id does not exist")
            linked = self.session.execute(
                select(User.id).where(User.employee_id == employee_id)
            ).first()
            if linked:
                raise ConflictError("Employee is already linked to another user")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            role=role,
            is_active=True,
            employee_id=employee_id,
            created_at=datetime.utcnow(),
        )
        self.session.add(user)
        self.session.commit()
        logger.info("Registered user %s (id %s) with role %s", user.username, user.id, user.role)
        return self._token_response(user)

    def get_user(self, user_id):
        return self.session.get(User, user_id)

    def list_users(self):
        return self.session.execute(select(User).order_by(User.id)).scalars().all()

    def change_password(self, user_id, old_password, new_password) -> bool:
        user = self.session.get(User, user_id)
        if user is None or not verify_password(old_password, user.password_hash):
            return False
        user.password_hash = hash_password(new_password)
        self.session.commit()
        logger.info("Password changed for user %s", user.username)
        return True
