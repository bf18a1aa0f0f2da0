"""Signed-in session lifecycle.

A session starts on successful sign-in, sign-up or restore from the local
session store, and ends on sign-out. The active ``SessionContext`` is held
by ``AuthService`` and mirrored into a context variable for code that
cannot be handed the context explicitly.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from optisync.errors import ValidationError
from optisync.gateways.base import AccessTokenAware, AuthUser, IdentityGateway, SessionStore
from optisync.utils.masking import mask_token

logger = logging.getLogger(__name__)

SESSION_KEY = "userSession"
TOKEN_KEY = "sessionToken"
ADMIN_EMAIL_DOMAIN = "@admin.com"

Role = Literal["user", "admin"]


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    name: str = ""
    role: Role = "user"
    activities: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        local_part = self.email.split("@", 1)[0]
        return local_part or "Anonymous"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_auth_user(cls, user: AuthUser) -> "UserProfile":
        attributes = user.attributes
        role = attributes.get("role")
        activities = attributes.get("activities") or ()
        return cls(
            id=user.id,
            email=user.email,
            name=str(attributes.get("name") or ""),
            role="admin" if role == "admin" else "user",
            activities=tuple(str(item) for item in activities),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "activities": list(self.activities),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserProfile":
        if not isinstance(data, Mapping):
            raise TypeError("session profile must be an object")
        email = data["email"]
        if not isinstance(email, str) or not email:
            raise ValueError("session profile has no email")
        role = data.get("role", "user")
        if role not in ("user", "admin"):
            raise ValueError(f"unknown role {role!r}")
        return cls(
            id=str(data.get("id") or email),
            email=email,
            name=str(data.get("name") or ""),
            role=role,
            activities=tuple(data.get("activities") or ()),
        )


@dataclass(frozen=True)
class SessionContext:
    """Immutable signed-in context. The access token never appears in repr."""

    user: UserProfile
    access_token: str | None = field(default=None, repr=False)
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return (
            f"SessionContext(user_id={self.user.id!r}, email={self.user.email!r}, "
            f"session_id={self.session_id!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


_session: ContextVar[SessionContext | None] = ContextVar("session", default=None)


def set_session(ctx: SessionContext | None) -> Token[SessionContext | None]:
    """Set the session and return a reset token."""
    return _session.set(ctx)


def reset_session(token: Token[SessionContext | None]) -> None:
    _session.reset(token)


def get_session() -> SessionContext:
    """Get the active session or raise RuntimeError."""
    ctx = _session.get()
    if ctx is None:
        raise RuntimeError("No active session")
    return ctx


def get_session_optional() -> SessionContext | None:
    return _session.get()


class AuthService:
    def __init__(
        self,
        identity: IdentityGateway,
        session_store: SessionStore,
        *,
        token_sink: AccessTokenAware | None = None,
    ) -> None:
        self._identity = identity
        self._store = session_store
        self._token_sink = token_sink
        self._current: SessionContext | None = None

    @property
    def current(self) -> SessionContext | None:
        return self._current

    async def sign_in(self, email: str, password: str) -> SessionContext:
        email = email.strip()
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = await self._identity.sign_in(email, password)
        return self._start(UserProfile.from_auth_user(user), user.access_token)

    async def sign_up(self, name: str, email: str, password: str) -> SessionContext:
        email = email.strip()
        if not email or not password:
            raise ValidationError("Email and password are required")
        role: Role = "admin" if email.lower().endswith(ADMIN_EMAIL_DOMAIN) else "user"
        user = await self._identity.sign_up(
            email, password, {"name": name.strip(), "role": role}
        )
        profile = UserProfile(id=user.id, email=email, name=name.strip(), role=role)
        return self._start(profile, user.access_token)

    async def sign_out(self) -> None:
        """End the session. Local state is cleared even if the remote call fails."""
        try:
            await self._identity.sign_out()
        finally:
            self._end()

    def restore(self) -> SessionContext | None:
        data = self._store.get(SESSION_KEY)
        if data is None:
            return None
        try:
            profile = UserProfile.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupt stored session: %s", exc)
            self._store.remove(SESSION_KEY)
            self._store.remove(TOKEN_KEY)
            return None
        token = self._store.get(TOKEN_KEY)
        return self._start(profile, token if isinstance(token, str) else None, persist=False)

    def _start(
        self, profile: UserProfile, access_token: str | None, *, persist: bool = True
    ) -> SessionContext:
        ctx = SessionContext(user=profile, access_token=access_token)
        if persist:
            self._store.set(SESSION_KEY, profile.to_dict())
            if access_token:
                self._store.set(TOKEN_KEY, access_token)
            else:
                self._store.remove(TOKEN_KEY)
        if self._token_sink is not None:
            self._token_sink.set_access_token(access_token)
        self._current = ctx
        set_session(ctx)
        logger.info(
            "Session started for %s (token %s)", profile.email, mask_token(access_token)
        )
        return ctx

    def _end(self) -> None:
        previous = self._current
        self._current = None
        self._store.remove(SESSION_KEY)
        self._store.remove(TOKEN_KEY)
        if self._token_sink is not None:
            self._token_sink.set_access_token(None)
        set_session(None)
        if previous is not None:
            logger.info("Session ended for %s", previous.user.email)
