from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from config import get_settings
from models import Profile
from schemas import SignInIn, SignUpIn

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class NotAuthenticatedError(Exception):
    pass


class AuthError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthEvent(str, Enum):
    initial_session = "INITIAL_SESSION"
    signed_in = "SIGNED_IN"
    signed_out = "SIGNED_OUT"


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    full_name: Optional[str] = None


@dataclass(frozen=True)
class AuthSession:
    token: str
    user: Identity


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], None]


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="auth-session")


def _identity(profile: Profile) -> Identity:
    return Identity(id=profile.id, email=profile.email, full_name=profile.full_name)


class AuthService:
    """Sign up, sign in and session restore against the ``profiles`` table.

    A session is a signed token carrying the profile id. The service holds at
    most one token at a time (the one it was created with, or the one issued
    by the last successful sign in) and notifies subscribers when it changes.
    """

    def __init__(self, session: Session, token: Optional[str] = None) -> None:
        self.session = session
        self.token = token
        self._listeners: list[AuthListener] = []

    def sign_up(self, email: str, password: str, full_name: str = "") -> AuthSession:
        data = SignUpIn(email=email, password=password, full_name=full_name)
        if len(data.password) < MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if self._find(data.email) is not None:
            raise AuthError("User already registered")
        profile = Profile(
            email=data.email,
            full_name=data.full_name.strip() or None,
            password_hash=generate_password_hash(data.password),
        )
        try:
            self.session.add(profile)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise AuthError("User already registered") from exc
        self.session.refresh(profile)
        logger.info(f"auth_sign_up: user={profile.id}")
        return self._start(profile)

    def sign_in(self, email: str, password: str) -> AuthSession:
        data = SignInIn(email=email, password=password)
        profile = self._find(data.email)
        if profile is None or not check_password_hash(
            profile.password_hash, data.password
        ):
            logger.info("auth_sign_in_failed")
            raise AuthError("Invalid login credentials")
        return self._start(profile)

    def sign_out(self) -> None:
        user = self.current_user()
        self.token = None
        if user is not None:
            logger.info(f"auth_sign_out: user={user.id}")
        self._emit(AuthEvent.signed_out, None)

    def current_user(self) -> Optional[Identity]:
        if not self.token:
            return None
        max_age = get_settings().session_max_age_hours * 3600
        try:
            data = _serializer().loads(self.token, max_age=max_age)
        except BadSignature:
            return None
        if not isinstance(data, dict) or "uid" not in data:
            return None
        profile = self.session.get(Profile, data["uid"])
        if profile is None:
            return None
        return _identity(profile)

    def current_session(self) -> Optional[AuthSession]:
        user = self.current_user()
        if user is None or self.token is None:
            return None
        return AuthSession(token=self.token, user=user)

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)
        callback(AuthEvent.initial_session, self.current_session())

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _find(self, email: str) -> Optional[Profile]:
        return self.session.scalar(
            select(Profile).where(func.lower(Profile.email) == email.lower())
        )

    def _start(self, profile: Profile) -> AuthSession:
        self.token = _serializer().dumps({"uid": profile.id})
        auth_session = AuthSession(token=self.token, user=_identity(profile))
        logger.info(f"auth_sign_in: user={profile.id}")
        self._emit(AuthEvent.signed_in, auth_session)
        return auth_session

    def _emit(self, event: AuthEvent, auth_session: Optional[AuthSession]) -> None:
        for listener in list(self._listeners):
            listener(event, auth_session)
