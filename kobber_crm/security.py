"""Password hashing, login throttling and email sign-in."""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import AppConfig
from .repositories import UserRepository

logger = logging.getLogger(__name__)

HASH_SCHEME = "pbkdf2_sha256"


@dataclass(frozen=True)
class PasswordHasher:
    """Salted PBKDF2-SHA256 hashes stored as ``scheme$iterations$salt$digest``."""

    iterations: int = 200_000

    def _derive(self, password: str, salt: bytes, iterations: int) -> bytes:
        return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)

    def hash(self, password: str) -> str:
        salt = secrets.token_bytes(16)
        digest = self._derive(password, salt, self.iterations)
        return f"{HASH_SCHEME}${self.iterations}${salt.hex()}${digest.hex()}"

    def verify(self, password: str, stored: str) -> bool:
        parts = (stored or "").split("$")
        if len(parts) != 4 or parts[0] != HASH_SCHEME:
            return False
        try:
            iterations = int(parts[1])
            salt = bytes.fromhex(parts[2])
            expected = bytes.fromhex(parts[3])
        except ValueError:
            return False
        return hmac.compare_digest(self._derive(password, salt, iterations), expected)


@dataclass
class LoginThrottle:
    """Block an email after too many recent failed sign-ins."""

    config: AppConfig
    users: UserRepository

    def retry_at(self, email: str) -> Optional[datetime]:
        """Return when ``email`` may try again, or ``None`` if it is not blocked."""

        window = self.config.login_lockout_minutes
        if self.users.count_recent_failures(email, window) < self.config.login_max_attempts:
            return None
        last_failure = self.users.latest_failure_time(email)
        try:
            # login_events timestamps come from SQLite's datetime('now'), which is UTC
            failed_at = datetime.fromisoformat(last_failure).replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            failed_at = datetime.now(timezone.utc)
        return failed_at + timedelta(minutes=window)

    def record(self, email: str, success: bool) -> None:
        if success:
            self.users.clear_login_events(email)
            return
        self.users.create_login_event(email, False)
        self.users.purge_login_history(self.config.login_lockout_minutes)


INVALID_CREDENTIAL = "invalid-credential"
TOO_MANY_REQUESTS = "too-many-requests"
GENERIC_ERROR = "error"


class AuthError(Exception):
    """Sign-in failure carrying a short machine-readable ``code``."""

    def __init__(self, code: str, message: str, retry_at: Optional[datetime] = None):
        super().__init__(message)
        self.code = code
        self.retry_at = retry_at

    @property
    def user_message(self) -> str:
        if self.code == INVALID_CREDENTIAL:
            return "Incorrect email or password."
        if self.code == TOO_MANY_REQUESTS:
            if self.retry_at is not None:
                return f"Too many attempts. Try again after {self.retry_at.astimezone():%H:%M}."
            return "Too many attempts. Try again later."
        return f"Sign-in error: {self}"


@dataclass(frozen=True)
class SessionUser:
    user_id: int
    email: str
    display_name: Optional[str]
    is_admin: bool

    @property
    def short_name(self) -> str:
        return self.email.split("@")[0] if self.email else "Salesperson"


AuthListener = Callable[[Optional[SessionUser]], None]


@dataclass
class AuthService:
    """Email/password sign-in with session-change notifications.

    Admin rights come from the configured allow-list of emails and are only
    used to decide which controls the UI shows.
    """

    config: AppConfig
    users: UserRepository
    hasher: PasswordHasher = field(default_factory=PasswordHasher)
    throttle: Optional[LoginThrottle] = None
    _listeners: list = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.throttle is None:
            self.throttle = LoginThrottle(self.config, self.users)

    def is_admin(self, email: Optional[str]) -> bool:
        return self.config.is_admin_email(email)

    def sign_in(self, email: str, password: str) -> SessionUser:
        email = (email or "").strip().lower()
        if not email or not password:
            raise AuthError(INVALID_CREDENTIAL, "Email and password are required.")
        try:
            retry_at = self.throttle.retry_at(email)
            if retry_at is not None:
                logger.warning("Sign-in blocked for %s until %s", email, retry_at.isoformat(timespec="minutes"))
                raise AuthError(TOO_MANY_REQUESTS, "Too many failed attempts.", retry_at=retry_at)

            user = self.users.fetch_by_email(email)
            if not user or not self.hasher.verify(password, user.get("pass_hash", "")):
                self.throttle.record(email, False)
                logger.info("Failed sign-in for %s", email)
                raise AuthError(INVALID_CREDENTIAL, "Invalid credentials.")

            self.throttle.record(email, True)
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("Unexpected sign-in failure for %s", email)
            raise AuthError(GENERIC_ERROR, str(exc)) from exc

        session = SessionUser(
            user_id=user["user_id"],
            email=user["email"],
            display_name=user.get("display_name"),
            is_admin=self.is_admin(user["email"]),
        )
        logger.info("Signed in %s (admin=%s)", session.email, session.is_admin)
        self._emit(session)
        return session

    def sign_out(self) -> None:
        self._emit(None)

    def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def create_user(self, email: str, password: str, display_name: Optional[str] = None) -> int:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValueError("A valid email address is required.")
        if len(password or "") < 6:
            raise ValueError("Passwords need at least 6 characters.")
        if self.users.fetch_by_email(email):
            raise ValueError(f"An account for {email} already exists.")
        user_id = self.users.create(email, self.hasher.hash(password), display_name)
        logger.info("Created account %s", email)
        return user_id

    def seed_admin(self, email: Optional[str], password: Optional[str]) -> Optional[int]:
        """Create the first account when the users table is still empty."""

        if not email or not password or self.users.count():
            return None
        return self.create_user(email, password, "Administrator")

    def _emit(self, session: Optional[SessionUser]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(session)
            except Exception:
                logger.exception("Auth state listener failed")
