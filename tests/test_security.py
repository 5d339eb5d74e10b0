import hashlib
from datetime import datetime, timezone

import pytest

from kobber_crm import AuthError, LoginThrottle, PasswordHasher
from kobber_crm.security import INVALID_CREDENTIAL, TOO_MANY_REQUESTS


def test_password_hasher_salts_and_verifies():
    hasher = PasswordHasher(iterations=1_000)
    first = hasher.hash("Secret123!")
    second = hasher.hash("Secret123!")

    assert first != second
    assert first.startswith("pbkdf2_sha256$1000$")
    assert hasher.verify("Secret123!", first)
    assert not hasher.verify("wrong", first)
    assert not hasher.verify("anything", "pbkdf2_sha256$x$zz$00")


def test_unsalted_hex_digest_is_never_accepted():
    digest = hashlib.sha256("Secret123!".encode("utf-8")).hexdigest()

    assert not PasswordHasher().verify("Secret123!", digest)


def test_login_throttle_blocks_after_failures(config, users):
    throttle = LoginThrottle(config, users)

    for _ in range(config.login_max_attempts - 1):
        throttle.record("jane@kobber.com.br", False)
    assert throttle.retry_at("jane@kobber.com.br") is None

    throttle.record("jane@kobber.com.br", False)
    retry_at = throttle.retry_at("jane@kobber.com.br")
    assert retry_at is not None
    assert retry_at > datetime.now(timezone.utc)

    throttle.record("jane@kobber.com.br", True)
    assert throttle.retry_at("jane@kobber.com.br") is None


def test_sign_in_success_flags_admins(auth):
    auth.create_user("Boss@Kobber.com.br", "secret123")
    auth.create_user("ana@kobber.com.br", "secret123")

    boss = auth.sign_in("boss@kobber.com.br", "secret123")
    ana = auth.sign_in(" ANA@kobber.com.br ", "secret123")

    assert boss.is_admin is True
    assert ana.is_admin is False
    assert ana.short_name == "ana"


def test_sign_in_wrong_password_is_invalid_credential(auth):
    auth.create_user("ana@kobber.com.br", "secret123")

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in("ana@kobber.com.br", "nope")

    assert excinfo.value.code == INVALID_CREDENTIAL
    assert excinfo.value.user_message == "Incorrect email or password."


def test_repeated_failures_lock_the_account(auth, config):
    auth.create_user("ana@kobber.com.br", "secret123")
    for _ in range(config.login_max_attempts):
        with pytest.raises(AuthError):
            auth.sign_in("ana@kobber.com.br", "nope")

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in("ana@kobber.com.br", "secret123")

    assert excinfo.value.code == TOO_MANY_REQUESTS
    assert excinfo.value.retry_at is not None
    assert excinfo.value.user_message.startswith("Too many attempts. Try again after ")


def test_too_many_requests_message_without_retry_time():
    error = AuthError(TOO_MANY_REQUESTS, "blocked")

    assert error.user_message == "Too many attempts. Try again later."


def test_unsalted_stored_hash_cannot_sign_in(auth, users):
    users.create("old@kobber.com.br", hashlib.sha256("secret123".encode("utf-8")).hexdigest())

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in("old@kobber.com.br", "secret123")

    assert excinfo.value.code == INVALID_CREDENTIAL


def test_auth_listeners_follow_sign_in_and_sign_out(auth):
    auth.create_user("ana@kobber.com.br", "secret123")
    events = []
    unsubscribe = auth.on_auth_state_changed(events.append)

    session = auth.sign_in("ana@kobber.com.br", "secret123")
    auth.sign_out()
    unsubscribe()
    auth.sign_out()

    assert events == [session, None]


def test_create_user_validates_input(auth):
    with pytest.raises(ValueError):
        auth.create_user("not-an-email", "secret123")
    with pytest.raises(ValueError):
        auth.create_user("ana@kobber.com.br", "123")
    auth.create_user("ana@kobber.com.br", "secret123")
    with pytest.raises(ValueError):
        auth.create_user("ana@kobber.com.br", "secret123")


def test_seed_admin_only_when_no_users(auth, users):
    assert auth.seed_admin(None, None) is None
    assert auth.seed_admin("boss@kobber.com.br", "secret123") is not None
    assert auth.seed_admin("other@kobber.com.br", "secret123") is None
    assert users.count() == 1
