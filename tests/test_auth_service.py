"""Service-level tests for registration, login, refresh, logout and reset."""

import asyncio
import threading
from datetime import timedelta

import pytest

from userhub.service.auth import AuthState, auth_state
from userhub.service.errors import (
    AuthenticationError,
    EmailTakenError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotVerifiedError,
)

PASSWORD = "Secret123!"


async def _verified(auth_service, email="alice@example.com", password=PASSWORD, name="Alice"):
    user, token = await auth_service.register(name, email, password)
    await auth_service.verify_email(token)
    return user


class TestRegister:
    async def test_creates_unverified_user_with_token(self, auth_service, memory_store):
        user, token = await auth_service.register("Alice", "Alice@Example.com", PASSWORD)
        stored = memory_store.get_user(user.id)
        assert stored.email == "alice@example.com"
        assert stored.is_verified is False
        assert stored.email_verification_token == token
        assert len(token) == 64
        assert stored.password_hash != PASSWORD
        assert stored.role == "user"

    async def test_duplicate_email_rejected(self, auth_service):
        await auth_service.register("Alice", "alice@example.com", PASSWORD)
        with pytest.raises(EmailTakenError) as exc:
            await auth_service.register("Other", "ALICE@example.com", PASSWORD)
        assert exc.value.status_code == 400

    async def test_cannot_self_register_as_admin(self, auth_service, memory_store):
        with pytest.raises(ForbiddenError):
            await auth_service.register("Mallory", "m@example.com", PASSWORD, role="admin")
        assert memory_store.get_user_by_email("m@example.com") is None

    async def test_tokens_are_unique(self, auth_service):
        _, first = await auth_service.register("A", "a@example.com", PASSWORD)
        _, second = await auth_service.register("B", "b@example.com", PASSWORD)
        assert first != second


class TestVerifyEmail:
    async def test_marks_verified_and_clears_token(self, auth_service, memory_store):
        user, token = await auth_service.register("Alice", "alice@example.com", PASSWORD)
        await auth_service.verify_email(token)
        stored = memory_store.get_user(user.id)
        assert stored.is_verified is True
        assert stored.email_verification_token is None

    async def test_token_is_single_use(self, auth_service):
        _, token = await auth_service.register("Alice", "alice@example.com", PASSWORD)
        await auth_service.verify_email(token)
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email(token)

    async def test_unknown_and_empty_tokens(self, auth_service):
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email("deadbeef")
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email("")

    async def test_drops_cached_directory_pages(self, auth_service, memory_cache):
        _, token = await auth_service.register("Alice", "alice@example.com", PASSWORD)
        await memory_cache.cache_directory_page(1, 10, "", {"users": []}, 300)
        await auth_service.verify_email(token)
        assert await memory_cache.get_directory_page(1, 10, "") is None


class TestLogin:
    async def test_success_returns_pair_and_profile(self, auth_service, memory_store, memory_cache):
        user = await _verified(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)
        assert result.user["id"] == user.id
        assert "password_hash" not in result.user
        assert memory_store.get_refresh_token(result.tokens.refresh_token) is not None
        assert await memory_cache.get_user_profile(user.id) == result.user

    async def test_unknown_email_and_bad_password_look_identical(self, auth_service):
        await _verified(auth_service)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("alice@example.com", "wrong-password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unverified_user_with_correct_password(self, auth_service):
        await auth_service.register("Bob", "bob@example.com", PASSWORD)
        with pytest.raises(NotVerifiedError) as exc:
            await auth_service.login("bob@example.com", PASSWORD)
        assert exc.value.status_code == 401

    async def test_unverified_user_with_wrong_password_gets_credentials_error(self, auth_service):
        await auth_service.register("Bob", "bob@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("bob@example.com", "wrong-password")

    async def test_cache_outage_does_not_block_login(self, auth_service, memory_cache):
        await _verified(auth_service)

        async def broken(*args, **kwargs):
            raise ConnectionError("cache down")

        memory_cache.cache_user_profile = broken
        result = await auth_service.login("alice@example.com", PASSWORD)
        assert result.tokens.access_token


class TestRefresh:
    async def test_rotates_refresh_token(self, auth_service, memory_store):
        await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        old = login.tokens.refresh_token
        pair = await auth_service.refresh(old)
        assert pair.refresh_token != old
        assert memory_store.get_refresh_token(old) is None
        assert memory_store.get_refresh_token(pair.refresh_token) is not None

    async def test_old_token_rejected_after_rotation(self, auth_service):
        await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.refresh(login.tokens.refresh_token)
        with pytest.raises(InvalidOrExpiredTokenError) as exc:
            await auth_service.refresh(login.tokens.refresh_token)
        assert exc.value.status_code == 403

    async def test_expired_token_rejected(self, auth_service, clock):
        await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        clock.advance(7 * 24 * 3600 + 1)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(login.tokens.refresh_token)

    async def test_signed_token_missing_from_ledger_rejected(self, auth_service):
        user = await _verified(auth_service)
        pair = auth_service.tokens.issue_token_pair(user.id)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(pair.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(login.tokens.access_token)

    def test_concurrent_refresh_single_winner(self, auth_service):
        async def setup():
            await _verified(auth_service)
            return await auth_service.login("alice@example.com", PASSWORD)

        login = asyncio.run(setup())
        outcomes = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                asyncio.run(auth_service.refresh(login.tokens.refresh_token))
                outcomes.append("ok")
            except InvalidOrExpiredTokenError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 7


class TestLogout:
    async def test_revokes_everything(self, auth_service, memory_store, memory_cache):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        outcome = await auth_service.logout(
            user.id,
            refresh_token=login.tokens.refresh_token,
            access_token=login.tokens.access_token,
        )
        assert outcome.refresh_revoked and outcome.access_blacklisted and outcome.cache_evicted
        assert memory_store.get_refresh_token(login.tokens.refresh_token) is None
        assert await memory_cache.is_access_token_blacklisted(login.tokens.access_token)
        assert await memory_cache.get_user_profile(user.id) is None
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {login.tokens.access_token}")

    async def test_blacklist_lasts_remaining_lifetime(self, auth_service, memory_cache, clock):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        clock.advance(600)
        await auth_service.logout(user.id, access_token=login.tokens.access_token)
        clock.advance(299)
        assert await memory_cache.is_access_token_blacklisted(login.tokens.access_token)
        clock.advance(1)
        assert not await memory_cache.is_access_token_blacklisted(login.tokens.access_token)

    async def test_last_partial_second_still_blacklisted(self, auth_service, memory_cache, clock):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        clock.advance(899.5)
        outcome = await auth_service.logout(user.id, access_token=login.tokens.access_token)
        assert outcome.access_blacklisted
        assert await memory_cache.is_access_token_blacklisted(login.tokens.access_token)

    async def test_missing_refresh_token_is_fine(self, auth_service):
        user = await _verified(auth_service)
        outcome = await auth_service.logout(user.id, refresh_token="never-issued")
        assert outcome.refresh_revoked is False
        assert outcome.cache_evicted is True

    async def test_cannot_revoke_another_users_refresh_token(self, auth_service, memory_store):
        alice = await _verified(auth_service)
        await _verified(auth_service, email="bob@example.com", name="Bob")
        bob_login = await auth_service.login("bob@example.com", PASSWORD)
        await auth_service.logout(alice.id, refresh_token=bob_login.tokens.refresh_token)
        assert memory_store.get_refresh_token(bob_login.tokens.refresh_token) is not None

    async def test_blacklist_failure_does_not_stop_other_steps(
        self, auth_service, memory_store, memory_cache
    ):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)

        async def broken(*args, **kwargs):
            raise ConnectionError("cache down")

        memory_cache.blacklist_access_token = broken
        outcome = await auth_service.logout(
            user.id,
            refresh_token=login.tokens.refresh_token,
            access_token=login.tokens.access_token,
        )
        assert outcome.access_blacklisted is False
        assert outcome.refresh_revoked is True
        assert outcome.cache_evicted is True


class TestPasswordReset:
    async def test_unknown_email_is_silent(self, auth_service):
        assert await auth_service.forgot_password("ghost@example.com") is None

    async def test_full_reset(self, auth_service, memory_store):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        _, token = await auth_service.forgot_password("alice@example.com")
        assert auth_state(memory_store.get_user(user.id), auth_service._now()) is AuthState.RESET_PENDING

        await auth_service.reset_password(token, "NewSecret456!")
        stored = memory_store.get_user(user.id)
        assert stored.password_reset_token is None
        assert stored.password_reset_expires is None
        assert auth_state(stored, auth_service._now()) is AuthState.VERIFIED
        # existing sessions end with the old password
        assert memory_store.get_refresh_token(login.tokens.refresh_token) is None
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", PASSWORD)
        assert await auth_service.login("alice@example.com", "NewSecret456!")

    async def test_token_expires_after_an_hour(self, auth_service, clock):
        await _verified(auth_service)
        _, token = await auth_service.forgot_password("alice@example.com")
        clock.advance(3600)
        with pytest.raises(InvalidOrExpiredTokenError) as exc:
            await auth_service.reset_password(token, "NewSecret456!")
        assert exc.value.status_code == 400

    async def test_token_is_single_use(self, auth_service):
        await _verified(auth_service)
        _, token = await auth_service.forgot_password("alice@example.com")
        await auth_service.reset_password(token, "NewSecret456!")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(token, "Another789!")

    async def test_newer_request_replaces_older_token(self, auth_service):
        await _verified(auth_service)
        _, first = await auth_service.forgot_password("alice@example.com")
        _, second = await auth_service.forgot_password("alice@example.com")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(first, "NewSecret456!")
        await auth_service.reset_password(second, "NewSecret456!")


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {login.tokens.access_token}")
        assert ctx.user_id == user.id
        assert ctx.role == "user"
        assert ctx.expires_in == 900

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer not.a.jwt"])
    async def test_rejects_bad_headers(self, auth_service, header):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(header)

    async def test_blacklist_lookup_failure_fails_closed(self, auth_service, memory_cache):
        await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)

        async def broken(*args, **kwargs):
            raise ConnectionError("cache down")

        memory_cache.is_access_token_blacklisted = broken
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {login.tokens.access_token}")

    async def test_deleted_user_rejected(self, auth_service, memory_store):
        user = await _verified(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        memory_store.delete_user(user.id)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {login.tokens.access_token}")


class TestAuthState:
    async def test_lifecycle(self, auth_service, memory_store, clock):
        user, token = await auth_service.register("Alice", "alice@example.com", PASSWORD)
        assert auth_state(memory_store.get_user(user.id)) is AuthState.UNVERIFIED
        await auth_service.verify_email(token)
        now = auth_service._now()
        assert auth_state(memory_store.get_user(user.id), now) is AuthState.VERIFIED
        await auth_service.forgot_password("alice@example.com")
        assert auth_state(memory_store.get_user(user.id), now) is AuthState.RESET_PENDING
        # expiry is a live check, not a stored transition
        later = now + timedelta(hours=1)
        assert auth_state(memory_store.get_user(user.id), later) is AuthState.VERIFIED


async def test_alice_end_to_end(auth_service, memory_store, memory_cache):
    """Register, verify, log in, refresh, log out."""
    user, token = await auth_service.register("Alice", "alice@example.com", PASSWORD)
    await auth_service.verify_email(token)
    login = await auth_service.login("alice@example.com", PASSWORD)
    pair = await auth_service.refresh(login.tokens.refresh_token)
    assert pair.refresh_token != login.tokens.refresh_token

    await auth_service.logout(
        user.id, refresh_token=pair.refresh_token, access_token=pair.access_token
    )
    with pytest.raises(InvalidOrExpiredTokenError):
        await auth_service.refresh(pair.refresh_token)
    with pytest.raises(AuthenticationError):
        await auth_service.authenticate(f"Bearer {pair.access_token}")
