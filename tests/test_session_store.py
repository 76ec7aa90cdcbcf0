"""Single-active-session token table tests."""

import pytest

from shortlink.enums import LogoutStatus
from shortlink.schemas import UserSnapshot
from shortlink.session_store import SessionStore

LOGIN_KEY = "short-link:login:alice"


@pytest.fixture
def sessions(kv_store) -> SessionStore:
    return SessionStore(kv_store, key_prefix="short-link:login:")


@pytest.fixture
def snapshot() -> UserSnapshot:
    return UserSnapshot(id=1, username="alice", real_name="Alice", mail="alice@example.com")


@pytest.mark.asyncio
async def test_first_login_issues_token_with_short_ttl(sessions, kv_store, snapshot):
    token = await sessions.login("alice", snapshot)

    assert token
    assert await sessions.is_valid("alice", token) is True
    assert kv_store.ttl(LOGIN_KEY) == 30 * 60


@pytest.mark.asyncio
async def test_first_login_writes_token_and_ttl_together(sessions, kv_store, snapshot):
    await sessions.login("alice", snapshot)

    assert "hash_put_with_ttl" in kv_store.calls
    assert "expire" not in kv_store.calls


@pytest.mark.asyncio
async def test_repeat_login_reuses_token_and_extends_ttl(sessions, kv_store, clock, snapshot):
    first = await sessions.login("alice", snapshot)
    clock.advance(60)

    second = await sessions.login("alice", snapshot)

    assert second == first
    assert await kv_store.hash_get_all(LOGIN_KEY) == {first: snapshot.model_dump_json()}
    assert kv_store.ttl(LOGIN_KEY) == 30 * 24 * 3600


@pytest.mark.asyncio
async def test_session_expires_after_initial_ttl(sessions, clock, snapshot):
    token = await sessions.login("alice", snapshot)

    clock.advance(30 * 60 + 1)

    assert await sessions.is_valid("alice", token) is False
    assert await sessions.login("alice", snapshot) != token


@pytest.mark.asyncio
async def test_is_valid_does_not_touch_ttl(sessions, kv_store, clock, snapshot):
    token = await sessions.login("alice", snapshot)
    clock.advance(100)

    await sessions.is_valid("alice", token)

    assert kv_store.ttl(LOGIN_KEY) == 30 * 60 - 100


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "not-a-real-token"])
async def test_unknown_tokens_are_not_valid(sessions, snapshot, token):
    await sessions.login("alice", snapshot)
    assert await sessions.is_valid("alice", token) is False


@pytest.mark.asyncio
async def test_get_snapshot_round_trips_user(sessions, snapshot):
    token = await sessions.login("alice", snapshot)

    assert await sessions.get_snapshot("alice", token) == snapshot
    assert await sessions.get_snapshot("bob", token) is None


@pytest.mark.asyncio
async def test_logout_invalidates_every_token(sessions, kv_store, snapshot):
    token = await sessions.login("alice", snapshot)
    await kv_store.hash_put_with_ttl(LOGIN_KEY, "second-device", snapshot.model_dump_json(), 30 * 60)

    assert await sessions.logout("alice", token) is LogoutStatus.LOGGED_OUT

    assert await sessions.is_valid("alice", token) is False
    assert await sessions.is_valid("alice", "second-device") is False


@pytest.mark.asyncio
async def test_logout_with_invalid_token_is_a_negative_result(sessions, snapshot):
    token = await sessions.login("alice", snapshot)

    assert await sessions.logout("alice", "wrong") is LogoutStatus.SESSION_NOT_FOUND
    assert await sessions.is_valid("alice", token) is True


@pytest.mark.asyncio
async def test_logout_when_never_logged_in(sessions):
    assert await sessions.logout("alice", "anything") is LogoutStatus.SESSION_NOT_FOUND
