"""Admin-plane user operations on top of the coordination primitives.

Flow Diagram — register()
=========================
::
    ┌──────────────────┐
    │ filter.might_    │ maybe present  ┌──────────────────┐
    │ contain(username)├───────────────►│ DB lookup        │── exists ──► ConflictDetected
    └────────┬─────────┘                └────────┬─────────┘
     absent  │◄──────────── free (false positive)┘
             ▼
    ┌──────────────────┐
    │ lock.hold(       │── busy ──► LockBusy
    │ register:{name}) │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ re-check DB      │── exists ──► ConflictDetected
    │ INSERT t_user    │── unique violation ──► ConflictDetected
    │ filter.add(name) │
    └────────┬─────────┘
             ▼ (finally)
    ┌──────────────────┐
    │ release lock     │
    └──────────────────┘

Key Behaviours
===============
- The lock is scoped to one username; registrations of different names
  never contend.
- A failed lock acquisition is a conflict, not a transient error.
- Login reuses the live session token of the user if there is one.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets

from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.enums import InsertStatus, LogoutStatus
from shortlink.errors import AuthenticationFailed, ConflictDetected
from shortlink.existence_filter import ExistenceFilter
from shortlink.models import User
from shortlink.registration_lock import RegistrationLock
from shortlink.repositories import UserRepository
from shortlink.schemas import UserLogin, UserRegister, UserSnapshot, UserUpdate
from shortlink.session_store import SessionStore

__all__ = ["UserService", "hash_password", "verify_password"]

_PBKDF2_ITERATIONS = 210_000


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, expected = stored.partition("$")
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


class UserService:
    def __init__(
        self,
        db: AsyncSession,
        username_filter: ExistenceFilter,
        lock: RegistrationLock,
        sessions: SessionStore,
        logger: logging.Logger | logging.LoggerAdapter,
        lock_key_prefix: str = "register:",
    ) -> None:
        self._users = UserRepository(db)
        self._filter = username_filter
        self._lock = lock
        self._sessions = sessions
        self._logger = logger
        self._lock_key_prefix = lock_key_prefix

    async def has_username(self, username: str) -> bool:
        """True when ``username`` is taken."""
        if not await self._filter.might_contain(username):
            return False
        return await self._users.get_by_username(username, include_deleted=True) is not None

    async def register(self, request: UserRegister) -> User:
        username = request.username
        if await self.has_username(username):
            raise ConflictDetected(username, f"Username '{username}' already exists")

        # PBKDF2 runs off the event loop and outside the critical section.
        password_hash = await asyncio.to_thread(hash_password, request.password)

        async with self._lock.hold(f"{self._lock_key_prefix}{username}"):
            # Another registration may have committed between the fast check and the lock.
            if await self._users.get_by_username(username, include_deleted=True) is not None:
                raise ConflictDetected(username, f"Username '{username}' already exists")

            user = User(
                username=username,
                password_hash=password_hash,
                real_name=request.real_name,
                phone=request.phone,
                mail=request.mail,
            )
            result = await self._users.insert(user)
            if result.status is InsertStatus.UNIQUE_VIOLATION:
                await self._filter.add(username)
                raise ConflictDetected(username, f"Username '{username}' already exists") from result.error

            await self._filter.add(username)

        self._logger.info(f"User registered: {username}")
        return user

    async def get_user(self, username: str) -> User | None:
        return await self._users.get_by_username(username)

    async def update(self, request: UserUpdate) -> bool:
        """Apply the non-empty fields of ``request``; ``False`` when the user is gone."""
        values = request.model_dump(exclude={"username", "password"}, exclude_none=True)
        if request.password is not None:
            values["password_hash"] = await asyncio.to_thread(hash_password, request.password)
        if not values:
            return await self.get_user(request.username) is not None

        updated = await self._users.update_by_username(request.username, values)
        if updated:
            self._logger.info(f"User updated: {request.username} ({', '.join(sorted(values))})")
        return updated > 0

    async def login(self, request: UserLogin) -> str:
        user = await self._users.get_by_username(request.username)
        if user is None or not await asyncio.to_thread(verify_password, request.password, user.password_hash):
            self._logger.warning(f"Login rejected for {request.username}")
            raise AuthenticationFailed("Invalid username or password")

        return await self._sessions.login(user.username, UserSnapshot.model_validate(user))

    async def check_login(self, username: str, token: str | None) -> bool:
        return await self._sessions.is_valid(username, token)

    async def logout(self, username: str, token: str | None) -> LogoutStatus:
        status = await self._sessions.logout(username, token)
        if status is LogoutStatus.SESSION_NOT_FOUND:
            self._logger.info(f"Logout for {username} without a live session")
        return status
