"""Row-insert collaborators for users and short links.

The coordination layer needs exactly one thing from the relational store
beyond plain reads: to tell a unique-constraint violation apart from every
other failure. ``insert`` reports the former as a tagged ``InsertResult`` and
lets everything else raise.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.enums import InsertStatus
from shortlink.models import ShortLink, User

__all__ = ["InsertResult", "ShortLinkRepository", "UserRepository", "is_unique_violation"]

# SQLSTATE for unique_violation.
_UNIQUE_VIOLATION_SQLSTATE = "23505"


@dataclass(frozen=True)
class InsertResult:
    status: InsertStatus
    error: IntegrityError | None = None


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == _UNIQUE_VIOLATION_SQLSTATE
    # SQLite carries no SQLSTATE, only the message.
    return "UNIQUE constraint failed" in str(orig)


async def _insert(db: AsyncSession, row: ShortLink | User) -> InsertResult:
    db.add(row)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if is_unique_violation(exc):
            return InsertResult(InsertStatus.UNIQUE_VIOLATION, exc)
        raise
    await db.refresh(row)
    return InsertResult(InsertStatus.INSERTED)


class UserRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def insert(self, user: User) -> InsertResult:
        return await _insert(self._db, user)

    async def get_by_username(self, username: str, include_deleted: bool = False) -> User | None:
        query = select(User).where(User.username == username)
        if not include_deleted:
            query = query.where(User.del_flag == 0)
        result = await self._db.execute(query)
        return result.scalar_one_or_none()

    async def update_by_username(self, username: str, values: dict[str, Any]) -> int:
        """Update an active user's columns; returns the number of rows changed."""
        result = await self._db.execute(
            update(User).where(User.username == username, User.del_flag == 0).values(**values)
        )
        await self._db.commit()
        return result.rowcount


class ShortLinkRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def insert(self, link: ShortLink) -> InsertResult:
        return await _insert(self._db, link)

    async def get_by_full_short_url(self, full_short_url: str) -> ShortLink | None:
        result = await self._db.execute(select(ShortLink).where(ShortLink.full_short_url == full_short_url))
        return result.scalar_one_or_none()

    async def increment_pv(self, full_short_url: str, delta: int = 1) -> int:
        result = await self._db.execute(
            update(ShortLink)
            .where(ShortLink.full_short_url == full_short_url)
            .values(total_pv=ShortLink.total_pv + delta)
        )
        await self._db.commit()
        return result.rowcount
