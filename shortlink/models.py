"""SQLAlchemy ORM models for users and short links.

Data Model Layout
=================
::
    t_user
    ├─ id (PK)
    ├─ username (VARCHAR(64) UNIQUE)
    ├─ password_hash (VARCHAR(256))
    ├─ real_name / phone / mail
    ├─ deletion_time (BIGINT, 0 when active)
    ├─ del_flag (SMALLINT, 0 = active)
    └─ created_at / updated_at

    t_link
    ├─ id (PK)
    ├─ domain / short_uri
    ├─ full_short_url (VARCHAR(160) UNIQUE)   domain + "/" + short_uri
    ├─ origin_url (TEXT)
    ├─ gid / describe
    ├─ enable_status (SMALLINT, 0 = enabled)
    ├─ total_pv (INTEGER)
    └─ created_at / updated_at

Key Behaviours
===============
- ``username`` and ``full_short_url`` unique constraints are the ground truth
  behind the bloom filters; a violation is reported as
  ``InsertStatus.UNIQUE_VIOLATION`` by the repositories.
- ``total_pv`` is only written by the stats consumer.
"""

import datetime

from sqlalchemy import BigInteger, DateTime, Integer, SmallInteger, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from shortlink.database import Base

__all__ = ["User", "ShortLink"]


class User(Base):
    __tablename__ = "t_user"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    real_name: Mapped[str | None] = mapped_column(String(64))
    phone: Mapped[str | None] = mapped_column(String(32))
    mail: Mapped[str | None] = mapped_column(String(128))
    deletion_time: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    del_flag: Mapped[int] = mapped_column(SmallInteger, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


class ShortLink(Base):
    __tablename__ = "t_link"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(128), nullable=False)
    short_uri: Mapped[str] = mapped_column(String(16), nullable=False)
    full_short_url: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    origin_url: Mapped[str] = mapped_column(Text, nullable=False)
    gid: Mapped[str] = mapped_column(String(32), default="default", nullable=False)
    describe: Mapped[str | None] = mapped_column(String(1024))
    enable_status: Mapped[int] = mapped_column(SmallInteger, default=0, nullable=False)
    total_pv: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ShortLink(id={self.id}, full_short_url='{self.full_short_url}', total_pv={self.total_pv})>"
