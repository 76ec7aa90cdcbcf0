"""Pydantic schemas for request/response validation and cached payloads.

How to Use
===========
**Step 1 — Validate a request**::
    payload = ShortLinkCreate(origin_url="https://example.com")

**Step 2 — Serialize a session snapshot**::
    raw = UserSnapshot.model_validate(user).model_dump_json()

Key Behaviours
===============
- URL validation uses the validators library for RFC compliance.
- Usernames are alphanumeric (plus ``_`` and ``-``) and 3-32 characters long.
- ``UserSnapshot`` is the JSON stored in the session hash; it never carries
  the password hash.
- ``LinkStatsEvent`` is the Kafka payload; ``message_id`` is the idempotency key.

Classes:
    UserRegister / UserUpdate / UserLogin / UserLoginResponse:  Admin plane I/O.
    UserSnapshot:  Session value stored per token.
    ShortLinkCreate / ShortLinkCreateResponse:  Link creation I/O.
    HasUsernameResponse / HealthResponse:  Small read endpoints.
    LinkStatsEvent:  Stats queue payload.
"""

import datetime
import re
import uuid

import validators
from pydantic import BaseModel, Field, field_validator

from shortlink.enums import HealthStatus

__all__ = [
    "UserRegister",
    "UserUpdate",
    "UserLogin",
    "UserLoginResponse",
    "UserSnapshot",
    "HasUsernameResponse",
    "ShortLinkCreate",
    "ShortLinkCreateResponse",
    "HealthResponse",
    "LinkStatsEvent",
]

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,32}$")


class UserRegister(BaseModel):
    username: str
    password: str = Field(..., min_length=6, max_length=128)
    real_name: str | None = None
    phone: str | None = None
    mail: str | None = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not _USERNAME_PATTERN.match(v):
            raise ValueError("Username must be 3-32 characters of letters, digits, '_' or '-'")
        return v


class UserUpdate(BaseModel):
    """Profile change for the logged-in user; ``None`` fields are left untouched."""

    username: str
    password: str | None = Field(default=None, min_length=6, max_length=128)
    real_name: str | None = None
    phone: str | None = None
    mail: str | None = None


class UserLogin(BaseModel):
    username: str
    password: str


class UserLoginResponse(BaseModel):
    token: str


class UserSnapshot(BaseModel):
    id: int
    username: str
    real_name: str | None = None
    phone: str | None = None
    mail: str | None = None

    model_config = {"from_attributes": True}


class HasUsernameResponse(BaseModel):
    username: str
    available: bool


class ShortLinkCreate(BaseModel):
    origin_url: str
    domain: str | None = None
    gid: str = "default"
    describe: str | None = None

    @field_validator("origin_url")
    @classmethod
    def validate_origin_url(cls, v: str) -> str:
        if not validators.url(v):
            raise ValueError("Invalid URL provided")
        return v

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        if v is not None and not validators.domain(v):
            raise ValueError("Invalid domain provided")
        return v


class ShortLinkCreateResponse(BaseModel):
    full_short_url: str
    origin_url: str
    gid: str

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus


class LinkStatsEvent(BaseModel):
    """One visit to a short link, keyed by ``message_id`` on the queue."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    full_short_url: str
    user_agent: str | None = None
    remote_addr: str | None = None
    occurred_at: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))
