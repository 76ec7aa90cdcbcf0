"""Bloom-filter existence check over a shared Redis bitmap.

Used as a cache-penetration guard for usernames and full short URLs: a
negative answer is final, a positive answer means "ask the database".

Flow Diagram — might_contain()
==============================
::
    ┌─────────────┐
    │ key         │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ BLAKE2b-128 │
    │ h1, h2      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ k offsets   │
    │ h1 + i·h2   │
    │   mod m     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ GETBIT × k  │
    │ (pipelined) │
    └──────┬──────┘
    ALL SET?│
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ absent  │  │ maybe   │
│ (final) │  │ present │
└─────────┘  └─────────┘

Key Behaviours
===============
- Additive only: there is no remove, so the false-positive rate only grows
  with insertions. Capacity planning happens through
  ``BLOOM_EXPECTED_INSERTIONS`` / ``BLOOM_FALSE_PROBABILITY``.
- Sizing is persisted next to the bitmap on ``initialize()`` as one hash field
  written with HSETNX. Exactly one instance wins the publish and every
  instance, winner included, adopts what is stored, so all of them hash to the
  same bits.
- Construct once per process and inject; there is no module-level instance.
"""

import hashlib
import json
import logging
import math
from dataclasses import asdict, dataclass

from shortlink.kvstore import KVStore

__all__ = ["BloomSizing", "ExistenceFilter"]

logger = logging.getLogger(__name__)

# Redis strings cap out at 512 MB.
MAX_BIT_SIZE = 2**32

_SIZING_FIELD = "sizing"


@dataclass(frozen=True)
class BloomSizing:
    bit_size: int
    hash_count: int

    @classmethod
    def optimal(cls, expected_insertions: int, false_probability: float) -> "BloomSizing":
        assert expected_insertions > 0, f"expected_insertions must be positive, got {expected_insertions!r}"
        assert 0 < false_probability < 1, f"false_probability must be in (0, 1), got {false_probability!r}"
        bits = math.ceil(-expected_insertions * math.log(false_probability) / (math.log(2) ** 2))
        bits = min(bits, MAX_BIT_SIZE)
        hashes = max(1, round(bits / expected_insertions * math.log(2)))
        return cls(bit_size=bits, hash_count=hashes)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "BloomSizing":
        data = json.loads(raw)
        return cls(bit_size=int(data["bit_size"]), hash_count=int(data["hash_count"]))


class ExistenceFilter:
    """Probabilistic membership set shared by every service instance."""

    def __init__(self, store: KVStore, name: str, sizing: BloomSizing, key_prefix: str = "short-link:bloom") -> None:
        self._store = store
        self._name = name
        self._sizing = sizing
        self._bitmap_key = f"{key_prefix}:{name}"
        self._config_key = f"{key_prefix}:{name}:config"

    @property
    def name(self) -> str:
        return self._name

    @property
    def sizing(self) -> BloomSizing:
        return self._sizing

    async def initialize(self, max_attempts: int = 3) -> None:
        """Publish this filter's sizing, or adopt the one already published.

        Fields from an older or half-written config are ignored; only the
        single ``sizing`` field counts as published.
        """
        for _ in range(max_attempts):
            published = await self._store.hash_put_if_absent(self._config_key, _SIZING_FIELD, self._sizing.to_json())
            raw = await self._store.hash_get(self._config_key, _SIZING_FIELD)
            if raw is None:
                logger.warning(f"Bloom filter {self._name} config disappeared during initialization, retrying")
                continue

            stored = BloomSizing.from_json(raw)
            if published:
                logger.info(f"Bloom filter {self._name} initialized with {stored}")
            elif stored != self._sizing:
                logger.warning(f"Bloom filter {self._name} already sized as {stored}, ignoring configured {self._sizing}")
            self._sizing = stored
            return

        raise RuntimeError(f"Bloom filter {self._name} sizing could not be published after {max_attempts} attempts")

    async def might_contain(self, key: str) -> bool:
        bits = await self._store.get_bits(self._bitmap_key, self._offsets(key))
        return all(bits)

    async def add(self, key: str) -> None:
        await self._store.set_bits(self._bitmap_key, self._offsets(key))

    def _offsets(self, key: str) -> list[int]:
        assert isinstance(key, str) and key, f"key must be a non-empty string, got {key!r}"
        digest = hashlib.blake2b(key.encode("utf-8"), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "big")
        # Forced odd so the probe step is never zero.
        h2 = int.from_bytes(digest[8:], "big") | 1
        size = self._sizing.bit_size
        return [(h1 + i * h2) % size for i in range(self._sizing.hash_count)]
