"""API key rotation.

KeyPool hands out the first key of a tier that has not failed
authentication. A rejected key is marked failed for the rest of the
session and the next one is used; once every key of a tier has failed
the pool reports no active key.
"""

from __future__ import annotations

import logging
from typing import Protocol

from tandem.api.providers import ModelTier

logger = logging.getLogger(__name__)


class CredentialSource(Protocol):
    def get_active_key(self, tier: ModelTier) -> str | None: ...

    def mark_failed(self, key: str, tier: ModelTier) -> None: ...


def _mask(key: str) -> str:
    return f"...{key[-4:]}" if len(key) > 4 else "****"


class KeyPool:
    """In-memory CredentialSource with per-tier failure tracking."""

    def __init__(self, keys: dict[ModelTier, list[str]]) -> None:
        self._keys = {tier: list(values) for tier, values in keys.items()}
        self._failed: dict[ModelTier, set[str]] = {tier: set() for tier in ModelTier}

    @classmethod
    def from_settings(cls, settings) -> KeyPool:
        return cls({ModelTier.LARGE: settings.api_keys, ModelTier.SMALL: settings.small_api_keys})

    def get_active_key(self, tier: ModelTier) -> str | None:
        for key in self._keys.get(tier, []):
            if key not in self._failed[tier]:
                return key
        return None

    def mark_failed(self, key: str, tier: ModelTier) -> None:
        if key in self._failed[tier]:
            return
        self._failed[tier].add(key)
        remaining = sum(1 for k in self._keys.get(tier, []) if k not in self._failed[tier])
        logger.warning(
            "API key %s rejected for %s tier, %d key(s) remaining",
            _mask(key),
            tier,
            remaining,
        )

    def reset(self, tier: ModelTier | None = None) -> None:
        """Forget failures, for one tier or all."""
        tiers = [tier] if tier else list(ModelTier)
        for t in tiers:
            self._failed[t].clear()

    def available(self, tier: ModelTier) -> int:
        return sum(1 for k in self._keys.get(tier, []) if k not in self._failed[tier])
