# -*- coding: utf-8 -*-
"""Bounded TTL cache in front of the per-guild gate configuration."""

import time
from collections import OrderedDict
from dataclasses import dataclass, fields

from models.gate_config import (
    DEFAULT_IMAGE_SEARCH_URL_TEMPLATE,
    DEFAULT_NSFW_THRESHOLD,
    DEFAULT_SKIN_EDGE_THRESHOLD,
    GateConfig,
)


@dataclass(frozen=True)
class GuildSettings:
    """Immutable snapshot of a ``GateConfig`` row, safe to hold outside a session."""

    guild_id: int
    review_channel_id: int | None = None
    gate_channel_id: int | None = None
    unverified_channel_id: int | None = None
    general_channel_id: int | None = None
    accepted_role_id: int | None = None
    reviewer_role_id: int | None = None
    image_search_url_template: str = DEFAULT_IMAGE_SEARCH_URL_TEMPLATE
    reapply_cooldown_hours: int = 24
    min_account_age_hours: int = 0
    min_join_age_hours: int = 0
    avatar_scan_enabled: bool = False
    avatar_scan_nsfw_threshold: float = DEFAULT_NSFW_THRESHOLD
    avatar_scan_skin_edge_threshold: float = DEFAULT_SKIN_EDGE_THRESHOLD

    @classmethod
    def from_row(cls, row: GateConfig) -> "GuildSettings":
        return cls(
            guild_id=row.GuildId,
            review_channel_id=row.ReviewChannelId,
            gate_channel_id=row.GateChannelId,
            unverified_channel_id=row.UnverifiedChannelId,
            general_channel_id=row.GeneralChannelId,
            accepted_role_id=row.AcceptedRoleId,
            reviewer_role_id=row.ReviewerRoleId,
            image_search_url_template=row.ImageSearchUrlTemplate or DEFAULT_IMAGE_SEARCH_URL_TEMPLATE,
            reapply_cooldown_hours=row.ReapplyCooldownHours,
            min_account_age_hours=row.MinAccountAgeHours,
            min_join_age_hours=row.MinJoinAgeHours,
            avatar_scan_enabled=bool(row.AvatarScanEnabled),
            avatar_scan_nsfw_threshold=row.AvatarScanNsfwThreshold,
            avatar_scan_skin_edge_threshold=row.AvatarScanSkinEdgeThreshold,
        )

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class _Entry:
    value: GuildSettings | None
    expires_at: float


class GuildConfigCache:
    """Per-guild config reads with a bounded TTL.

    Owned by the bot and fed by ``session_scope``. Writes go through
    :meth:`upsert`, which invalidates the guild's entry so the next read is fresh.
    Missing configs are cached too, as ``None``.
    """

    def __init__(self, session_scope, ttl_seconds: float = 60, max_entries: int = 1024):
        self._session_scope = session_scope
        self._ttl = max(1.0, float(ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._store: OrderedDict[int, _Entry] = OrderedDict()

    def get(self, guild_id: int) -> GuildSettings | None:
        entry = self._store.get(guild_id)
        if entry is not None and entry.expires_at > time.monotonic():
            self._store.move_to_end(guild_id)
            return entry.value

        with self._session_scope() as session:
            row = GateConfig.get(guild_id, session)
            value = GuildSettings.from_row(row) if row is not None else None
        self._put(guild_id, value)
        return value

    def upsert(self, guild_id: int, **columns) -> GuildSettings:
        """Write columns (``GateConfig`` attribute names) and return the fresh snapshot."""
        with self._session_scope() as session:
            row = GateConfig.upsert(guild_id, session, **columns)
            value = GuildSettings.from_row(row)
        self.invalidate(guild_id)
        return value

    def invalidate(self, guild_id: int) -> None:
        self._store.pop(guild_id, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def _put(self, guild_id: int, value: GuildSettings | None) -> None:
        self._store[guild_id] = _Entry(value=value, expires_at=time.monotonic() + self._ttl)
        self._store.move_to_end(guild_id)
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)
