# -*- coding: utf-8 -*-
"""Per-guild gate configuration and question catalog"""

import re
from collections.abc import Callable
from datetime import UTC, datetime
from urllib.parse import urlparse

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Index, Integer, Unicode, UnicodeText, func
from utils import database as db
from utils.errors import GateValidationError

DEFAULT_IMAGE_SEARCH_URL_TEMPLATE = "https://lens.google.com/uploadbyurl?url={avatarUrl}"
DEFAULT_NSFW_THRESHOLD = 0.6
DEFAULT_SKIN_EDGE_THRESHOLD = 0.18

SNOWFLAKE_RE = re.compile(r"^\d{15,20}$")

PROMPT_MAX_LENGTH = 300


def parse_snowflake(value) -> int:
    text = str(value).strip()
    if not SNOWFLAKE_RE.match(text):
        raise GateValidationError(f"`{value}` is not a valid Discord id.")
    return int(text)


def parse_hours(value) -> int:
    try:
        hours = int(str(value).strip())
    except ValueError:
        raise GateValidationError(f"`{value}` is not a whole number of hours.") from None
    if hours < 0:
        raise GateValidationError("Hours must be zero or more.")
    return hours


def parse_http_url(value) -> str:
    text = str(value).strip()
    parsed = urlparse(text)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise GateValidationError(f"`{value}` is not an http(s) URL.")
    return text


def parse_bool(value) -> bool:
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise GateValidationError(f"`{value}` is not a boolean (use true/false).")


def parse_threshold(value) -> float:
    try:
        number = float(str(value).strip())
    except ValueError:
        raise GateValidationError(f"`{value}` is not a number.") from None
    if not 0.0 <= number <= 1.0:
        raise GateValidationError("Thresholds must be between 0 and 1.")
    return number


# config key -> (column attribute, parser)
CONFIG_KEYS: dict[str, tuple[str, Callable]] = {
    "review_channel_id": ("ReviewChannelId", parse_snowflake),
    "gate_channel_id": ("GateChannelId", parse_snowflake),
    "unverified_channel_id": ("UnverifiedChannelId", parse_snowflake),
    "general_channel_id": ("GeneralChannelId", parse_snowflake),
    "accepted_role_id": ("AcceptedRoleId", parse_snowflake),
    "reviewer_role_id": ("ReviewerRoleId", parse_snowflake),
    "image_search_url_template": ("ImageSearchUrlTemplate", parse_http_url),
    "reapply_cooldown_hours": ("ReapplyCooldownHours", parse_hours),
    "min_account_age_hours": ("MinAccountAgeHours", parse_hours),
    "min_join_age_hours": ("MinJoinAgeHours", parse_hours),
    "avatar_scan_enabled": ("AvatarScanEnabled", parse_bool),
    "avatar_scan_nsfw_threshold": ("AvatarScanNsfwThreshold", parse_threshold),
    "avatar_scan_skin_edge_threshold": ("AvatarScanSkinEdgeThreshold", parse_threshold),
}

REQUIRED_KEYS = (
    "review_channel_id",
    "gate_channel_id",
    "unverified_channel_id",
    "general_channel_id",
    "accepted_role_id",
    "reviewer_role_id",
)


def parse_config_value(key: str, value):
    """Validate a raw ``/gate config set`` value. Returns ``(column, parsed)``."""
    if key not in CONFIG_KEYS:
        raise GateValidationError(f"Unknown config key `{key}`.")
    column, parser = CONFIG_KEYS[key]
    return column, parser(value)


class GateConfig(db.BASE):
    """Per-guild configuration for the admission gate."""

    __tablename__ = "GateConfig"

    GuildId = Column(BigInteger, primary_key=True)
    ReviewChannelId = Column(BigInteger, nullable=True)
    GateChannelId = Column(BigInteger, nullable=True)
    UnverifiedChannelId = Column(BigInteger, nullable=True)
    GeneralChannelId = Column(BigInteger, nullable=True)
    AcceptedRoleId = Column(BigInteger, nullable=True)
    ReviewerRoleId = Column(BigInteger, nullable=True)
    ImageSearchUrlTemplate = Column(
        UnicodeText, nullable=False, default=DEFAULT_IMAGE_SEARCH_URL_TEMPLATE
    )
    ReapplyCooldownHours = Column(Integer, nullable=False, default=24)
    MinAccountAgeHours = Column(Integer, nullable=False, default=0)
    MinJoinAgeHours = Column(Integer, nullable=False, default=0)
    AvatarScanEnabled = Column(Boolean, nullable=False, default=False)
    AvatarScanNsfwThreshold = Column(Float, nullable=False, default=DEFAULT_NSFW_THRESHOLD)
    AvatarScanSkinEdgeThreshold = Column(Float, nullable=False, default=DEFAULT_SKIN_EDGE_THRESHOLD)
    UpdatedAt = Column(DateTime, nullable=True)

    @classmethod
    def get(cls, guild_id: int, session):
        """Returns the config for the given guild."""
        return session.query(cls).filter(cls.GuildId == guild_id).first()

    @classmethod
    def upsert(cls, guild_id: int, session, **values):
        """Create or partially update a guild's config. Unspecified columns keep their value."""
        entry = cls.get(guild_id, session)
        if entry is None:
            entry = cls(
                GuildId=guild_id,
                ImageSearchUrlTemplate=DEFAULT_IMAGE_SEARCH_URL_TEMPLATE,
                ReapplyCooldownHours=24,
                MinAccountAgeHours=0,
                MinJoinAgeHours=0,
                AvatarScanEnabled=False,
                AvatarScanNsfwThreshold=DEFAULT_NSFW_THRESHOLD,
                AvatarScanSkinEdgeThreshold=DEFAULT_SKIN_EDGE_THRESHOLD,
            )
            session.add(entry)
        for column, value in values.items():
            setattr(entry, column, value)
        entry.UpdatedAt = datetime.now(UTC)
        session.flush()
        return entry

    @classmethod
    def delete(cls, guild_id: int, session):
        """Deletes the config for the given guild."""
        entry = cls.get(guild_id, session)
        if entry is not None:
            session.delete(entry)

    def missing_keys(self) -> list[str]:
        return [key for key in REQUIRED_KEYS if not getattr(self, CONFIG_KEYS[key][0])]

    def as_lines(self) -> list[str]:
        """``key: value`` lines for display, ``unset`` for empty ids."""
        lines = []
        for key, (column, _) in CONFIG_KEYS.items():
            value = getattr(self, column)
            lines.append(f"{key}: {'unset' if value is None else value}")
        return lines


class GateQuestion(db.BASE):
    """One prompt of a guild's ordered intake questionnaire."""

    __tablename__ = "GateQuestion"
    __table_args__ = (Index("GateQuestion_GuildId_QuestionIndex", "GuildId", "QuestionIndex", unique=True),)

    Id = Column(Integer, primary_key=True, autoincrement=True)
    GuildId = Column(BigInteger, nullable=False)
    QuestionIndex = Column(Integer, nullable=False)
    Prompt = Column(Unicode(PROMPT_MAX_LENGTH), nullable=False)
    Required = Column(Boolean, nullable=False, default=True)

    @classmethod
    def get_by_guild(cls, guild_id: int, session):
        """Returns the guild's questions ordered by index."""
        return session.query(cls).filter(cls.GuildId == guild_id).order_by(cls.QuestionIndex).all()

    @classmethod
    def get(cls, guild_id: int, question_index: int, session):
        return session.query(cls).filter(cls.GuildId == guild_id, cls.QuestionIndex == question_index).first()

    @classmethod
    def add(cls, guild_id: int, prompt: str, required: bool, session):
        """Append a question after the current last one."""
        prompt = (prompt or "").strip()
        if not prompt:
            raise GateValidationError("Question prompt cannot be empty.")
        if len(prompt) > PROMPT_MAX_LENGTH:
            raise GateValidationError(f"Question prompt must be at most {PROMPT_MAX_LENGTH} characters.")
        last = session.query(func.max(cls.QuestionIndex)).filter(cls.GuildId == guild_id).scalar()
        question = cls(
            GuildId=guild_id, QuestionIndex=0 if last is None else last + 1, Prompt=prompt, Required=required
        )
        session.add(question)
        session.flush()
        return question

    @classmethod
    def remove(cls, guild_id: int, question_index: int, session) -> bool:
        """Delete one question. Remaining indexes are left untouched so saved answers stay aligned."""
        question = cls.get(guild_id, question_index, session)
        if question is None:
            return False
        session.delete(question)
        session.flush()
        return True
