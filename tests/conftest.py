# -*- coding: utf-8 -*-
"""Shared pytest fixtures for GateBot test suite"""

import sys
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add GatePy to path so we can import modules
sys.path.insert(0, str(Path(__file__).parent.parent / "GatePy"))

from utils.database import BASE


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)

    # Import all models to ensure they're registered with BASE.metadata
    from models.application import (  # noqa: F401
        Application,
        ApplicationAnswer,
        ReviewAction,
        ReviewCard,
        ThreadBridge,
    )
    from models.avatar_scan import AvatarScan  # noqa: F401
    from models.gate_config import GateConfig, GateQuestion  # noqa: F401

    BASE.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create a new database session for testing."""
    _session = sessionmaker(bind=db_engine, expire_on_commit=False)
    session = _session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def mock_log():
    """Mock logger that can be attached to bot."""
    log = MagicMock()
    log.info = MagicMock()
    log.debug = MagicMock()
    log.warning = MagicMock()
    log.error = MagicMock()
    return log


@pytest.fixture
def mock_bot(db_session, mock_log):
    """Create a mock bot with session_scope context manager and a real config cache."""
    from utils.config_cache import GuildConfigCache
    from utils.error_throttle import ErrorThrottle

    bot = MagicMock()
    bot.log = mock_log

    @contextmanager
    def session_scope():
        yield db_session
        db_session.flush()

    bot.session_scope = session_scope
    bot.config = {}
    bot.ops = [42]
    bot.error_throttle = ErrorThrottle()
    bot.guild_config = GuildConfigCache(session_scope)
    bot.get_user = MagicMock(return_value=None)
    bot.fetch_user = AsyncMock()
    bot.get_channel = MagicMock(return_value=None)
    bot.fetch_channel = AsyncMock()
    bot.latency = 0.05

    return bot


@pytest.fixture
def mock_member():
    """Create a mock discord.Member."""
    member = MagicMock()
    member.id = 123456789
    member.name = "TestUser"
    member.display_name = "Test User"
    member.mention = "<@123456789>"
    member.roles = []
    member.guild_permissions = MagicMock(manage_guild=False)
    member.send = AsyncMock()
    member.add_roles = AsyncMock()
    member.kick = AsyncMock()
    return member


@pytest.fixture
def mock_guild():
    """Create a mock discord.Guild."""
    guild = MagicMock()
    guild.id = 987654321
    guild.name = "Test Guild"
    guild.get_member = MagicMock(return_value=None)
    guild.fetch_member = AsyncMock()
    return guild


@pytest.fixture
def mock_channel():
    """Create a mock discord.TextChannel."""
    channel = MagicMock()
    channel.id = 111222333
    channel.name = "test-channel"
    channel.mention = "<#111222333>"
    channel.send = AsyncMock()
    channel.fetch_message = AsyncMock()
    channel.create_thread = AsyncMock()
    return channel


@pytest.fixture
def mock_interaction(mock_bot, mock_member, mock_guild, mock_channel):
    """Create a mock discord Interaction for slash command testing."""
    interaction = MagicMock()
    interaction.client = mock_bot
    interaction.user = mock_member
    interaction.guild = mock_guild
    interaction.guild_id = mock_guild.id
    interaction.channel = mock_channel
    interaction.response = MagicMock()
    interaction.response.send_message = AsyncMock()
    interaction.response.send_modal = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.response.edit_message = AsyncMock()
    interaction.response.is_done = MagicMock(return_value=False)
    interaction.followup = MagicMock()
    interaction.followup.send = AsyncMock()
    interaction.command = MagicMock()
    interaction.command.qualified_name = "test"
    return interaction


@pytest.fixture
def mock_user():
    """Create a mock discord.User for DMs."""
    user = MagicMock()
    user.id = 123456789
    user.name = "TestUser"
    user.send = AsyncMock()
    return user


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------

GUILD_ID = 987654321
APPLICANT_ID = 123456789
MODERATOR_ID = 555000555
REVIEW_CHANNEL_ID = 111222333
ACCEPTED_ROLE_ID = 700700700
REVIEWER_ROLE_ID = 800800800


@pytest.fixture
def gate_config(mock_bot):
    """A fully configured guild."""
    return mock_bot.guild_config.upsert(
        GUILD_ID,
        ReviewChannelId=REVIEW_CHANNEL_ID,
        GateChannelId=222333444,
        UnverifiedChannelId=333444555,
        GeneralChannelId=444555666,
        AcceptedRoleId=ACCEPTED_ROLE_ID,
        ReviewerRoleId=REVIEWER_ROLE_ID,
    )


@pytest.fixture
def questions(db_session):
    """Two required questions for the test guild."""
    from models.gate_config import GateQuestion

    GateQuestion.add(GUILD_ID, "Why do you want to join?", True, db_session)
    GateQuestion.add(GUILD_ID, "How did you find us?", True, db_session)
    return GateQuestion.get_by_guild(GUILD_ID, db_session)


@pytest.fixture
def make_application(db_session):
    """Factory for applications in a given status."""
    from models.application import Application, ApplicationStatus

    def _make(status=ApplicationStatus.SUBMITTED, user_id=APPLICANT_ID, guild_id=GUILD_ID):
        app = Application(GuildId=guild_id, UserId=user_id, Status=status)
        db_session.add(app)
        db_session.flush()
        return app

    return _make
