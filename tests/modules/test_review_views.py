# -*- coding: utf-8 -*-
"""Tests for modules/views/review.py - card publishing, decide and the review buttons"""

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from models.application import (
    Application,
    ApplicationAnswer,
    ApplicationStatus,
    ReviewAction,
    ReviewActionType,
    ReviewCard,
    ThreadBridge,
)
from models.avatar_scan import AvatarScan
from modules.views.review import (
    INVALID_MESSAGES,
    AgeConfirmModal,
    DecisionButton,
    RejectReasonModal,
    ViewSourceButton,
    check_reviewer,
    decide,
    publish_review_card,
    run_decision,
)
from utils.avatar_scan import ScanResult
from utils.decisions import DecisionAction
from utils.errors import GateValidationError, ThreadCreationError
from utils.permissions import REVIEWER_DENIED
from utils.review_card import FLAG_DM_FAILED

GUILD_ID = 987654321
APPLICANT_ID = 123456789
MODERATOR_ID = 555000555
ACCEPTED_ROLE_ID = 700700700
REVIEWER_ROLE_ID = 800800800
CARD_MESSAGE_ID = 424242


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _forbidden():
    return discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "Missing Access")


def _flag_avatar(application_id, session):
    AvatarScan.upsert(application_id, "https://cdn.example/a.png", ScanResult(None, 0.4, True, "skin_edge"), session)


def _sent(interaction) -> list[str]:
    """Every text the interaction answered with, initial response and followups."""
    calls = interaction.response.send_message.call_args_list + interaction.followup.send.call_args_list
    return [c.args[0] for c in calls if c.args]


@pytest.fixture
def applicant_user():
    user = MagicMock()
    user.id = APPLICANT_ID
    user.name = "applicant"
    user.discriminator = "0"
    user.display_avatar.with_size.return_value.url = "https://cdn.example/a.png"
    user.send = AsyncMock()
    return user


@pytest.fixture
def card_message(mock_channel):
    message = MagicMock()
    message.id = CARD_MESSAGE_ID
    message.channel = mock_channel
    message.edit = AsyncMock()
    return message


@pytest.fixture
def review_env(mock_bot, mock_guild, mock_member, mock_channel, card_message, applicant_user, gate_config):
    """Bot, guild and review channel wired together for a configured guild."""
    role = MagicMock()
    role.id = ACCEPTED_ROLE_ID
    mock_guild.get_member = MagicMock(return_value=mock_member)
    mock_guild.get_role = MagicMock(return_value=role)
    mock_bot.get_channel = MagicMock(return_value=mock_channel)
    mock_bot.get_user = MagicMock(return_value=applicant_user)
    mock_channel.send = AsyncMock(return_value=card_message)
    mock_channel.fetch_message = AsyncMock(return_value=card_message)
    mock_channel.create_thread = AsyncMock(return_value=MagicMock(id=999))
    return mock_bot


@pytest.fixture
def submitted(make_application, db_session):
    app = make_application(ApplicationStatus.SUBMITTED)
    ApplicationAnswer.upsert(app.Id, 0, "Why do you want to join?", "To play", db_session)
    return app


@pytest.fixture
def reviewer_interaction(mock_interaction):
    reviewer = MagicMock()
    reviewer.id = MODERATOR_ID
    reviewer.guild_permissions = MagicMock(manage_guild=False)
    reviewer.roles = [MagicMock(id=REVIEWER_ROLE_ID)]
    mock_interaction.user = reviewer
    return mock_interaction


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublishReviewCard:
    @pytest.mark.asyncio
    async def test_sends_then_edits_in_place(self, review_env, submitted, mock_channel, card_message, db_session):
        await publish_review_card(review_env, submitted.Id)
        await publish_review_card(review_env, submitted.Id)

        mock_channel.send.assert_awaited_once()
        card_message.edit.assert_awaited_once()
        card = ReviewCard.get(submitted.Id, db_session)
        assert (card.ChannelId, card.MessageId) == (mock_channel.id, CARD_MESSAGE_ID)

    @pytest.mark.asyncio
    async def test_deleted_card_is_reposted(self, review_env, submitted, mock_channel, db_session):
        ReviewCard.upsert(submitted.Id, mock_channel.id, 1, db_session)
        mock_channel.fetch_message = AsyncMock(side_effect=discord.NotFound(MagicMock(status=404), "gone"))

        await publish_review_card(review_env, submitted.Id)

        mock_channel.send.assert_awaited_once()
        assert ReviewCard.get(submitted.Id, db_session).MessageId == CARD_MESSAGE_ID

    @pytest.mark.asyncio
    async def test_embed_content(self, review_env, submitted, mock_channel):
        await publish_review_card(review_env, submitted.Id)

        embed = mock_channel.send.await_args.kwargs["embed"]
        assert embed.title == f"Application #{submitted.Id} | applicant"
        assert embed.fields[0].value == "- Q1: To play"
        assert embed.thumbnail.url == "https://cdn.example/a.png"

    @pytest.mark.asyncio
    async def test_view_source_button_only_when_flagged(self, review_env, submitted, mock_channel, db_session):
        _flag_avatar(submitted.Id, db_session)

        await publish_review_card(review_env, submitted.Id)

        view = mock_channel.send.await_args.kwargs["view"]
        assert f"v1:avatar:viewsrc:app{submitted.Id}" in [item.custom_id for item in view.children]
        embed = mock_channel.send.await_args.kwargs["embed"]
        assert "Avatar Risk" in [f.name for f in embed.fields]

    @pytest.mark.asyncio
    async def test_requires_review_channel(self, mock_bot, submitted):
        with pytest.raises(GateValidationError, match="Review channel not configured"):
            await publish_review_card(mock_bot, submitted.Id)


# ---------------------------------------------------------------------------
# Decide
# ---------------------------------------------------------------------------


class TestDecide:
    @pytest.mark.asyncio
    async def test_approve(self, review_env, mock_guild, mock_member, submitted, db_session):
        outcome = await decide(review_env, mock_guild, DecisionAction.APPROVE, submitted.Id, MODERATOR_ID)

        assert outcome.message == "Application approved."
        assert Application.get_by_id(submitted.Id, db_session).Status == ApplicationStatus.APPROVED
        assert ReviewAction.get_latest(submitted.Id, db_session).Meta == {"roleApplied": True, "dmDelivered": True}
        mock_member.add_roles.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeat_approve(self, review_env, mock_guild, mock_member, submitted, db_session):
        await decide(review_env, mock_guild, DecisionAction.APPROVE, submitted.Id, MODERATOR_ID)
        outcome = await decide(review_env, mock_guild, DecisionAction.APPROVE, submitted.Id, MODERATOR_ID)

        assert outcome.message == "Already approved."
        assert ReviewAction.count(submitted.Id, db_session) == 1
        mock_member.add_roles.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reject_with_closed_dms(
        self, review_env, mock_guild, applicant_user, mock_channel, submitted, db_session
    ):
        applicant_user.send = AsyncMock(side_effect=_forbidden())

        outcome = await decide(review_env, mock_guild, DecisionAction.REJECT, submitted.Id, MODERATOR_ID, "Spam")

        assert outcome.message == "Application rejected. DM failed."
        assert ReviewAction.get_latest(submitted.Id, db_session).Meta == {"dmDelivered": False}
        embed = mock_channel.send.await_args.kwargs["embed"]
        assert FLAG_DM_FAILED in {f.name: f.value for f in embed.fields}["Flags"]

    @pytest.mark.asyncio
    async def test_approve_on_rejected_is_terminal(self, review_env, mock_guild, make_application, db_session):
        app = make_application(ApplicationStatus.REJECTED)

        outcome = await decide(review_env, mock_guild, DecisionAction.APPROVE, app.Id, MODERATOR_ID)

        assert outcome.message == "Already resolved (rejected)."
        assert Application.get_by_id(app.Id, db_session).Status == ApplicationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_kick_on_draft_is_invalid(self, review_env, mock_guild, make_application):
        app = make_application(ApplicationStatus.DRAFT)
        outcome = await decide(review_env, mock_guild, DecisionAction.KICK, app.Id, MODERATOR_ID)
        assert outcome.message == INVALID_MESSAGES[DecisionAction.KICK]

    @pytest.mark.asyncio
    async def test_kick_failure(self, review_env, mock_guild, mock_member, submitted, db_session):
        mock_member.kick = AsyncMock(side_effect=_forbidden())

        outcome = await decide(review_env, mock_guild, DecisionAction.KICK, submitted.Id, MODERATOR_ID)

        assert outcome.message == "Kick attempted; check logs for details."
        assert Application.get_by_id(submitted.Id, db_session).Status == ApplicationStatus.KICKED
        assert ReviewAction.get_latest(submitted.Id, db_session).Meta["kickSucceeded"] is False

    @pytest.mark.asyncio
    async def test_need_info_twice_reuses_thread(self, review_env, mock_guild, mock_channel, submitted, db_session):
        first = await decide(review_env, mock_guild, DecisionAction.NEED_INFO, submitted.Id, MODERATOR_ID)
        second = await decide(review_env, mock_guild, DecisionAction.NEED_INFO, submitted.Id, MODERATOR_ID)

        assert first.message == "Need info thread started: <#999>"
        assert second.message == "Need info thread already open: <#999>"
        mock_channel.create_thread.assert_awaited_once()
        assert ThreadBridge.get_open(GUILD_ID, APPLICANT_ID, db_session).ThreadId == 999
        assert ReviewAction.count(submitted.Id, db_session) == 1
        meta = ReviewAction.get_latest(submitted.Id, db_session).Meta
        assert meta["threadId"] == "999"

    @pytest.mark.asyncio
    async def test_need_info_thread_failure(self, review_env, mock_guild, mock_channel, submitted, db_session):
        mock_channel.create_thread = AsyncMock(side_effect=_forbidden())

        with pytest.raises(ThreadCreationError):
            await decide(review_env, mock_guild, DecisionAction.NEED_INFO, submitted.Id, MODERATOR_ID)

        assert Application.get_by_id(submitted.Id, db_session).Status == ApplicationStatus.NEEDS_INFO
        assert ReviewAction.get_latest(submitted.Id, db_session).Meta == {"threadError": "create_failed"}
        assert ThreadBridge.get_open(GUILD_ID, APPLICANT_ID, db_session) is None

    @pytest.mark.asyncio
    async def test_guild_mismatch(self, review_env, mock_guild, make_application):
        app = make_application(guild_id=GUILD_ID + 1)
        with pytest.raises(GateValidationError, match="Guild mismatch"):
            await decide(review_env, mock_guild, DecisionAction.APPROVE, app.Id, MODERATOR_ID)


# ---------------------------------------------------------------------------
# Interaction plumbing
# ---------------------------------------------------------------------------


class TestCheckReviewer:
    @pytest.mark.asyncio
    async def test_reviewer_role_passes(self, reviewer_interaction, gate_config):
        assert await check_reviewer(reviewer_interaction) is True

    @pytest.mark.asyncio
    async def test_regular_member_denied(self, mock_interaction, gate_config):
        assert await check_reviewer(mock_interaction) is False
        assert _sent(mock_interaction) == [REVIEWER_DENIED]

    @pytest.mark.asyncio
    async def test_dm_denied(self, mock_interaction):
        mock_interaction.guild = None
        assert await check_reviewer(mock_interaction) is False
        assert _sent(mock_interaction) == ["Guild only."]


class TestRunDecision:
    @pytest.mark.asyncio
    async def test_defers_then_answers(self, review_env, reviewer_interaction, submitted):
        await run_decision(reviewer_interaction, DecisionAction.APPROVE, submitted.Id)

        reviewer_interaction.response.defer.assert_awaited_once_with(ephemeral=True, thinking=True)
        assert _sent(reviewer_interaction)[-1] == "Application approved."

    @pytest.mark.asyncio
    async def test_user_error_is_shown(self, review_env, reviewer_interaction):
        await run_decision(reviewer_interaction, DecisionAction.APPROVE, "00000000-0000-0000-0000-000000000000")
        assert _sent(reviewer_interaction)[-1] == "Application not found."

    @pytest.mark.asyncio
    async def test_thread_failure_notifies_operators(self, review_env, reviewer_interaction, mock_channel, submitted):
        mock_channel.create_thread = AsyncMock(side_effect=_forbidden())
        operator = MagicMock(send=AsyncMock())
        review_env.fetch_user = AsyncMock(return_value=operator)

        await run_decision(reviewer_interaction, DecisionAction.NEED_INFO, submitted.Id)

        assert "need-info thread" in _sent(reviewer_interaction)[-1]
        operator.send.assert_awaited_once()


class TestDecisionButton:
    @pytest.mark.asyncio
    async def test_custom_id_round_trip(self, reviewer_interaction, submitted):
        button = DecisionButton(DecisionAction.NEED_INFO, submitted.Id)
        match = DecisionButton.__discord_ui_compiled_template__.fullmatch(button.custom_id)

        parsed = await DecisionButton.from_custom_id(reviewer_interaction, button.item, match)

        assert parsed.action is DecisionAction.NEED_INFO
        assert parsed.application_id == submitted.Id

    @pytest.mark.asyncio
    async def test_reject_opens_reason_modal(self, review_env, reviewer_interaction, submitted):
        await DecisionButton(DecisionAction.REJECT, submitted.Id).callback(reviewer_interaction)

        modal = reviewer_interaction.response.send_modal.await_args.args[0]
        assert isinstance(modal, RejectReasonModal)
        assert modal.application_id == submitted.Id

    @pytest.mark.asyncio
    async def test_reject_on_resolved_skips_modal(self, review_env, reviewer_interaction, make_application):
        app = make_application(ApplicationStatus.APPROVED)

        await DecisionButton(DecisionAction.REJECT, app.Id).callback(reviewer_interaction)

        reviewer_interaction.response.send_modal.assert_not_awaited()
        assert _sent(reviewer_interaction) == ["This application is already resolved."]

    @pytest.mark.asyncio
    async def test_approve_runs_decision(self, review_env, reviewer_interaction, submitted, db_session):
        await DecisionButton(DecisionAction.APPROVE, submitted.Id).callback(reviewer_interaction)
        assert Application.get_by_id(submitted.Id, db_session).Status == ApplicationStatus.APPROVED


class TestRejectReasonModal:
    @pytest.mark.asyncio
    async def test_submit_rejects(self, review_env, reviewer_interaction, submitted, db_session):
        modal = RejectReasonModal(submitted.Id)
        modal.reason._value = "  Incomplete answers  "

        await modal.on_submit(reviewer_interaction)

        app = Application.get_by_id(submitted.Id, db_session)
        assert app.Status == ApplicationStatus.REJECTED
        assert app.ResolutionReason == "Incomplete answers"

    @pytest.mark.asyncio
    async def test_blank_reason(self, review_env, reviewer_interaction, submitted, db_session):
        modal = RejectReasonModal(submitted.Id)
        modal.reason._value = "   "

        await modal.on_submit(reviewer_interaction)

        assert _sent(reviewer_interaction) == ["Reason is required."]
        assert Application.get_by_id(submitted.Id, db_session).Status == ApplicationStatus.SUBMITTED


class TestViewSource:
    @pytest.mark.asyncio
    async def test_no_scan(self, review_env, reviewer_interaction, submitted):
        await ViewSourceButton(submitted.Id).callback(reviewer_interaction)
        assert _sent(reviewer_interaction) == ["Avatar scan not available."]

    @pytest.mark.asyncio
    async def test_flagged_scan_opens_age_gate(self, review_env, reviewer_interaction, submitted, db_session):
        _flag_avatar(submitted.Id, db_session)

        await ViewSourceButton(submitted.Id).callback(reviewer_interaction)

        assert isinstance(reviewer_interaction.response.send_modal.await_args.args[0], AgeConfirmModal)

    @pytest.mark.asyncio
    async def test_confirmation_mismatch(self, review_env, reviewer_interaction, submitted):
        modal = AgeConfirmModal(submitted.Id)
        modal.confirmation._value = "yes"

        await modal.on_submit(reviewer_interaction)

        assert _sent(reviewer_interaction) == ["Confirmation did not match."]

    @pytest.mark.asyncio
    async def test_confirmed_returns_link_and_logs_view(self, review_env, reviewer_interaction, submitted, db_session):
        _flag_avatar(submitted.Id, db_session)
        modal = AgeConfirmModal(submitted.Id)
        modal.confirmation._value = "I AM 18+"

        await modal.on_submit(reviewer_interaction)

        assert _sent(reviewer_interaction) == [
            "https://lens.google.com/uploadbyurl?url=https%3A%2F%2Fcdn.example%2Fa.png"
        ]
        latest = ReviewAction.get_latest(submitted.Id, db_session)
        assert latest.Action == ReviewActionType.AVATAR_VIEWSRC
        assert latest.ModeratorId == MODERATOR_ID
        assert "viewed_at" in latest.Meta
