# -*- coding: utf-8 -*-
"""Decision card publishing, the decide orchestration, and persistent review buttons."""

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime

import discord
from discord import Interaction, ui

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
from utils.avatar_scan import build_reverse_image_url
from utils.decisions import (
    REJECT_REASON_MAX_LENGTH,
    DecisionAction,
    RejectMeta,
    ThreadErrorMeta,
    TransitionKind,
    TransitionResult,
    ViewSourceMeta,
    transition,
    validate_reason,
)
from utils.errors import (
    GateException,
    GateInfraException,
    GateNotFoundError,
    GateUserException,
    GateValidationError,
    ThreadCreationError,
)
from utils.helpers import notify_error, report_interaction_error, send_hidden_message
from utils.permissions import REVIEWER_DENIED, is_staff
from utils.review_card import (
    CardAnswer,
    LastAction,
    ReviewCardData,
    build_card_view,
    compute_flags,
    format_user_tag,
    render_review_embed,
)
from utils.side_effects import (
    approve_flow,
    bounded,
    kick_flow,
    need_info_flow,
    reject_flow,
    thread_url,
)

log = logging.getLogger(__name__)

APP_ID_PATTERN = r"[0-9a-fA-F-]{36}"
AGE_CONFIRMATION = "I AM 18+"

ALREADY_MESSAGES = {
    DecisionAction.APPROVE: "Already approved.",
    DecisionAction.REJECT: "Already rejected.",
    DecisionAction.KICK: "Already kicked.",
}
INVALID_MESSAGES = {
    DecisionAction.APPROVE: "Application is not ready for approval.",
    DecisionAction.REJECT: "Application not submitted yet.",
    DecisionAction.NEED_INFO: "Application not submitted yet.",
    DecisionAction.KICK: "Application not in a kickable state.",
}
THREAD_FAILED_MESSAGE = "Failed to open a need-info thread. Check permissions and try again."


@dataclass(frozen=True)
class DecisionOutcome:
    result: TransitionResult
    message: str
    meta: object | None = None


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


async def _resolve_channel(bot, channel_id: int):
    channel = bot.get_channel(channel_id)
    if channel is not None:
        return channel
    try:
        return await bounded(bot.fetch_channel(channel_id))
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not fetch channel %d", channel_id, exc_info=True)
        return None


async def _resolve_user(bot, user_id: int):
    user = bot.get_user(user_id)
    if user is not None:
        return user
    try:
        return await bounded(bot.fetch_user(user_id))
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not fetch user %d", user_id, exc_info=True)
        return None


async def publish_review_card(bot, application_id: str):
    """Render the application's card and edit it in place, or send it when there is none yet.

    Returns the card message. The ``ReviewCard`` mapping always points at the
    one live message for the application.
    """
    with bot.session_scope() as session:
        app = Application.get_by_id(application_id, session)
        if app is None:
            raise GateNotFoundError("Application not found.")
        guild_id, user_id = app.GuildId, app.UserId
        answers = [CardAnswer.from_row(row) for row in ApplicationAnswer.get_by_application(application_id, session)]
        latest = ReviewAction.get_latest_decision(application_id, session)
        last_action = LastAction.from_row(latest) if latest is not None else None
        bridge = ThreadBridge.get_open(guild_id, user_id, session)
        open_thread_id = bridge.ThreadId if bridge is not None else None
        scan = AvatarScan.get(application_id, session)
        mapping = ReviewCard.get(application_id, session)
        mapped_message_id = mapping.MessageId if mapping is not None else None

    settings = bot.guild_config.get(guild_id)
    if settings is None or settings.review_channel_id is None:
        raise GateValidationError("Review channel not configured.")
    channel = await _resolve_channel(bot, settings.review_channel_id)
    if channel is None:
        raise GateInfraException(f"Review channel {settings.review_channel_id} is unavailable.")

    user = await _resolve_user(bot, user_id)
    user_tag = format_user_tag(user) if user is not None else f"Unknown ({user_id})"
    avatar_url = user.display_avatar.with_size(256).url if user is not None else None

    if last_action is not None:
        moderator = await _resolve_user(bot, last_action.moderator_id)
        if moderator is not None:
            last_action = replace(last_action, moderator_tag=format_user_tag(moderator))
        meta = last_action.meta or {}
        if last_action.action == ReviewActionType.NEED_INFO and open_thread_id and not meta.get("threadUrl"):
            meta = dict(meta, threadId=str(open_thread_id), threadUrl=thread_url(guild_id, channel.id, open_thread_id))
            last_action = replace(last_action, meta=meta)

    card = ReviewCardData.from_application(app, user_tag, avatar_url, last_action)
    embed = render_review_embed(card, answers, compute_flags(last_action, open_thread_id is not None), scan)
    view = build_card_view(
        card.status, application_id, open_thread_id is not None, show_view_source=bool(scan and scan.Flagged)
    )

    message = None
    if mapped_message_id is not None:
        try:
            message = await bounded(channel.fetch_message(mapped_message_id))
        except discord.NotFound:
            message = None
    if message is not None:
        await bounded(message.edit(embed=embed, view=view))
    else:
        message = await bounded(channel.send(embed=embed, view=view))

    with bot.session_scope() as session:
        ReviewCard.upsert(application_id, message.channel.id, message.id, session)
    return message


async def refresh_review_card(bot, application_id: str) -> None:
    """Publish the card, logging rather than raising on failure."""
    try:
        await publish_review_card(bot, application_id)
    except (GateException, discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not refresh review card for application %s", application_id, exc_info=True)


# ---------------------------------------------------------------------------
# Decide
# ---------------------------------------------------------------------------


def _outcome_for_unchanged(action: DecisionAction, result: TransitionResult) -> DecisionOutcome:
    if result.kind is TransitionKind.ALREADY:
        return DecisionOutcome(result, ALREADY_MESSAGES.get(action, "Already handled."))
    if result.kind is TransitionKind.TERMINAL:
        return DecisionOutcome(result, f"Already resolved ({result.status.value}).")
    return DecisionOutcome(result, INVALID_MESSAGES[action])


def _attach(bot, review_action_id: int | None, meta) -> None:
    if review_action_id is None:
        return
    with bot.session_scope() as session:
        ReviewAction.attach_meta(review_action_id, meta.to_meta(), session)


def _latest_need_info_id(bot, application_id: str) -> int | None:
    with bot.session_scope() as session:
        latest = ReviewAction.get_latest(application_id, session, action=ReviewActionType.NEED_INFO)
        return latest.Id if latest is not None else None


async def _need_info(bot, guild, application_id, user_id, moderator_id, reason) -> DecisionOutcome:
    settings = bot.guild_config.get(guild.id)
    if settings is None or settings.review_channel_id is None:
        raise GateValidationError("Review channel not configured.")
    review_channel = await _resolve_channel(bot, settings.review_channel_id)
    if review_channel is None:
        raise GateValidationError("Review channel unavailable.")

    with bot.session_scope() as session:
        result = transition(session, DecisionAction.NEED_INFO, application_id, moderator_id, reason)
    if result.kind in (TransitionKind.TERMINAL, TransitionKind.INVALID):
        return _outcome_for_unchanged(DecisionAction.NEED_INFO, result)

    # an "already" click still lands on the open thread, or opens one if it is gone
    action_id = result.review_action_id if result.changed else _latest_need_info_id(bot, application_id)
    try:
        meta = await need_info_flow(bot, guild, user_id, application_id, review_channel)
    except (discord.HTTPException, asyncio.TimeoutError) as ex:
        _attach(bot, action_id, ThreadErrorMeta())
        await refresh_review_card(bot, application_id)
        raise ThreadCreationError(THREAD_FAILED_MESSAGE) from ex

    _attach(bot, action_id, meta)
    await refresh_review_card(bot, application_id)
    if meta.created:
        return DecisionOutcome(result, f"Need info thread started: <#{meta.thread_id}>", meta)
    return DecisionOutcome(result, f"Need info thread already open: <#{meta.thread_id}>", meta)


async def decide(
    bot, guild: discord.Guild, action: DecisionAction, application_id: str, moderator_id: int, reason=None
) -> DecisionOutcome:
    """Record a decision, run its side effects, attach their outcome and refresh the card.

    The transition commits before any Discord call is made. Side-effect
    failures end up in the action's metadata, except a need-info thread that
    cannot be created, which raises ``ThreadCreationError`` after tagging the
    action and refreshing the card.
    """
    with bot.session_scope() as session:
        app = Application.get_by_id(application_id, session)
        if app is None:
            raise GateNotFoundError("Application not found.")
        if app.GuildId != guild.id:
            raise GateValidationError("Guild mismatch for application.")
        user_id = app.UserId

    if action is DecisionAction.NEED_INFO:
        return await _need_info(bot, guild, application_id, user_id, moderator_id, reason)

    with bot.session_scope() as session:
        result = transition(session, action, application_id, moderator_id, reason)
    if not result.changed:
        return _outcome_for_unchanged(action, result)

    if action is DecisionAction.APPROVE:
        meta = await approve_flow(guild, user_id, bot.guild_config.get(guild.id))
        message = "Application approved."
    elif action is DecisionAction.REJECT:
        user = await _resolve_user(bot, user_id)
        if user is not None:
            meta = await reject_flow(user, guild.name, validate_reason(reason))
        else:
            meta = RejectMeta(dm_delivered=False)
        message = "Application rejected." if meta.dm_delivered else "Application rejected. DM failed."
    else:
        meta = await kick_flow(guild, user_id, reason)
        message = "Member kicked." if meta.kick_succeeded else "Kick attempted; check logs for details."

    _attach(bot, result.review_action_id, meta)
    await refresh_review_card(bot, application_id)
    return DecisionOutcome(result, message, meta)


# ---------------------------------------------------------------------------
# Interaction plumbing
# ---------------------------------------------------------------------------


async def check_reviewer(interaction: Interaction) -> bool:
    """Allow Manage Guild holders and the configured reviewer role; tell everyone else."""
    if interaction.guild is None:
        await send_hidden_message(interaction, "Guild only.")
        return False
    settings = interaction.client.guild_config.get(interaction.guild.id)
    reviewer_role_id = settings.reviewer_role_id if settings is not None else None
    if not is_staff(interaction.user, reviewer_role_id):
        await send_hidden_message(interaction, REVIEWER_DENIED)
        return False
    return True


async def run_decision(interaction: Interaction, action: DecisionAction, application_id: str, reason=None) -> None:
    """Shared tail of every decision entry point: decide, then answer the moderator."""
    bot = interaction.client
    if not interaction.response.is_done():
        await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        outcome = await decide(bot, interaction.guild, action, application_id, interaction.user.id, reason)
    except GateUserException as ex:
        await send_hidden_message(interaction, str(ex))
        return
    except GateInfraException as ex:
        bot.log.error(f"decide {action.value} on {application_id}: {ex}", exc_info=ex)
        await send_hidden_message(interaction, str(ex))
        await notify_error(bot, f"review/{action.value}", ex)
        return
    except Exception as ex:
        await report_interaction_error(bot, interaction, ex, "review", action.value)
        return
    await send_hidden_message(interaction, outcome.message)


# ---------------------------------------------------------------------------
# Persistent buttons (DynamicItem)
# ---------------------------------------------------------------------------


class DecisionButton(
    ui.DynamicItem[ui.Button],
    template=rf"v1:decide:(?P<action>approve|reject|needinfo|kick):app(?P<app_id>{APP_ID_PATTERN})",
):
    def __init__(self, action: DecisionAction, application_id: str):
        super().__init__(
            ui.Button(
                label=action.value.replace("_", " ").title(),
                style=discord.ButtonStyle.secondary,
                custom_id=f"v1:decide:{action.tag}:app{application_id}",
            )
        )
        self.action = action
        self.application_id = application_id

    @classmethod
    async def from_custom_id(cls, interaction: Interaction, item: ui.Button, match: re.Match):
        return cls(DecisionAction.from_tag(match["action"]), match["app_id"])

    async def interaction_check(self, interaction: Interaction) -> bool:
        return await check_reviewer(interaction)

    async def callback(self, interaction: Interaction):
        if self.action is DecisionAction.REJECT:
            with interaction.client.session_scope() as session:
                app = Application.get_by_id(self.application_id, session)
                status = ApplicationStatus(app.Status) if app is not None else None
            if status is None:
                await send_hidden_message(interaction, "Application not found.")
                return
            if status.is_terminal:
                await send_hidden_message(interaction, "This application is already resolved.")
                return
            await interaction.response.send_modal(RejectReasonModal(self.application_id))
            return
        await run_decision(interaction, self.action, self.application_id)


class ViewSourceButton(ui.DynamicItem[ui.Button], template=rf"v1:avatar:viewsrc:app(?P<app_id>{APP_ID_PATTERN})"):
    def __init__(self, application_id: str):
        super().__init__(
            ui.Button(
                label="View Source",
                style=discord.ButtonStyle.secondary,
                custom_id=f"v1:avatar:viewsrc:app{application_id}",
            )
        )
        self.application_id = application_id

    @classmethod
    async def from_custom_id(cls, interaction: Interaction, item: ui.Button, match: re.Match):
        return cls(match["app_id"])

    async def interaction_check(self, interaction: Interaction) -> bool:
        return await check_reviewer(interaction)

    async def callback(self, interaction: Interaction):
        with interaction.client.session_scope() as session:
            scan = AvatarScan.get(self.application_id, session)
            flagged = bool(scan and scan.Flagged)
        if not flagged:
            await send_hidden_message(interaction, "Avatar scan not available.")
            return
        await interaction.response.send_modal(AgeConfirmModal(self.application_id))


# ---------------------------------------------------------------------------
# Modals
# ---------------------------------------------------------------------------


class RejectReasonModal(ui.Modal, title="Reject application"):
    """Collects the mandatory rejection reason before the reject decision runs."""

    reason = ui.TextInput(
        label=f"Reason (max {REJECT_REASON_MAX_LENGTH} chars)",
        style=discord.TextStyle.paragraph,
        required=True,
        max_length=REJECT_REASON_MAX_LENGTH,
    )

    def __init__(self, application_id: str):
        super().__init__()
        self.application_id = application_id

    async def on_submit(self, interaction: Interaction):
        if not await check_reviewer(interaction):
            return
        try:
            reason = validate_reason(self.reason.value)
        except GateValidationError as ex:
            await send_hidden_message(interaction, str(ex))
            return
        await run_decision(interaction, DecisionAction.REJECT, self.application_id, reason)

    async def on_error(self, interaction: Interaction, error: Exception) -> None:
        interaction.client.log.error("Error in RejectReasonModal: %s", error, exc_info=error)
        await send_hidden_message(interaction, "An error occurred. Please try again later.")


class AgeConfirmModal(ui.Modal, title="Confirm 18+"):
    """Gate in front of the reverse image search link of a flagged avatar."""

    confirmation = ui.TextInput(
        label=f"Type {AGE_CONFIRMATION}", placeholder=AGE_CONFIRMATION, required=True, max_length=20
    )

    def __init__(self, application_id: str):
        super().__init__()
        self.application_id = application_id

    async def on_submit(self, interaction: Interaction):
        if not await check_reviewer(interaction):
            return
        if self.confirmation.value.strip() != AGE_CONFIRMATION:
            await send_hidden_message(interaction, "Confirmation did not match.")
            return

        bot = interaction.client
        with bot.session_scope() as session:
            app = Application.get_by_id(self.application_id, session)
            scan = AvatarScan.get(self.application_id, session)
            if app is None or scan is None:
                await send_hidden_message(interaction, "Avatar scan not available.")
                return
            if app.GuildId != interaction.guild.id:
                await send_hidden_message(interaction, "Guild mismatch for application.")
                return
            avatar_url = scan.AvatarUrl

        settings = bot.guild_config.get(interaction.guild.id)
        template = settings.image_search_url_template if settings is not None else None
        await send_hidden_message(interaction, build_reverse_image_url(template, avatar_url))

        with bot.session_scope() as session:
            session.add(
                ReviewAction(
                    ApplicationId=self.application_id,
                    ModeratorId=interaction.user.id,
                    Action=ReviewActionType.AVATAR_VIEWSRC,
                    Meta=ViewSourceMeta(viewed_at=datetime.now(UTC).isoformat()).to_meta(),
                    CreatedAt=datetime.now(UTC),
                )
            )

    async def on_error(self, interaction: Interaction, error: Exception) -> None:
        interaction.client.log.error("Error in AgeConfirmModal: %s", error, exc_info=error)
        await send_hidden_message(interaction, "An error occurred. Please try again later.")
