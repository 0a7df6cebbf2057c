# -*- coding: utf-8 -*-
"""Pure rendering of the staff decision card.

Everything here works on plain snapshots so it can be called outside a
database session. Publishing (edit-or-send plus the card mapping) lives in
``modules.views.review``.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime

import discord
from discord import ui

from models.application import ApplicationStatus, ReviewActionType
from utils.decisions import DecisionAction

SUMMARY_MAX_ANSWERS = 5
SUMMARY_ANSWER_MAX_LENGTH = 180

STATUS_COLOURS = {
    ApplicationStatus.APPROVED: 0x57F287,
    ApplicationStatus.REJECTED: 0xED4245,
    ApplicationStatus.KICKED: 0x992D22,
    ApplicationStatus.NEEDS_INFO: 0xF1C40F,
    ApplicationStatus.SUBMITTED: 0x5865F2,
}
DEFAULT_COLOUR = 0x2F3136

FLAG_DM_FAILED = "Applicant DM failed. Follow up manually."
FLAG_KICK_FAILED = "Kick failed. Check permissions."
FLAG_THREAD_FAILED = "Need info thread creation failed previously."
FLAG_NO_OPEN_THREAD = "Need Info requested but no open thread found."

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CardAnswer:
    question_index: int
    question: str
    answer: str

    @classmethod
    def from_row(cls, row) -> "CardAnswer":
        return cls(question_index=row.QuestionIndex, question=row.QuestionText, answer=row.AnswerText)


@dataclass(frozen=True)
class LastAction:
    action: ReviewActionType
    moderator_id: int
    created_at: datetime | None = None
    reason: str | None = None
    meta: dict | None = None
    moderator_tag: str | None = None

    @classmethod
    def from_row(cls, row, moderator_tag: str | None = None) -> "LastAction":
        return cls(
            action=ReviewActionType(row.Action),
            moderator_id=row.ModeratorId,
            created_at=row.CreatedAt,
            reason=row.Reason,
            meta=dict(row.Meta) if row.Meta else None,
            moderator_tag=moderator_tag,
        )


@dataclass(frozen=True)
class ReviewCardData:
    application_id: str
    guild_id: int
    user_id: int
    status: ApplicationStatus
    user_tag: str
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    updated_at: datetime | None = None
    resolver_id: int | None = None
    resolution_reason: str | None = None
    avatar_url: str | None = None
    last_action: LastAction | None = None

    @classmethod
    def from_application(cls, app, user_tag: str, avatar_url: str | None = None, last_action=None):
        return cls(
            application_id=app.Id,
            guild_id=app.GuildId,
            user_id=app.UserId,
            status=ApplicationStatus(app.Status),
            user_tag=user_tag,
            created_at=app.CreatedAt,
            submitted_at=app.SubmittedAt,
            updated_at=app.UpdatedAt,
            resolver_id=app.ResolverId,
            resolution_reason=app.ResolutionReason,
            avatar_url=avatar_url,
            last_action=last_action,
        )


def format_timestamp(value: datetime | None, style: str = "R") -> str:
    """Discord timestamp markup. Naive datetimes are read as UTC."""
    if value is None:
        return "unknown"
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return f"<t:{int(value.timestamp())}:{style}>"


def truncate(value: str, limit: int = SUMMARY_ANSWER_MAX_LENGTH) -> str:
    if len(value) <= limit:
        return value
    return f"{value[: limit - 1]}…"


def format_user_tag(user) -> str:
    discriminator = getattr(user, "discriminator", None)
    if discriminator and discriminator != "0":
        return f"{user.name}#{discriminator}"
    return user.name


def summary_field(answers: list[CardAnswer]) -> str:
    if not answers:
        return "- No responses recorded."
    lines = []
    for row in sorted(answers, key=lambda a: a.question_index)[:SUMMARY_MAX_ANSWERS]:
        cleaned = _WHITESPACE.sub(" ", row.answer or "").strip()
        lines.append(f"- Q{row.question_index + 1}: {truncate(cleaned) if cleaned else '(no response)'}")
    return "\n".join(lines)


def status_field(card: ReviewCardData) -> str:
    action = card.last_action
    acted_at = (action.created_at if action else None) or card.updated_at or card.submitted_at or card.created_at
    if action and action.moderator_tag:
        actor = action.moderator_tag
    elif action:
        actor = f"<@{action.moderator_id}>"
    elif card.resolver_id:
        actor = f"<@{card.resolver_id}>"
    else:
        actor = "unknown reviewer"
    when = format_timestamp(acted_at)
    reason = (action.reason if action else None) or card.resolution_reason
    meta = (action.meta if action else None) or {}

    if card.status == ApplicationStatus.SUBMITTED:
        return f"Pending review • Submitted {format_timestamp(card.submitted_at, 'f')}"
    if card.status == ApplicationStatus.NEEDS_INFO:
        lines = [f"Need info requested by {actor} • {when}"]
        if reason:
            lines.append(f"Reason: {truncate(reason, 200)}")
        if meta.get("threadUrl"):
            lines.append(f"Thread: {meta['threadUrl']}")
        return "\n".join(lines)
    if card.status == ApplicationStatus.APPROVED:
        base = f"Approved by {actor} • {when}"
        return f"{base}\nNote: {truncate(reason, 200)}" if reason else base
    if card.status == ApplicationStatus.REJECTED:
        dm_status = "❌" if meta.get("dmDelivered") is False else "✅"
        base = f"Rejected by {actor} • {when} • DM: {dm_status}"
        return f"{base}\nReason: {truncate(reason, 300)}" if reason else base
    if card.status == ApplicationStatus.KICKED:
        if meta.get("kickSucceeded") is False:
            kick_note = " • Kick failed"
        elif meta.get("kickSucceeded"):
            kick_note = " • Kick completed"
        else:
            kick_note = ""
        base = f"Kicked by {actor} • {when}{kick_note}"
        return f"{base}\nReason: {truncate(reason, 200)}" if reason else base
    return f"{card.status.value} • {when}"


def status_colour(status: ApplicationStatus) -> int:
    return STATUS_COLOURS.get(status, DEFAULT_COLOUR)


def compute_flags(last_action: LastAction | None, has_open_thread: bool) -> list[str]:
    """Advisory flags derived only from what the last action recorded."""
    if last_action is None:
        return []
    meta = last_action.meta or {}
    flags = []
    if meta.get("dmDelivered") is False:
        flags.append(FLAG_DM_FAILED)
    if last_action.action == ReviewActionType.KICK and meta.get("kickSucceeded") is False:
        flags.append(FLAG_KICK_FAILED)
    if "threadError" in meta:
        flags.append(FLAG_THREAD_FAILED)
    if last_action.action == ReviewActionType.NEED_INFO and not has_open_thread:
        flags.append(FLAG_NO_OPEN_THREAD)
    return flags


def avatar_risk_field(scan) -> str | None:
    """Text for the "Avatar Risk" field, or None when the scan is missing or clean."""
    if scan is None or not scan.Flagged:
        return None
    nsfw = f"{scan.NsfwScore:.2f}" if scan.NsfwScore is not None else "-"
    edge = f"{scan.SkinEdgeScore:.2f}" if scan.SkinEdgeScore is not None else "-"
    label = {"both": "nsfw + edge", "skin_edge": "skin edge"}.get(scan.Reason, scan.Reason)
    return f"Reason: {label}\nNSFW ≈ {nsfw} • Edge ≈ {edge}"


def render_review_embed(
    card: ReviewCardData, answers: list[CardAnswer], flags: list[str] | None = None, avatar_scan=None
) -> discord.Embed:
    embed = discord.Embed(
        title=f"Application #{card.application_id} | {card.user_tag}",
        colour=status_colour(card.status),
        timestamp=datetime.now(UTC),
    )
    embed.set_footer(
        text=(
            f"Submitted: {format_timestamp(card.submitted_at or card.created_at, 'f')} • "
            f"AppID: {card.application_id}"
        )
    )
    if card.avatar_url:
        embed.set_thumbnail(url=card.avatar_url)

    embed.add_field(name="Summary", value=summary_field(answers), inline=False)
    embed.add_field(name="Status", value=status_field(card), inline=False)

    risk = avatar_risk_field(avatar_scan)
    if risk:
        embed.add_field(name="Avatar Risk", value=risk, inline=False)
    if flags:
        embed.add_field(name="Flags", value="\n".join(flags), inline=False)
    return embed


def decision_custom_id(action: DecisionAction, application_id: str) -> str:
    return f"v1:decide:{action.tag}:app{application_id}"


def view_source_custom_id(application_id: str) -> str:
    return f"v1:avatar:viewsrc:app{application_id}"


def build_card_view(
    status: ApplicationStatus, application_id: str, has_open_thread: bool, show_view_source: bool = False
) -> ui.View:
    """Decision buttons for a card. Clicks are routed by the persistent dynamic items."""
    terminal = ApplicationStatus(status).is_terminal
    view = ui.View(timeout=None)
    buttons = [
        (DecisionAction.APPROVE, "Approve", discord.ButtonStyle.success, terminal),
        (DecisionAction.REJECT, "Reject", discord.ButtonStyle.danger, terminal),
        (DecisionAction.NEED_INFO, "Need Info", discord.ButtonStyle.secondary, terminal or has_open_thread),
        (DecisionAction.KICK, "Kick", discord.ButtonStyle.danger, terminal),
    ]
    for action, label, style, disabled in buttons:
        view.add_item(
            ui.Button(
                label=label,
                style=style,
                custom_id=decision_custom_id(action, application_id),
                disabled=disabled,
                row=0,
            )
        )
    if show_view_source:
        view.add_item(
            ui.Button(
                label="View Source",
                style=discord.ButtonStyle.secondary,
                custom_id=view_source_custom_id(application_id),
                row=1,
            )
        )
    return view
