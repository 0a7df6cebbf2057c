# -*- coding: utf-8 -*-
"""Interaction helpers, error cards and operator error notifications."""

import logging
import uuid
from datetime import UTC, datetime
from traceback import format_exception

import discord
from discord import Embed, Interaction
from sqlalchemy.exc import OperationalError

log = logging.getLogger(__name__)

GENERIC_ERROR = "An error occurred. Please try again later."


def parse_id(value) -> int:
    """Discord ids come in as int or str from config and custom ids."""
    return int(value)


def new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


async def send_hidden_message(interaction: Interaction, msg: str | None = None, **kwargs) -> None:
    """Reply ephemerally, as a followup when the initial response is already used."""
    if not interaction.response.is_done():
        await interaction.response.send_message(msg, ephemeral=True, **kwargs)
    else:
        await interaction.followup.send(msg, ephemeral=True, **kwargs)


def error_context(source) -> str:
    """``[Guild (id)] user (id) -> /command`` for log lines.

    Accepts an Interaction or a commands.Context (the latter has ``.interaction``).
    """
    if hasattr(source, "interaction"):
        user = source.author
    else:
        user = source.user
    guild = source.guild
    where = f"{guild.name} ({guild.id})" if guild is not None else "DM"
    command = source.command.qualified_name if source.command is not None else "unknown"
    return f"[{where}] {user} ({user.id}) -> /{command}"


def hint_for(error: BaseException) -> str:
    """A short operator hint for the error card."""
    original = getattr(error, "__cause__", None) or error
    if isinstance(original, OperationalError) and "no such table" in str(original).lower():
        return "Database schema mismatch. Restart the bot to create missing tables."
    if isinstance(original, discord.Forbidden) or getattr(original, "code", None) == 50013:
        return "Missing Discord permission in this channel."
    return "Unexpected error. Try again or contact staff."


def error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    return type(error).__name__


def build_error_card(command: str, phase: str, error: BaseException, trace_id: str) -> Embed:
    emb = Embed(title="Command Error", colour=0xED4245)
    emb.add_field(name="Command", value=f"/{command}", inline=False)
    emb.add_field(name="Phase", value=phase or "unknown", inline=False)
    emb.add_field(name="Code", value=error_code(error), inline=False)
    emb.add_field(name="Hint", value=hint_for(error), inline=False)
    emb.add_field(name="Trace", value=trace_id, inline=False)
    emb.set_footer(text=datetime.now(UTC).isoformat())
    return emb


async def report_interaction_error(
    bot, interaction: Interaction, error: BaseException, command: str, phase: str
) -> str:
    """Log an unexpected failure, show the user a generic reply with an error card, notify operators.

    Returns the trace id so callers can correlate further log lines.
    """
    trace_id = new_trace_id()
    bot.log.error(f"[{trace_id}] {command}/{phase} failed: {error.__class__.__name__}: {error}", exc_info=error)
    try:
        await send_hidden_message(interaction, GENERIC_ERROR, embed=build_error_card(command, phase, error, trace_id))
    except discord.HTTPException:
        bot.log.debug(f"[{trace_id}] could not deliver error reply", exc_info=True)
    await notify_error(bot, f"{command}/{phase}", error)
    return trace_id


def _recipients(bot) -> list[int]:
    notifications = bot.config.get("notifications", {}) if isinstance(bot.config, dict) else {}
    configured = notifications.get("error_recipients") or []
    return [parse_id(r) for r in configured] or list(bot.ops)


async def notify_error(bot, context: str, error: BaseException) -> None:
    """DM operators about an infrastructure error, deduplicated by ``bot.error_throttle``."""
    suppressed = bot.error_throttle.suppressed_count(context, error)
    if not bot.error_throttle.should_notify(context, error):
        return

    trace = "".join(format_exception(type(error), error, error.__traceback__))
    body = f"**{type(error).__name__}** in `{context}`"
    if suppressed:
        body += f" ({suppressed} similar suppressed)"
    body += f"\n```\n{trace[-1800:]}\n```"
    for recipient in _recipients(bot):
        try:
            user = await bot.fetch_user(recipient)
            await user.send(body)
        except discord.HTTPException as ex:
            log.debug(f"Could not DM error notification to {recipient}: {ex}")
