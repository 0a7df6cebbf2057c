# -*- coding: utf-8 -*-
"""Best-effort consequences of a committed decision.

Each flow runs after the decision transaction commits and reports what
actually landed as a metadata dataclass. DM, role and kick failures are logged
and recorded, never raised. Only :func:`need_info_flow` propagates a thread
creation failure, since there is no useful card update without a thread.
"""

import asyncio
import logging
import weakref

import discord

from models.application import ThreadBridge
from utils.decisions import ApproveMeta, KickMeta, NeedInfoMeta, RejectMeta
from utils.errors import GateInfraException

log = logging.getLogger(__name__)

EXTERNAL_CALL_TIMEOUT = 10
THREAD_AUTO_ARCHIVE_MINUTES = 1440

# one need-info flow per (guild, applicant) at a time
_bridge_locks: "weakref.WeakValueDictionary[tuple[int, int], asyncio.Lock]" = weakref.WeakValueDictionary()


async def bounded(coro, timeout: float = EXTERNAL_CALL_TIMEOUT):
    """Await a Discord API call, giving up after ``timeout`` seconds."""
    return await asyncio.wait_for(coro, timeout=timeout)


def thread_url(guild_id: int, channel_id: int, thread_id: int) -> str:
    return f"https://discord.com/channels/{guild_id}/{channel_id}/{thread_id}"


async def _fetch_member(guild: discord.Guild, user_id: int) -> discord.Member | None:
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await bounded(guild.fetch_member(user_id))
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not fetch member %d in guild %d", user_id, guild.id, exc_info=True)
        return None


async def _send_dm(target, content: str) -> bool:
    try:
        await bounded(target.send(content))
        return True
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not DM user %d", target.id, exc_info=True)
        return False


def _bridge_lock(guild_id: int, user_id: int) -> asyncio.Lock:
    lock = _bridge_locks.get((guild_id, user_id))
    if lock is None:
        lock = asyncio.Lock()
        _bridge_locks[(guild_id, user_id)] = lock
    return lock


async def _discard_thread(thread) -> None:
    try:
        await bounded(thread.delete())
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not delete duplicate need-info thread %d", thread.id, exc_info=True)


async def approve_flow(guild: discord.Guild, user_id: int, settings) -> ApproveMeta:
    """Grant the accepted role (if configured and missing) and welcome the applicant."""
    member = await _fetch_member(guild, user_id)
    if member is None:
        return ApproveMeta(role_applied=False, dm_delivered=False)

    role_applied = False
    role_id = settings.accepted_role_id if settings is not None else None
    role = guild.get_role(role_id) if role_id else None
    if role_id is None:
        log.warning("No accepted role configured for guild %d", guild.id)
    elif role is None:
        log.warning("Accepted role %d missing in guild %d", role_id, guild.id)
    elif any(r.id == role.id for r in member.roles):
        role_applied = True
    else:
        try:
            await bounded(member.add_roles(role, reason="Gate approval"))
            role_applied = True
        except (discord.HTTPException, asyncio.TimeoutError):
            log.warning("Could not grant role %d to %d in guild %d", role.id, user_id, guild.id, exc_info=True)

    dm_delivered = await _send_dm(member, f"Hi, welcome to {guild.name}! Your application has been approved.")
    return ApproveMeta(role_applied=role_applied, dm_delivered=dm_delivered)


async def reject_flow(user, guild_name: str, reason: str) -> RejectMeta:
    lines = [
        f"Hi, thanks for applying to {guild_name}. We're not able to approve this application.",
        f"Reason: {reason}.",
    ]
    return RejectMeta(dm_delivered=await _send_dm(user, "\n".join(lines)))


async def need_info_flow(
    bot, guild: discord.Guild, user_id: int, application_id: str, review_channel, reason: str | None = None
) -> NeedInfoMeta:
    """Reuse the open follow-up thread for the applicant or open a new one.

    Raises ``discord.HTTPException`` or ``asyncio.TimeoutError`` when a new
    thread cannot be created.
    A thread whose bridge cannot be recorded is deleted again before the
    ``GateInfraException`` propagates.
    """
    async with _bridge_lock(guild.id, user_id):
        return await _reuse_or_create_thread(bot, guild, user_id, application_id, review_channel, reason)


async def _reuse_or_create_thread(bot, guild, user_id, application_id, review_channel, reason) -> NeedInfoMeta:
    with bot.session_scope() as session:
        bridge = ThreadBridge.get_open(guild.id, user_id, session)
        existing_thread_id = bridge.ThreadId if bridge is not None else None

    if existing_thread_id is not None:
        return NeedInfoMeta(
            thread_id=existing_thread_id,
            thread_url=thread_url(guild.id, review_channel.id, existing_thread_id),
            created=False,
        )

    try:
        thread = await bounded(
            review_channel.create_thread(
                name=f"need-info-{application_id}",
                auto_archive_duration=THREAD_AUTO_ARCHIVE_MINUTES,
                type=discord.ChannelType.public_thread,
                reason=reason or f"Need info requested for application {application_id}",
            )
        )
    except (discord.HTTPException, asyncio.TimeoutError):
        log.warning("Could not create need-info thread in channel %d", review_channel.id, exc_info=True)
        raise

    try:
        with bot.session_scope() as session:
            bridge_thread_id = ThreadBridge.open(guild.id, user_id, thread.id, session).ThreadId
    except GateInfraException:
        await _discard_thread(thread)
        raise

    if bridge_thread_id != thread.id:
        # another process opened a bridge while this thread was being created
        await _discard_thread(thread)
        return NeedInfoMeta(
            thread_id=bridge_thread_id,
            thread_url=thread_url(guild.id, review_channel.id, bridge_thread_id),
            created=False,
        )

    return NeedInfoMeta(thread_id=thread.id, thread_url=thread_url(guild.id, review_channel.id, thread.id))


async def kick_flow(guild: discord.Guild, user_id: int, reason: str | None = None) -> KickMeta:
    """DM the applicant first, then remove them. Both outcomes are recorded separately."""
    member = await _fetch_member(guild, user_id)
    if member is None:
        return KickMeta(dm_delivered=False, kick_succeeded=False, error="Member not found")

    lines = [f"Hi, your application with {guild.name} was reviewed and we need to remove you from the server."]
    if reason:
        lines.append(f"Reason: {reason}.")
    dm_delivered = await _send_dm(member, "\n".join(lines))

    try:
        await bounded(member.kick(reason=reason))
    except (discord.HTTPException, asyncio.TimeoutError) as ex:
        log.warning("Could not kick %d from guild %d", user_id, guild.id, exc_info=True)
        return KickMeta(dm_delivered=dm_delivered, kick_succeeded=False, error=str(ex) or type(ex).__name__)

    return KickMeta(dm_delivered=dm_delivered, kick_succeeded=True)
