# -*- coding: utf-8 -*-

"""
Staff checks and the bot permissions the gate needs in its channels.
"""

from discord import Guild, Member, Permissions

from utils.errors import GatePermissionError

# Permissions flag names the bot needs per channel role
REQUIRED_PERMISSIONS: dict[str, set[str]] = {
    "_core": {"view_channel", "send_messages", "read_message_history", "use_application_commands"},
    "gate_channel": {"send_messages", "embed_links", "manage_messages"},
    "review_channel": {"send_messages", "embed_links", "create_public_threads", "send_messages_in_threads"},
    "guild": {"manage_roles", "kick_members"},
}

STAFF_DENIED = "You don't have permission to manage gate settings."
REVIEWER_DENIED = "You don't have permission to review applications."


def required_permissions() -> Permissions:
    """Combined Permissions the bot should be invited with."""
    flags: set[str] = set()
    for names in REQUIRED_PERMISSIONS.values():
        flags |= names
    return Permissions(**{f: True for f in flags})


def check_guild_permissions(guild: Guild, required: Permissions) -> list[str]:
    """Return the permission flag names the bot is missing in *guild*."""
    bot_perms = guild.me.guild_permissions
    return [perm for perm, needed in required if needed and not getattr(bot_perms, perm)]


def is_staff(member: Member | None, reviewer_role_id: int | None) -> bool:
    """Manage Guild, or holding the configured reviewer role."""
    if member is None:
        return False
    perms = getattr(member, "guild_permissions", None)
    if perms is not None and perms.manage_guild:
        return True
    if reviewer_role_id is None:
        return False
    return any(role.id == reviewer_role_id for role in getattr(member, "roles", []))


def validate_channel_permissions(channel, guild: Guild, *perms: str) -> None:
    """Raise GatePermissionError if the bot lacks any of *perms* in *channel*."""
    resolved = channel.permissions_for(guild.me)
    missing = [p for p in perms if not getattr(resolved, p, False)]
    if missing:
        formatted = ", ".join(f"`{p}`" for p in missing)
        raise GatePermissionError(f"I need the following permissions in {channel.mention}: {formatted}")
