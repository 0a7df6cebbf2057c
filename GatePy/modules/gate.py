# -*- coding: utf-8 -*-
"""Staff commands for the admission gate: setup, config, questions, reset and the entry message."""

from typing import Literal, Optional

import discord
from discord import Interaction, Member, Role, TextChannel, app_commands
from discord.app_commands import CheckFailure
from discord.ext.commands import Cog, GroupCog

from models.application import ThreadBridge, reset_user_applications
from models.gate_config import REQUIRED_KEYS, GateConfig, GateQuestion, parse_config_value
from modules.views.gate import ensure_pinned_gate_message
from utils.cog import GateBotCog
from utils.errors import GateNotFoundError, GateValidationError
from utils.helpers import send_hidden_message
from utils.permissions import REQUIRED_PERMISSIONS, STAFF_DENIED, is_staff, validate_channel_permissions

ConfigKey = Literal[
    "review_channel_id",
    "gate_channel_id",
    "unverified_channel_id",
    "general_channel_id",
    "accepted_role_id",
    "reviewer_role_id",
    "image_search_url_template",
    "reapply_cooldown_hours",
    "min_account_age_hours",
    "min_join_age_hours",
    "avatar_scan_enabled",
    "avatar_scan_nsfw_threshold",
    "avatar_scan_skin_edge_threshold",
]


@app_commands.default_permissions(manage_guild=True)
@app_commands.guild_only()
class Gate(GateBotCog, GroupCog, group_name="gate"):
    """Configure the gate and manage applicants"""

    config = app_commands.Group(name="config", description="Read or change a single gate setting")
    question = app_commands.Group(name="question", description="Manage the intake questions")

    @Cog.listener()
    async def on_thread_update(self, before: discord.Thread, after: discord.Thread) -> None:
        """Close the follow-up bridge when its thread is archived or locked."""
        if (after.archived and not before.archived) or (after.locked and not before.locked):
            self._close_bridge(after.id)

    @Cog.listener()
    async def on_raw_thread_delete(self, payload: discord.RawThreadDeleteEvent) -> None:
        self._close_bridge(payload.thread_id)

    def _close_bridge(self, thread_id: int) -> None:
        with self.bot.session_scope() as session:
            closed = ThreadBridge.close_by_thread(thread_id, session)
        if closed:
            self.bot.log.debug(f"closed need-info bridge for thread {thread_id}")

    async def interaction_check(self, interaction: Interaction) -> bool:
        settings = self.settings(interaction.guild_id) if interaction.guild_id else None
        reviewer_role_id = settings.reviewer_role_id if settings is not None else None
        if not is_staff(interaction.user, reviewer_role_id):
            raise CheckFailure(STAFF_DENIED)
        return True

    @app_commands.command(name="setup")
    async def _gate_setup(
        self,
        interaction: Interaction,
        review_channel: TextChannel,
        gate_channel: TextChannel,
        unverified_channel: TextChannel,
        general_channel: TextChannel,
        accepted_role: Role,
        reviewer_role: Role,
    ) -> None:
        """Set the channels and roles the gate works with.

        Parameters
        ----------
        interaction
        review_channel: TextChannel
            Where decision cards are posted.
        gate_channel: TextChannel
            Where the pinned gate entry message lives.
        unverified_channel: TextChannel
            The channel new members land in.
        general_channel: TextChannel
            The main channel approved members are sent to.
        accepted_role: Role
            Role granted on approval.
        reviewer_role: Role
            Role allowed to review applications.
        """
        validate_channel_permissions(review_channel, interaction.guild, *sorted(REQUIRED_PERMISSIONS["review_channel"]))
        validate_channel_permissions(gate_channel, interaction.guild, *sorted(REQUIRED_PERMISSIONS["gate_channel"]))

        self.bot.guild_config.upsert(
            interaction.guild.id,
            ReviewChannelId=review_channel.id,
            GateChannelId=gate_channel.id,
            UnverifiedChannelId=unverified_channel.id,
            GeneralChannelId=general_channel.id,
            AcceptedRoleId=accepted_role.id,
            ReviewerRoleId=reviewer_role.id,
        )
        self.bot.log.info(f"[{interaction.guild.name} ({interaction.guild.id})]: gate configured")
        await send_hidden_message(
            interaction,
            f"Gate configured. Reviews go to {review_channel.mention}, the entry message lives in "
            f"{gate_channel.mention}. Run `/gate post` to publish it.",
        )

    @config.command(name="get")
    async def _gate_config_get(self, interaction: Interaction) -> None:
        """Show the current gate settings."""
        with self.bot.session_scope() as session:
            row = GateConfig.get(interaction.guild.id, session)
            if row is None:
                raise GateNotFoundError("Gate is not configured. Run `/gate setup` first.")
            lines = row.as_lines()
        await send_hidden_message(interaction, "```\n" + "\n".join(lines) + "\n```")

    @config.command(name="set")
    async def _gate_config_set(self, interaction: Interaction, key: ConfigKey, value: str) -> None:
        """Change one gate setting.

        Parameters
        ----------
        interaction
        key: str
            Setting to change.
        value: str
            New value. Ids are raw snowflakes, hours are whole numbers, thresholds are between 0 and 1.
        """
        column, parsed = parse_config_value(key, value)
        self.bot.guild_config.upsert(interaction.guild.id, **{column: parsed})
        await send_hidden_message(interaction, f"`{key}` set to `{parsed}`.")

    @app_commands.command(name="status")
    async def _gate_status(self, interaction: Interaction) -> None:
        """Show gate health: latency, missing settings and the question count."""
        with self.bot.session_scope() as session:
            row = GateConfig.get(interaction.guild.id, session)
            missing = row.missing_keys() if row is not None else list(REQUIRED_KEYS)
            question_count = len(GateQuestion.get_by_guild(interaction.guild.id, session))

        emb = discord.Embed(title="Gate Status", colour=0x5865F2 if not missing else 0xFEE75C)
        emb.add_field(name="Latency", value=f"{round(self.bot.latency * 1000)} ms", inline=True)
        emb.add_field(name="Questions", value=str(question_count), inline=True)
        emb.add_field(
            name="Missing settings",
            value=", ".join(f"`{key}`" for key in missing) if missing else "None",
            inline=False,
        )
        await send_hidden_message(interaction, embed=emb)

    @question.command(name="add")
    async def _gate_question_add(self, interaction: Interaction, prompt: str, required: bool = True) -> None:
        """Append a question to the intake.

        Parameters
        ----------
        interaction
        prompt: str
            The question text shown to applicants.
        required: bool
            Whether applicants must answer it.
        """
        with self.bot.session_scope() as session:
            row = GateQuestion.add(interaction.guild.id, prompt, required, session)
            number = row.QuestionIndex + 1
        await send_hidden_message(interaction, f"Added question {number}.")

    @question.command(name="remove")
    async def _gate_question_remove(self, interaction: Interaction, number: app_commands.Range[int, 1]) -> None:
        """Remove a question by its number as shown in `/gate question list`."""
        with self.bot.session_scope() as session:
            removed = GateQuestion.remove(interaction.guild.id, number - 1, session)
        if not removed:
            raise GateNotFoundError(f"Question {number} does not exist.")
        await send_hidden_message(interaction, f"Removed question {number}.")

    @question.command(name="list")
    async def _gate_question_list(self, interaction: Interaction) -> None:
        """List the intake questions in order."""
        with self.bot.session_scope() as session:
            lines = [
                f"{q.QuestionIndex + 1}. {q.Prompt}{'' if q.Required else ' (optional)'}"
                for q in GateQuestion.get_by_guild(interaction.guild.id, session)
            ]
        if not lines:
            await send_hidden_message(interaction, "No questions configured.")
            return
        await send_hidden_message(interaction, "\n".join(lines))

    @app_commands.command(name="reset")
    async def _gate_reset(self, interaction: Interaction, member: Member, everything: Optional[bool] = False) -> None:
        """Delete a member's draft, or with `everything` all of their applications.

        Parameters
        ----------
        interaction
        member: Member
            The applicant to reset.
        everything: bool
            Also delete submitted and resolved applications and follow-up threads.
        """
        with self.bot.session_scope() as session:
            removed = reset_user_applications(interaction.guild.id, member.id, session, drafts_only=not everything)
        self.bot.log.info(
            f"[{interaction.guild.name} ({interaction.guild.id})]: {interaction.user} reset {member} ({removed})"
        )
        await send_hidden_message(interaction, f"Removed {removed} application(s) for {member.mention}.")

    @app_commands.command(name="post")
    async def _gate_post(self, interaction: Interaction) -> None:
        """Post (or refresh) and pin the gate entry message."""
        settings = self.settings(interaction.guild.id)
        if settings is None or settings.gate_channel_id is None:
            raise GateValidationError("Gate channel not configured. Run `/gate setup` first.")
        channel = interaction.guild.get_channel(settings.gate_channel_id)
        if channel is None:
            raise GateNotFoundError("Gate channel not found.")
        validate_channel_permissions(channel, interaction.guild, "view_channel", "send_messages", "embed_links")

        await interaction.response.defer(ephemeral=True)
        result = await ensure_pinned_gate_message(self.bot, channel)
        state = "posted" if result.created else "refreshed"
        if result.pinned:
            await send_hidden_message(interaction, f"Gate entry {state} and pinned in {channel.mention}.")
        else:
            await send_hidden_message(
                interaction, f"Gate entry {state} in {channel.mention}, but not pinned: {result.reason}."
            )


async def setup(bot):
    """adds this module to the bot"""
    await bot.add_cog(Gate(bot))
