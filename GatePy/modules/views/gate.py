# -*- coding: utf-8 -*-
"""Gate entry message, paged intake modals and their navigation buttons.

The pinned gate entry message carries a single persistent ``v1:start`` button.
Every page of the intake is a modal built from a ``PageDescriptor``; after a
page is saved the applicant gets ephemeral navigation buttons
(``v1:start:p<N>``) that reopen the modal for any page.
"""

import asyncio
import logging
import re
from dataclasses import dataclass

import discord
from discord import Interaction, ui

from models.avatar_scan import AvatarScan
from modules.views.review import publish_review_card
from utils.avatar_scan import AVATAR_SCAN_SIZE, ScanThresholds
from utils.errors import GateException
from utils.helpers import report_interaction_error, send_hidden_message
from utils.intake import IntakeKind, save_and_advance, start_intake
from utils.pager import PageDescriptor
from utils.side_effects import bounded

log = logging.getLogger(__name__)

GATE_ENTRY_TITLE = "Gate Entry"
GATE_ENTRY_DESCRIPTION = "Press Start to begin or resume your application."
GATE_ENTRY_FOOTER = "GateBot entry"
GATE_ENTRY_COLOUR = 0x5865F2
START_CUSTOM_ID = "v1:start"
DONE_CUSTOM_ID = "v1:done"

START_MESSAGES = {
    IntakeKind.NO_QUESTIONS: "No questions configured.",
    IntakeKind.PAGE_UNAVAILABLE: "That page is unavailable. Start over.",
    IntakeKind.ALREADY_SUBMITTED: "You already have a submitted application.",
}


def _page_list(numbers) -> str:
    return ", ".join(str(n) for n in numbers)


# ---------------------------------------------------------------------------
# Navigation rows
# ---------------------------------------------------------------------------


def start_page_custom_id(page_index: int) -> str:
    return f"{START_CUSTOM_ID}:p{page_index}"


def build_nav_view(page_index: int, page_count: int) -> ui.View:
    """Back/Next for the saved page, or Retry when there is nowhere to go."""
    view = ui.View(timeout=None)
    if page_count > 1 and page_index > 0:
        view.add_item(
            ui.Button(label="Back", style=discord.ButtonStyle.secondary, custom_id=start_page_custom_id(page_index - 1))
        )
    if page_index < page_count - 1:
        view.add_item(
            ui.Button(label="Next", style=discord.ButtonStyle.primary, custom_id=start_page_custom_id(page_index + 1))
        )
    if not view.children:
        view.add_item(
            ui.Button(label="Retry", style=discord.ButtonStyle.primary, custom_id=start_page_custom_id(page_index))
        )
    return view


def build_fix_view(page_index: int) -> ui.View:
    view = ui.View(timeout=None)
    view.add_item(
        ui.Button(
            label=f"Go to page {page_index + 1}",
            style=discord.ButtonStyle.primary,
            custom_id=start_page_custom_id(page_index),
        )
    )
    return view


def build_done_view() -> ui.View:
    view = ui.View(timeout=None)
    view.add_item(ui.Button(label="Done", style=discord.ButtonStyle.secondary, custom_id=DONE_CUSTOM_ID))
    return view


# ---------------------------------------------------------------------------
# Opening a page
# ---------------------------------------------------------------------------


async def open_page(interaction: Interaction, page_index: int) -> None:
    """Create or resume the applicant's draft and show the modal for ``page_index``."""
    if interaction.guild is None:
        await send_hidden_message(interaction, "Guild only.")
        return

    with interaction.client.session_scope() as session:
        start = start_intake(session, interaction.guild.id, interaction.user.id, page_index)

    if start.kind is not IntakeKind.OK:
        await send_hidden_message(interaction, START_MESSAGES[start.kind])
        return

    log.debug("gate modal opened: guild=%d user=%d page=%d", interaction.guild.id, interaction.user.id, page_index)
    await interaction.response.send_modal(GateModal(start.descriptor))


class GateEntryView(ui.View):
    """Persistent view on the pinned gate entry message."""

    def __init__(self, bot):
        super().__init__(timeout=None)
        self.bot = bot

    @ui.button(label="Start", style=discord.ButtonStyle.primary, custom_id=START_CUSTOM_ID)
    async def start(self, interaction: Interaction, button: ui.Button):
        await open_page(interaction, 0)

    async def on_error(self, interaction: Interaction, error: Exception, item: ui.Item):
        await report_interaction_error(self.bot, interaction, error, "gate", "start")


class StartPageButton(ui.DynamicItem[ui.Button], template=r"v1:start:p(?P<page>\d+)"):
    def __init__(self, page_index: int):
        super().__init__(
            ui.Button(
                label=f"Page {page_index + 1}",
                style=discord.ButtonStyle.primary,
                custom_id=start_page_custom_id(page_index),
            )
        )
        self.page_index = page_index

    @classmethod
    async def from_custom_id(cls, interaction: Interaction, item: ui.Button, match: re.Match):
        return cls(int(match["page"]))

    async def callback(self, interaction: Interaction):
        try:
            await open_page(interaction, self.page_index)
        except Exception as ex:
            await report_interaction_error(interaction.client, interaction, ex, "gate", "start")


class DoneButton(ui.DynamicItem[ui.Button], template=r"v1:done"):
    def __init__(self):
        super().__init__(ui.Button(label="Done", style=discord.ButtonStyle.secondary, custom_id=DONE_CUSTOM_ID))

    @classmethod
    async def from_custom_id(cls, interaction: Interaction, item: ui.Button, match: re.Match):
        return cls()

    async def callback(self, interaction: Interaction):
        try:
            await interaction.response.edit_message(view=None)
        except discord.HTTPException:
            log.debug("could not clear done row", exc_info=True)


# ---------------------------------------------------------------------------
# Page modal
# ---------------------------------------------------------------------------


class GateModal(ui.Modal):
    """One page of the intake, built from a ``PageDescriptor``."""

    def __init__(self, descriptor: PageDescriptor):
        super().__init__(title=descriptor.title, custom_id=descriptor.custom_id, timeout=None)
        self.page_index = descriptor.page_index
        self.inputs: dict[int, ui.TextInput] = {}
        for page_input in descriptor.inputs:
            text_input = ui.TextInput(
                label=page_input.label,
                custom_id=page_input.custom_id,
                placeholder=page_input.placeholder,
                default=page_input.default,
                required=page_input.required,
                max_length=page_input.max_length,
                style=discord.TextStyle.paragraph,
            )
            self.inputs[page_input.question_index] = text_input
            self.add_item(text_input)

    def answers(self) -> dict[int, str]:
        return {index: text_input.value or "" for index, text_input in self.inputs.items()}

    async def on_submit(self, interaction: Interaction):
        if interaction.guild is None:
            await send_hidden_message(interaction, "Guild only.")
            return

        bot = interaction.client
        with bot.session_scope() as session:
            result = save_and_advance(
                session, interaction.guild.id, interaction.user.id, self.page_index, self.answers()
            )

        if result.kind is IntakeKind.MISSING_REQUIRED:
            await send_hidden_message(
                interaction,
                f"Fill required question(s): {_page_list(result.missing)}.",
                view=build_nav_view(self.page_index, result.page_count),
            )
        elif result.kind is IntakeKind.SAVED:
            await send_hidden_message(
                interaction,
                f"Saved page {self.page_index + 1}.",
                view=build_nav_view(self.page_index, result.page_count),
            )
        elif result.kind is IntakeKind.INCOMPLETE:
            await send_hidden_message(
                interaction,
                f"Required question(s) missing: {_page_list(result.missing)}.",
                view=build_fix_view(result.target_page),
            )
        elif result.kind is IntakeKind.SUBMITTED:
            await send_hidden_message(interaction, "Application submitted", view=build_done_view())
            bot.log.info(f"application {result.application_id} submitted in guild {interaction.guild.id}")
            await after_submit(bot, interaction.user, interaction.guild.id, result.application_id)
        elif result.kind is IntakeKind.PAGE_UNAVAILABLE:
            await send_hidden_message(interaction, "This page is out of date. Press Start to reload.")
        elif result.kind is IntakeKind.ALREADY_SUBMITTED:
            await send_hidden_message(interaction, START_MESSAGES[IntakeKind.ALREADY_SUBMITTED])
        elif result.kind is IntakeKind.NO_QUESTIONS:
            await send_hidden_message(interaction, START_MESSAGES[IntakeKind.NO_QUESTIONS])
        else:
            await send_hidden_message(interaction, "No active draft found. Press Start to begin again.")

    async def on_error(self, interaction: Interaction, error: Exception) -> None:
        await report_interaction_error(interaction.client, interaction, error, "gate", f"page{self.page_index + 1}")


# ---------------------------------------------------------------------------
# Post-submission
# ---------------------------------------------------------------------------


async def scan_applicant_avatar(bot, user, settings, application_id: str) -> None:
    avatar_url = user.display_avatar.replace(format="png", static_format="png", size=AVATAR_SCAN_SIZE).url
    result = await bot.avatar_classifier.scan(avatar_url, ScanThresholds.from_settings(settings))
    with bot.session_scope() as session:
        AvatarScan.upsert(application_id, avatar_url, result, session)


async def after_submit(bot, user, guild_id: int, application_id: str) -> None:
    """Scan the avatar when enabled, then publish the review card. Failures are only logged."""
    settings = bot.guild_config.get(guild_id)
    if settings is not None and settings.avatar_scan_enabled:
        try:
            await scan_applicant_avatar(bot, user, settings, application_id)
        except Exception:
            log.warning("Avatar scan failed for application %s", application_id, exc_info=True)

    try:
        await publish_review_card(bot, application_id)
    except (GateException, discord.HTTPException, asyncio.TimeoutError):
        log.warning("Failed to publish review card after submission of %s", application_id, exc_info=True)


# ---------------------------------------------------------------------------
# Pinned gate entry message
# ---------------------------------------------------------------------------


@dataclass
class GateEntryResult:
    message_id: int | None = None
    created: bool = False
    pinned: bool = False
    reason: str | None = None


def build_gate_entry_embed() -> discord.Embed:
    emb = discord.Embed(title=GATE_ENTRY_TITLE, description=GATE_ENTRY_DESCRIPTION, colour=GATE_ENTRY_COLOUR)
    emb.set_footer(text=GATE_ENTRY_FOOTER)
    return emb


def is_gate_entry_message(message: discord.Message, bot_id: int) -> bool:
    if message.author.id != bot_id:
        return False
    for row in message.components:
        for component in getattr(row, "children", []):
            if getattr(component, "custom_id", None) == START_CUSTOM_ID:
                return True
    return False


async def ensure_pinned_gate_message(bot, channel: discord.TextChannel) -> GateEntryResult:
    """Reuse the pinned gate entry message in ``channel`` or post a new one, and pin it."""
    result = GateEntryResult()
    message = None
    for pinned in await bounded(channel.pins()):
        if is_gate_entry_message(pinned, bot.user.id):
            message = pinned
            break

    if message is None:
        message = await bounded(channel.send(embed=build_gate_entry_embed(), view=GateEntryView(bot)))
        result.created = True
    else:
        await bounded(message.edit(embed=build_gate_entry_embed(), view=GateEntryView(bot)))
    result.message_id = message.id

    if not channel.permissions_for(channel.guild.me).manage_messages:
        result.reason = "missing Manage Messages"
        return result

    if not message.pinned:
        await bounded(message.pin(reason="Gate entry"))
    result.pinned = True
    return result
