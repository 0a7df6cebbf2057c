# -*- coding: utf-8 -*-

from discord.app_commands import CheckFailure


class GateException(Exception):
    """Base for all GateBot exceptions. Raiseable as a fallback."""

    pass


class GateUserException(GateException):
    """User-facing error, shown to the Discord user as-is."""

    pass


class GateNotFoundError(GateUserException):
    """A requested entity (application, question, review card) does not exist."""

    pass


class GateValidationError(GateUserException):
    """Input or state is invalid (blank reason, bad snowflake, unknown config key)."""

    pass


class GatePermissionError(GateUserException):
    """The user lacks the reviewer role, or the bot lacks channel permissions."""

    pass


class ActiveApplicationError(GateUserException):
    """The user already has a submitted, unresolved application in this guild."""

    pass


class GateInfraException(GateException):
    """Infrastructure failure. Triggers an operator DM notification.

    Covers: DB errors, Discord API failures, misconfiguration.
    Raise with ``from original_exc`` to chain the full traceback into the DM.
    """

    pass


class ThreadCreationError(GateInfraException):
    """The need-info discussion thread could not be created.

    The decision itself is already committed; the review action carries a
    ``threadError`` marker so the card flags it.
    """

    pass


class SilentCheckFailure(CheckFailure):
    """A check already sent its own rejection message, so the error handler should not send another."""

    pass
