# -*- coding: utf-8 -*-
"""
Main Class of the GateBot
"""

import os
from asyncio import run
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from traceback import format_exc, print_exc, print_tb
from typing import Annotated, Any, Generator, Optional
from warnings import filterwarnings

import typer
import yaml
from discord import ClientException, Game, Intents, Interaction, LoginFailure, app_commands
from discord.ext.commands import Bot, ExtensionFailed
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from utils import logging
from utils.avatar_scan import HeuristicAvatarClassifier
from utils.config_cache import GuildConfigCache
from utils.database import BASE
from utils.error_throttle import ErrorThrottle
from utils.errors import GateException, GateInfraException, SilentCheckFailure
from utils.helpers import GENERIC_ERROR, error_context, notify_error, parse_id, send_hidden_message
from utils.permissions import check_guild_permissions, required_permissions

DEFAULT_MODULES = ["gate"]
DEFAULT_CONFIG_CACHE_TTL = 60


class GateBot(Bot):
    """Discord Bot"""

    def __init__(self, config: dict, intents: Intents, debug: bool):
        super().__init__(
            command_prefix="",
            description="GateBot - admission gate and review desk",
            intents=intents,
            help_command=None,
        )

        self.config = config
        self.debug = debug
        self.client_id = parse_id(config["bot"]["client_id"])
        self.token = config["bot"]["token"]
        self.ops = [parse_id(op) for op in config["bot"].get("ops", [])]
        self.modules = config["bot"].get("modules") or DEFAULT_MODULES
        self.restart = True
        self.log = logging.get_logger("gatebot")
        self.uptime = datetime.now(UTC)

        self.error_throttle = ErrorThrottle()
        self.avatar_classifier = HeuristicAvatarClassifier()

        # database variables
        db_connection_string = self.build_connection_string(config)
        if "database" not in config:
            self.log.warning("No Database specified! Fallback to local SQLite Database!")

        self.ENGINE = create_engine(db_connection_string)
        self.SESSION = sessionmaker(bind=self.ENGINE, expire_on_commit=False)

        cache_ttl = config.get("gate", {}).get("config_cache_ttl", DEFAULT_CONFIG_CACHE_TTL)
        self.guild_config = GuildConfigCache(self.session_scope, ttl_seconds=cache_ttl)

    @staticmethod
    def build_connection_string(config: dict) -> str:
        """Build a SQLAlchemy connection string from the bot config.

        Returns ``"sqlite:///db.db"`` when no database section is present.
        """
        if "database" not in config:
            return "sqlite:///db.db"

        database_config = config["database"]
        db_type = database_config["db_type"]
        db_name = database_config["db_name"]
        db_username = ""
        db_password = ""
        db_host = ""
        db_port = ""

        if "postgresql" in db_type:
            db_type = f"{db_type}+psycopg"
        elif any(s in db_type for s in ("mysql", "mariadb")):
            db_type = f"{db_type}+pymysql"

        if database_config.get("db_password"):
            db_password = f":{database_config['db_password']}"
        if database_config.get("db_username"):
            db_username = database_config["db_username"]
        if database_config.get("db_host"):
            db_host = f"@{database_config['db_host']}"
        if database_config.get("db_port"):
            db_port = f":{database_config['db_port']}"

        db_authentication = f"{db_username}{db_password}{db_host}{db_port}"
        return f"{db_type}://{db_authentication}/{db_name}"

    def create_all(self) -> None:
        """creates all tables previously defined"""
        import models.application  # noqa: F401
        import models.avatar_scan  # noqa: F401
        import models.gate_config  # noqa: F401

        BASE.metadata.create_all(self.ENGINE)

    @contextmanager
    def session_scope(self) -> Generator[Session, Any, None]:
        """Provide a transactional scope around a series of operations."""
        session = self.SESSION()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            self.log.error(exc)
            raise GateInfraException("A database error occurred.") from exc
        finally:
            session.close()

    async def setup_hook(self) -> None:
        """
        Discord Bot setup_hook
        Creates tables, loads modules and registers persistent views
        """
        self.tree.on_error = self._on_app_command_error

        # create database/tables and such stuff
        self.create_all()

        for module in self.modules:
            try:
                await self.load_extension(f"modules.{module}")
            except (ImportError, ExtensionFailed, ClientException) as e:
                self.log.error(f"failed to load extension {module}. {e}")
                self.log.debug(print_exc())

        # Register persistent views so buttons on old messages keep working
        from modules.views.gate import DoneButton, GateEntryView, StartPageButton
        from modules.views.review import DecisionButton, ViewSourceButton

        self.add_view(GateEntryView(bot=self))
        self.add_dynamic_items(StartPageButton, DoneButton, DecisionButton, ViewSourceButton)

    async def on_ready(self) -> None:
        """calls when successfully logged in"""
        self.log.info(f"Logged in as {self.user} (ID: {self.user.id})")

        required = required_permissions()
        for guild in self.guilds:
            missing = check_guild_permissions(guild, required)
            if missing:
                self.log.warning(f"[{guild.name} ({guild.id})] missing permissions: {', '.join(missing)}")

    # noinspection PyUnusedLocal
    async def on_app_command_completion(self, interaction: Interaction, command: app_commands.Command) -> None:
        """Log successful slash command invocations."""
        self.log.debug(error_context(interaction))

    async def _on_app_command_error(self, interaction: Interaction, error: app_commands.AppCommandError) -> None:
        """Handle errors from slash commands."""
        err_ctx = error_context(interaction)

        if isinstance(error, app_commands.CheckFailure):
            if isinstance(error, SilentCheckFailure):
                self.log.warning(f"{err_ctx}: {error}")
                return
            self.log.warning(f"{err_ctx}: {error}")
            await send_hidden_message(interaction, str(error))
        elif isinstance(error, app_commands.CommandInvokeError):
            if isinstance(error.original, GateException):
                err_msg = str(error.original)
                self.log.error(f"{err_ctx}: {err_msg}")
                await send_hidden_message(interaction, err_msg)
                if isinstance(error.original, GateInfraException):
                    await notify_error(self, err_ctx, error.original)
            else:
                self.log.error(f"{err_ctx}: {error.original.__class__.__name__}: {error.original}")
                print_tb(error.original.__traceback__)
                try:
                    await send_hidden_message(interaction, GENERIC_ERROR)
                except Exception:
                    pass  # interaction may have expired; still notify operator
                await notify_error(self, err_ctx, error.original)
        else:
            self.log.error(f"{err_ctx}: {error}")

    async def start(self, token: str = None, reconnect: bool = True) -> None:
        """
        connects the discord bot to the server

        :param token: str
        :param reconnect: bool
        """
        self.log.info("Logging into Discord...")
        if self.token:
            self.activity = Game(name="Press Start to apply")
            await self.login(self.token)
        else:
            self.log.critical("No credentials available to login.")
            raise RuntimeError()
        await self.connect(reconnect=self.restart)

    async def shutdown(self) -> None:
        """
        shutting down discord nicely
        """
        self.log.info("shutting down server!")
        self.restart = False
        await self.close()


def get_intents() -> Intents:
    intents = Intents.default()
    intents.members = True
    return intents


def _csv(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


def _set_nested(d: dict, keys: list[str], value) -> None:
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def parse_env_config() -> dict:
    """Read GATEBOT_* environment variables and return a config dict."""
    env: dict = {}
    mappings = [
        ("GATEBOT_TOKEN", ["bot", "token"], str),
        ("GATEBOT_CLIENT_ID", ["bot", "client_id"], str),
        ("GATEBOT_OPS", ["bot", "ops"], _csv),
        ("GATEBOT_MODULES", ["bot", "modules"], _csv),
        ("GATEBOT_DB_TYPE", ["database", "db_type"], str),
        ("GATEBOT_DB_NAME", ["database", "db_name"], str),
        ("GATEBOT_DB_USERNAME", ["database", "db_username"], str),
        ("GATEBOT_DB_PASSWORD", ["database", "db_password"], str),
        ("GATEBOT_DB_HOST", ["database", "db_host"], str),
        ("GATEBOT_DB_PORT", ["database", "db_port"], str),
        ("GATEBOT_CONFIG_CACHE_TTL", ["gate", "config_cache_ttl"], int),
        ("GATEBOT_ERROR_RECIPIENTS", ["notifications", "error_recipients"], _csv),
    ]
    for var_name, keys, converter in mappings:
        value = os.environ.get(var_name)
        if value:
            _set_nested(env, keys, converter(value))
    return env


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base; override wins on conflicts."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def parse_config(config_path: Optional[Path] = None) -> dict:
    config = {}
    path = config_path or Path("./config.yaml")
    if path.exists():
        with open(path) as stream:
            try:
                config = yaml.safe_load(stream) or {}
            except yaml.YAMLError as exc:
                print(f"Error in configuration file: {exc}")
    return deep_merge(config, parse_env_config())


app = typer.Typer(add_completion=False)


@app.command()
def main(
    config: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file path")] = None,
    debug: Annotated[bool, typer.Option("--debug", "-d", help="Enable debug logging")] = False,
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR)")] = "INFO",
    verbosity: Annotated[
        int, typer.Option("--verbosity", "-v", help="Verbosity: 1=DEBUG, 2=+discord, 3=+sqlalchemy")
    ] = 0,
) -> None:
    """GateBot, the admission gate for Discord communities."""
    filterwarnings("ignore", category=DeprecationWarning, module=r"discord\.http")

    resolved_config = parse_config(config)
    intents = get_intents()

    is_debug = debug or str(loglevel).upper() == "DEBUG" or verbosity > 0
    loggers = ["gatebot", "modules", "utils"]
    if verbosity >= 2:
        loggers.append("discord")
    if verbosity >= 3:
        loggers.append("sqlalchemy.engine")

    if "bot" in resolved_config:
        resolved_loglevel = "DEBUG" if (debug or verbosity > 0) else loglevel
        for logger_name in loggers:
            logging.create_logger(resolved_loglevel, logger_name)
        bot = GateBot(resolved_config, intents, is_debug)

        try:
            run(bot.start())
        except LoginFailure:
            bot.log.error(format_exc())
            bot.log.error("Failed to login")
        except KeyboardInterrupt:
            bot.log.info("Received KeyboardInterrupt, shutting down.")
    else:
        raise GateInfraException("Bot config not found.")


if __name__ == "__main__":
    app()
