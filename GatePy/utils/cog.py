# -*- coding: utf-8 -*-


class GateBotCog:
    """Mixin for GateBot cogs: keeps the bot handle, logs the load, exposes guild settings."""

    def __init__(self, bot):
        super().__init__()
        self.bot = bot
        bot.log.info(f"cog ready: {type(self).__name__} ({self.__module__})")

    def settings(self, guild_id: int):
        """Cached ``GuildSettings`` for a guild, or None when it was never set up."""
        return self.bot.guild_config.get(guild_id)
