import asyncio
import logging
import threading

import discord

from config_manager import BotConfig, ConfigManager
from discord_sink import DiscordSink
from pr_handler import PRHandler
from repo_store import RepoStore
from webhook_server import run_webhook_server, set_pr_handler

logger = logging.getLogger(__name__)


class PRBot(discord.Client):
    """Discord bot that keeps Bitbucket pull request cards up to date."""

    def __init__(self, store: RepoStore):
        # Cards are only posted and edited, so no privileged intents are needed
        super().__init__(intents=discord.Intents.default())

        self.store = store
        self.pr_handler = PRHandler(store, DiscordSink(self))

        # Set this bot's handler for the webhook server
        set_pr_handler(self.pr_handler)

    async def setup_hook(self) -> None:
        """Called once the client's event loop is running, before connecting."""
        self.pr_handler.loop = asyncio.get_running_loop()

    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.user)
        for guild in self.guilds:
            logger.info("Connected to guild: %s (ID: %s)", guild.name, guild.id)
        if not self.guilds:
            logger.warning("No guilds found. The bot isn't in any server.")


def main(config: BotConfig) -> None:
    discord.utils.setup_logging(level=getattr(logging, config.log_level, logging.INFO))

    store = RepoStore(config.database_path)
    bot = PRBot(store)

    # Start the webhook server in a separate thread
    webhook_thread = threading.Thread(
        target=run_webhook_server,
        kwargs={'host': config.webhook_host, 'port': config.webhook_port},
        daemon=True,
    )
    webhook_thread.start()

    try:
        # Logging is already configured above
        bot.run(config.discord_token, log_handler=None)
    finally:
        store.close()


if __name__ == "__main__":
    main(ConfigManager.load())
