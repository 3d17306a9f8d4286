import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


@dataclass(frozen=True)
class BotConfig:
    """Runtime settings for the bot and its webhook server."""

    discord_token: str
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 5000
    database_path: str = "bot.db"
    log_level: str = "INFO"


class ConfigManager:
    """Loads configuration settings for the bot from the environment."""

    REQUIRED = ("DISCORD_TOKEN",)

    @classmethod
    def load(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> BotConfig:
        """Load settings, reading a .env file first unless dotenv is False."""
        if dotenv:
            load_dotenv()
        env = os.environ if environ is None else environ

        missing = [name for name in cls.REQUIRED if not env.get(name)]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

        port = env.get("WEBHOOK_PORT", "5000")
        try:
            webhook_port = int(port)
        except ValueError:
            raise ConfigError(f"WEBHOOK_PORT must be an integer, got {port!r}")

        return BotConfig(
            discord_token=env["DISCORD_TOKEN"],
            webhook_host=env.get("WEBHOOK_HOST", "0.0.0.0"),
            webhook_port=webhook_port,
            database_path=env.get("DATABASE_PATH", "bot.db"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
