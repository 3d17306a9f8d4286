import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

import aiohttp
import discord

logger = logging.getLogger(__name__)

# Discord limits thread names to 100 characters
MAX_THREAD_NAME = 100

# Errors that only affect the channel being written to
DELIVERY_ERRORS = (ValueError, asyncio.TimeoutError, aiohttp.ClientError, discord.DiscordException)


class SinkError(Exception):
    """Raised when a message could not be posted or edited in one channel."""


class MessagingSink(ABC):
    """Where PR cards and thread replies get published.

    Content is a rendered card (an embed dictionary); ids are strings so the
    store never depends on the chat platform's id type.
    """

    @abstractmethod
    async def post_message(self, channel_id: str, content: Dict[str, Any]) -> str:
        """Post a new card and return its message id."""

    @abstractmethod
    async def update_message(self, channel_id: str, message_id: str, content: Dict[str, Any]) -> None:
        """Replace the content of an existing card."""

    @abstractmethod
    async def post_thread_reply(self, channel_id: str, parent_message_id: str, text: str) -> None:
        """Post text in the thread under a card."""


class DiscordSink(MessagingSink):
    """Messaging sink backed by a connected discord.Client."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _get_channel(self, channel_id: str):
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self.client.fetch_channel(int(channel_id))
            except discord.DiscordException as e:
                raise SinkError(f"Channel {channel_id} not found: {e}") from e
        return channel

    async def post_message(self, channel_id: str, content: Dict[str, Any]) -> str:
        try:
            channel = await self._get_channel(channel_id)
            message = await channel.send(embed=discord.Embed.from_dict(content))
        except DELIVERY_ERRORS as e:
            raise SinkError(f"Failed to post card in channel {channel_id}: {e!r}") from e
        return str(message.id)

    async def update_message(self, channel_id: str, message_id: str, content: Dict[str, Any]) -> None:
        try:
            channel = await self._get_channel(channel_id)
            await channel.get_partial_message(int(message_id)).edit(embed=discord.Embed.from_dict(content))
        except DELIVERY_ERRORS as e:
            raise SinkError(f"Failed to update message {message_id} in channel {channel_id}: {e!r}") from e

    async def post_thread_reply(self, channel_id: str, parent_message_id: str, text: str) -> None:
        try:
            thread = await self._get_or_create_thread(channel_id, parent_message_id)
            await thread.send(text)
        except DELIVERY_ERRORS as e:
            raise SinkError(f"Failed to reply under message {parent_message_id} in channel {channel_id}: {e!r}") from e

    async def _get_or_create_thread(self, channel_id: str, parent_message_id: str) -> discord.Thread:
        """Return the thread started from a card, starting it on first use.

        A thread started from a message shares that message's id. If another
        reply started the thread first, creating it again fails and the
        message is fetched once more to pick up that thread.
        """
        thread = self.client.get_channel(int(parent_message_id))
        if isinstance(thread, discord.Thread):
            return thread

        channel = await self._get_channel(channel_id)
        message = await channel.fetch_message(int(parent_message_id))
        if message.thread is not None:
            return message.thread

        name = message.embeds[0].title if message.embeds and message.embeds[0].title else "Pull request"
        try:
            thread = await message.create_thread(name=name[:MAX_THREAD_NAME])
        except discord.HTTPException:
            message = await channel.fetch_message(int(parent_message_id))
            if message.thread is None:
                raise
            return message.thread
        logger.info("Created thread %s for card %s in channel %s", thread.id, parent_message_id, channel_id)
        return thread
