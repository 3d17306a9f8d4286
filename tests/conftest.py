import asyncio
import json

import pytest

from bitbucket_events import sign
from discord_sink import MessagingSink, SinkError
from pr_handler import PRHandler
from repo_store import RepoStore


class FakeSink(MessagingSink):
    """Records everything the relay publishes, keyed like Discord would be."""

    def __init__(self):
        self.messages = {}
        self.posts = []
        self.updates = []
        self.replies = []
        self.failing_channels = set()
        # channel_id -> exception raised as-is instead of a SinkError
        self.errors = {}
        self._next_id = 1000

    def _check(self, channel_id):
        if channel_id in self.errors:
            raise self.errors[channel_id]
        if channel_id in self.failing_channels:
            raise SinkError(f"channel {channel_id} is unavailable")

    async def post_message(self, channel_id, content):
        self._check(channel_id)
        # Yield like a real network call so concurrent deliveries interleave
        await asyncio.sleep(0)
        message_id = str(self._next_id)
        self._next_id += 1
        self.messages[message_id] = (channel_id, content)
        self.posts.append((channel_id, message_id, content))
        return message_id

    async def update_message(self, channel_id, message_id, content):
        self._check(channel_id)
        self.messages[message_id] = (channel_id, content)
        self.updates.append((channel_id, message_id, content))

    async def post_thread_reply(self, channel_id, parent_message_id, text):
        self._check(channel_id)
        self.replies.append((channel_id, parent_message_id, text))

    def card_text(self, message_id):
        """Everything visible on a card, for substring assertions."""
        return json.dumps(self.messages[message_id][1], ensure_ascii=False)

    def field(self, message_id, name):
        content = self.messages[message_id][1]
        return next(f["value"] for f in content["fields"] if f["name"] == name)


class Relay:
    """A PRHandler wired to a fake sink, running background work on demand."""

    def __init__(self, store):
        self.store = store
        self.sink = FakeSink()
        self.pending = []
        self.handler = PRHandler(store, self.sink, submit=self.pending.append)

    def deliver(self, event_key, payload, secret=None, signature=None):
        body = json.dumps(payload).encode("utf-8")
        if signature is None:
            signature = sign(secret, body) if secret else ""
        result = self.handler.handle(event_key, body, signature)
        self.run_pending()
        return result

    def run_concurrently(self):
        async def gather():
            pending, self.pending = self.pending, []
            await asyncio.gather(*pending)

        asyncio.run(gather())

    def run_pending(self):
        async def drain():
            while self.pending:
                await self.pending.pop(0)

        asyncio.run(drain())


@pytest.fixture
def store(tmp_path):
    store = RepoStore(str(tmp_path / "bot.db"))
    yield store
    store.close()


@pytest.fixture
def relay(store):
    return Relay(store)
