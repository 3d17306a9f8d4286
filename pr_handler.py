"""Reconcile Bitbucket pull request events into Discord PR cards.

Each PR has one card per subscribed channel, edited in place as new facts
arrive, with a thread under each card for discrete events (approvals,
comments, builds, merges). Deliveries can arrive out of order, twice, or
concurrently, so every routine below merges its fact into the stored record
and then re-renders the whole card from what is stored, rather than
stepping a state machine.
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from bitbucket_events import (
    COMMIT_STATUS_EVENTS,
    PR_APPROVED,
    PR_COMMENT_CREATED,
    PR_CREATED,
    PR_FULFILLED,
    PR_REJECTED,
    PR_UNAPPROVED,
    PR_UPDATED,
    CommitStatusEvent,
    PayloadError,
    PullRequestEvent,
    decode_payload,
    is_handled,
    parse_commit_status_event,
    parse_pull_request_event,
    repository_of,
    verify_signature,
)
from card_renderer import CardFields, render_card
from discord_sink import MessagingSink, SinkError
from identity_resolver import IdentityResolver
from models import PR_DECLINED, PR_MERGED, CardMessagePointer, PullRequestCard
from utils import (
    EMPTY_FIELD,
    build_status_reply,
    format_approval_status,
    format_build_label,
    format_closed_status,
    get_card_color,
    truncate_text,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandleResult:
    """Outcome of handing a delivery to PRHandler.handle."""

    accepted: bool
    message: str = ""
    status_code: int = 200

    @classmethod
    def ok(cls, message: str) -> "HandleResult":
        return cls(True, message, 200)

    @classmethod
    def rejected(cls, reason: str, status_code: int) -> "HandleResult":
        return cls(False, reason, status_code)


class PRHandler:
    """Handles processing and management of pull request cards."""

    def __init__(self, store, sink: MessagingSink,
                 resolver: Optional[IdentityResolver] = None,
                 submit: Optional[Callable[[Awaitable[None]], Any]] = None):
        self.store = store
        self.sink = sink
        self.resolver = resolver or IdentityResolver(store)
        self._submit = submit
        # Set by the bot once its event loop is running
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        # (repository, pr_number, channel_id) -> [lock, holders]; posting a card is claimed per channel
        self._channel_locks: Dict[Tuple[str, int, str], list] = {}

        self._routines: Dict[str, Callable[[PullRequestEvent], Awaitable[None]]] = {
            PR_CREATED: self.on_created,
            PR_UPDATED: self.on_updated,
            PR_FULFILLED: self.on_merged,
            PR_REJECTED: self.on_declined,
            PR_APPROVED: self.on_approved,
            PR_UNAPPROVED: self.on_unapproved,
            PR_COMMENT_CREATED: self.on_comment,
        }

    # Inbound

    def handle(self, event_key: str, body: bytes, signature: str) -> HandleResult:
        """Authenticate and classify a delivery, then queue its reconciliation.

        Only parsing and signature checks happen before this returns; store
        writes and Discord calls run later on the event loop.
        """
        if not is_handled(event_key):
            logger.info("Ignoring event %s", event_key)
            return HandleResult.ok(f"Event {event_key} received but not processed")

        try:
            payload = decode_payload(body)
            repository = repository_of(payload)
        except PayloadError as e:
            logger.error("Unparseable %s payload: %s", event_key, e)
            return HandleResult.rejected("unparseable", 400)

        try:
            secret = self.store.get_webhook_secret(repository)
        except sqlite3.Error as e:
            logger.error("Failed to look up webhook secret for %s: %s", repository, e)
            return HandleResult.rejected("internal", 500)

        # No secret on file means nobody subscribed through us yet: trust on first use
        if secret and not verify_signature(secret, body, signature):
            logger.warning("Webhook signature mismatch for %s (%s)", repository, event_key)
            return HandleResult.rejected("unauthorized", 401)

        if not self.ready:
            logger.warning("Dropping %s for %s: not attached to an event loop yet", event_key, repository)
            return HandleResult.rejected("not ready", 503)

        try:
            if event_key in COMMIT_STATUS_EVENTS:
                work = self.on_commit_status(parse_commit_status_event(event_key, payload))
            else:
                event = parse_pull_request_event(event_key, payload)
                logger.info("%s for %s #%s by %s", event_key, repository, event.pr_number, event.actor_name)
                work = self._routines[event_key](event)
        except PayloadError as e:
            logger.error("Unparseable %s payload for %s: %s", event_key, repository, e)
            return HandleResult.rejected("unparseable", 400)

        self.submit(self._run(work, event_key, repository))
        return HandleResult.ok("Webhook received, processing in background")

    @property
    def ready(self) -> bool:
        """Whether background work has somewhere to run."""
        return self._submit is not None or self.loop is not None

    def submit(self, coro: Awaitable[None]) -> None:
        """Hand work to the event loop without waiting for it."""
        if self._submit is not None:
            self._submit(coro)
            return
        if self.loop is None:
            coro.close()
            raise RuntimeError("PR handler is not attached to an event loop")
        asyncio.run_coroutine_threadsafe(coro, self.loop)

    async def _run(self, work: Awaitable[None], event_key: str, repository: str) -> None:
        # Nothing waits on this task: failures end here and only show up in logs
        try:
            await work
        except sqlite3.Error as e:
            logger.error("Store error while processing %s for %s: %s", event_key, repository, e)
        except Exception:
            logger.exception("Error processing %s for %s", event_key, repository)

    # Reconciliation routines

    async def on_created(self, event: PullRequestEvent) -> None:
        """Save the card and post it once in every subscribed channel."""
        self.store.save_card(event.card)
        card = self._current_card(event)

        channels = self.store.channels_for_repository(card.repository)
        if not channels:
            logger.info("No subscribers for %s, not posting #%s", card.repository, card.pr_number)
            return

        content = self.render(card)
        for channel_id in channels:
            # A redelivered create refreshes the card already posted
            await self._post_or_update(card, channel_id, content)

        logger.info("PR card sent for %s #%s to %d channel(s)", card.repository, card.pr_number, len(channels))

    async def on_updated(self, event: PullRequestEvent) -> None:
        """Refresh the card after new commits or edits, without a thread reply."""
        self.store.save_card(event.card)
        card = self._current_card(event)
        await self._apply(card, self.render(card), reply=None, fallback=False)

    async def on_merged(self, event: PullRequestEvent) -> None:
        await self._close(event, PR_MERGED)

    async def on_declined(self, event: PullRequestEvent) -> None:
        await self._close(event, PR_DECLINED)

    async def _close(self, event: PullRequestEvent, state: str) -> None:
        self.store.save_card(event.card)
        self.store.close_card(event.repository, event.pr_number, state, event.actor_name)
        card = self._current_card(event)

        status = format_closed_status(state, self.resolver.resolve(event.actor_name))
        await self._apply(card, self.render(card), reply=status, fallback=True)

    async def on_approved(self, event: PullRequestEvent) -> None:
        self.store.add_approval(event.repository, event.pr_number, event.actor_name)
        reply = f"✅ {self.resolver.resolve(event.actor_name)} approved this PR"
        await self._refresh_approvals(event, reply)

    async def on_unapproved(self, event: PullRequestEvent) -> None:
        self.store.remove_approval(event.repository, event.pr_number, event.actor_name)
        reply = f"↩️ {self.resolver.resolve(event.actor_name)} removed their approval"
        await self._refresh_approvals(event, reply)

    async def _refresh_approvals(self, event: PullRequestEvent, reply: str) -> None:
        self.store.save_card(event.card)
        card = self._current_card(event)
        await self._apply(card, self.render(card), reply=reply, fallback=True)

    async def on_comment(self, event: PullRequestEvent) -> None:
        """Thread the comment under existing cards. The card itself is untouched."""
        pointers = self.store.get_message_pointers(event.repository, event.pr_number)
        if not pointers:
            logger.info("No card for %s #%s, dropping comment", event.repository, event.pr_number)
            return

        actor = self.resolver.resolve(event.actor_name)
        reply = f"💬 {actor} commented:\n>>> {truncate_text(event.comment_text)}"
        for pointer in pointers:
            await self._reply(pointer, reply)

    async def on_commit_status(self, event: CommitStatusEvent) -> None:
        """Cache the build result and refresh every PR sitting on that commit."""
        self.store.save_build_status(event.build)

        cards = self.store.cards_for_commit(event.repository, event.commit_hash)
        if not cards:
            logger.info("Build status for %s@%s matches no PR", event.repository, event.commit_hash[:12])
            return

        reply = build_status_reply(event.build)
        for card in cards:
            await self._apply(card, self.render(card), reply=reply, fallback=False)
            logger.info("PR card updated for build status: %s #%s %s",
                        card.repository, card.pr_number, event.build.state.value)

    # Rendering

    def _current_card(self, event: PullRequestEvent) -> PullRequestCard:
        return self.store.get_card(event.repository, event.pr_number) or event.card

    def render(self, card: PullRequestCard) -> Dict[str, Any]:
        """Render a card from everything currently stored about it."""
        approvals = self.store.get_approvals(card.repository, card.pr_number)
        build = None
        if card.latest_source_commit:
            build = self.store.get_build_status(card.repository, card.latest_source_commit)

        author = self.resolver.resolve(card.author_name) if card.author_name else EMPTY_FIELD
        fields = CardFields(
            title=card.title,
            url=card.url,
            repository=card.repository,
            pr_number=card.pr_number,
            source_branch=card.source_branch,
            dest_branch=card.dest_branch,
            author_label=author,
            reviewer_labels=tuple(self.resolver.resolve_all(card.reviewer_names)),
            build_label=format_build_label(build),
            status_line=self._status_line(card, approvals),
            color=get_card_color(card.state, build),
        )
        return render_card(fields)

    def _status_line(self, card: PullRequestCard, approvals: List[str]) -> str:
        if card.is_closed:
            return format_closed_status(card.state, self.resolver.resolve(card.closed_by or "Unknown"))
        return format_approval_status(self.resolver.resolve_all(approvals))

    # Applying to Discord

    async def _apply(self, card: PullRequestCard, content: Dict[str, Any],
                     reply: Optional[str], fallback: bool) -> None:
        """Edit every posted card and thread the reply under it.

        With no card posted anywhere yet and fallback set, post a fresh card
        in every subscribed channel instead.
        """
        pointers = self.store.get_message_pointers(card.repository, card.pr_number)
        if not pointers:
            if not fallback:
                logger.info("No card posted for %s #%s, nothing to update", card.repository, card.pr_number)
                return
            channels = self.store.channels_for_repository(card.repository)
            logger.info("No card posted for %s #%s, posting to %d channel(s)",
                        card.repository, card.pr_number, len(channels))
            for channel_id in channels:
                await self._post_or_update(card, channel_id, content)
            return

        for pointer in pointers:
            await self._update(pointer, content)
            if reply:
                await self._reply(pointer, reply)

    @asynccontextmanager
    async def _channel_lock(self, card: PullRequestCard, channel_id: str) -> AsyncIterator[None]:
        """Serialize posting a card into one channel across concurrent events."""
        key = (card.repository, card.pr_number, str(channel_id))
        entry = self._channel_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._channel_locks[key]

    async def _post_or_update(self, card: PullRequestCard, channel_id: str, content: Dict[str, Any]) -> None:
        """Edit the channel's card if one was posted, otherwise post it."""
        async with self._channel_lock(card, channel_id):
            pointer = self.store.get_message_pointer(card.repository, card.pr_number, channel_id)
            if pointer:
                await self._update(pointer, content)
            else:
                await self._post_card(card, channel_id, content)

    async def _post_card(self, card: PullRequestCard, channel_id: str,
                         content: Dict[str, Any]) -> Optional[CardMessagePointer]:
        try:
            message_id = await self.sink.post_message(channel_id, content)
        except SinkError as e:
            logger.error("Failed to post card for %s #%s in channel %s: %s",
                         card.repository, card.pr_number, channel_id, e)
            return None
        except Exception:
            logger.exception("Unexpected error posting card for %s #%s in channel %s",
                             card.repository, card.pr_number, channel_id)
            return None

        pointer = CardMessagePointer(card.repository, card.pr_number, str(channel_id), str(message_id))
        if not self.store.save_message_pointer(pointer):
            logger.warning("Card for %s #%s was already recorded in channel %s, keeping the first one",
                           card.repository, card.pr_number, channel_id)
        return pointer

    async def _update(self, pointer: CardMessagePointer, content: Dict[str, Any]) -> bool:
        try:
            await self.sink.update_message(pointer.channel_id, pointer.message_id, content)
            return True
        except SinkError as e:
            logger.error("Failed to update card for %s #%s in channel %s: %s",
                         pointer.repository, pointer.pr_number, pointer.channel_id, e)
        except Exception:
            logger.exception("Unexpected error updating card for %s #%s in channel %s",
                             pointer.repository, pointer.pr_number, pointer.channel_id)
        return False

    async def _reply(self, pointer: CardMessagePointer, text: str) -> bool:
        try:
            await self.sink.post_thread_reply(pointer.channel_id, pointer.message_id, text)
            return True
        except SinkError as e:
            logger.error("Failed to post thread reply for %s #%s in channel %s: %s",
                         pointer.repository, pointer.pr_number, pointer.channel_id, e)
        except Exception:
            logger.exception("Unexpected error replying for %s #%s in channel %s",
                             pointer.repository, pointer.pr_number, pointer.channel_id)
        return False
