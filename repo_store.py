"""SQLite persistence for subscriptions, PR cards, approvals and build statuses.

Every public method runs inside its own transaction under a connection lock,
so each read or upsert is atomic on its own. Nothing here spans more than one
operation: "read card, render, write card, post message" is never serialized
against a concurrent handler for the same PR.

Tables:
  repo_subscriptions  channel -> repository subscriptions
  webhook_secrets     per-repository HMAC secret (created once, never rotated)
  user_mappings       Bitbucket display name -> Discord user id
  pr_cards            one row per (repository, pr_number)
  pr_approvals        approval set, insertion ordered
  pr_messages         one card message pointer per (PR, channel)
  build_statuses      latest build result per (repository, commit)
"""

import datetime
import json
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from models import (
    PR_OPEN,
    BuildState,
    BuildStatusRecord,
    CardMessagePointer,
    PullRequestCard,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repo_subscriptions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id  TEXT NOT NULL,
    repository  TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (channel_id, repository)
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_repo ON repo_subscriptions (repository);

CREATE TABLE IF NOT EXISTS webhook_secrets (
    repository  TEXT PRIMARY KEY,
    secret      TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_mappings (
    discord_user_id  TEXT PRIMARY KEY,
    bitbucket_name   TEXT NOT NULL UNIQUE,
    created_at       TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS pr_cards (
    repository      TEXT    NOT NULL,
    pr_number       INTEGER NOT NULL,
    title           TEXT    NOT NULL DEFAULT '',
    url             TEXT    NOT NULL DEFAULT '',
    source_branch   TEXT    NOT NULL DEFAULT '',
    dest_branch     TEXT    NOT NULL DEFAULT '',
    author_name     TEXT    NOT NULL DEFAULT '',
    reviewer_names  TEXT    NOT NULL DEFAULT '[]',
    commit_hash     TEXT,
    state           TEXT    NOT NULL DEFAULT 'OPEN',
    closed_by       TEXT,
    PRIMARY KEY (repository, pr_number)
);
CREATE INDEX IF NOT EXISTS idx_pr_cards_commit ON pr_cards (repository, commit_hash);

CREATE TABLE IF NOT EXISTS pr_approvals (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    repository  TEXT    NOT NULL,
    pr_number   INTEGER NOT NULL,
    user_name   TEXT    NOT NULL,
    UNIQUE (repository, pr_number, user_name)
);

CREATE TABLE IF NOT EXISTS pr_messages (
    repository  TEXT    NOT NULL,
    pr_number   INTEGER NOT NULL,
    channel_id  TEXT    NOT NULL,
    message_id  TEXT    NOT NULL,
    PRIMARY KEY (repository, pr_number, channel_id)
);

CREATE TABLE IF NOT EXISTS build_statuses (
    repository   TEXT NOT NULL,
    commit_hash  TEXT NOT NULL,
    state        TEXT NOT NULL,
    raw_state    TEXT NOT NULL DEFAULT '',
    name         TEXT NOT NULL DEFAULT '',
    url          TEXT NOT NULL DEFAULT '',
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (repository, commit_hash)
);
"""


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RepoStore:
    """Shared persistent state for the relay.

    Safe to use from the webhook thread and the Discord event loop at the
    same time. Several bot processes may point at the same database file;
    SQLite's file locking keeps each operation atomic across them.
    """

    def __init__(self, db_path: str = "bot.db"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, self._conn:
            yield self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Subscription directory

    def subscribe(self, channel_id: str, repository: str) -> str:
        """Subscribe a channel to a repository and return its webhook secret.

        Subscribing twice is a no-op. The repository's secret is created on
        the first subscription and reused afterwards.
        """
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO repo_subscriptions (channel_id, repository) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                (str(channel_id), repository),
            )
        return self.get_or_create_webhook_secret(repository)

    def unsubscribe(self, channel_id: str, repository: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM repo_subscriptions WHERE channel_id = ? AND repository = ?",
                (str(channel_id), repository),
            )

    def channels_for_repository(self, repository: str) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT channel_id FROM repo_subscriptions WHERE repository = ? ORDER BY id",
                (repository,),
            ).fetchall()
        return [row["channel_id"] for row in rows]

    def repositories_for_channel(self, channel_id: str) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT repository FROM repo_subscriptions WHERE channel_id = ? ORDER BY id",
                (str(channel_id),),
            ).fetchall()
        return [row["repository"] for row in rows]

    # Webhook secrets

    def get_webhook_secret(self, repository: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT secret FROM webhook_secrets WHERE repository = ?",
                (repository,),
            ).fetchone()
        return row["secret"] if row else None

    def get_or_create_webhook_secret(self, repository: str) -> str:
        """Return the repository's secret, generating one if none exists yet."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO webhook_secrets (repository, secret) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                (repository, secrets.token_hex(32)),
            )
            row = conn.execute(
                "SELECT secret FROM webhook_secrets WHERE repository = ?",
                (repository,),
            ).fetchone()
        return row["secret"]

    # Identity mappings

    def save_user_mapping(self, discord_user_id: str, bitbucket_name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM user_mappings WHERE bitbucket_name = ? AND discord_user_id != ?",
                (bitbucket_name, str(discord_user_id)),
            )
            conn.execute(
                """
                INSERT INTO user_mappings (discord_user_id, bitbucket_name) VALUES (?, ?)
                ON CONFLICT (discord_user_id) DO UPDATE SET bitbucket_name = excluded.bitbucket_name
                """,
                (str(discord_user_id), bitbucket_name),
            )

    def get_discord_user(self, bitbucket_name: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT discord_user_id FROM user_mappings WHERE bitbucket_name = ?",
                (bitbucket_name,),
            ).fetchone()
        return row["discord_user_id"] if row else None

    # PR card store

    def save_card(self, card: PullRequestCard) -> None:
        """Upsert a card's content.

        A blank source commit keeps the one already stored. Closure state is
        only ever changed through close_card.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pr_cards
                  (repository, pr_number, title, url, source_branch, dest_branch,
                   author_name, reviewer_names, commit_hash, state, closed_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (repository, pr_number) DO UPDATE SET
                    title          = excluded.title,
                    url            = excluded.url,
                    source_branch  = excluded.source_branch,
                    dest_branch    = excluded.dest_branch,
                    author_name    = excluded.author_name,
                    reviewer_names = excluded.reviewer_names,
                    commit_hash    = COALESCE(NULLIF(excluded.commit_hash, ''), pr_cards.commit_hash)
                """,
                (
                    card.repository,
                    card.pr_number,
                    card.title,
                    card.url,
                    card.source_branch,
                    card.dest_branch,
                    card.author_name,
                    json.dumps(list(card.reviewer_names)),
                    card.latest_source_commit or None,
                    card.state or PR_OPEN,
                    card.closed_by,
                ),
            )

    def close_card(self, repository: str, pr_number: int, state: str, actor_name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE pr_cards SET state = ?, closed_by = ? WHERE repository = ? AND pr_number = ?",
                (state, actor_name, repository, pr_number),
            )

    def get_card(self, repository: str, pr_number: int) -> Optional[PullRequestCard]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pr_cards WHERE repository = ? AND pr_number = ?",
                (repository, pr_number),
            ).fetchone()
        return self._row_to_card(row) if row else None

    def cards_for_commit(self, repository: str, commit_hash: str) -> List[PullRequestCard]:
        """Every card whose latest source commit is commit_hash."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pr_cards WHERE repository = ? AND commit_hash = ? ORDER BY pr_number",
                (repository, commit_hash),
            ).fetchall()
        return [self._row_to_card(row) for row in rows]

    @staticmethod
    def _row_to_card(row: sqlite3.Row) -> PullRequestCard:
        return PullRequestCard(
            repository=row["repository"],
            pr_number=row["pr_number"],
            title=row["title"],
            url=row["url"],
            source_branch=row["source_branch"],
            dest_branch=row["dest_branch"],
            author_name=row["author_name"],
            reviewer_names=json.loads(row["reviewer_names"] or "[]"),
            latest_source_commit=row["commit_hash"],
            state=row["state"],
            closed_by=row["closed_by"],
        )

    # Approval set

    def add_approval(self, repository: str, pr_number: int, user_name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO pr_approvals (repository, pr_number, user_name) VALUES (?, ?, ?)",
                (repository, pr_number, user_name),
            )

    def remove_approval(self, repository: str, pr_number: int, user_name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM pr_approvals WHERE repository = ? AND pr_number = ? AND user_name = ?",
                (repository, pr_number, user_name),
            )

    def get_approvals(self, repository: str, pr_number: int) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT user_name FROM pr_approvals WHERE repository = ? AND pr_number = ? ORDER BY id",
                (repository, pr_number),
            ).fetchall()
        return [row["user_name"] for row in rows]

    # Card message pointers

    def save_message_pointer(self, pointer: CardMessagePointer) -> bool:
        """Record where a card was posted.

        Returns False and keeps the existing pointer if the channel already
        has one for this PR.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pr_messages (repository, pr_number, channel_id, message_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (repository, pr_number, channel_id) DO NOTHING
                """,
                (pointer.repository, pointer.pr_number, str(pointer.channel_id), str(pointer.message_id)),
            )
            return cursor.rowcount == 1

    def get_message_pointer(self, repository: str, pr_number: int, channel_id: str) -> Optional[CardMessagePointer]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pr_messages WHERE repository = ? AND pr_number = ? AND channel_id = ?",
                (repository, pr_number, str(channel_id)),
            ).fetchone()
        return self._row_to_pointer(row) if row else None

    def get_message_pointers(self, repository: str, pr_number: int) -> List[CardMessagePointer]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pr_messages WHERE repository = ? AND pr_number = ? ORDER BY rowid",
                (repository, pr_number),
            ).fetchall()
        return [self._row_to_pointer(row) for row in rows]

    @staticmethod
    def _row_to_pointer(row: sqlite3.Row) -> CardMessagePointer:
        return CardMessagePointer(
            repository=row["repository"],
            pr_number=row["pr_number"],
            channel_id=row["channel_id"],
            message_id=row["message_id"],
        )

    # Build-status cache

    def save_build_status(self, record: BuildStatusRecord) -> None:
        """Last write wins, stamped with arrival time rather than event time."""
        record.updated_at = _utcnow()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO build_statuses (repository, commit_hash, state, raw_state, name, url, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (repository, commit_hash) DO UPDATE SET
                    state      = excluded.state,
                    raw_state  = excluded.raw_state,
                    name       = excluded.name,
                    url        = excluded.url,
                    updated_at = excluded.updated_at
                """,
                (
                    record.repository,
                    record.commit_hash,
                    record.state.value,
                    record.raw_state,
                    record.name,
                    record.url,
                    record.updated_at.isoformat(),
                ),
            )

    def get_build_status(self, repository: str, commit_hash: str) -> Optional[BuildStatusRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM build_statuses WHERE repository = ? AND commit_hash = ?",
                (repository, commit_hash),
            ).fetchone()
        if not row:
            return None
        return BuildStatusRecord(
            repository=row["repository"],
            commit_hash=row["commit_hash"],
            state=BuildState(row["state"]),
            raw_state=row["raw_state"],
            name=row["name"],
            url=row["url"],
            updated_at=datetime.datetime.fromisoformat(row["updated_at"]),
        )
