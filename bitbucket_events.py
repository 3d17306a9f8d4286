import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict

from models import BuildState, BuildStatusRecord, PullRequestCard

# Bitbucket Cloud webhook event keys (sent in the X-Event-Key header)
# Reference: https://support.atlassian.com/bitbucket-cloud/docs/event-payloads/

PR_CREATED = 'pullrequest:created'
PR_UPDATED = 'pullrequest:updated'  # New commits pushed, title/reviewers edited
PR_FULFILLED = 'pullrequest:fulfilled'  # Merged
PR_REJECTED = 'pullrequest:rejected'  # Declined
PR_APPROVED = 'pullrequest:approved'
PR_UNAPPROVED = 'pullrequest:unapproved'
PR_COMMENT_CREATED = 'pullrequest:comment_created'
COMMIT_STATUS_CREATED = 'repo:commit_status_created'
COMMIT_STATUS_UPDATED = 'repo:commit_status_updated'

PULL_REQUEST_EVENTS = {
    PR_CREATED,
    PR_UPDATED,
    PR_FULFILLED,
    PR_REJECTED,
    PR_APPROVED,
    PR_UNAPPROVED,
    PR_COMMENT_CREATED,
}
COMMIT_STATUS_EVENTS = {COMMIT_STATUS_CREATED, COMMIT_STATUS_UPDATED}

# Anything else (repo:push, issue events, ...) is acknowledged and dropped

EVENT_KEY_HEADER = 'X-Event-Key'
SIGNATURE_HEADER = 'X-Hub-Signature'
SIGNATURE_PREFIX = 'sha256='


class PayloadError(ValueError):
    """Raised when a webhook body cannot be understood."""


@dataclass
class PullRequestEvent:
    """A pullrequest:* delivery reduced to what the relay needs."""

    event_key: str
    actor_name: str
    card: PullRequestCard
    comment_text: str = ""

    @property
    def repository(self) -> str:
        return self.card.repository

    @property
    def pr_number(self) -> int:
        return self.card.pr_number


@dataclass
class CommitStatusEvent:
    """A repo:commit_status_* delivery."""

    event_key: str
    build: BuildStatusRecord

    @property
    def repository(self) -> str:
        return self.build.repository

    @property
    def commit_hash(self) -> str:
        return self.build.commit_hash


def is_handled(event_key: str) -> bool:
    return event_key in PULL_REQUEST_EVENTS or event_key in COMMIT_STATUS_EVENTS


def decode_payload(body: bytes) -> Dict[str, Any]:
    """Decode a raw webhook body into a JSON object."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as e:
        raise PayloadError(f"invalid JSON body: {e}") from e
    if not isinstance(payload, dict):
        raise PayloadError("webhook body is not a JSON object")
    return payload


def _get(data: Any, *path: str) -> Any:
    """Walk nested dictionaries, returning None as soon as a key is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def repository_of(payload: Dict[str, Any]) -> str:
    """Return the repository full name ("workspace/repo") of a delivery."""
    repository = _get(payload, 'repository', 'full_name')
    if not repository or not isinstance(repository, str):
        raise PayloadError("missing repository.full_name")
    return repository


def parse_pull_request_event(event_key: str, payload: Dict[str, Any]) -> PullRequestEvent:
    """Parse a pullrequest:* payload."""
    pr = payload.get('pullrequest')
    if not isinstance(pr, dict):
        raise PayloadError("missing pullrequest object")
    try:
        pr_number = int(pr['id'])
    except (KeyError, TypeError, ValueError) as e:
        raise PayloadError("missing or invalid pullrequest.id") from e

    reviewers = pr.get('reviewers') or []
    card = PullRequestCard(
        repository=repository_of(payload),
        pr_number=pr_number,
        title=pr.get('title') or '',
        url=_get(pr, 'links', 'html', 'href') or '',
        source_branch=_get(pr, 'source', 'branch', 'name') or '',
        dest_branch=_get(pr, 'destination', 'branch', 'name') or '',
        author_name=_get(pr, 'author', 'display_name') or '',
        reviewer_names=[r.get('display_name') for r in reviewers if isinstance(r, dict) and r.get('display_name')],
        latest_source_commit=_get(pr, 'source', 'commit', 'hash') or None,
    )

    return PullRequestEvent(
        event_key=event_key,
        actor_name=_get(payload, 'actor', 'display_name') or 'Unknown',
        card=card,
        comment_text=_get(payload, 'comment', 'content', 'raw') or '',
    )


def parse_commit_status_event(event_key: str, payload: Dict[str, Any]) -> CommitStatusEvent:
    """Parse a repo:commit_status_* payload."""
    status = payload.get('commit_status')
    if not isinstance(status, dict):
        raise PayloadError("missing commit_status object")
    commit_hash = _get(status, 'commit', 'hash')
    if not commit_hash:
        raise PayloadError("missing commit_status.commit.hash")

    raw_state = status.get('state') or ''
    build = BuildStatusRecord(
        repository=repository_of(payload),
        commit_hash=commit_hash,
        state=BuildState.from_bitbucket(raw_state),
        raw_state=raw_state,
        name=status.get('name') or '',
        url=status.get('url') or '',
    )
    return CommitStatusEvent(event_key=event_key, build=build)


def sign(secret: str, body: bytes) -> str:
    """Compute the X-Hub-Signature value for a body."""
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    """Check an X-Hub-Signature header against HMAC-SHA256(secret, body)."""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(sign(secret, body), signature_header)
