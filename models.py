import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

# Card lifecycle states (closure is an annotation, cards are never deleted)
PR_OPEN = "OPEN"
PR_MERGED = "MERGED"
PR_DECLINED = "DECLINED"


class BuildState(str, Enum):
    """Normalized state of an external build/pipeline result."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def from_bitbucket(cls, raw: str) -> "BuildState":
        """Map a Bitbucket commit status state onto a BuildState."""
        return _BITBUCKET_STATES.get((raw or "").upper(), cls.UNKNOWN)


_BITBUCKET_STATES = {
    "INPROGRESS": BuildState.PENDING,
    "SUCCESSFUL": BuildState.SUCCESS,
    "FAILED": BuildState.FAILURE,
    "STOPPED": BuildState.STOPPED,
}


@dataclass
class PullRequestCard:
    """Everything needed to re-render the card for one pull request."""

    repository: str
    pr_number: int
    title: str = ""
    url: str = ""
    source_branch: str = ""
    dest_branch: str = ""
    author_name: str = ""
    reviewer_names: List[str] = field(default_factory=list)
    latest_source_commit: Optional[str] = None
    state: str = PR_OPEN
    closed_by: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.state in (PR_MERGED, PR_DECLINED)


@dataclass
class BuildStatusRecord:
    """Latest known build result for a (repository, commit) pair."""

    repository: str
    commit_hash: str
    state: BuildState
    name: str = ""
    url: str = ""
    raw_state: str = ""
    updated_at: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class CardMessagePointer:
    """Where the card for a PR lives in one Discord channel."""

    repository: str
    pr_number: int
    channel_id: str
    message_id: str
