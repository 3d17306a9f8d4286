"""Render a PR card as a Discord embed dictionary.

Layout:

    Row 1: Pull request (linked title) | Repository (linked)
    Row 2: Build (emoji + link, or "—") | Branch (source → dest)
    Row 3: Reviewers (mentions, or "—") | Author (mention)
    [optional status line]

Rendering is pure: the caller resolves every mention and label first, so the
same CardFields always produce the same dictionary. The embed carries no
timestamp.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from utils import EMPTY_FIELD, format_link

BITBUCKET_URL = "https://bitbucket.org"
# Discord puts up to three inline fields on a row; the spacer keeps two per row
ROW_SPACER = {"name": "\u200b", "value": "\u200b", "inline": True}
# Discord rejects embed titles longer than this
MAX_TITLE_LENGTH = 256


@dataclass(frozen=True)
class CardFields:
    """Already-resolved values for one card."""

    title: str
    url: str
    repository: str
    pr_number: int
    source_branch: str
    dest_branch: str
    author_label: str
    reviewer_labels: Tuple[str, ...] = ()
    build_label: str = EMPTY_FIELD
    status_line: str = ""
    color: int = 0x2ECC71


def _field(name: str, value: str) -> Dict[str, Any]:
    return {"name": name, "value": value or EMPTY_FIELD, "inline": True}


def _row(left: Dict[str, Any], right: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [left, right, dict(ROW_SPACER)]


def render_card(fields: CardFields) -> Dict[str, Any]:
    """Build the embed dictionary for a card."""
    repo_url = f"{BITBUCKET_URL}/{fields.repository}"
    reviewers = ", ".join(fields.reviewer_labels) if fields.reviewer_labels else EMPTY_FIELD
    title = f"PR #{fields.pr_number}: {fields.title}"

    embed_fields = []
    embed_fields += _row(
        _field("Pull request", f"**{format_link(fields.title, fields.url)}**"),
        _field("Repository", format_link(fields.repository, repo_url)),
    )
    embed_fields += _row(
        _field("Build", fields.build_label),
        _field("Branch", f"`{fields.source_branch}` → `{fields.dest_branch}`"),
    )
    embed_fields += _row(
        _field("Reviewers", reviewers),
        _field("Author", fields.author_label),
    )

    if fields.status_line:
        embed_fields.append({"name": "Status", "value": fields.status_line, "inline": False})

    embed = {
        "type": "rich",
        "title": title[:MAX_TITLE_LENGTH],
        "color": fields.color,
        "fields": embed_fields,
        "footer": {"text": f"PR #{fields.pr_number} • {fields.repository}"},
    }
    if fields.url:
        embed["url"] = fields.url
    return embed
