from typing import Optional, Sequence

from models import PR_DECLINED, PR_MERGED, BuildState, BuildStatusRecord

# Shown wherever a field has no value yet (no build, no reviewers)
EMPTY_FIELD = "—"
ELLIPSIS = "…"
COMMENT_MAX_CHARS = 300


def get_build_icon(state: BuildState) -> str:
    """Get appropriate emoji icon for a build state."""
    if state == BuildState.PENDING:
        return "⏳"  # Hourglass while the pipeline runs
    elif state == BuildState.SUCCESS:
        return "✅"
    elif state == BuildState.FAILURE:
        return "❌"
    elif state == BuildState.STOPPED:
        return "🛑"  # Stopped by someone, not failed
    else:
        return "❔"


def get_card_color(state: str, build: Optional[BuildStatusRecord] = None) -> int:
    """Get the embed color for a card: closure first, then build state."""
    if state == PR_MERGED:
        return 0x9B59B6  # Purple
    elif state == PR_DECLINED:
        return 0xE74C3C  # Red
    elif build is not None and build.state == BuildState.FAILURE:
        return 0xE67E22  # Orange
    else:
        return 0x2ECC71  # Green


def format_link(text: str, url: str) -> str:
    """Format a Discord masked link, or plain text when there is no URL."""
    if url:
        return f"[{text or url}]({url})"
    return text


def format_build_label(build: Optional[BuildStatusRecord]) -> str:
    """Format the build field of a card: emoji plus linked build name."""
    if build is None:
        return EMPTY_FIELD
    name = build.name or build.raw_state or build.state.value
    return f"{get_build_icon(build.state)} {format_link(name, build.url)}"


def build_status_reply(build: BuildStatusRecord) -> str:
    """Format the thread reply posted when a build changes state."""
    icon = get_build_icon(build.state)
    if build.state == BuildState.PENDING:
        prefix = f"{icon} Build started"
    elif build.state == BuildState.SUCCESS:
        prefix = f"{icon} Build passed"
    elif build.state == BuildState.FAILURE:
        prefix = f"{icon} Build failed"
    elif build.state == BuildState.STOPPED:
        prefix = f"{icon} Build stopped"
    else:
        prefix = f"{icon} Build: {build.raw_state or build.state.value}"

    if build.url:
        return f"{prefix}: {format_link(build.name, build.url)}"
    if build.name:
        return f"{prefix}: {build.name}"
    return prefix


def format_approval_status(approver_labels: Sequence[str]) -> str:
    """Status line listing approvers in approval order, empty if none."""
    if not approver_labels:
        return ""
    return "✅ Approved by " + ", ".join(approver_labels)


def format_closed_status(state: str, actor_label: str) -> str:
    """Terminal status line for a merged or declined PR."""
    if state == PR_MERGED:
        return f"🎉 Merged by {actor_label}"
    elif state == PR_DECLINED:
        return f"❌ Declined by {actor_label}"
    return ""


def truncate_text(text: str, max_length: int = COMMENT_MAX_CHARS) -> str:
    """Truncate text to max_length characters and add an ellipsis if needed."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + ELLIPSIS
