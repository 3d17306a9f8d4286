import logging
import sqlite3
from typing import Iterable, List

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Turns Bitbucket display names into Discord mentions."""

    def __init__(self, store):
        self.store = store

    def resolve(self, display_name: str) -> str:
        """Return "<@id>" for a linked user, or the display name in italics.

        An unlinked user is the normal case, and a failed lookup is treated
        the same way, so this never raises.
        """
        try:
            user_id = self.store.get_discord_user(display_name)
        except sqlite3.Error as e:
            logger.warning("Failed to resolve Bitbucket user %r: %s", display_name, e)
            user_id = None

        if user_id:
            return f"<@{user_id}>"
        return f"*{display_name}*"

    def resolve_all(self, display_names: Iterable[str]) -> List[str]:
        return [self.resolve(name) for name in display_names]
