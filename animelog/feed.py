# animelog/feed.py
from dataclasses import dataclass
from typing import List, Optional
import logging

from animelog.models import AnimeGroup, User
from animelog.service import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_FEED_LIMIT = 100

@dataclass
class FeedItem:
    group: AnimeGroup  # approved entries only
    owner: Optional[User]  # None when the owner no longer exists

@dataclass
class DirectoryItem:
    user: User
    latest_group: Optional[AnimeGroup]

class FeedService:
    """Read-only public views built from moderation state."""

    def __init__(self, repo, max_limit: int = DEFAULT_FEED_LIMIT):
        self.repo = repo
        self.max_limit = max_limit

    def get_feed(self, limit: int = DEFAULT_FEED_LIMIT) -> List[FeedItem]:
        """
        Newest public groups first, each carrying only its approved entries.
        Groups left without approved entries are dropped.
        """
        limit = max(1, min(limit, self.max_limit))
        owners = {}
        out = []
        for g in self.repo.list_groups(public_only=True, limit=limit):
            view = g.public_view()
            if not view.entries:
                continue
            if g.user_id not in owners:
                owners[g.user_id] = self.repo.get_user(g.user_id)
            out.append(FeedItem(view, owners[g.user_id]))
        logger.debug("get_feed: %d items (limit %d)", len(out), limit)
        return out

    def get_user_directory(self, search: Optional[str] = None) -> List[DirectoryItem]:
        q = search.strip() if search else None
        return [DirectoryItem(u, self.repo.latest_group_for_user(u.id))
                for u in self.repo.list_users(q=q or None)]

    def get_public_user(self, user_id: int) -> DirectoryItem:
        u = self.repo.get_user(user_id)
        if not u:
            raise NotFoundError("user not found")
        return DirectoryItem(u, self.repo.latest_group_for_user(user_id))
