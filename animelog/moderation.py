# animelog/moderation.py
from dataclasses import dataclass
from typing import Dict, List
import logging

from animelog.models import AnimeGroup, Entry, STATUS_COMPLETED
from animelog.service import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

@dataclass
class PendingEntry:
    group_id: int
    anime_name: str
    user_id: int
    username: str
    entry_index: int
    entry: Entry
    group_created_at: str

class ModerationService:
    """Review queue, approve / reject actions, account deletion and stats.

    Index based calls resolve the index to a stable entry id against a fresh
    read and act on that id, so a concurrent rejection cannot redirect them.
    """
    def __init__(self, repo):
        self.repo = repo

    def _get_group(self, group_id: int) -> AnimeGroup:
        g = self.repo.get_group(group_id)
        if not g:
            raise NotFoundError("anime group not found")
        return g

    def _entry_id_at(self, group_id: int, index: int) -> int:
        g = self._get_group(group_id)
        if index < 0 or index >= len(g.entries):
            logger.debug("entry index %s out of range for group %s", index, group_id)
            raise NotFoundError("invalid entry index")
        return g.entries[index].id

    # ---- review queue ----
    def list_pending_entries(self) -> List[PendingEntry]:
        """
        Every unapproved entry, oldest group first and in timeline order
        within a group.
        """
        usernames: Dict[int, str] = {}
        out = []
        for g in self.repo.list_groups(newest_first=False):
            if g.user_id not in usernames:
                owner = self.repo.get_user(g.user_id)
                usernames[g.user_id] = owner.username if owner else "Unknown"
            for index, e in enumerate(g.entries):
                if not e.admin_approved:
                    out.append(PendingEntry(g.id, g.anime_name, g.user_id, usernames[g.user_id],
                                            index, e, g.created_at))
        return out

    # ---- approve / reject ----
    def approve_entry_by_id(self, group_id: int, entry_id: int) -> AnimeGroup:
        self._get_group(group_id)
        if not self.repo.approve_entry(group_id, entry_id):
            raise NotFoundError("entry not found")
        logger.info("Approved entry id=%s in group %s", entry_id, group_id)
        return self._get_group(group_id)

    def approve_entry(self, group_id: int, index: int) -> AnimeGroup:
        """Approve the entry at index; the group becomes public."""
        return self.approve_entry_by_id(group_id, self._entry_id_at(group_id, index))

    def reject_entry_by_id(self, group_id: int, entry_id: int) -> bool:
        """
        Remove an entry. Returns True when this emptied the group and the
        group itself was deleted.
        """
        self._get_group(group_id)
        remaining = self.repo.reject_entry(group_id, entry_id)
        if remaining is None:
            raise NotFoundError("entry not found")
        if remaining == 0:
            logger.info("Rejected entry id=%s; group %s deleted (no entries left)", entry_id, group_id)
            return True
        logger.info("Rejected entry id=%s in group %s (%d left)", entry_id, group_id, remaining)
        return False

    def reject_entry(self, group_id: int, index: int) -> bool:
        return self.reject_entry_by_id(group_id, self._entry_id_at(group_id, index))

    # ---- accounts ----
    def delete_user(self, user_id: int) -> int:
        """Delete a normal user and all their groups. Returns the number of groups removed."""
        u = self.repo.get_user(user_id)
        if not u:
            raise NotFoundError("user not found")
        if u.is_admin:
            logger.warning("delete_user refused for admin id=%s", user_id)
            raise ValidationError("cannot delete admin accounts")
        removed = self.repo.delete_groups_for_user(user_id)
        self.repo.delete_user(user_id)
        logger.info("Deleted user id=%s and %d anime groups", user_id, removed)
        return removed

    # ---- statistics ----
    def compute_stats(self) -> dict:
        groups = self.repo.list_groups()
        total_groups = len(groups)
        pending = sum(1 for g in groups for e in g.entries if not e.admin_approved)
        completed = sum(1 for g in groups if g.status == STATUS_COMPLETED)
        rate = (completed / total_groups) * 100 if total_groups else 0
        return {
            "total_users": self.repo.count_users(),
            "total_anime_groups": total_groups,
            "pending_entries": pending,
            "completion_rate": rate,
        }
