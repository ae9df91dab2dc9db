# animelog/models.py
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional

ROLE_ADMIN = "admin"
ROLE_NORMAL = "normal"

ENTRY_START = "start"
ENTRY_UPDATE = "update"
ENTRY_COMPLETE = "complete"
ENTRY_TYPES = (ENTRY_START, ENTRY_UPDATE, ENTRY_COMPLETE)

STATUS_WATCHING = "watching"
STATUS_COMPLETED = "completed"

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

@dataclass
class ProfileLink:
    name: str
    url: str

@dataclass
class AnimeLink:
    label: str
    url: str

@dataclass
class User:
    id: Optional[int]
    username: str
    email: str
    password_hash: str
    role: str = ROLE_NORMAL
    anime_sites: List[ProfileLink] = field(default_factory=list)
    manga_sites: List[ProfileLink] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

@dataclass
class Entry:
    id: Optional[int]
    type: str  # "start", "update", "complete"
    thoughts: str
    date: str
    start_time: Optional[str] = None  # HH:MM, start entries only
    end_time: Optional[str] = None  # HH:MM, complete entries only
    admin_approved: bool = False

@dataclass
class AnimeGroup:
    id: Optional[int]
    user_id: int
    anime_name: str
    genre: str
    total_episodes: int
    links: List[AnimeLink] = field(default_factory=list)
    entries: List[Entry] = field(default_factory=list)
    cover_image: Optional[str] = None
    is_public: bool = False
    created_at: str = field(default_factory=now_iso)

    @property
    def status(self) -> str:
        """Derived from the type of the last entry."""
        if self.entries and self.entries[-1].type == ENTRY_COMPLETE:
            return STATUS_COMPLETED
        return STATUS_WATCHING

    def approved_entries(self) -> List[Entry]:
        return [e for e in self.entries if e.admin_approved]

    def public_view(self) -> "AnimeGroup":
        """Copy of the group carrying only approved entries."""
        return replace(self, links=list(self.links),
                       entries=[replace(e) for e in self.approved_entries()])
