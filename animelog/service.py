# animelog/service.py
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse
from datetime import datetime
import logging
import re

from animelog.models import (
    AnimeGroup, AnimeLink, Entry, ProfileLink, User, now_iso,
    ROLE_ADMIN, ROLE_NORMAL, ENTRY_START, ENTRY_UPDATE, ENTRY_COMPLETE, ENTRY_TYPES,
)
from animelog.repo import RepoError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
LINK_KINDS = ("anime", "manga")

# Exceptions
class ValidationError(Exception):
    """Raised when input or business validation fails."""
    pass

class AuthError(Exception):
    """Raised for missing, invalid or expired credentials."""
    pass

class ForbiddenError(Exception):
    """Raised when an authenticated caller may not perform an action."""
    pass

class NotFoundError(Exception):
    """Raised when an entity is not found."""
    pass

# ---- validation helpers ----
def _require_text(value, what: str, min_len: int = 1) -> str:
    if not isinstance(value, str) or len(value.strip()) < min_len:
        if min_len > 1:
            raise ValidationError(f"{what} must be at least {min_len} characters")
        raise ValidationError(f"{what} required")
    return value.strip()

def _require_url(value, what: str) -> str:
    url = _require_text(value, what)
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"invalid url for {what}")
    return url

def _require_time(value, what: str) -> str:
    t = _require_text(value, what)
    if not TIME_RE.match(t):
        raise ValidationError(f"{what} must be HH:MM")
    return t

def _require_date(value, what: str) -> str:
    d = _require_text(value, what)
    try:
        datetime.fromisoformat(d)
    except ValueError:
        raise ValidationError(f"{what} must be an ISO date")
    return d

def _field(raw, name: str):
    if isinstance(raw, dict):
        return raw.get(name)
    return getattr(raw, name, None)

def parse_anime_links(raw: Optional[Iterable]) -> List[AnimeLink]:
    out = []
    for item in raw or []:
        out.append(AnimeLink(label=_require_text(_field(item, "label"), "link label"),
                             url=_require_url(_field(item, "url"), "link url")))
    return out

def parse_profile_links(raw: Optional[Iterable]) -> List[ProfileLink]:
    out = []
    for item in raw or []:
        out.append(ProfileLink(name=_require_text(_field(item, "name"), "site name"),
                               url=_require_url(_field(item, "url"), "site url")))
    return out

class AnimeService:
    """
    Business logic for accounts, anime groups and entry submission.
    The service expects a repository object (SqliteRepo or InMemoryRepo from
    animelog.repo) and a credential service (animelog.auth.CredentialService).
    """

    def __init__(self, repo, credentials, min_thoughts_length: int = 10,
                 min_start_thoughts_length: int = 1):
        self.repo = repo
        self.credentials = credentials
        self.min_thoughts_length = min_thoughts_length
        self.min_start_thoughts_length = min_start_thoughts_length
        logger.debug("AnimeService initialized with repo %s", type(repo).__name__)

    # ---- Accounts ----
    def _check_username(self, username) -> str:
        return _require_text(username, "username", MIN_USERNAME_LENGTH)

    def _check_email(self, email) -> str:
        e = _require_text(email, "email").lower()
        if not EMAIL_RE.match(e):
            raise ValidationError("invalid email address")
        return e

    def _check_password(self, password) -> str:
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        return password

    def register(self, username: str, email: str, password: str) -> Tuple[str, User]:
        """
        Create an account and return (token, user).
        The first account ever registered becomes the admin.
        """
        username = self._check_username(username)
        email = self._check_email(email)
        self._check_password(password)
        if self.repo.get_user_by_email(email) or self.repo.get_user_by_username(username):
            logger.warning("register: duplicate username=%s or email", username)
            raise ValidationError("user already exists")
        role = ROLE_ADMIN if self.repo.count_users() == 0 else ROLE_NORMAL
        u = User(id=None, username=username, email=email,
                 password_hash=self.credentials.hash(password), role=role)
        try:
            created = self.repo.create_user(u)
        except RepoError:
            raise ValidationError("user already exists")
        logger.info("Registered user id=%s username=%s role=%s", created.id, created.username, created.role)
        return self.credentials.issue_token(created.id), created

    def login(self, email: str, password: str) -> Tuple[str, User]:
        if not isinstance(email, str) or not isinstance(password, str):
            raise AuthError("invalid credentials")
        u = self.repo.get_user_by_email(email.strip().lower())
        if not u or not self.credentials.verify(password, u.password_hash):
            logger.warning("login: invalid credentials for %s", email)
            raise AuthError("invalid credentials")
        logger.info("User id=%s logged in", u.id)
        return self.credentials.issue_token(u.id), u

    def authenticate(self, token: str) -> User:
        """Resolve a bearer token to its user or raise AuthError."""
        user_id = self.credentials.resolve_token(token)
        u = self.repo.get_user(user_id)
        if not u:
            raise AuthError("user not found")
        return u

    def get_user(self, user_id: int) -> User:
        """Get a user by id or raise NotFoundError."""
        u = self.repo.get_user(user_id)
        if not u:
            logger.debug("get_user: user %s not found", user_id)
            raise NotFoundError("user not found")
        return u

    def update_profile(self, user_id: int, username: Optional[str] = None,
                       email: Optional[str] = None) -> User:
        u = self.get_user(user_id)
        if username is not None:
            username = self._check_username(username)
            other = self.repo.get_user_by_username(username)
            if other and other.id != user_id:
                raise ValidationError("username already in use")
            u.username = username
        if email is not None:
            email = self._check_email(email)
            other = self.repo.get_user_by_email(email)
            if other and other.id != user_id:
                raise ValidationError("email already in use")
            u.email = email
        try:
            self.repo.update_user(u)
        except RepoError:
            raise ValidationError("username or email already in use")
        logger.info("Updated profile for user id=%s", user_id)
        return u

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        u = self.get_user(user_id)
        if not self.credentials.verify(current_password or "", u.password_hash):
            logger.warning("change_password: wrong current password for user %s", user_id)
            raise AuthError("current password is incorrect")
        self._check_password(new_password)
        u.password_hash = self.credentials.hash(new_password)
        self.repo.update_user(u)
        logger.info("Changed password for user id=%s", user_id)

    def set_profile_links(self, user_id: int, anime_sites=None, manga_sites=None) -> User:
        """Replace both profile link lists; a missing list becomes empty."""
        u = self.get_user(user_id)
        u.anime_sites = parse_profile_links(anime_sites)
        u.manga_sites = parse_profile_links(manga_sites)
        self.repo.update_user(u)
        logger.info("Set profile links for user id=%s (%d anime, %d manga)",
                    user_id, len(u.anime_sites), len(u.manga_sites))
        return u

    def _links_of_kind(self, u: User, kind: str) -> List[ProfileLink]:
        if kind not in LINK_KINDS:
            raise ValidationError("link kind must be 'anime' or 'manga'")
        return u.anime_sites if kind == "anime" else u.manga_sites

    def add_profile_link(self, user_id: int, kind: str, name: str, url: str) -> User:
        u = self.get_user(user_id)
        links = self._links_of_kind(u, kind)
        links.extend(parse_profile_links([{"name": name, "url": url}]))
        self.repo.update_user(u)
        logger.info("Added %s profile link for user id=%s", kind, user_id)
        return u

    def remove_profile_link(self, user_id: int, kind: str, index: int) -> User:
        u = self.get_user(user_id)
        links = self._links_of_kind(u, kind)
        if index < 0 or index >= len(links):
            raise NotFoundError("profile link not found")
        links.pop(index)
        self.repo.update_user(u)
        logger.info("Removed %s profile link %s for user id=%s", kind, index, user_id)
        return u

    # ---- Anime groups ----
    def create_group(self, owner_id: int, anime_name: str, genre: str, total_episodes,
                     links, thoughts: str, start_date: str, start_time: str,
                     cover_image: Optional[str] = None) -> AnimeGroup:
        """
        Start tracking an anime. The group is created private with a single
        pending "start" entry.
        """
        self.get_user(owner_id)
        name = _require_text(anime_name, "anime name")
        genre = _require_text(genre, "genre")
        if isinstance(total_episodes, bool) or not isinstance(total_episodes, int) or total_episodes < 1:
            raise ValidationError("total episodes must be at least 1")
        parsed_links = parse_anime_links(links)
        if not parsed_links:
            raise ValidationError("at least one anime link is required")
        entry = Entry(id=None, type=ENTRY_START,
                      thoughts=_require_text(thoughts, "thoughts", self.min_start_thoughts_length),
                      date=_require_date(start_date, "start date"),
                      start_time=_require_time(start_time, "start time"))
        if cover_image is not None and not isinstance(cover_image, str):
            raise ValidationError("cover image must be text")
        g = AnimeGroup(id=None, user_id=owner_id, anime_name=name, genre=genre,
                       total_episodes=total_episodes, links=parsed_links, entries=[entry],
                       cover_image=cover_image or None)
        created = self.repo.create_group(g)
        logger.info("Created anime group id=%s name=%s owner=%s", created.id, created.anime_name, owner_id)
        return created

    def get_group(self, group_id: int) -> AnimeGroup:
        g = self.repo.get_group(group_id)
        if not g:
            logger.debug("get_group: group %s not found", group_id)
            raise NotFoundError("anime group not found")
        return g

    def get_group_for_viewer(self, group_id: int, viewer: User) -> AnimeGroup:
        """
        Owners and admins see every entry; anyone else only sees approved
        entries of a group that has some.
        """
        g = self.get_group(group_id)
        if viewer.is_admin or viewer.id == g.user_id:
            return g
        view = g.public_view()
        if not view.entries:
            raise NotFoundError("anime group not found")
        return view

    def list_my_groups(self, user_id: int) -> List[AnimeGroup]:
        return self.repo.list_groups(user_id=user_id)

    def list_public_groups_for_user(self, user_id: int) -> List[AnimeGroup]:
        """Groups of one user as the public sees them, newest first."""
        views = [g.public_view() for g in self.repo.list_groups(user_id=user_id, public_only=True)]
        return [v for v in views if v.entries]

    # ---- Entry submission ----
    def submit_entry(self, group_id: int, caller_id: int, entry_type: str, thoughts: str,
                     date: Optional[str] = None, end_time: Optional[str] = None) -> AnimeGroup:
        """
        Append a pending entry to a group owned by the caller.
        Start entries only exist as the seed of create_group.
        """
        if entry_type not in ENTRY_TYPES or entry_type == ENTRY_START:
            raise ValidationError("entry type must be 'update' or 'complete'")
        g = self.get_group(group_id)
        if g.user_id != caller_id:
            logger.warning("submit_entry: user %s is not the owner of group %s", caller_id, group_id)
            raise ForbiddenError("not authorized")
        text = _require_text(thoughts, "thoughts", self.min_thoughts_length)
        if entry_type == ENTRY_COMPLETE:
            entry = Entry(id=None, type=ENTRY_COMPLETE, thoughts=text,
                          date=_require_date(date, "end date"),
                          end_time=_require_time(end_time, "end time"))
        else:
            entry = Entry(id=None, type=ENTRY_UPDATE, thoughts=text, date=date or now_iso())
        try:
            self.repo.append_entry(group_id, entry)
        except RepoError:
            # group removed by a rejection since it was read
            logger.warning("submit_entry: group %s vanished before append", group_id)
            raise NotFoundError("anime group not found")
        g.entries.append(entry)
        logger.info("Appended %s entry id=%s to group %s", entry.type, entry.id, group_id)
        return g

    def add_update(self, group_id: int, caller_id: int, thoughts: str) -> AnimeGroup:
        return self.submit_entry(group_id, caller_id, ENTRY_UPDATE, thoughts)

    def complete_group(self, group_id: int, caller_id: int, thoughts: str,
                       end_date: str, end_time: str) -> AnimeGroup:
        return self.submit_entry(group_id, caller_id, ENTRY_COMPLETE, thoughts,
                                 date=end_date, end_time=end_time)
