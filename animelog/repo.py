# animelog/repo.py
import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, replace
from typing import Dict, List, Optional

from animelog.models import AnimeGroup, AnimeLink, Entry, ProfileLink, User

# --- Exceptions ---
class RepoError(Exception):
    pass

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'normal',
    profile_links TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anime_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    anime_name TEXT NOT NULL,
    genre TEXT NOT NULL,
    total_episodes INTEGER NOT NULL CHECK (total_episodes >= 1),
    links TEXT NOT NULL DEFAULT '[]',
    cover_image TEXT,
    is_public INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_groups_user ON anime_groups(user_id);
CREATE INDEX IF NOT EXISTS idx_groups_created ON anime_groups(created_at);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('start', 'update', 'complete')),
    thoughts TEXT NOT NULL,
    date TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT,
    admin_approved INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (group_id) REFERENCES anime_groups(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_entries_group ON entries(group_id, id);
"""

# is_public is a cached projection of the entries; this is the only place it is derived
SYNC_VISIBILITY = """
UPDATE anime_groups
SET is_public = EXISTS (SELECT 1 FROM entries WHERE group_id = ? AND admin_approved = 1)
WHERE id = ?
"""

def _links_to_json(links) -> str:
    return json.dumps([asdict(l) for l in links])

def _profile_links_to_json(u: User) -> str:
    return json.dumps({"anime_sites": [asdict(l) for l in u.anime_sites],
                       "manga_sites": [asdict(l) for l in u.manga_sites]})

def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

def _row_to_user(r) -> User:
    links = json.loads(r["profile_links"] or "{}")
    return User(r["id"], r["username"], r["email"], r["password_hash"], r["role"],
                [ProfileLink(**l) for l in links.get("anime_sites", [])],
                [ProfileLink(**l) for l in links.get("manga_sites", [])],
                r["created_at"])

def _row_to_entry(r) -> Entry:
    return Entry(r["id"], r["type"], r["thoughts"], r["date"], r["start_time"],
                 r["end_time"], bool(r["admin_approved"]))

# --- SQLite repo ---
class SqliteRepo:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if os.path.dirname(db_path):
            os.makedirs(os.path.dirname(db_path), exist_ok=True)

    @contextmanager
    def conn(self, immediate: bool = False):
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                # take the write lock before reading so moderation read-modify-write is serialized
                con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except sqlite3.IntegrityError as e:
            con.rollback()
            raise RepoError(str(e)) from e
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.conn() as c:
            c.executescript(SCHEMA)

    # -- Users --
    def create_user(self, user: User) -> User:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO users (username, email, password_hash, role, profile_links, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user.username, user.email, user.password_hash, user.role,
                 _profile_links_to_json(user), user.created_at))
            user.id = cur.lastrowid
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _row_to_user(r) if r else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            return _row_to_user(r) if r else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
            return _row_to_user(r) if r else None

    def list_users(self, q: Optional[str] = None) -> List[User]:
        """
        List users ordered by username, optionally filtered by a
        case-insensitive substring of username or email.
        """
        sql = "SELECT * FROM users"
        params = []
        if q:
            # literal substring match: % and _ in the term are not wildcards
            pattern = "%" + _escape_like(q) + "%"
            sql += " WHERE username LIKE ? ESCAPE '\\' OR email LIKE ? ESCAPE '\\'"
            params += [pattern, pattern]
        sql += " ORDER BY username COLLATE NOCASE"
        with self.conn() as c:
            rows = c.execute(sql, tuple(params)).fetchall()
            return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with self.conn() as c:
            return c.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def update_user(self, user: User) -> None:
        with self.conn() as c:
            c.execute("UPDATE users SET username=?, email=?, password_hash=?, role=?, profile_links=? WHERE id=?",
                      (user.username, user.email, user.password_hash, user.role,
                       _profile_links_to_json(user), user.id))

    def delete_user(self, user_id: int) -> None:
        with self.conn() as c:
            c.execute("DELETE FROM users WHERE id = ?", (user_id,))

    # -- Anime groups --
    def _load_group(self, c, r) -> AnimeGroup:
        rows = c.execute("SELECT * FROM entries WHERE group_id = ? ORDER BY id", (r["id"],)).fetchall()
        return AnimeGroup(r["id"], r["user_id"], r["anime_name"], r["genre"], r["total_episodes"],
                          [AnimeLink(**l) for l in json.loads(r["links"] or "[]")],
                          [_row_to_entry(e) for e in rows],
                          r["cover_image"], bool(r["is_public"]), r["created_at"])

    def _insert_entry(self, c, group_id: int, e: Entry) -> Entry:
        cur = c.execute(
            "INSERT INTO entries (group_id, type, thoughts, date, start_time, end_time, admin_approved) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (group_id, e.type, e.thoughts, e.date, e.start_time, e.end_time, int(e.admin_approved)))
        e.id = cur.lastrowid
        return e

    def create_group(self, group: AnimeGroup) -> AnimeGroup:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO anime_groups (user_id, anime_name, genre, total_episodes, links, cover_image, is_public, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (group.user_id, group.anime_name, group.genre, group.total_episodes,
                 _links_to_json(group.links), group.cover_image, int(group.is_public), group.created_at))
            group.id = cur.lastrowid
            for e in group.entries:
                self._insert_entry(c, group.id, e)
            c.execute(SYNC_VISIBILITY, (group.id, group.id))
            group.is_public = any(e.admin_approved for e in group.entries)
            return group

    def get_group(self, group_id: int) -> Optional[AnimeGroup]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM anime_groups WHERE id = ?", (group_id,)).fetchone()
            return self._load_group(c, r) if r else None

    def list_groups(self, user_id: Optional[int] = None, public_only: bool = False,
                    newest_first: bool = True, limit: Optional[int] = None) -> List[AnimeGroup]:
        """
        List groups ordered by creation time (ties broken by id), optionally
        restricted to one owner and/or to public groups, bounded by limit.
        """
        direction = "DESC" if newest_first else "ASC"
        params = []
        where = []
        if user_id is not None:
            where.append("user_id = ?"); params.append(user_id)
        if public_only:
            where.append("is_public = 1")
        sql = "SELECT * FROM anime_groups"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY created_at {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"; params.append(limit)
        with self.conn() as c:
            rows = c.execute(sql, tuple(params)).fetchall()
            return [self._load_group(c, r) for r in rows]

    def latest_group_for_user(self, user_id: int) -> Optional[AnimeGroup]:
        groups = self.list_groups(user_id=user_id, limit=1)
        return groups[0] if groups else None

    def delete_groups_for_user(self, user_id: int) -> int:
        with self.conn() as c:
            cur = c.execute("DELETE FROM anime_groups WHERE user_id = ?", (user_id,))
            return cur.rowcount

    # -- Entries --
    def append_entry(self, group_id: int, entry: Entry) -> Entry:
        with self.conn() as c:
            return self._insert_entry(c, group_id, entry)

    def approve_entry(self, group_id: int, entry_id: int) -> bool:
        """Mark one entry approved. Returns False when the entry is not in the group."""
        with self.conn(immediate=True) as c:
            cur = c.execute("UPDATE entries SET admin_approved = 1 WHERE id = ? AND group_id = ?",
                            (entry_id, group_id))
            if cur.rowcount == 0:
                return False
            c.execute(SYNC_VISIBILITY, (group_id, group_id))
            return True

    def reject_entry(self, group_id: int, entry_id: int) -> Optional[int]:
        """
        Remove one entry. Returns the number of entries left in the group
        (0 means the group was deleted too), or None if the entry was not found.
        """
        with self.conn(immediate=True) as c:
            cur = c.execute("DELETE FROM entries WHERE id = ? AND group_id = ?", (entry_id, group_id))
            if cur.rowcount == 0:
                return None
            remaining = c.execute("SELECT COUNT(*) FROM entries WHERE group_id = ?", (group_id,)).fetchone()[0]
            if remaining == 0:
                c.execute("DELETE FROM anime_groups WHERE id = ?", (group_id,))
            else:
                c.execute(SYNC_VISIBILITY, (group_id, group_id))
            return remaining

# --- In-memory repo (simple, used for unit tests) ---
class InMemoryRepo:
    def __init__(self):
        self._users: Dict[int, User] = {}
        self._groups: Dict[int, AnimeGroup] = {}
        self._next = {"user": 1, "group": 1, "entry": 1}

    # helper to assign id
    def _assign(self, kind: str) -> int:
        nid = self._next[kind]
        self._next[kind] += 1
        return nid

    # stored objects are copied on the way in and out, like rows
    @staticmethod
    def _copy_user(u: User) -> User:
        return replace(u, anime_sites=list(u.anime_sites), manga_sites=list(u.manga_sites))

    @staticmethod
    def _copy_group(g: AnimeGroup) -> AnimeGroup:
        return replace(g, links=list(g.links), entries=[replace(e) for e in g.entries])

    @staticmethod
    def _sync_visibility(g: AnimeGroup) -> None:
        g.is_public = any(e.admin_approved for e in g.entries)

    # Users
    def init_schema(self): pass

    def create_user(self, u: User) -> User:
        for other in self._users.values():
            if other.username == u.username or other.email == u.email:
                raise RepoError("UNIQUE constraint failed: users")
        u.id = self._assign("user")
        self._users[u.id] = self._copy_user(u)
        return u

    def get_user(self, uid: int):
        u = self._users.get(uid)
        return self._copy_user(u) if u else None

    def get_user_by_email(self, email: str):
        for u in self._users.values():
            if u.email == email:
                return self._copy_user(u)
        return None

    def get_user_by_username(self, username: str):
        for u in self._users.values():
            if u.username == username:
                return self._copy_user(u)
        return None

    def list_users(self, q: Optional[str] = None):
        res = list(self._users.values())
        if q:
            ql = q.lower()
            res = [u for u in res if ql in u.username.lower() or ql in u.email.lower()]
        res.sort(key=lambda u: u.username.lower())
        return [self._copy_user(u) for u in res]

    def count_users(self): return len(self._users)

    def update_user(self, u: User):
        for other in self._users.values():
            if other.id != u.id and (other.username == u.username or other.email == u.email):
                raise RepoError("UNIQUE constraint failed: users")
        self._users[u.id] = self._copy_user(u)

    def delete_user(self, uid: int):
        self._users.pop(uid, None)
        self.delete_groups_for_user(uid)

    # Anime groups
    def create_group(self, g: AnimeGroup) -> AnimeGroup:
        g.id = self._assign("group")
        for e in g.entries:
            e.id = self._assign("entry")
        self._sync_visibility(g)
        self._groups[g.id] = self._copy_group(g)
        return g

    def get_group(self, gid: int):
        g = self._groups.get(gid)
        return self._copy_group(g) if g else None

    def list_groups(self, user_id: Optional[int] = None, public_only: bool = False,
                    newest_first: bool = True, limit: Optional[int] = None):
        res = list(self._groups.values())
        if user_id is not None:
            res = [g for g in res if g.user_id == user_id]
        if public_only:
            res = [g for g in res if g.is_public]
        res.sort(key=lambda g: (g.created_at, g.id), reverse=newest_first)
        if limit is not None:
            res = res[:limit]
        return [self._copy_group(g) for g in res]

    def latest_group_for_user(self, user_id: int):
        groups = self.list_groups(user_id=user_id, limit=1)
        return groups[0] if groups else None

    def delete_groups_for_user(self, uid: int) -> int:
        doomed = [gid for gid, g in self._groups.items() if g.user_id == uid]
        for gid in doomed:
            self._groups.pop(gid, None)
        return len(doomed)

    # Entries
    def append_entry(self, gid: int, e: Entry) -> Entry:
        g = self._groups.get(gid)
        if not g:
            raise RepoError("FOREIGN KEY constraint failed")
        e.id = self._assign("entry")
        g.entries.append(replace(e))
        return e

    def approve_entry(self, gid: int, eid: int) -> bool:
        g = self._groups.get(gid)
        if not g:
            return False
        for e in g.entries:
            if e.id == eid:
                e.admin_approved = True
                self._sync_visibility(g)
                return True
        return False

    def reject_entry(self, gid: int, eid: int) -> Optional[int]:
        g = self._groups.get(gid)
        if not g:
            return None
        kept = [e for e in g.entries if e.id != eid]
        if len(kept) == len(g.entries):
            return None
        g.entries = kept
        if not kept:
            self._groups.pop(gid, None)
        else:
            self._sync_visibility(g)
        return len(kept)
