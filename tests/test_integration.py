import sqlite3
import pytest

from animelog.auth import CredentialService
from animelog.feed import FeedService
from animelog.moderation import ModerationService
from animelog.repo import SqliteRepo, RepoError
from animelog.models import User
from animelog.service import AnimeService, ValidationError, NotFoundError

LINKS = [{"label": "HIDIVE", "url": "https://www.hidive.com/tv/x"}]

# --- Fixtures ------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path):
    """Temporary SQLite database path"""
    p = tmp_path / "test_db.sqlite"
    return str(p)

@pytest.fixture
def services(db_path):
    """Initialize SQLite schema and return repo + services"""
    repo = SqliteRepo(db_path)
    repo.init_schema()
    svc = AnimeService(repo, CredentialService("int-secret", hash_method="pbkdf2:sha256:1000"))
    return repo, svc, ModerationService(repo), FeedService(repo)

def start(svc, owner_id, name="Vinland Saga"):
    return svc.create_group(owner_id, name, "Historical", 24, LINKS, "here we go", "2024-04-01", "19:00")

# --- Integration tests ---------------------------------------------------

def test_user_roundtrip_with_profile_links(services):
    repo, svc, _, _ = services
    _, u = svc.register("int_alice", "Alice@Example.com", "secret1")
    svc.set_profile_links(u.id, [{"name": "AniList", "url": "https://anilist.co/user/alice"}],
                          [{"name": "MangaUpdates", "url": "https://www.mangaupdates.com/alice"}])
    got = repo.get_user(u.id)
    assert got.email == "alice@example.com"
    assert got.anime_sites[0].url == "https://anilist.co/user/alice"
    assert got.manga_sites[0].name == "MangaUpdates"

def test_unique_constraints_surface_as_repo_error(services):
    repo, svc, _, _ = services
    svc.register("dup", "dup@example.com", "secret1")
    with pytest.raises(RepoError):
        repo.create_user(User(None, "dup", "other@example.com", "x"))

def test_group_and_entries_persist_in_order(services):
    repo, svc, _, _ = services
    _, u = svc.register("int_bob", "bob@example.com", "secret1")
    g = start(svc, u.id)
    svc.add_update(g.id, u.id, "thorfinn grows up")
    svc.complete_group(g.id, u.id, "great season overall", "2024-05-01", "22:45")
    got = repo.get_group(g.id)
    assert [e.type for e in got.entries] == ["start", "update", "complete"]
    assert got.entries[0].start_time == "19:00"
    assert got.entries[2].end_time == "22:45"
    assert got.links[0].label == "HIDIVE"
    assert got.status == "completed"

def test_persistence_across_service_instances(tmp_path):
    """Data created in one service instance must persist for another."""
    db_file = str(tmp_path / "persist.sqlite")
    repo1 = SqliteRepo(db_file)
    repo1.init_schema()
    svc1 = AnimeService(repo1, CredentialService("k", hash_method="pbkdf2:sha256:1000"))
    _, u = svc1.register("persist_user", "persist@example.com", "secret1")
    start(svc1, u.id)

    repo2 = SqliteRepo(db_file)
    svc2 = AnimeService(repo2, CredentialService("k", hash_method="pbkdf2:sha256:1000"))
    token, again = svc2.login("persist@example.com", "secret1")
    assert again.id == u.id
    assert len(svc2.list_my_groups(u.id)) == 1

def test_approve_and_reject_update_visibility(services):
    repo, svc, mod, _ = services
    _, u = svc.register("vis_user", "vis@example.com", "secret1")
    g = start(svc, u.id)
    svc.add_update(g.id, u.id, "episode six was great")
    mod.approve_entry(g.id, 0)
    assert repo.get_group(g.id).is_public is True
    mod.reject_entry(g.id, 1)
    assert repo.get_group(g.id).is_public is True
    mod.reject_entry(g.id, 0)
    with pytest.raises(NotFoundError):
        svc.get_group(g.id)

def test_reject_last_approved_clears_flag_in_db(services, db_path):
    repo, svc, mod, _ = services
    _, u = svc.register("flag_user", "flag@example.com", "secret1")
    g = start(svc, u.id)
    svc.add_update(g.id, u.id, "pending update text")
    mod.approve_entry(g.id, 0)
    mod.reject_entry(g.id, 0)
    with sqlite3.connect(db_path) as c:
        row = c.execute("SELECT is_public FROM anime_groups WHERE id = ?", (g.id,)).fetchone()
    assert row[0] == 0

def test_entry_ids_stay_stable_after_rejection(services):
    repo, svc, mod, _ = services
    _, u = svc.register("stable", "stable@example.com", "secret1")
    g = start(svc, u.id)
    svc.add_update(g.id, u.id, "first update text")
    svc.add_update(g.id, u.id, "second update text")
    ids = [e.id for e in repo.get_group(g.id).entries]
    mod.reject_entry_by_id(g.id, ids[0])
    assert [e.id for e in repo.get_group(g.id).entries] == ids[1:]
    mod.approve_entry_by_id(g.id, ids[2])
    entries = repo.get_group(g.id).entries
    assert [e.admin_approved for e in entries] == [False, True]

def test_delete_user_cascade_in_db(services):
    repo, svc, mod, _ = services
    svc.register("root", "root@example.com", "secret1")
    _, u = svc.register("gone", "gone@example.com", "secret1")
    start(svc, u.id, "A")
    start(svc, u.id, "B")
    assert mod.delete_user(u.id) == 2
    assert repo.get_user(u.id) is None
    assert repo.list_groups() == []

def test_feed_and_directory_from_db(services):
    repo, svc, mod, feed = services
    _, admin = svc.register("root", "root@example.com", "secret1")
    _, u = svc.register("watcher", "watcher@example.com", "secret1")
    g1 = start(svc, u.id, "First")
    g2 = start(svc, u.id, "Second")
    mod.approve_entry(g1.id, 0)
    items = feed.get_feed()
    assert [i.group.id for i in items] == [g1.id]
    directory = feed.get_user_directory("watch")
    assert len(directory) == 1 and directory[0].latest_group.id == g2.id
    with pytest.raises(NotFoundError):
        feed.get_public_user(999)

def test_stats_from_db(services):
    repo, svc, mod, _ = services
    stats = mod.compute_stats()
    assert stats["completion_rate"] == 0 and stats["total_users"] == 0
    _, u = svc.register("stat", "stat@example.com", "secret1")
    g = start(svc, u.id)
    svc.complete_group(g.id, u.id, "done and dusted now", "2024-06-01", "20:00")
    stats = mod.compute_stats()
    assert stats["completion_rate"] == 100.0
    assert stats["pending_entries"] == 2

def test_update_profile_duplicate_email_in_db(services):
    repo, svc, _, _ = services
    svc.register("one", "one@example.com", "secret1")
    _, two = svc.register("two", "two@example.com", "secret1")
    with pytest.raises(ValidationError):
        svc.update_profile(two.id, email="ONE@example.com")

def test_directory_search_treats_underscore_literally(services):
    _, svc, _, feed = services
    svc.register("user_a", "a@example.com", "secret1")
    svc.register("userxa", "x@example.com", "secret1")
    svc.register("pct", "100%fan@example.com", "secret1")
    assert [i.user.username for i in feed.get_user_directory("user_a")] == ["user_a"]
    assert [i.user.username for i in feed.get_user_directory("%")] == ["pct"]

def test_update_on_group_rejected_meanwhile_is_not_found(services, monkeypatch):
    repo, svc, mod, _ = services
    _, u = svc.register("racer", "racer@example.com", "secret1")
    g = start(svc, u.id)
    stale = repo.get_group(g.id)
    mod.reject_entry(g.id, 0)
    monkeypatch.setattr(svc, "get_group", lambda group_id: stale)
    with pytest.raises(NotFoundError, match="anime group not found"):
        svc.add_update(g.id, u.id, "typed before the rejection")
