import json
from datetime import timedelta
import pytest
from run import create_app, load_config, ConfigError, DEFAULT_CFG
from animelog.auth import CredentialService
from animelog.repo import InMemoryRepo, RepoError
from animelog.models import AnimeGroup, Entry, User
from animelog.service import AuthError

# ---------- configuration ----------
def test_load_config_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("ANIMELOG_SECRET_KEY", raising=False)
    cfg = load_config(str(tmp_path / "missing.json"))
    assert cfg["min_thoughts_length"] == DEFAULT_CFG["min_thoughts_length"]
    assert "secret_key" not in cfg

def test_load_config_file_then_env(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"secret_key": "from-file", "feed_limit": 20}), encoding="utf-8")
    monkeypatch.setenv("ANIMELOG_SECRET_KEY", "from-env")
    cfg = load_config(str(path))
    assert cfg["feed_limit"] == 20
    assert cfg["secret_key"] == "from-env"

def test_load_config_broken_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))

def test_create_app_requires_secret(tmp_path, monkeypatch):
    monkeypatch.delenv("ANIMELOG_SECRET_KEY", raising=False)
    monkeypatch.setenv("ANIMELOG_CONFIG", str(tmp_path / "missing.json"))
    with pytest.raises(ConfigError):
        create_app({"database": str(tmp_path / "x.sqlite")})

def test_create_app_uses_configured_thoughts_minimum(tmp_path):
    app = create_app({"secret_key": "s", "database": str(tmp_path / "x.sqlite"),
                      "min_thoughts_length": 3})
    assert app.config["SERVICE"].min_thoughts_length == 3

# ---------- credentials ----------
def test_credentials_hash_and_verify():
    creds = CredentialService("k", hash_method="pbkdf2:sha256:1000")
    h = creds.hash("secret1")
    assert creds.verify("secret1", h)
    assert not creds.verify("secret2", h)
    assert not creds.verify("secret1", "")

def test_token_roundtrip_and_expiry():
    creds = CredentialService("k")
    assert creds.resolve_token(creds.issue_token(42)) == 42
    expired = CredentialService("k", token_ttl=timedelta(seconds=-10))
    with pytest.raises(AuthError):
        creds.resolve_token(expired.issue_token(42))

def test_token_signed_with_other_key_rejected():
    with pytest.raises(AuthError):
        CredentialService("a").resolve_token(CredentialService("b").issue_token(1))

def test_empty_secret_refused():
    with pytest.raises(ValueError):
        CredentialService("")

# ---------- in-memory repo branches ----------
def test_inmemory_repo_returns_copies():
    repo = InMemoryRepo()
    u = repo.create_user(User(None, "copy", "copy@example.com", "h"))
    g = repo.create_group(AnimeGroup(None, u.id, "Show", "Drama", 3,
                                     entries=[Entry(None, "start", "hi", "2024-01-01", "10:00")]))
    fetched = repo.get_group(g.id)
    fetched.entries[0].admin_approved = True
    assert repo.get_group(g.id).entries[0].admin_approved is False

def test_inmemory_repo_unique_users():
    repo = InMemoryRepo()
    repo.create_user(User(None, "same", "same@example.com", "h"))
    with pytest.raises(RepoError):
        repo.create_user(User(None, "same", "other@example.com", "h"))

def test_inmemory_reject_unknown_entry():
    repo = InMemoryRepo()
    u = repo.create_user(User(None, "rej", "rej@example.com", "h"))
    g = repo.create_group(AnimeGroup(None, u.id, "Show", "Drama", 3,
                                     entries=[Entry(None, "start", "hi", "2024-01-01", "10:00")]))
    assert repo.reject_entry(g.id, 999) is None
    assert repo.reject_entry(999, 1) is None
    assert repo.approve_entry(g.id, 999) is False
