import json
import os
import logging
from datetime import timedelta
from flask import Flask
from animelog.auth import CredentialService
from animelog.feed import FeedService
from animelog.moderation import ModerationService
from animelog.repo import SqliteRepo
from animelog.service import AnimeService
from animelog.web import register_routes, register_error_handlers

DEFAULT_CFG = {
    "database": "data/animelog.db",
    "debug": False,
    "host": "127.0.0.1",
    "port": 5000,
    "logging_level": "INFO",
    "token_ttl_days": 7,
    "password_hash_method": "scrypt",
    "min_thoughts_length": 10,
    "min_start_thoughts_length": 1,
    "feed_limit": 100,
}

# environment variable -> config key
ENV_OVERRIDES = {
    "ANIMELOG_SECRET_KEY": "secret_key",
    "ANIMELOG_DATABASE": "database",
    "ANIMELOG_LOGGING_LEVEL": "logging_level",
}

class ConfigError(RuntimeError):
    pass

def load_config(path=None):
    """
    Defaults, then the JSON file (config.json or $ANIMELOG_CONFIG), then
    environment overrides. There is no default secret key.
    """
    path = path or os.environ.get("ANIMELOG_CONFIG", "config.json")
    merged = DEFAULT_CFG.copy()
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged.update(json.load(f))
        except (OSError, ValueError) as e:
            raise ConfigError(f"failed to read {path}: {e}") from e
    for env, key in ENV_OVERRIDES.items():
        if os.environ.get(env):
            merged[key] = os.environ[env]
    return merged

def configure_logging(level_name: str, debug: bool = False):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter werkzeug when not debugging
    logging.getLogger("werkzeug").setLevel(logging.INFO if debug else logging.WARNING)

def create_app(overrides=None):
    cfg = load_config()
    cfg.update(overrides or {})
    if not cfg.get("secret_key"):
        raise ConfigError("secret_key is not configured (set ANIMELOG_SECRET_KEY or add it to config.json)")

    configure_logging(cfg.get("logging_level", "INFO"), cfg.get("debug", False))
    logger = logging.getLogger(__name__)
    logger.info("Starting app with config: %s",
                {k: v for k, v in cfg.items() if k not in ("database", "secret_key")})

    app = Flask(__name__)
    app.secret_key = cfg["secret_key"]
    app.config["ANIMELOG"] = cfg
    repo = SqliteRepo(cfg["database"])
    repo.init_schema()
    credentials = CredentialService(cfg["secret_key"],
                                    token_ttl=timedelta(days=int(cfg["token_ttl_days"])),
                                    hash_method=cfg["password_hash_method"])
    service = AnimeService(repo, credentials,
                           min_thoughts_length=int(cfg["min_thoughts_length"]),
                           min_start_thoughts_length=int(cfg["min_start_thoughts_length"]))
    moderation = ModerationService(repo)
    feed = FeedService(repo, max_limit=int(cfg["feed_limit"]))

    register_routes(app, service, moderation, feed)
    register_error_handlers(app)
    return app

if __name__ == "__main__":
    app = create_app()
    cfg = app.config["ANIMELOG"]
    app.run(host=cfg.get("host", "127.0.0.1"), port=cfg.get("port", 5000), debug=cfg.get("debug", False))
