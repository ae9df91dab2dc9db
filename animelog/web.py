# animelog/web.py
from dataclasses import asdict
from functools import wraps
import logging

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from animelog.feed import FeedService
from animelog.moderation import ModerationService
from animelog.models import AnimeGroup, User
from animelog.repo import RepoError
from animelog.service import AnimeService, AuthError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__, url_prefix="/api")  # blueprint name = 'api'

def register_routes(app, service: AnimeService, moderation: ModerationService, feed: FeedService):
    """
    Register blueprint and ensure the services are in app.config.
    Call this once during app creation (run.create_app does this).
    """
    app.config.setdefault("SERVICE", service)
    app.config.setdefault("MODERATION", moderation)
    app.config.setdefault("FEED", feed)
    app.register_blueprint(bp)
    logger.debug("Registered blueprint 'api' and injected services")

def _error(message: str, status: int):
    return jsonify({"message": message}), status

def register_error_handlers(app):
    """Centralized handlers for service exceptions."""
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        logger.warning("ValidationError: %s", e)
        return _error(str(e), 400)

    @app.errorhandler(AuthError)
    def handle_auth_error(e):
        logger.warning("AuthError: %s", e)
        return _error(str(e), 401)

    @app.errorhandler(ForbiddenError)
    def handle_forbidden(e):
        logger.warning("ForbiddenError: %s", e)
        return _error(str(e), 403)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        logger.info("NotFoundError: %s", e)
        return _error(str(e), 404)

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return _error(e.description or e.name, e.code)

    @app.errorhandler(RepoError)
    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error")
        return _error("server error", 500)

# helpers to get service instances
def current_service() -> AnimeService:
    return current_app.config["SERVICE"]

def current_moderation() -> ModerationService:
    return current_app.config["MODERATION"]

def current_feed() -> FeedService:
    return current_app.config["FEED"]

def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data

# -----------------------
# Serialization
# -----------------------
def profile_links_json(u: User) -> dict:
    return {"anime_sites": [asdict(l) for l in u.anime_sites],
            "manga_sites": [asdict(l) for l in u.manga_sites]}

def user_json(u: User) -> dict:
    """The account as its owner sees it; never includes the password hash."""
    return {"id": u.id, "username": u.username, "email": u.email, "role": u.role,
            "profile_links": profile_links_json(u), "created_at": u.created_at}

def public_user_json(u: User) -> dict:
    return {"id": u.id, "username": u.username, "profile_links": profile_links_json(u),
            "created_at": u.created_at}

def group_json(grp: AnimeGroup) -> dict:
    out = asdict(grp)
    out["status"] = grp.status
    return out

# -----------------------
# Auth decorators
# -----------------------
def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            raise AuthError("no token provided")
        g.user = current_service().authenticate(header[len("Bearer "):].strip())
        return view(*args, **kwargs)
    return wrapper

def admin_required(view):
    @login_required
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not g.user.is_admin:
            raise ForbiddenError("admin access required")
        return view(*args, **kwargs)
    return wrapper

# -----------------------
# Health
# -----------------------
@bp.route("/health")
def health():
    return jsonify({"status": "ok"})

# -----------------------
# Auth
# -----------------------
@bp.route("/auth/register", methods=["POST"])
def register():
    data = _body()
    token, user = current_service().register(data.get("username"), data.get("email"), data.get("password"))
    return jsonify({"token": token, "user": user_json(user)}), 201

@bp.route("/auth/login", methods=["POST"])
def login():
    data = _body()
    token, user = current_service().login(data.get("email"), data.get("password"))
    return jsonify({"token": token, "user": user_json(user)})

# -----------------------
# Anime groups
# -----------------------
@bp.route("/anime/my-anime")
@login_required
def my_anime():
    groups = current_service().list_my_groups(g.user.id)
    return jsonify([group_json(x) for x in groups])

@bp.route("/anime/feed")
def feed():
    limit = request.args.get("limit", default=current_feed().max_limit, type=int)
    items = current_feed().get_feed(limit=limit)
    out = []
    for item in items:
        data = group_json(item.group)
        if item.owner:
            data["user"] = {"id": item.owner.id, "username": item.owner.username,
                            "profile_links": profile_links_json(item.owner)}
        else:
            data["user"] = {"id": None, "username": "Unknown",
                            "profile_links": {"anime_sites": [], "manga_sites": []}}
        out.append(data)
    return jsonify(out)

@bp.route("/anime/user/<int:user_id>")
def groups_by_user(user_id: int):
    groups = current_service().list_public_groups_for_user(user_id)
    return jsonify([group_json(x) for x in groups])

@bp.route("/anime/<int:group_id>")
@login_required
def get_group(group_id: int):
    return jsonify(group_json(current_service().get_group_for_viewer(group_id, g.user)))

@bp.route("/anime", methods=["POST"])
@login_required
def create_group():
    data = _body()
    grp = current_service().create_group(
        g.user.id,
        anime_name=data.get("anime_name"),
        genre=data.get("genre"),
        total_episodes=data.get("total_episodes"),
        links=data.get("links"),
        thoughts=data.get("thoughts"),
        start_date=data.get("start_date"),
        start_time=data.get("start_time"),
        cover_image=data.get("cover_image"),
    )
    return jsonify(group_json(grp)), 201

@bp.route("/anime/<int:group_id>/update", methods=["POST"])
@login_required
def add_update(group_id: int):
    data = _body()
    grp = current_service().add_update(group_id, g.user.id, data.get("thoughts"))
    return jsonify(group_json(grp))

@bp.route("/anime/<int:group_id>/complete", methods=["POST"])
@login_required
def complete(group_id: int):
    data = _body()
    grp = current_service().complete_group(group_id, g.user.id, data.get("thoughts"),
                                           data.get("end_date"), data.get("end_time"))
    return jsonify(group_json(grp))

# -----------------------
# Users
# -----------------------
@bp.route("/users/me")
@login_required
def me():
    return jsonify({"user": user_json(g.user)})

@bp.route("/users/me", methods=["PUT"])
@login_required
def update_me():
    data = _body()
    user = current_service().update_profile(g.user.id, username=data.get("username"),
                                            email=data.get("email"))
    return jsonify({"user": user_json(user)})

@bp.route("/users/me/password", methods=["PUT"])
@login_required
def change_password():
    data = _body()
    current_service().change_password(g.user.id, data.get("current_password"), data.get("new_password"))
    return jsonify({"message": "password updated"})

@bp.route("/users/profile-links", methods=["PUT"])
@login_required
def set_profile_links():
    data = _body()
    user = current_service().set_profile_links(g.user.id, data.get("anime_sites"), data.get("manga_sites"))
    return jsonify({"user": user_json(user)})

@bp.route("/users/profile-links/<kind>", methods=["POST"])
@login_required
def add_profile_link(kind: str):
    data = _body()
    user = current_service().add_profile_link(g.user.id, kind, data.get("name"), data.get("url"))
    return jsonify({"user": user_json(user)}), 201

@bp.route("/users/profile-links/<kind>/<int:index>", methods=["DELETE"])
@login_required
def remove_profile_link(kind: str, index: int):
    user = current_service().remove_profile_link(g.user.id, kind, index)
    return jsonify({"user": user_json(user)})

def _directory_json(item) -> dict:
    data = public_user_json(item.user)
    latest = item.latest_group
    data["latest_anime"] = ({"anime_name": latest.anime_name, "cover_image": latest.cover_image}
                            if latest else None)
    return data

@bp.route("/users/public")
def public_users():
    items = current_feed().get_user_directory(request.args.get("q"))
    return jsonify([_directory_json(x) for x in items])

@bp.route("/users/public/<int:user_id>")
def public_user(user_id: int):
    data = _directory_json(current_feed().get_public_user(user_id))
    data["anime_groups"] = [group_json(x) for x in current_service().list_public_groups_for_user(user_id)]
    return jsonify(data)

# -----------------------
# Admin
# -----------------------
@bp.route("/admin/stats")
@admin_required
def admin_stats():
    return jsonify(current_moderation().compute_stats())

@bp.route("/admin/pending-entries")
@admin_required
def pending_entries():
    out = []
    for p in current_moderation().list_pending_entries():
        out.append({
            "id": f"{p.group_id}-{p.entry.id}",
            "anime_group_id": p.group_id,
            "anime_name": p.anime_name,
            "user_id": p.user_id,
            "username": p.username,
            "entry_index": p.entry_index,
            "entry_id": p.entry.id,
            "entry": asdict(p.entry),
            "group_created_at": p.group_created_at,
        })
    return jsonify(out)

@bp.route("/admin/approve-entry/<int:group_id>/<int:index>", methods=["POST"])
@admin_required
def approve_entry(group_id: int, index: int):
    grp = current_moderation().approve_entry(group_id, index)
    return jsonify({"message": "entry approved", "anime_group": group_json(grp)})

@bp.route("/admin/groups/<int:group_id>/entries/<int:entry_id>/approve", methods=["POST"])
@admin_required
def approve_entry_by_id(group_id: int, entry_id: int):
    grp = current_moderation().approve_entry_by_id(group_id, entry_id)
    return jsonify({"message": "entry approved", "anime_group": group_json(grp)})

def _rejected(group_id: int, group_deleted: bool):
    if group_deleted:
        return jsonify({"message": "entry rejected and group deleted (no entries left)",
                        "group_deleted": True, "anime_group": None})
    grp = current_service().get_group(group_id)
    return jsonify({"message": "entry rejected", "group_deleted": False,
                    "anime_group": group_json(grp)})

@bp.route("/admin/reject-entry/<int:group_id>/<int:index>", methods=["POST"])
@admin_required
def reject_entry(group_id: int, index: int):
    return _rejected(group_id, current_moderation().reject_entry(group_id, index))

@bp.route("/admin/groups/<int:group_id>/entries/<int:entry_id>/reject", methods=["POST"])
@admin_required
def reject_entry_by_id(group_id: int, entry_id: int):
    return _rejected(group_id, current_moderation().reject_entry_by_id(group_id, entry_id))

@bp.route("/admin/users/<int:user_id>", methods=["DELETE"])
@admin_required
def delete_user(user_id: int):
    removed = current_moderation().delete_user(user_id)
    return jsonify({"message": "user deleted", "groups_removed": removed})
