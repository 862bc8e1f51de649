import atexit
import logging
import secrets
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from backends import build_backend
from defaults import ARTICLES, CONFIG, EMPTY_UNDERSTANDING, PUSH_SUBSCRIPTIONS, UNDERSTANDING, USERS
from errors import AppError, AuthError, ConflictError, NotFoundError, ValidationError
from settings import Settings
from store import DurableStore
from uploads import LocalUploadStore

logger = logging.getLogger(__name__)

ARTICLE_FIELDS = ("title", "category", "description", "authors", "institution", "publicationDate")
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_session() -> str:
    return f"session_{secrets.token_urlsafe(16)}"


SECRET_FIELDS = ("password", "passwordHash")


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k not in SECRET_FIELDS}


def upgrade_legacy_passwords(store: DurableStore) -> int:
    """
    Snapshots written by the first version of the backend kept passwords in
    clear text under `password`. Hash them in place so those users can still
    log in and the clear text never reaches another snapshot.
    """
    upgraded = 0
    for user in store.get(USERS):
        if "password" not in user:
            continue
        record = {k: v for k, v in user.items() if k != "password"}
        if not record.get("passwordHash") and user["password"]:
            record["passwordHash"] = generate_password_hash(str(user["password"]))
        store.replace(USERS, user["id"], record)
        upgraded += 1
    if upgraded:
        logger.info("🔐 Hashed %d legacy clear-text password(s)", upgraded)
    return upgraded


def _payload() -> Dict[str, Any]:
    """Form fields for multipart requests, otherwise the JSON body."""
    if request.files or request.form:
        return request.form.to_dict()
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _json_materials(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise ValidationError("materials must be a list")
    materials = []
    for item in value:
        if not isinstance(item, dict) or not item.get("name") or not item.get("url"):
            raise ValidationError("Each material needs a name and a url")
        materials.append({"name": item["name"], "url": item["url"], "size": item.get("size", 0)})
    return materials


def notify_subscribers(store: DurableStore, title: str, body: str) -> int:
    """Push delivery is not wired up yet; log who would have been notified."""
    subscriptions = store.get(PUSH_SUBSCRIPTIONS)
    logger.info("🔔 Would notify %d subscriber(s): %s: %s", len(subscriptions), title, body)
    return len(subscriptions)


def create_app(store: Optional[DurableStore] = None, settings: Optional[Settings] = None,
               uploads: Optional[LocalUploadStore] = None) -> Flask:
    settings = settings or Settings()
    if store is None:
        store = DurableStore(build_backend(settings), write_through=settings.write_through)
    uploads = uploads or LocalUploadStore(settings.upload_dir)

    upgrade_legacy_passwords(store)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
    app.extensions["store"] = store
    CORS(app)

    # -------------------------
    # Errors
    # -------------------------
    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception("🔥 ERROR in %s %s", request.method, request.path)
        return jsonify({"error": f"Server error: {e}"}), 500

    # -------------------------
    # Health
    # -------------------------
    @app.get("/health")
    def health():
        counts = store.counts()
        return jsonify({
            "status": "ok",
            "message": "Server is running",
            "storage": store.backend.describe(),
            "articles": counts[ARTICLES],
            "users": counts[USERS],
            "dirty": store.dirty,
            "lastSnapshot": store.last_snapshot_at.isoformat() if store.last_snapshot_at else None,
        })

    # -------------------------
    # Auth & users
    # -------------------------
    @app.post("/auth/register")
    def register():
        data = _payload()
        name = str(data.get("name") or "").strip()
        email = str(data.get("email") or "").strip()
        password = str(data.get("password") or "")

        if not name or not email or not password:
            raise ValidationError("Please fill in all fields")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")

        user = {
            "name": name,
            "email": email,
            "passwordHash": generate_password_hash(password),
            "createdAt": _now(),
        }
        try:
            user["id"] = store.insert(USERS, user, unique_on="email")
        except ConflictError:
            raise ConflictError("Email already registered")

        logger.info("✅ User registered: %s", email)
        return jsonify({"user": _public_user(user), "session": _new_session()}), 201

    @app.post("/auth/login")
    def login():
        data = _payload()
        email = str(data.get("email") or "").strip()
        password = str(data.get("password") or "")
        if not email or not password:
            raise ValidationError("Please enter email and password")

        user = store.find(USERS, email=email)
        if user is None or not check_password_hash(user.get("passwordHash", ""), password):
            raise AuthError("Invalid email or password")
        return jsonify({"user": _public_user(user), "session": _new_session()})

    @app.get("/users")
    def list_users():
        return jsonify([_public_user(u) for u in store.get(USERS)])

    @app.delete("/users/<user_id>")
    def delete_user(user_id):
        if not store.delete(USERS, user_id):
            raise NotFoundError("User not found")
        logger.info("✅ User deleted: %s", user_id)
        return jsonify({"message": "User deleted successfully"})

    # -------------------------
    # Articles
    # -------------------------
    @app.get("/articles")
    def list_articles():
        return jsonify(store.get(ARTICLES))

    @app.get("/articles/<article_id>")
    def get_article(article_id):
        article = store.get_by_id(ARTICLES, article_id)
        if article is None:
            raise NotFoundError("Article not found")
        return jsonify(article)

    @app.post("/articles")
    def create_article():
        data = _payload()
        if not data.get("title") or not data.get("category"):
            raise ValidationError("Title and category are required")

        article = {field: data.get(field, "") for field in ARTICLE_FIELDS}
        pdf = request.files.get("pdf")
        if pdf and pdf.filename:
            stored = uploads.save_pdf(pdf)
            article.update(pdfName=stored["name"], pdfUrl=stored["url"], pdfFile=True)
        else:
            article.update(pdfName="", pdfUrl="", pdfFile=False)
        article["createdAt"] = _now()

        article["id"] = store.insert(ARTICLES, article)
        logger.info("✅ Article created: %s (total %d)", article["id"], store.counts()[ARTICLES])
        notify_subscribers(store, "New article", article["title"])
        return jsonify(article), 201

    @app.put("/articles/<article_id>")
    def update_article(article_id):
        data = _payload()
        changes = {field: data[field] for field in ARTICLE_FIELDS if field in data}
        for required in ("title", "category"):
            if required in changes and not changes[required]:
                raise ValidationError("Title and category cannot be empty")

        if store.get_by_id(ARTICLES, article_id) is None:
            raise NotFoundError("Article not found")

        pdf = request.files.get("pdf")
        if pdf and pdf.filename:
            stored = uploads.save_pdf(pdf)
            changes.update(pdfName=stored["name"], pdfUrl=stored["url"], pdfFile=True)

        article = store.update(ARTICLES, article_id, changes)
        if article is None:
            raise NotFoundError("Article not found")
        return jsonify(article)

    @app.delete("/articles/<article_id>")
    def delete_article(article_id):
        if not store.delete(ARTICLES, article_id):
            raise NotFoundError("Article not found")
        return jsonify({"message": "Article deleted successfully"})

    # -------------------------
    # Config
    # -------------------------
    @app.get("/config")
    def get_config():
        return jsonify(store.get(CONFIG))

    @app.post("/config")
    def save_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Config must be a JSON object")
        config = store.update(CONFIG, None, data)
        logger.info("✅ Config saved")
        return jsonify(config)

    # -------------------------
    # Understanding materials
    # -------------------------
    @app.get("/understanding")
    def list_understanding():
        return jsonify(store.get(UNDERSTANDING))

    @app.get("/understanding/<article_id>")
    def get_understanding(article_id):
        return jsonify(store.get_by_id(UNDERSTANDING, article_id) or dict(EMPTY_UNDERSTANDING))

    @app.post("/understanding/<article_id>")
    def save_understanding(article_id):
        data = _payload()
        files = request.files.getlist("materials")
        if files:
            materials = uploads.save_materials(files)
        else:
            materials = _json_materials(data.get("materials", []))

        record = store.put(UNDERSTANDING, article_id, {
            "summary": data.get("summary") or "",
            "materials": materials,
        })
        return jsonify(record)

    # -------------------------
    # Push notifications
    # -------------------------
    @app.post("/push/subscribe")
    def subscribe():
        data = _payload()
        endpoint = data.get("endpoint")
        if not endpoint:
            raise ValidationError("Subscription endpoint is required")
        try:
            store.insert(PUSH_SUBSCRIPTIONS, {"endpoint": endpoint, "keys": data.get("keys") or {}})
        except ConflictError:
            logger.debug("Endpoint already subscribed: %s", endpoint)
        return jsonify({"message": "Subscribed successfully"})

    @app.post("/push/unsubscribe")
    def unsubscribe():
        data = _payload()
        endpoint = data.get("endpoint")
        if not endpoint:
            raise ValidationError("Subscription endpoint is required")
        store.delete(PUSH_SUBSCRIPTIONS, endpoint)
        return jsonify({"message": "Unsubscribed successfully"})

    # -------------------------
    # Stored files
    # -------------------------
    @app.get("/uploads/<path:filename>")
    def serve_upload(filename):
        return send_from_directory(uploads.root.resolve(), filename)

    return app


def _exit_on_signal(signum, frame):
    logger.info("Received signal %s, exiting", signum)
    sys.exit(0)


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = DurableStore(build_backend(settings), write_through=settings.write_through)
    store.hydrate()
    store.start(settings.flush_interval)
    atexit.register(store.close, settings.shutdown_flush_timeout)
    signal.signal(signal.SIGTERM, _exit_on_signal)

    app = create_app(store, settings)
    counts = store.counts()
    logger.info("🚀 MUK-BIOMEDSSA backend running on port %d", settings.port)
    logger.info("☁️  Storage: %s (write-through: %s)", store.backend.describe(), settings.write_through)
    logger.info("📚 Articles: %d  👥 Users: %d", counts[ARTICLES], counts[USERS])
    app.run(host="0.0.0.0", port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
