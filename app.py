from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import datetime, timedelta

import redis
from flask import Flask, current_app, jsonify
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix

from errors import ConfigurationError, register_error_handlers
from extensions import db, limiter
from storage import STORE_EXTENSION_KEY, build_store, get_store


logger = logging.getLogger(__name__)


def _is_production() -> bool:
    return bool(os.getenv("RENDER")) or os.getenv("FLASK_ENV") == "production"


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _database_url():
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        if _is_production():
            # Fail fast: never silently fall back to a local database in production.
            return None
        db_url = "sqlite:///whitelist.db"
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def load_config(app: Flask) -> None:
    # --- Ensure SECRET_KEY for sessions (task progress + captured referral code) ---
    secret_key = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY")
    if not secret_key:
        # Safe dev fallback to prevent 500s locally. Set SECRET_KEY in production.
        secret_key = "dev-secret-key-change-me"
    if _is_production() and secret_key.startswith("dev-secret-key-change"):
        raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")
    app.config["SECRET_KEY"] = secret_key

    # Cookie flags (production serves over HTTPS).
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    if _is_production():
        app.config["SESSION_COOKIE_SECURE"] = True
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "24")))

    # Storage
    app.config["WHITELIST_STORE"] = os.getenv("WHITELIST_STORE", "sql")
    app.config["WHITELIST_DATA_DIR"] = os.getenv("WHITELIST_DATA_DIR", os.path.join(app.root_path, "data"))
    app.config["SQLALCHEMY_DATABASE_URI"] = _database_url()
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

    # Whitelist gate
    app.config["WHITELIST_REQUIRE_TASKS"] = _env_flag("WHITELIST_REQUIRE_TASKS")
    app.config["TASK_VERIFY_DELAY_SECONDS"] = int(os.getenv("TASK_VERIFY_DELAY_SECONDS", 15))
    app.config["X_PROFILE_URL"] = os.getenv("X_PROFILE_URL", "https://x.com/COPE_on_BNB")
    app.config["TELEGRAM_CHANNEL_URL"] = os.getenv("TELEGRAM_CHANNEL_URL", "https://t.me/COPEonBNB")
    app.config["PUBLIC_BASE_URL"] = os.getenv("PUBLIC_BASE_URL", "").strip()

    # Telegram Bot API
    app.config["TELEGRAM_BOT_TOKEN"] = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    app.config["TELEGRAM_CHAT_ID"] = os.getenv("TELEGRAM_CHAT_ID", "@COPEonBNB")
    app.config["TELEGRAM_TIMEOUT_SECONDS"] = float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", 10))

    # Rate limiting
    # - In production, set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
    # - Defaults to in-memory storage for simplicity.
    app.config["RATELIMIT_STORAGE_URI"] = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")
    app.config["RATELIMIT_DEFAULT"] = "200 per day;50 per hour"
    app.config["RATELIMIT_ENABLED"] = _env_flag("RATE_LIMIT_ENABLED", "1")


def _init_server_side_sessions(app: Flask) -> None:
    # Optional: server-side sessions (allows true revocation when using a shared store like Redis).
    # Enable by setting USE_SERVER_SIDE_SESSIONS=1 and SESSION_REDIS_URL (or REDIS_URL).
    if not _env_flag("USE_SERVER_SIDE_SESSIONS"):
        return
    from flask_session import Session

    redis_url = os.getenv("SESSION_REDIS_URL") or os.getenv("REDIS_URL")
    if not redis_url:
        raise RuntimeError("USE_SERVER_SIDE_SESSIONS=1 but SESSION_REDIS_URL/REDIS_URL is not set")
    app.config["SESSION_TYPE"] = "redis"
    app.config["SESSION_REDIS"] = redis.from_url(redis_url)
    app.config["SESSION_USE_SIGNER"] = True
    app.config["SESSION_PERMANENT"] = True
    app.config["SESSION_KEY_PREFIX"] = os.getenv("SESSION_KEY_PREFIX", "cope:")
    Session(app)


def _init_store(app: Flask) -> None:
    """Pick the single storage backend for this process.

    On misconfiguration the app still starts, but every store-backed endpoint
    answers 500 (ConfigurationError) and /api/health reports unhealthy.
    """
    try:
        store = build_store(app.config)
    except ConfigurationError as e:
        logger.error("Whitelist storage disabled: %s", e.message)
        return

    if store.name == "sql":
        db.init_app(app)
        with app.app_context():
            db.create_all()

    app.extensions[STORE_EXTENSION_KEY] = store
    logger.info("Whitelist storage: %s", store.name)


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    load_config(app)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Client IP resolution: trust a single proxy hop in production.
    if _is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    _init_server_side_sessions(app)
    CORS(app)
    limiter.init_app(app)
    register_error_handlers(app)
    _init_store(app)

    # Performance-minded headers (safe defaults)
    @app.after_request
    def add_default_headers(resp):
        # avoid caching dynamic responses by default (prevents user-specific caching issues)
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.route("/api/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        try:
            store = get_store()
            store.ping()
        except Exception as e:
            return jsonify({
                "success": False,
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat(),
            }), 500
        return jsonify({
            "success": True,
            "status": "healthy",
            "store": store.name,
            "timestamp": datetime.utcnow().isoformat(),
            "version": current_app.config.get("APP_VERSION", "1.0.0"),
        })

    from tasks import tasks_api
    from whitelist_api import whitelist_api

    app.register_blueprint(tasks_api)
    app.register_blueprint(whitelist_api)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_ENV", "development") == "development"
    application = create_app()

    print("=" * 60)
    print("COPE Whitelist & Leaderboard")
    print("=" * 60)
    print(f"Storage: {application.config['WHITELIST_STORE']}")
    print(f"Leaderboard: http://localhost:{port}/api/leaderboard")
    print(f"Health: http://localhost:{port}/api/health")
    print("=" * 60)

    application.run(host="0.0.0.0", port=port, debug=debug)
