import os

import requests
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .errors import register_error_handlers
from .extensions import db, migrate, csrf, login_manager, limiter
from .security import init_security
from .observability import init_logging, init_sentry
from .services.billing import build_client

def create_app(config_overrides=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Never silently run stage/prod without shared limiter storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    if config_overrides:
        app.config.update(config_overrides)

    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("APP_BASE_URL")
        _require("STRIPE_SECRET_KEY")
        _require("STRIPE_WEBHOOK_SECRET")

    init_logging(app)
    init_sentry(app)

    # HTTPS, HSTS & CSP only in staging/production
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    # Process-wide handles, built once per app
    app.extensions["stripe_client"] = build_client(app.config.get("STRIPE_SECRET_KEY"))
    if app.extensions["stripe_client"] is None:
        app.logger.warning("Stripe secret key missing; billing features will not work")
    http = requests.Session()
    http.headers["User-Agent"] = "autoflow-integrations"
    app.extensions["oauth_http"] = http

    from . import identity  # noqa: F401  (registers Flask-Login loaders)
    from . import models  # noqa: F401

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.integrations import bp as integrations_bp
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.subscription import bp as subscription_bp
    from .blueprints.billing import bp as billing_bp

    app.register_blueprint(integrations_bp, url_prefix="/api/integrations")
    app.register_blueprint(webhooks_bp, url_prefix="/api/stripe")
    app.register_blueprint(billing_bp, url_prefix="/api/stripe")
    app.register_blueprint(subscription_bp, url_prefix="/api/subscription")

    register_error_handlers(app)

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error"}), 500

    # CSRF error handler (clean 400 instead of generic 500)
    from flask_wtf.csrf import CSRFError
    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return jsonify({"error": "csrf_failed"}), 400

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited"}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app
