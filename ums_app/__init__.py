import os
import secrets
from datetime import timedelta
from flask import Flask, session, request
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_caching import Cache
from werkzeug.exceptions import HTTPException
from flask_limiter.errors import RateLimitExceeded

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local")
        token = (session.get("rlid") or "")
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"

limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _env_bool(name, default="false"):
    return (os.environ.get(name, default) or "").strip().lower() == "true"


def create_app(overrides=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Session Timeout: 30 minutes
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(minutes=30)

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"

    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()
    app.config["PUBLIC_DOMAIN"] = os.environ.get("PUBLIC_DOMAIN", "http://localhost:5173")

    # Payment gateways
    app.config["CASHFREE_APP_ID"] = os.environ.get("CASHFREE_APP_ID")
    app.config["CASHFREE_SECRET_KEY"] = os.environ.get("CASHFREE_SECRET_KEY")
    app.config["CASHFREE_BASE_URL"] = os.environ.get("CASHFREE_BASE_URL", "https://sandbox.cashfree.com/pg")
    app.config["CASHFREE_API_VERSION"] = os.environ.get("CASHFREE_API_VERSION", "2022-09-01")
    app.config["CASHFREE_WEBHOOK_SECRET"] = os.environ.get("CASHFREE_WEBHOOK_SECRET", os.environ.get("CASHFREE_SECRET_KEY"))
    app.config["RAZORPAY_KEY_ID"] = os.environ.get("RAZORPAY_KEY_ID")
    app.config["RAZORPAY_KEY_SECRET"] = os.environ.get("RAZORPAY_KEY_SECRET")
    app.config["RAZORPAY_WEBHOOK_SECRET"] = os.environ.get("RAZORPAY_WEBHOOK_SECRET")
    app.config["RAZORPAY_BASE_URL"] = os.environ.get("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    app.config["GATEWAY_TIMEOUT"] = int(os.environ.get("GATEWAY_TIMEOUT", "30"))

    # Custom (UPI/QR) submissions expire unless reviewed
    app.config["CUSTOM_PAYMENT_TTL_MINUTES"] = int(os.environ.get("CUSTOM_PAYMENT_TTL_MINUTES", "5"))
    app.config["PAYMENT_SWEEP_INTERVAL"] = int(os.environ.get("PAYMENT_SWEEP_INTERVAL", "60"))

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "ums.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["RATELIMIT_ENABLED"] = not _env_bool("RATELIMIT_DISABLED")
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")

    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)
    # Auth: Flask-Login
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @app.before_request
    def ensure_rate_key():
        if not session.get("rlid"):
            session["rlid"] = secrets.token_urlsafe(16)

    @login_manager.user_loader
    def load_user(user_id: str):
        from .models import User
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def handle_unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Authentication required", 401)

    # Payment ledger with explicit gateway configuration
    from .payments.gateways import GatewayConfig, build_gateways
    from .payments.ledger import PaymentLedger
    gateway_config = GatewayConfig.from_mapping(app.config)
    app.extensions["payment_ledger"] = PaymentLedger(
        gateway_config,
        gateways=build_gateways(gateway_config),
        custom_payment_ttl=timedelta(minutes=app.config["CUSTOM_PAYMENT_TTL_MINUTES"]),
    )

    # Blueprints
    from .accounts import accounts_bp
    app.register_blueprint(accounts_bp)

    from .payments import payments_bp
    app.register_blueprint(payments_bp, url_prefix="/payments")

    from .academics import academics_bp
    app.register_blueprint(academics_bp)

    from .notifications import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix="/notifications")

    from .errors import AppError

    @app.errorhandler(AppError)
    def handle_app_error(e):
        from .api_utils import api_error
        db.session.rollback()
        return api_error(e.code, e.message, e.status)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()

    interval = app.config.get("PAYMENT_SWEEP_INTERVAL") or 0
    if interval > 0 and not app.config.get("TESTING"):
        from .payments.sweeper import PaymentSweeper
        sweeper = PaymentSweeper(app, interval)
        sweeper.start()
        app.extensions["payment_sweeper"] = sweeper

    return app


def get_ledger():
    from flask import current_app
    return current_app.extensions["payment_ledger"]
