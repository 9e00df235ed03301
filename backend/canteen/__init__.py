# backend/canteen/__init__.py
from __future__ import annotations

import atexit
import logging
import uuid

from flask import Flask, g, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import ApiError, classify_store_error
from .extensions import db, migrate
from .responses import error_response


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger("canteen")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    app.logger.setLevel(level)


def _engine_options(app: Flask) -> None:
    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite"):
        return
    max_size = int(app.config["DB_POOL_MAX_SIZE"])
    pool_size = max(1, max_size // 2)
    options = {
        "pool_size": pool_size,
        "max_overflow": max_size - pool_size,
        "pool_recycle": int(app.config["DB_POOL_RECYCLE_SECONDS"]),
        "pool_timeout": int(app.config["DB_POOL_TIMEOUT_SECONDS"]),
        "pool_pre_ping": True,
    }
    options.update(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = options


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(exc: ApiError):
        if exc.status_code >= 500:
            app.logger.warning("request_id=%s %s", g.get("request_id"), exc.message)
        return error_response(exc)

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(exc: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception("Store error (request_id=%s)", g.get("request_id"))
        return error_response(classify_store_error(exc))

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return error_response(ApiError(exc.description or exc.name, status_code=exc.code or 500))

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        app.logger.exception("Unhandled error (request_id=%s)", g.get("request_id"))
        return error_response(ApiError("Internal server error", details={"request_id": g.get("request_id")}))


def _register_request_hooks(app: Flask) -> None:
    from .decorators import load_session
    from .services import rate_limit_service
    from .services.store_service import get_gate

    @app.before_request
    def prepare_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        g.pop("auth", None)
        if request.method == "OPTIONS" or request.endpoint in ("system.health", "static"):
            return None

        get_gate().ensure_ready()

        if app.config.get("RATE_LIMIT_ENABLED", True):
            context = load_session()
            rate_limit_service.check_request(
                request.method,
                request.remote_addr or "unknown",
                user_id=context.user.id if context else None,
                is_admin=bool(context and (context.is_admin or context.user.is_theater_admin)),
            )
        return None

    @app.after_request
    def add_response_headers(response):
        response.headers["X-Request-ID"] = g.get("request_id", "")
        origin = request.headers.get("Origin")
        allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS") or ())
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, Idempotency-Key, X-Request-ID"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response


def _init_runtime(app: Flask) -> None:
    """Background task runner, print dispatcher and agent supervisor."""
    from .agents import EXTENSION_KEY as AGENTS_KEY, AgentSupervisor
    from .services import print_service, rate_limit_service, session_service, stock_ledger_service
    from .services.store_service import EXTENSION_KEY as STORE_KEY, StoreGate
    from .services.task_runner import EXTENSION_KEY as TASKS_KEY, TaskRunner

    cfg = app.config
    app.extensions[STORE_KEY] = StoreGate.from_config(cfg)
    app.extensions[rate_limit_service.EXTENSION_KEY] = rate_limit_service.RateLimiter.from_config(cfg)

    runner = TaskRunner(app, mode=cfg["TASK_RUNNER_MODE"])
    runner.register("stock.repair_chain", stock_ledger_service.repair_chain)
    runner.every("stock.auto_expire_all", float(cfg["AUTO_EXPIRE_INTERVAL_SECONDS"]), stock_ledger_service.auto_expire_all)
    runner.every("print.backfill", 300.0, print_service.backfill_missing_jobs)
    runner.every("sessions.cleanup", 3600.0, session_service.cleanup_expired_sessions)
    runner.every("limiter.prune", 300.0, lambda: rate_limit_service.get_limiter().prune())
    app.extensions[TASKS_KEY] = runner

    dispatcher = print_service.PrintDispatcher.from_config(app)
    app.extensions[print_service.EXTENSION_KEY] = dispatcher

    supervisor = None
    if cfg.get("AGENT_SUPERVISOR_ENABLED"):
        supervisor = AgentSupervisor.from_config(app)
        app.extensions[AGENTS_KEY] = supervisor
        supervisor.start_monitor()

    runner.start()
    if cfg.get("PRINT_WORKER_ENABLED"):
        dispatcher.start()

    def _shutdown():
        dispatcher.stop()
        if supervisor is not None:
            supervisor.shutdown()
        runner.stop()

    if not app.testing:
        atexit.register(_shutdown)
    app.extensions["canteen.shutdown"] = _shutdown


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    _configure_logging(app)
    _engine_options(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.theaters import theaters_bp
    from .routes.roles import roles_bp
    from .routes.products import products_bp
    from .routes.catalog import catalog_bp
    from .routes.stock import stock_bp
    from .routes.orders import orders_bp
    from .routes.print import print_bp
    from .routes.agents import agents_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(theaters_bp)
    app.register_blueprint(roles_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(print_bp)
    app.register_blueprint(agents_bp)

    _register_error_handlers(app)
    _register_request_hooks(app)
    _init_runtime(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
