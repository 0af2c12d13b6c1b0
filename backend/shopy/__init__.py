import os
from typing import Dict, Optional

from flask import Flask
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import register_jwt_handlers
from .cli import register_cli
from .config import build_allowed_origins, load_settings
from .payments.config_service import PaymentConfigService
from .routes import register_routes
from .seed import ensure_indexes, seed_defaults


def create_app(config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo connection, which lets tests run
    against an in-memory ``mongomock`` database.
    """
    app = Flask(__name__)
    app.config.update(load_settings(app.root_path, config))

    # Honor proxy headers so generated links (uploads, webhooks) keep the public origin.
    trusted_proxy_hops = max(0, int(app.config["TRUSTED_PROXY_HOPS"]))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    allowed_origins = build_allowed_origins()
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database
    register_jwt_handlers(jwt, db)

    ensure_indexes(db, app.logger)
    if app.config["SEED_DEFAULTS"]:
        seed_defaults(db, app.logger)

    app.extensions["payment_config"] = PaymentConfigService(
        db,
        cache_seconds=app.config["PAYMENT_CONFIG_CACHE_SECONDS"],
        logger=app.logger,
    )

    register_routes(app, db)
    register_cli(app, db)

    return app
