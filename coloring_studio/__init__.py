import atexit
from dataclasses import dataclass
import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException

db = SQLAlchemy()
login_manager = LoginManager()
login_manager.session_protection = None

logger = logging.getLogger(__name__)

EXTENSION_KEY = "coloring_studio"


@dataclass
class Services:
    """Component handles built once per app and shared by every request."""

    ledger: object
    signer: object
    plans: object
    payments: object
    reconciler: object
    store: object
    gate: object
    clock: object


def create_app(config=None, ledger=None, generator=None, payments=None, store=None, clock=None):
    """Build the app. Collaborators not passed in are constructed from config."""
    from .billing import BillingReconciler, StripeGateway
    from .config import check_required, load_config
    from .credentials import TokenSigner
    from .generation import GeminiImageGenerator, GenerationGate
    from .ledger import MemoryAccountLedger, SqlAccountLedger
    from .models import utcnow
    from .plans import PlanCatalog
    from .routes import api_bp, load_account_from_request, unauthorized
    from .storage import LocalImageStore

    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if config:
        app.config.update(config)
    check_required(app.config, needs_genai_key=generator is None)
    clock = clock or utcnow

    db.init_app(app)
    login_manager.init_app(app)
    login_manager.request_loader(load_account_from_request)
    login_manager.unauthorized_handler(unauthorized)

    if ledger is None:
        if app.config["LEDGER_BACKEND"] == "memory":
            ledger = MemoryAccountLedger()
        else:
            ledger = SqlAccountLedger(db)
    if isinstance(ledger, SqlAccountLedger):
        with app.app_context():
            db.create_all()

    if generator is None:
        generator = GeminiImageGenerator.from_api_key(
            app.config["GOOGLE_API_KEY"],
            model=app.config["GENAI_IMAGE_MODEL"],
            timeout_seconds=app.config["GENERATION_TIMEOUT_SECONDS"],
        )
    if payments is None:
        payments = StripeGateway(app.config["STRIPE_SECRET_KEY"], app.config["STRIPE_WEBHOOK_SECRET"])
    if store is None:
        store = LocalImageStore(app.config["STORAGE_ROOT"], public_base_url=app.config["APP_BASE_URL"])

    plans = PlanCatalog.from_config(app.config)
    gate = GenerationGate(
        ledger,
        generator,
        store,
        trial_length_days=app.config["TRIAL_LENGTH_DAYS"],
        timeout_seconds=app.config["GENERATION_TIMEOUT_SECONDS"],
        max_source_images=app.config["MAX_SOURCE_IMAGES"],
        workers=app.config["GENERATION_WORKERS"],
        clock=clock,
    )
    atexit.register(gate.close)

    app.extensions[EXTENSION_KEY] = Services(
        ledger=ledger,
        signer=TokenSigner(app.config["SECRET_KEY"]),
        plans=plans,
        payments=payments,
        reconciler=BillingReconciler(ledger, plans, clock=clock),
        store=store,
        gate=gate,
        clock=clock,
    )

    app.register_blueprint(api_bp)
    register_error_handlers(app)
    return app


def register_error_handlers(app):
    from .errors import StudioError

    @app.errorhandler(StudioError)
    def handle_studio_error(e):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error")
        return jsonify(error="Internal server error", code="internal_error"), 500
