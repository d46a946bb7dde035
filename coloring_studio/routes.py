from io import BytesIO
import logging

from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import current_user, login_required
import stripe

from . import EXTENSION_KEY, db
from .credentials import burn_password_check, hash_password, verify_password
from .errors import (
    AccessDenied,
    AuthenticationRequired,
    BillingUnavailable,
    ImageNotFound,
    InvalidCredentials,
    InvalidRequest,
)
from .generation import GenerationRequest
from .ledger import normalize_email
from .storage import content_type_for, is_owned_by
from .trial import refresh_trial

logger = logging.getLogger(__name__)

AUTH_COOKIE = "auth-token"
IMAGE_CACHE_SECONDS = 31536000

api_bp = Blueprint("api", __name__, url_prefix="/api")


def services():
    return current_app.extensions[EXTENSION_KEY]


def _request_data():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form


def _refresh(account):
    svc = services()
    return refresh_trial(
        svc.ledger, account, svc.clock(), current_app.config["TRIAL_LENGTH_DAYS"]
    )


def load_account_from_request(req):
    """Flask-Login request loader: session cookie -> account, trial re-checked."""
    token = req.cookies.get(AUTH_COOKIE)
    if not token:
        return None
    svc = services()
    account_id = svc.signer.verify(token)
    if account_id is None:
        return None
    account = svc.ledger.get_by_id(account_id)
    if account is None:
        return None
    return _refresh(account)


def unauthorized():
    error = AuthenticationRequired()
    return jsonify(error.to_dict()), error.status


def _set_auth_cookie(response, account_id):
    svc = services()
    response.set_cookie(
        AUTH_COOKIE,
        svc.signer.issue(account_id),
        max_age=svc.signer.max_age_seconds,
        httponly=True,
        samesite="Lax",
        secure=current_app.config["APP_ENV"] != "development",
    )
    return response


# -----------------------
# Auth Routes
# -----------------------
@api_bp.post("/auth/signup")
def signup():
    data = _request_data()
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    name = (data.get("name") or "").strip() or None
    if not email or not password:
        raise InvalidRequest("Email and password are required")
    if "@" not in email:
        raise InvalidRequest("A valid email address is required")

    svc = services()
    account = svc.ledger.create(
        email,
        hash_password(password),
        name=name,
        credits=current_app.config["FREE_TRIAL_CREDITS"],
        now=svc.clock(),
    )
    logger.info("Created account %s", account.id)
    response = jsonify(message="Signup successful", user=account.to_public_dict())
    response.status_code = 201
    return _set_auth_cookie(response, account.id)


@api_bp.post("/auth/login")
def login():
    data = _request_data()
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    if not email or not password:
        raise InvalidRequest("Email and password are required")

    account = services().ledger.get_by_email(email)
    if account is None:
        # Unknown emails still pay for one hash check
        burn_password_check(password)
        raise InvalidCredentials()
    if not verify_password(password, account.password_hash):
        raise InvalidCredentials()
    account = _refresh(account)
    response = jsonify(message="Login successful", user=account.to_public_dict())
    return _set_auth_cookie(response, account.id)


@api_bp.post("/auth/logout")
def logout():
    response = jsonify(message="Logged out")
    response.delete_cookie(AUTH_COOKIE, httponly=True, samesite="Lax")
    return response


@api_bp.get("/auth/me")
@login_required
def me():
    return jsonify(user=current_user.to_public_dict())


# -----------------------
# Billing
# -----------------------
@api_bp.get("/plans")
def plans():
    return jsonify(plans=[plan.to_dict() for plan in services().plans])


@api_bp.post("/stripe/create-checkout-session")
@login_required
def create_checkout_session():
    svc = services()
    plan = svc.plans.get(_request_data().get("plan"))
    if plan is None:
        raise InvalidRequest("Invalid subscription plan")
    if not plan.price_id:
        raise BillingUnavailable("Plan price ID not configured")

    base_url = current_app.config["APP_BASE_URL"]
    try:
        customer_id = current_user.stripe_customer_id
        if not customer_id:
            customer_id = svc.payments.create_customer(current_user.email, current_user.name)
            svc.ledger.update(current_user.id, stripe_customer_id=customer_id)
        session_id, url = svc.payments.create_checkout_session(
            customer_id,
            plan.price_id,
            success_url=f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/cancel",
            trial_days=current_app.config["CHECKOUT_TRIAL_DAYS"],
        )
    except stripe.StripeError as e:
        logger.error("Checkout session creation failed for account %s: %s", current_user.id, e)
        raise BillingUnavailable("Failed to create checkout session")
    return jsonify(sessionId=session_id, url=url)


@api_bp.post("/stripe/webhook")
def stripe_webhook():
    svc = services()
    event = svc.payments.verify_event(request.get_data(), request.headers.get("Stripe-Signature", ""))
    try:
        outcome = svc.reconciler.handle(event)
    except Exception:
        # Non-2xx makes Stripe redeliver the event
        logger.exception("Webhook handler failed for %s %s", event.get("type"), event.get("id"))
        db.session.rollback()
        return jsonify(error="Webhook handler failed"), 500
    return jsonify(received=True, outcome=outcome)


# -----------------------
# Images
# -----------------------
def _uploaded_images():
    files = request.files.getlist("images")
    index = 0
    while f"image_{index}" in request.files:
        files.append(request.files[f"image_{index}"])
        index += 1
    return [f.read() for f in files if f and f.filename]


@api_bp.post("/images")
@login_required
def generate_images():
    form = request.form
    generation = GenerationRequest(
        prompt=form.get("prompt") or "",
        images=_uploaded_images(),
        size=form.get("size") or "portrait",
        quality=form.get("quality") or "standard",
    )
    result = services().gate.generate(current_user.id, generation)
    return jsonify(result.to_dict())


@api_bp.get("/image/<path:filename>")
@login_required
def get_image(filename):
    if not is_owned_by(filename, current_user.id):
        logger.warning("Account %s requested image it does not own: %s", current_user.id, filename)
        raise AccessDenied()
    data = services().store.read(filename)
    if data is None:
        raise ImageNotFound()
    return send_file(BytesIO(data), mimetype=content_type_for(filename), max_age=IMAGE_CACHE_SECONDS)


@api_bp.post("/image-delete")
@login_required
def delete_images():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest("Invalid request body: Must be JSON.")
    filenames = data.get("filenames")
    if not isinstance(filenames, list) or any(not isinstance(fn, str) for fn in filenames):
        raise InvalidRequest("Invalid filenames: Must be an array of strings.")
    if not filenames:
        return jsonify(message="No filenames provided to delete.", results=[])

    foreign = [fn for fn in filenames if not is_owned_by(fn, current_user.id)]
    if foreign:
        logger.warning("Account %s attempted to delete files it does not own: %s", current_user.id, foreign)
        raise AccessDenied()

    store = services().store
    results = []
    for filename in filenames:
        try:
            if store.delete(filename):
                results.append({"filename": filename, "success": True})
            else:
                results.append({"filename": filename, "success": False, "error": "File not found."})
        except OSError as e:
            logger.error("Error deleting image %s: %s", filename, e)
            results.append({"filename": filename, "success": False, "error": "Failed to delete file."})

    all_succeeded = all(r["success"] for r in results)
    message = "All files deleted successfully." if all_succeeded else "Some files could not be deleted."
    return jsonify(message=message, results=results), 200 if all_succeeded else 207
