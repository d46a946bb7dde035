import os

from dotenv import load_dotenv

from .errors import ConfigurationError

REQUIRED_SECRETS = ("SECRET_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def _int_env(name, default):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def load_config():
    """Build the Flask config mapping from the environment (and a local .env file)."""
    load_dotenv()
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY"),
        "STRIPE_SECRET_KEY": os.getenv("STRIPE_SECRET_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.getenv("STRIPE_WEBHOOK_SECRET"),
        "GOOGLE_API_KEY": os.getenv("GOOGLE_API_KEY"),
        "SQLALCHEMY_DATABASE_URI": os.getenv("DATABASE_URL", "sqlite:///coloring_studio.db"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "LEDGER_BACKEND": os.getenv("LEDGER_BACKEND", "sql"),
        "STORAGE_ROOT": os.getenv("STORAGE_ROOT", "generated-images"),
        "APP_BASE_URL": os.getenv("APP_BASE_URL", "http://localhost:5000"),
        "APP_ENV": os.getenv("APP_ENV", "production"),
        "FREE_TRIAL_CREDITS": _int_env("FREE_TRIAL_CREDITS", 3),
        "TRIAL_LENGTH_DAYS": _int_env("TRIAL_LENGTH_DAYS", 7),
        "CHECKOUT_TRIAL_DAYS": _int_env("CHECKOUT_TRIAL_DAYS", 7),
        "BASIC_PLAN_PRICE_ID": os.getenv("BASIC_PLAN_PRICE_ID"),
        "PREMIUM_PLAN_PRICE_ID": os.getenv("PREMIUM_PLAN_PRICE_ID"),
        "GENAI_IMAGE_MODEL": os.getenv("GENAI_IMAGE_MODEL", "gemini-2.5-flash-image"),
        "GENERATION_TIMEOUT_SECONDS": _int_env("GENERATION_TIMEOUT_SECONDS", 120),
        "GENERATION_WORKERS": _int_env("GENERATION_WORKERS", 4),
        "MAX_SOURCE_IMAGES": _int_env("MAX_SOURCE_IMAGES", 10),
        "MAX_CONTENT_LENGTH": 20 * 1024 * 1024,  # 20MB max
    }


def check_required(config, needs_genai_key=True):
    """Abort startup when a secret the app cannot run without is absent."""
    required = list(REQUIRED_SECRETS)
    if needs_genai_key:
        required.append("GOOGLE_API_KEY")
    missing = [key for key in required if not config.get(key)]
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
    if config.get("LEDGER_BACKEND") not in ("sql", "memory"):
        raise ConfigurationError(f"LEDGER_BACKEND must be 'sql' or 'memory', got {config.get('LEDGER_BACKEND')!r}")
