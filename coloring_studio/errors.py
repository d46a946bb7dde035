class ConfigurationError(RuntimeError):
    """Raised at startup when a required secret or setting is missing."""


class StudioError(Exception):
    """Base class for failures that are answered with a stable code and message."""

    code = "internal_error"
    status = 500
    message = "Internal server error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class InvalidRequest(StudioError):
    code = "invalid_request"
    status = 400
    message = "Invalid request"


class AuthenticationRequired(StudioError):
    code = "not_authenticated"
    status = 401
    message = "Authentication required"


class InvalidCredentials(StudioError):
    code = "invalid_credentials"
    status = 401
    message = "Invalid email or password"


class AccessDenied(StudioError):
    code = "access_denied"
    status = 403
    message = "Access denied"


class NoCreditsRemaining(StudioError):
    code = "no_credits"
    status = 402
    message = "No credits remaining. Please upgrade your plan to continue."


class EmailAlreadyRegistered(StudioError):
    code = "email_conflict"
    status = 409
    message = "Email already registered. Please log in."


class ProviderQuotaExceeded(StudioError):
    code = "provider_quota"
    status = 429
    message = "The image service is over its quota. Please try again later."


class ProviderAuthError(StudioError):
    code = "provider_auth"
    status = 502
    message = "The image service rejected our credentials. Please contact support."


class ProviderTimeout(StudioError):
    code = "provider_timeout"
    status = 504
    message = "The image service took too long to respond. Please try again."


class GenerationFailed(StudioError):
    code = "generation_failed"
    status = 502
    message = "Failed to generate coloring page. Please try again."


class BillingUnavailable(StudioError):
    code = "billing_unavailable"
    status = 503
    message = "Billing is not configured. Please contact support."


class InvalidSignature(StudioError):
    code = "invalid_signature"
    status = 400
    message = "Invalid webhook signature"


class ImageNotFound(StudioError):
    code = "not_found"
    status = 404
    message = "Image not found"
