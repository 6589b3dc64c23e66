"""
Error taxonomy shared by the OAuth connector, token resolver and billing
processor.

Every error carries a short machine ``code``. JSON routes render it as
``{"error": code}`` with ``http_status``; the OAuth callback turns it into
the ``integration_error=<code>`` redirect marker.
"""
from flask import jsonify


class AutoflowError(Exception):
    code = "internal_error"
    http_status = 500

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

    def to_payload(self) -> dict:
        return {"error": self.code}


class ConfigurationError(AutoflowError):
    """Missing credentials or secrets. Never retried."""
    code = "not_configured"
    http_status = 500


class ValidationError(AutoflowError):
    code = "invalid_request"
    http_status = 400


class AuthenticationError(AutoflowError):
    code = "unauthorized"
    http_status = 401


class StateError(AutoflowError):
    code = "invalid_state"
    http_status = 400


class InvalidState(StateError):
    code = "invalid_state"


class ExpiredState(StateError):
    code = "state_expired"


class UpstreamError(AutoflowError):
    """Provider HTTP failure. Detail goes to the log, not to the browser."""
    code = "upstream_failed"
    http_status = 502


class TokenExchangeError(UpstreamError):
    code = "token_exchange_failed"


class ProviderDeniedError(UpstreamError):
    """The provider reported an error string; it is passed through as the reason."""
    code = "access_denied"
    http_status = 400


class SignatureError(AutoflowError):
    code = "invalid_signature"
    http_status = 400


class PersistenceError(AutoflowError):
    code = "storage_failed"
    http_status = 500


class DatabaseNotConfigured(PersistenceError):
    code = "db_not_configured"


def register_error_handlers(app):
    @app.errorhandler(AutoflowError)
    def handle_autoflow_error(e):
        if e.http_status >= 500:
            app.logger.error("request.failed", extra={"error_code": e.code, "detail": str(e)})
        return jsonify(e.to_payload()), e.http_status
