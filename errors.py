"""Whitelist error taxonomy and the JSON error handlers that render it."""

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException


logger = logging.getLogger(__name__)


class WhitelistError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, **self.extra}


class ValidationError(WhitelistError):
    status_code = 400


class ConflictError(WhitelistError):
    # Duplicate wallets answer 400, not 409.
    status_code = 400


class NotFoundError(WhitelistError):
    status_code = 404


class ConfigurationError(WhitelistError):
    status_code = 500


class UpstreamError(WhitelistError):
    """A third-party API failed. Callers turn this into a soft failure field."""

    status_code = 502


def register_error_handlers(app):
    @app.errorhandler(WhitelistError)
    def _handle_whitelist_error(err: WhitelistError):
        if err.status_code >= 500:
            logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(err: HTTPException):
        return jsonify({"success": False, "error": err.description or err.name}), err.code

    @app.errorhandler(Exception)
    def _handle_unexpected(err: Exception):
        logger.exception("Unhandled error")
        return jsonify({"success": False, "error": "Internal server error"}), 500
