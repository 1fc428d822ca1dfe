"""Error taxonomy shared by the stores and the HTTP layer.

Stores raise these; ``register_error_handlers`` turns them into
``{"error": ...}`` JSON responses with the matching status code.
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidArgument(ServiceError):
    """Missing or malformed input. User-correctable."""

    status_code = 400


class NotFound(ServiceError):
    """Unknown student/topic/question, or no eligible question."""

    status_code = 404


class Conflict(ServiceError):
    """Action on an already-finalized resource."""

    status_code = 409


class Internal(ServiceError):
    status_code = 500


class TransactionConflict(Internal):
    """Write lock or serialization failure. Safe to retry."""


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def _handle_service_error(err: ServiceError):
        if err.status_code >= 500:
            logger.error("Request failed: %s", err.message)
            return jsonify({"error": "Internal server error"}), err.status_code
        return jsonify({"error": err.message}), err.status_code
