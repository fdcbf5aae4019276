# errors.py
# -----------------------------------------------------------------------------
# API error taxonomy + Flask handlers.
# Every handled failure leaves the app as {"error": "...", "code": "..."}.
# -----------------------------------------------------------------------------

import traceback
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None,
                 extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.extra)
        return body


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class Conflict(ApiError):
    # Clients already branch on 400 for "already submitted / limit reached".
    status_code = 400


class ValidationError(ApiError):
    status_code = 400


class RateLimited(ApiError):
    status_code = 429


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"error": e.description or e.name}), e.code or 500

    @app.errorhandler(Exception)
    def _unexpected(e: Exception):
        print(f"[error] unhandled {type(e).__name__}: {e}", flush=True)
        print(traceback.format_exc(), flush=True)
        return jsonify({"error": "Internal server error"}), 500
