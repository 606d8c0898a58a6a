import logging
import traceback
from typing import List, Optional

import jwt
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from bson.errors import InvalidId
from pydantic import ValidationError as ModelValidationError
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config

logger = logging.getLogger(__name__)


# ----------------------- Taxonomy -----------------------
class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors or []


class ValidationError(AppError):
    status_code = 400

    def __init__(self, message: str = "Validation failed", errors: Optional[List[dict]] = None):
        super().__init__(message, errors=errors)


class AuthenticationError(AppError):
    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class ConflictError(AppError):
    status_code = 409

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message)


class RateLimitError(AppError):
    status_code = 429

    def __init__(self, message: str = "Too many requests"):
        super().__init__(message)


# ----------------------- Handlers -----------------------
def error_body(message: str, errors: Optional[list] = None, exc: Optional[BaseException] = None) -> dict:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    if exc is not None and config.ENVIRONMENT == "development":
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


def _log(request: Request, exc: BaseException, operational: bool):
    details = {"method": request.method, "url": str(request.url), "error": str(exc)}
    if operational:
        logger.warning("Operational error occurred: %s", details)
    else:
        logger.error("Unexpected error occurred: %s", details, exc_info=exc)


def _duplicate_key_message(exc: DuplicateKeyError) -> str:
    key_value = (exc.details or {}).get("keyValue") or {}
    if key_value:
        field = next(iter(key_value))
        return f"{field[:1].upper()}{field[1:]} already exists"
    return "Duplicate key error"


def field_errors(raw: list) -> List[dict]:
    errors = []
    for err in raw:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        value = err.get("input")
        errors.append({
            "field": ".".join(loc),
            "message": err.get("msg"),
            "value": value if isinstance(value, (str, int, float, bool)) or value is None else None,
        })
    return errors


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        _log(request, exc, operational=exc.status_code < 500)
        headers = {"Retry-After": "900"} if exc.status_code == 429 else None
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.errors, exc),
                            headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=400, content=error_body("Validation failed", field_errors(exc.errors())))

    # records built server-side from stored data
    @app.exception_handler(ModelValidationError)
    async def model_validation_handler(request: Request, exc: ModelValidationError):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=400, content=error_body("Validation failed", field_errors(exc.errors())))

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=409, content=error_body(_duplicate_key_message(exc)))

    @app.exception_handler(InvalidId)
    async def invalid_id_handler(request: Request, exc: InvalidId):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=400, content=error_body("Invalid resource ID format"))

    @app.exception_handler(jwt.ExpiredSignatureError)
    async def expired_token_handler(request: Request, exc: jwt.ExpiredSignatureError):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=401, content=error_body("Token expired"))

    @app.exception_handler(jwt.InvalidTokenError)
    async def invalid_token_handler(request: Request, exc: jwt.InvalidTokenError):
        _log(request, exc, operational=True)
        return JSONResponse(status_code=401, content=error_body("Invalid token"))

    @app.exception_handler(ServerSelectionTimeoutError)
    @app.exception_handler(ConnectionFailure)
    async def database_unavailable_handler(request: Request, exc: Exception):
        _log(request, exc, operational=False)
        return JSONResponse(status_code=503, content=error_body("Database connection failed"))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        _log(request, exc, operational=exc.status_code < 500)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 404 and message == "Not Found":
            message = f"Route {request.url.path} not found"
        return JSONResponse(status_code=exc.status_code, content=error_body(message),
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        _log(request, exc, operational=False)
        return JSONResponse(status_code=500, content=error_body("Internal server error", exc=exc))
