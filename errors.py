import jwt
import structlog
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()


def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key_value = (exc.details or {}).get("keyValue") or {}
    field = next(iter(key_value), "Field")
    return JSONResponse(status_code=400, content={"detail": f"{field} already exists"})


def invalid_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid id"})


def expired_token_handler(request: Request, exc: jwt.ExpiredSignatureError):
    return JSONResponse(status_code=401, content={"detail": "Token expired"})


def invalid_token_handler(request: Request, exc: jwt.InvalidTokenError):
    return JSONResponse(status_code=401, content={"detail": "Invalid token"})


def http_error_handler(request: Request, exc: StarletteHTTPException):
    # unmatched paths carry starlette's default detail
    detail = "Route not found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
    return JSONResponse(status_code=exc.status_code, content={"detail": detail}, headers=getattr(exc, "headers", None))


def server_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
    return JSONResponse(status_code=500, content={"detail": "Server Error"})


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(InvalidId, invalid_id_handler)
    app.add_exception_handler(jwt.ExpiredSignatureError, expired_token_handler)
    app.add_exception_handler(jwt.InvalidTokenError, invalid_token_handler)
    app.add_exception_handler(Exception, server_error_handler)
