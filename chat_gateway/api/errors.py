"""
Global error handlers.

Every failure leaves the API as the same envelope:
``{"success": false, "error": {"code", "message"}, "request_id"}``.
Operational errors keep their code and message; anything unexpected is
logged with its traceback and masked.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_gateway.services.billing import BillingError
from chat_gateway.services.chat import ChatError
from chat_gateway.services.llm_service import UpstreamAPIError
from chat_gateway.services.storage import InvalidIdentifier

logger = logging.getLogger(__name__)

MASKED_MESSAGE = "Temporary service error. Please try again later."


def error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    request_id: Optional[str] = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}, "request_id": request_id},
    )


def _log(request: Request, status_code: int, code: str, message: str) -> None:
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(level, "Request error %s %s -> %d %s: %s", request.method, request.url.path, status_code, code, message)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        _log(request, exc.http_status, exc.code, exc.message)
        return error_response(request, exc.http_status, exc.code, exc.message)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = exc.status_code if 400 <= exc.status_code < 600 else 502
        _log(request, status_code, exc.code, exc.message)
        return error_response(request, status_code, exc.code, exc.message)

    @app.exception_handler(UpstreamAPIError)
    async def upstream_error_handler(request: Request, exc: UpstreamAPIError) -> JSONResponse:
        _log(request, 502, exc.code, str(exc))
        return error_response(request, 502, exc.code, "The model provider rejected the request.")

    @app.exception_handler(InvalidIdentifier)
    async def invalid_identifier_handler(request: Request, exc: InvalidIdentifier) -> JSONResponse:
        _log(request, 400, "INVALID_IDENTIFIER", str(exc))
        return error_response(request, 400, "INVALID_IDENTIFIER", str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        _log(request, 400, "VALIDATION_ERROR", str(exc.errors()))
        return error_response(request, 400, "VALIDATION_ERROR", "Invalid request body.")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return error_response(request, 404, "NOT_FOUND", "Endpoint not found.")
        message = str(exc.detail) if exc.status_code < 500 else MASKED_MESSAGE
        _log(request, exc.status_code, "HTTP_ERROR", str(exc.detail))
        return error_response(request, exc.status_code, "HTTP_ERROR", message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception %s %s type=%s", request.method, request.url.path, type(exc).__name__
        )
        return error_response(request, 500, "INTERNAL_ERROR", MASKED_MESSAGE)
