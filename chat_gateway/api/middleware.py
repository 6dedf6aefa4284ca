import logging
import time
import uuid

from fastapi import FastAPI, Request

from chat_gateway.utils.logging import request_id_ctx

logger = logging.getLogger("chat_gateway.access")


def register_request_logging(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Tag the request with an id (client supplied or new) and log it in/out."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.monotonic()

        client_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip() or (
            request.client.host if request.client else "unknown"
        )
        logger.info(
            "-> %s %s ip=%s agent=%s",
            request.method,
            request.url.path,
            client_ip,
            request.headers.get("user-agent", "-"),
        )
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers["X-Request-Id"] = request_id
        logger.info(
            "<- %s %s %d (%dms) request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            int((time.monotonic() - started) * 1000),
            request_id,
        )
        return response
