import logging

from fastapi import APIRouter, Depends, Request

from chat_gateway.api.deps import get_request_id
from chat_gateway.models.domain import ClientLogBatch
from chat_gateway.services.chat import ChatError

logger = logging.getLogger(__name__)
frontend_logger = logging.getLogger("chat_gateway.frontend")

router = APIRouter(prefix="/api/log", tags=["client-log"])

MAX_BATCH_SIZE = 100

LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


@router.post("")
async def ingest_client_logs(
    body: ClientLogBatch,
    request: Request,
    request_id: str = Depends(get_request_id),
):
    """Write browser log entries to the `chat_gateway.frontend` logger.

    At most `MAX_BATCH_SIZE` entries are taken from one batch; unknown levels
    are logged as info.
    """
    if not body.entries:
        raise ChatError("INVALID_LOG_BATCH", "entries must be a non-empty array", 400)

    client_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip() or (
        request.client.host if request.client else "unknown"
    )
    batch = body.entries[:MAX_BATCH_SIZE]
    errors = warnings = 0
    for entry in batch:
        level = LEVELS.get(entry.level.lower(), logging.INFO)
        if level == logging.ERROR:
            errors += 1
        elif level == logging.WARNING:
            warnings += 1
        frontend_logger.log(
            level,
            "%s event=%s session_id=%s user_id=%s url=%s client_ts=%s ip=%s request_id=%s data=%s",
            entry.message or entry.event,
            entry.event,
            entry.session_id,
            entry.user_id,
            entry.url,
            entry.timestamp,
            client_ip,
            request_id,
            entry.data,
        )

    if errors:
        logger.warning(
            "Frontend errors received errors=%d warnings=%d total=%d ip=%s",
            errors,
            warnings,
            len(batch),
            client_ip,
        )
    return {"success": True, "accepted": len(batch)}
