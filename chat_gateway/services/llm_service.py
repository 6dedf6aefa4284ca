import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import anyio
import httpx

from chat_gateway.models.domain import ImageInput, Usage
from chat_gateway.models.events import DoneEvent, ErrorEvent, StatusEvent, StreamEvent, TextDeltaEvent

logger = logging.getLogger(__name__)


class UpstreamAPIError(Exception):
    """Non-retryable HTTP error returned by the model provider."""

    code = "UPSTREAM_API_ERROR"

    def __init__(self, status_code: int, body: Any):
        super().__init__(f"Model provider error: {status_code} {body}")
        self.status_code = status_code
        self.body = body


def _retry_delay(response: httpx.Response, base_delay: float, attempt: int) -> float:
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass
    return base_delay * (2 ** attempt)


def _remaining(deadline: float) -> float:
    return max(deadline - time.monotonic(), 0.0)


class LLMService:
    """Streaming client for the provider's Responses API.

    `stream_completion` turns the provider's server-sent events into
    `StreamEvent`s: text deltas as they arrive, then one `done` (or `error`).
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        instructions: str = "",
        prompt_id: str = "",
        timeout: float = 900.0,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.instructions = instructions
        self.prompt_id = prompt_id
        # Wall-clock budget for one attempt, from sending the request to the last byte
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=30.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        logger.info("LLMService ready (model=%s, prompt_id=%s)", model, prompt_id or "(none)")

    async def aclose(self) -> None:
        await self._client.aclose()

    # ---------- request body ---------------------------------------------------
    def build_payload(
        self,
        messages: Sequence[Dict[str, str]],
        previous_response_id: Optional[str] = None,
        images: Optional[Sequence[ImageInput]] = None,
    ) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = [{"role": m["role"], "content": m["content"]} for m in messages]

        if images and items and items[-1]["role"] == "user":
            parts: List[Dict[str, Any]] = [{"type": "input_text", "text": items[-1]["content"]}]
            parts.extend({"type": "input_image", "image_url": img.data_url} for img in images)
            items[-1] = {"role": "user", "content": parts}

        body: Dict[str, Any] = {"input": items, "stream": True}
        if self.prompt_id:
            body["prompt"] = {"id": self.prompt_id}
        else:
            body["model"] = self.model
            if self.instructions:
                body["instructions"] = self.instructions
        if previous_response_id:
            body["previous_response_id"] = previous_response_id
        return body

    # ---------- streaming ------------------------------------------------------
    async def stream_completion(
        self,
        messages: Sequence[Dict[str, str]],
        previous_response_id: Optional[str] = None,
        images: Optional[Sequence[ImageInput]] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one completion.

        Each attempt must finish within ``timeout`` seconds end to end. Rate
        limiting (429), network failures and attempts that run out of time
        are retried up to ``max_retries`` times with a `status` event before
        each retry, unless text was already relayed. Other HTTP errors raise
        `UpstreamAPIError`.
        """
        started = time.monotonic()
        body = self.build_payload(messages, previous_response_id, images)

        yield StatusEvent(status="Connecting to the model...", progress=10)

        attempt = 0
        text_sent = False
        while True:
            logger.info(
                "Model request request_id=%s model=%s messages=%d resume=%s attempt=%d",
                request_id,
                self.model,
                len(messages),
                bool(previous_response_id),
                attempt + 1,
            )
            deadline = time.monotonic() + self.timeout
            try:
                request = self._client.build_request("POST", "/responses", json=body)
                with anyio.fail_after(self.timeout):
                    response = await self._client.send(request, stream=True)

                try:
                    if response.status_code == 429 and attempt < self.max_retries:
                        rate_limit_delay = _retry_delay(response, self.retry_base_delay, attempt)
                    elif response.is_error:
                        with anyio.fail_after(_remaining(deadline)):
                            raw = (await response.aread()).decode("utf-8", errors="replace")
                        try:
                            error_body: Any = json.loads(raw)
                        except ValueError:
                            error_body = {"raw": raw}
                        logger.error(
                            "Model provider error request_id=%s status=%d body=%s",
                            request_id,
                            response.status_code,
                            error_body,
                        )
                        raise UpstreamAPIError(response.status_code, error_body)
                    else:
                        content: List[str] = []
                        usage: Optional[Usage] = None
                        model: Optional[str] = None
                        response_id: Optional[str] = None

                        lines = response.aiter_lines()
                        while True:
                            # The deadline never spans a yield to the consumer
                            with anyio.fail_after(_remaining(deadline)):
                                try:
                                    line = await lines.__anext__()
                                except StopAsyncIteration:
                                    break

                            if not line.startswith("data:"):
                                continue
                            data = line[5:].strip()
                            if not data or data == "[DONE]":
                                continue
                            try:
                                event = json.loads(data)
                                event_type = event.get("type")
                            except (ValueError, AttributeError):
                                continue

                            if event_type == "response.output_text.delta":
                                delta = event.get("delta") or ""
                                if delta:
                                    if not text_sent:
                                        text_sent = True
                                        logger.info(
                                            "First text delta request_id=%s after %dms",
                                            request_id,
                                            int((time.monotonic() - started) * 1000),
                                        )
                                    content.append(delta)
                                    yield TextDeltaEvent(delta=delta)
                            elif event_type == "response.completed":
                                resp = event.get("response") or {}
                                if resp.get("usage"):
                                    try:
                                        usage = Usage.model_validate(resp["usage"])
                                    except ValueError:
                                        logger.warning("Unparseable usage block request_id=%s", request_id)
                                model = resp.get("model")
                                response_id = resp.get("id")
                            elif event_type in ("error", "response.failed"):
                                error = event.get("error") or (event.get("response") or {}).get("error") or {}
                                message = error.get("message") or "Unknown model error"
                                logger.error("Model stream error request_id=%s: %s", request_id, message)
                                yield ErrorEvent(code="UPSTREAM_STREAM_ERROR", message=message)
                                return

                        full_text = "".join(content)
                        logger.info(
                            "Model stream completed request_id=%s model=%s input_tokens=%s output_tokens=%s "
                            "content_length=%d duration_ms=%d",
                            request_id,
                            model or self.model,
                            usage.input_tokens if usage else 0,
                            usage.output_tokens if usage else 0,
                            len(full_text),
                            int((time.monotonic() - started) * 1000),
                        )
                        yield DoneEvent(
                            content=full_text,
                            usage=usage,
                            model=model or self.model,
                            response_id=response_id,
                        )
                        return
                finally:
                    await response.aclose()

            except (httpx.TransportError, TimeoutError) as exc:
                reason = "timed out" if isinstance(exc, TimeoutError) else f"network error: {exc}"
                # Text already relayed cannot be replayed by a fresh request
                if text_sent or attempt >= self.max_retries:
                    logger.error(
                        "Model provider unreachable request_id=%s after %d attempts (%s)",
                        request_id,
                        attempt + 1,
                        reason,
                    )
                    yield ErrorEvent(
                        code="UPSTREAM_UNAVAILABLE",
                        message="The model is temporarily unavailable. Please try again later.",
                    )
                    return
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Model request %s request_id=%s, retrying in %.1fs", reason, request_id, delay
                )
                yield StatusEvent(status="Reconnecting to the model...", progress=15)
                await asyncio.sleep(delay)
                attempt += 1
                continue

            # Rate limited; the response is closed before backing off
            logger.warning(
                "Model provider rate limited request_id=%s, retrying in %.1fs", request_id, rate_limit_delay
            )
            yield StatusEvent(status=f"High load, retrying in {round(rate_limit_delay)}s...", progress=15)
            await asyncio.sleep(rate_limit_delay)
            attempt += 1
