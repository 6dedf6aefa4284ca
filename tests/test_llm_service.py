import asyncio
import json
import time

import httpx
import pytest

from chat_gateway.models.domain import ImageInput
from chat_gateway.models.events import DoneEvent, ErrorEvent, StatusEvent, TextDeltaEvent
from chat_gateway.services import llm_service
from chat_gateway.services.llm_service import LLMService, UpstreamAPIError


def sse_body(*events) -> bytes:
    frames = [f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events]
    return ("".join(frames) + "data: [DONE]\n\n").encode()


COMPLETED = {
    "type": "response.completed",
    "response": {
        "id": "resp_abc",
        "model": "gpt-4o-2024-08-06",
        "usage": {
            "input_tokens": 30,
            "output_tokens": 7,
            "input_tokens_details": {"cached_tokens": 4},
            "output_tokens_details": {"reasoning_tokens": 0},
        },
    },
}

COMPLETED_FRAME = f"data: {json.dumps(COMPLETED)}\n\n".encode()

OK_BODY = sse_body(
    {"type": "response.created", "response": {"id": "resp_abc"}},
    {"type": "response.output_text.delta", "delta": "Hel"},
    {"type": "response.output_text.delta", "delta": "lo"},
    COMPLETED,
)


def make_service(handler, **kwargs) -> LLMService:
    options = {"max_retries": 3, "retry_base_delay": 0}
    options.update(kwargs)
    return LLMService(
        api_key="sk-test",
        model="gpt-4o",
        instructions="be helpful",
        transport=httpx.MockTransport(handler),
        **options,
    )


async def collect(service: LLMService, **kwargs):
    messages = kwargs.pop("messages", [{"role": "user", "content": "hi"}])
    return [event async for event in service.stream_completion(messages, **kwargs)]


@pytest.mark.asyncio
async def test_stream_relays_deltas_and_finishes_with_done():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=OK_BODY, headers={"content-type": "text/event-stream"})

    events = await collect(make_service(handler))

    assert isinstance(events[0], StatusEvent)
    assert [e.delta for e in events if isinstance(e, TextDeltaEvent)] == ["Hel", "lo"]
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.content == "Hello"
    assert done.response_id == "resp_abc"
    assert done.model == "gpt-4o-2024-08-06"
    assert done.usage.input_tokens == 30
    assert done.usage.input_tokens_details.cached_tokens == 4
    assert seen["url"].endswith("/v1/responses")
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "gpt-4o"
    assert seen["body"]["instructions"] == "be helpful"


@pytest.mark.asyncio
async def test_rate_limit_then_success_adds_one_status_event():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, json={"error": {"message": "slow down"}})
        return httpx.Response(200, content=OK_BODY)

    baseline = await collect(make_service(lambda r: httpx.Response(200, content=OK_BODY)))
    events = await collect(make_service(handler))

    assert calls["n"] == 2
    assert len(events) == len(baseline) + 1
    assert events[-1] == baseline[-1]
    statuses = [e for e in events if isinstance(e, StatusEvent)]
    assert len(statuses) == 2
    assert statuses[1].status.startswith("High load")


@pytest.mark.asyncio
async def test_rate_limit_beyond_cap_raises():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with pytest.raises(UpstreamAPIError) as info:
        await collect(make_service(handler, max_retries=2))

    assert info.value.status_code == 429
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_other_http_errors_are_not_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, json={"error": {"message": "bad input"}})

    with pytest.raises(UpstreamAPIError) as info:
        await collect(make_service(handler))

    assert calls["n"] == 1
    assert info.value.body == {"error": {"message": "bad input"}}


@pytest.mark.asyncio
async def test_stream_error_event_ends_without_done():
    body = sse_body(
        {"type": "response.output_text.delta", "delta": "partial"},
        {"type": "error", "error": {"message": "server overloaded"}},
        COMPLETED,
    )
    events = await collect(make_service(lambda r: httpx.Response(200, content=body)))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].code == "UPSTREAM_STREAM_ERROR"
    assert events[-1].message == "server overloaded"
    assert not any(isinstance(e, DoneEvent) for e in events)


@pytest.mark.asyncio
async def test_unparseable_frames_are_skipped():
    body = (
        b": keep-alive\n\n"
        b"data: {not json}\n\n"
        b'data: {"type": "response.output_text.delta", "delta": "ok"}\n\n'
        b"data: [DONE]\n\n"
    )
    events = await collect(make_service(lambda r: httpx.Response(200, content=body)))

    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.content == "ok"
    assert done.usage is None
    assert done.model == "gpt-4o"


@pytest.mark.asyncio
async def test_network_failure_is_retried_then_reported():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    events = await collect(make_service(handler, max_retries=2))

    assert calls["n"] == 3
    assert [e.status for e in events if isinstance(e, StatusEvent)].count("Reconnecting to the model...") == 2
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].code == "UPSTREAM_UNAVAILABLE"


@pytest.mark.asyncio
async def test_network_failure_then_success_recovers():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, content=OK_BODY)

    events = await collect(make_service(handler))

    assert isinstance(events[-1], DoneEvent)
    assert events[-1].content == "Hello"


def test_payload_resumes_with_prompt_and_images():
    service = LLMService(api_key="k", model="gpt-4o", instructions="ignored", prompt_id="pmpt_1")
    image = ImageInput(data="QUJD", filename="shot.png", mimeType="image/png")

    body = service.build_payload(
        [{"role": "user", "content": "what is on screen?"}],
        previous_response_id="resp_prev",
        images=[image],
    )

    assert body["prompt"] == {"id": "pmpt_1"}
    assert "model" not in body and "instructions" not in body
    assert body["previous_response_id"] == "resp_prev"
    parts = body["input"][-1]["content"]
    assert parts[0] == {"type": "input_text", "text": "what is on screen?"}
    assert parts[1] == {"type": "input_image", "image_url": "data:image/png;base64,QUJD"}


def test_payload_without_resume_sends_full_history():
    service = LLMService(api_key="k", model="gpt-4o", instructions="sys")
    history = [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]

    body = service.build_payload(history)

    assert body["input"] == history
    assert "previous_response_id" not in body


def delta_frame(text: str) -> bytes:
    return f'data: {json.dumps({"type": "response.output_text.delta", "delta": text})}\n\n'.encode()


@pytest.mark.asyncio
async def test_slow_stream_is_cut_off_at_the_attempt_deadline():
    calls = {"n": 0}

    async def trickle():
        for _ in range(6):
            await asyncio.sleep(0.3)
            yield delta_frame("x")
        yield COMPLETED_FRAME

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, content=trickle())

    started = time.monotonic()
    events = await collect(make_service(handler, timeout=1.0, max_retries=3))
    elapsed = time.monotonic() - started

    assert elapsed < 1.6
    assert calls["n"] == 1
    assert [e.delta for e in events if isinstance(e, TextDeltaEvent)] == ["x", "x", "x"]
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].code == "UPSTREAM_UNAVAILABLE"
    assert not any(isinstance(e, DoneEvent) for e in events)


@pytest.mark.asyncio
async def test_attempt_that_times_out_before_any_text_is_retried():
    calls = {"n": 0}

    async def stalled():
        await asyncio.sleep(5)
        yield delta_frame("late")

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(200, content=stalled())
        return httpx.Response(200, content=OK_BODY)

    events = await collect(make_service(handler, timeout=0.2))

    assert calls["n"] == 2
    assert "Reconnecting to the model..." in [e.status for e in events if isinstance(e, StatusEvent)]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].content == "Hello"


class TrackedStream(httpx.AsyncByteStream):
    def __init__(self) -> None:
        self.closed = False

    async def __aiter__(self):
        yield b'{"error": {"message": "slow down"}}'

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_rate_limited_response_is_closed_before_backoff(monkeypatch):
    streams = []
    closed_during_backoff = []

    def handler(request: httpx.Request) -> httpx.Response:
        if not streams:
            streams.append(TrackedStream())
            return httpx.Response(429, stream=streams[0])
        return httpx.Response(200, content=OK_BODY)

    async def record_backoff(delay):
        closed_during_backoff.append(streams[0].closed)

    monkeypatch.setattr(llm_service.asyncio, "sleep", record_backoff)
    events = await collect(make_service(handler))

    assert closed_during_backoff == [True]
    assert isinstance(events[-1], DoneEvent)
