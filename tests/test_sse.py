import asyncio
import json

import pytest

from chat_gateway.api.sse import EventRelay, encode_event
from chat_gateway.models.domain import Usage
from chat_gateway.models.events import DoneEvent, ErrorEvent, StatusEvent, TextDeltaEvent


def decode(frame: str):
    event_line, data_line = frame.strip().split("\n")
    return event_line[len("event: "):], json.loads(data_line[len("data: "):])


def test_frames_use_browser_field_names():
    assert decode(encode_event(StatusEvent(status="Checking balance...", progress=5), "r1")) == (
        "status",
        {"status": "Checking balance...", "progress": 5},
    )
    assert decode(encode_event(TextDeltaEvent(delta="héllo"), "r1")) == ("text_delta", {"delta": "héllo"})
    assert decode(encode_event(ErrorEvent(code="AI_ERROR", message="failed"), "r1")) == (
        "error",
        {"errorMessage": "failed", "errorCode": "AI_ERROR"},
    )

    name, data = decode(encode_event(DoneEvent(content="hi", usage=Usage(input_tokens=1, output_tokens=2)), "r1"))
    assert name == "done"
    assert data["content"] == "hi"
    assert data["usage"]["output_tokens"] == 2
    assert data["request_id"] == "r1"


def test_frames_end_with_blank_line():
    assert encode_event(TextDeltaEvent(delta="x"), "r1").endswith("\n\n")


@pytest.mark.asyncio
async def test_relay_turns_a_crash_into_a_final_error_frame():
    async def events():
        yield StatusEvent(status="Checking balance...", progress=5)
        raise RuntimeError("boom")

    frames = [f async for f in EventRelay(events(), "r1").start().stream()]

    assert len(frames) == 2
    name, data = decode(frames[-1])
    assert name == "error"
    assert data["errorCode"] == "INTERNAL_ERROR"
    assert "boom" not in data["errorMessage"]


@pytest.mark.asyncio
async def test_relay_keeps_running_after_the_client_leaves():
    finished = asyncio.Event()

    async def events():
        try:
            yield StatusEvent(status="Checking balance...", progress=5)
            for _ in range(3):
                await asyncio.sleep(0)
                yield TextDeltaEvent(delta="x")
            yield DoneEvent(content="xxx")
        finally:
            finished.set()

    relay = EventRelay(events(), "r1").start()
    stream = relay.stream()
    first = await stream.__anext__()
    await stream.aclose()

    await asyncio.wait_for(relay.task, timeout=1)
    assert decode(first)[0] == "status"
    assert finished.is_set()
