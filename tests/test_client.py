import json

import httpx
import pytest

from conftest import VALID_KEY, sse_body
from polychat.client import ChatClient, classify_status, parse_frame
from polychat.errors import (
    AuthError,
    ErrorKind,
    InsufficientBalance,
    InvalidRequest,
    NetworkError,
    RateLimited,
    ServerError,
    Timeout,
)
from polychat.models import ChatRequest, Message, Role
from polychat.providers import REGISTRY

GLM = REGISTRY.get("glm")


def _request(**kwargs):
    return ChatRequest(model="glm-4.7", messages=[Message(role=Role.USER, text="Hello")], **kwargs)


@pytest.mark.parametrize(
    "status,error_type",
    [
        (401, AuthError),
        (402, InsufficientBalance),
        (429, RateLimited),
        (400, InvalidRequest),
        (500, ServerError),
        (503, ServerError),
        (404, ServerError),
    ],
)
def test_classify_status(status, error_type):
    error = classify_status(status)
    assert type(error) is error_type
    assert error.status_code == status


def test_classify_success():
    assert classify_status(200) is None


def test_invalid_request_carries_server_message():
    error = classify_status(400, json.dumps({"error": {"message": "bad model"}}).encode())
    assert error.server_message == "bad model"
    assert error.kind is ErrorKind.INVALID_REQUEST


def test_server_error_message_includes_status():
    assert classify_status(502).message == "Server error: 502"


def test_parse_frame():
    event = parse_frame('data: {"choices":[{"delta":{"content":"Hi"}}]}')
    assert event.delta_text == "Hi" and not event.is_final

    done = parse_frame("data: [DONE]")
    assert done.is_final and done.delta_text == ""

    finish = parse_frame('data: {"choices":[{"delta":{},"finish_reason":"stop"}]}')
    assert finish.finish_reason == "stop" and finish.delta_text == ""


@pytest.mark.parametrize(
    "line",
    [
        "",
        ": keep-alive",
        "event: message",
        "data: {not json",
        'data: {"choices":[]}',
        'data: {"choices":[{"delta":{"role":"assistant"}}]}',
    ],
)
def test_parse_frame_skips(line):
    assert parse_frame(line) is None


@pytest.mark.asyncio
async def test_complete(mock_client):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "r1",
                "choices": [{"message": {"role": "assistant", "content": "Hi there"}, "finish_reason": "stop"}],
                "usage": {"total_tokens": 9},
            },
        )

    client = mock_client(handler)
    response = await client.complete(GLM, VALID_KEY, _request(stream=True), timeout=5)

    assert response.text == "Hi there"
    assert response.used_tokens == 9
    assert seen["url"] == GLM.chat_url
    assert seen["auth"] == f"Bearer {VALID_KEY}"
    assert seen["body"]["stream"] is False
    assert seen["body"]["messages"] == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_complete_maps_status(mock_client):
    client = mock_client(lambda request: httpx.Response(401, json={"error": {"message": "nope"}}))
    with pytest.raises(AuthError):
        await client.complete(GLM, VALID_KEY, _request(), timeout=5)


@pytest.mark.asyncio
async def test_complete_malformed_body(mock_client):
    client = mock_client(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(ServerError):
        await client.complete(GLM, VALID_KEY, _request(), timeout=5)


@pytest.mark.asyncio
async def test_complete_network_error(mock_client):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await mock_client(handler).complete(GLM, VALID_KEY, _request(), timeout=5)


@pytest.mark.asyncio
async def test_complete_timeout(mock_client):
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(Timeout):
        await mock_client(handler).complete(GLM, VALID_KEY, _request(), timeout=5)


@pytest.mark.asyncio
async def test_stream(mock_client):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=sse_body("A", "B"))

    client = mock_client(handler)
    events = [e async for e in client.stream(GLM, VALID_KEY, _request(), timeout=5)]

    assert [e.delta_text for e in events] == ["A", "B", ""]
    assert events[-1].is_final
    assert seen["body"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_skips_malformed_frames(mock_client):
    body = b'data: {"choices":[{"delta":{"content":"A"}}]}\n\ndata: {broken\n\n' + sse_body("B")
    client = mock_client(lambda request: httpx.Response(200, content=body))

    events = [e async for e in client.stream(GLM, VALID_KEY, _request(), timeout=5)]
    assert "".join(e.delta_text for e in events) == "AB"


@pytest.mark.asyncio
async def test_stream_error_status(mock_client):
    client = mock_client(lambda request: httpx.Response(402, json={"error": {"message": "balance"}}))
    with pytest.raises(InsufficientBalance):
        async for _ in client.stream(GLM, VALID_KEY, _request(), timeout=5):
            pass


@pytest.mark.asyncio
async def test_stream_network_error(mock_client):
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(NetworkError):
        async for _ in mock_client(handler).stream(GLM, VALID_KEY, _request(), timeout=5):
            pass


@pytest.mark.asyncio
async def test_owned_http_client_is_closed():
    client = ChatClient()
    await client.aclose()
    assert client._http.is_closed


@pytest.mark.asyncio
async def test_stream_stall_raises_timeout(mock_client):
    async def stalled_body():
        yield b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n'
        raise httpx.ReadTimeout("no data")

    client = mock_client(lambda request: httpx.Response(200, content=stalled_body()))
    received = []
    with pytest.raises(Timeout):
        async for event in client.stream(GLM, VALID_KEY, _request(), timeout=5):
            received.append(event.delta_text)
    assert received == ["A"]
