"""
Tests for the Telegram transport
"""
import json

import httpx
import pytest

from cierrebot.services.transport import TelegramTransport, _chunks, parse_update


def test_parse_text_message():
    update = {"update_id": 1, "message": {"chat": {"id": 42}, "text": "/cierre"}}
    assert parse_update(update) == {"conversation_id": "42", "text": "/cierre", "attachment_ref": None}


def test_parse_photo_picks_largest_size():
    update = {
        "message": {
            "chat": {"id": -100},
            "caption": "depósito",
            "photo": [
                {"file_id": "small", "file_size": 1000},
                {"file_id": "large", "file_size": 90000},
                {"file_id": "medium", "file_size": 20000},
            ],
        }
    }
    event = parse_update(update)
    assert event == {"conversation_id": "-100", "text": "depósito", "attachment_ref": "large"}


def test_parse_image_document_and_edits():
    update = {
        "edited_message": {
            "chat": {"id": 7},
            "document": {"file_id": "doc-1", "mime_type": "image/png"},
        }
    }
    assert parse_update(update)["attachment_ref"] == "doc-1"


@pytest.mark.parametrize(
    "update",
    [
        {"update_id": 5},
        {"message": {"chat": {"id": 1}}},
        {"message": {"text": "sin chat"}},
        {"message": {"chat": {"id": 1}, "document": {"file_id": "x", "mime_type": "application/pdf"}}},
    ],
)
def test_parse_ignores_unusable_updates(update):
    assert parse_update(update) is None


def test_chunks():
    assert _chunks("hola") == ["hola"]
    assert _chunks("a" * 5000) == ["a" * 4096, "a" * 904]

    line = "x" * 3000 + "\n"
    assert _chunks(line * 2) == [line, line]


def mock_transport(handler) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramTransport("TOKEN", client=client)


@pytest.mark.asyncio
async def test_send_posts_each_chunk():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    transport = mock_transport(handler)
    await transport.send("42", "a" * 5000)
    await transport.aclose()

    assert [r.url.path for r in requests] == ["/botTOKEN/sendMessage"] * 2
    bodies = [json.loads(r.content) for r in requests]
    assert bodies[0] == {"chat_id": "42", "text": "a" * 4096}
    assert bodies[1]["text"] == "a" * 904


@pytest.mark.asyncio
async def test_send_raises_on_http_error():
    transport = mock_transport(lambda request: httpx.Response(500, json={"ok": False}))
    with pytest.raises(httpx.HTTPStatusError):
        await transport.send("42", "hola")
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_attachment_downloads_file():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/botTOKEN/getFile":
            assert request.url.params["file_id"] == "file-1"
            return httpx.Response(200, json={"ok": True, "result": {"file_path": "photos/a.jpg"}})
        if request.url.path == "/file/botTOKEN/photos/a.jpg":
            return httpx.Response(200, content=b"\xff\xd8 jpeg")
        return httpx.Response(404)

    transport = mock_transport(handler)
    assert await transport.fetch_attachment("file-1") == b"\xff\xd8 jpeg"
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_attachment_reports_api_errors():
    transport = mock_transport(
        lambda request: httpx.Response(200, json={"ok": False, "description": "file is too big"})
    )
    with pytest.raises(httpx.HTTPError):
        await transport.fetch_attachment("file-1")
    await transport.aclose()
