from __future__ import annotations

import base64
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from imgedit import mcp_server
from imgedit.cache import GenerationRecord
from imgedit.tools.errors import RemoteTaskError, ValidationError
from imgedit.tools.manager import ImageInfo, ImageToolManager, ToolResponse
from imgedit.tools.modelscope import BoundingBox


@pytest.fixture
def manager(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    mgr = MagicMock(spec=ImageToolManager)
    monkeypatch.setattr(mcp_server, "_manager", mgr)
    return mgr


async def _run_handle(monkeypatch: pytest.MonkeyPatch, req: dict | str) -> list[dict]:
    writes: list[dict] = []
    monkeypatch.setattr(mcp_server, "_write", lambda obj: writes.append(obj))
    await mcp_server._handle(req if isinstance(req, str) else json.dumps(req))
    return writes


def _call(name: str, arguments: dict, req_id: int = 1) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": req_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }


@pytest.mark.asyncio
async def test_initialize_negotiates_version(monkeypatch: pytest.MonkeyPatch) -> None:
    writes = await _run_handle(monkeypatch, {
        "jsonrpc": "2.0", "id": 1, "method": "initialize",
        "params": {"protocolVersion": "1999-01-01"},
    })
    result = writes[0]["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"]["name"] == "imgedit"


@pytest.mark.asyncio
async def test_initialized_notification_has_no_response(monkeypatch: pytest.MonkeyPatch) -> None:
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert writes == []


@pytest.mark.asyncio
async def test_tools_list_names(monkeypatch: pytest.MonkeyPatch) -> None:
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    names = [tool["name"] for tool in writes[0]["result"]["tools"]]
    assert names == [
        "fetch_image", "rotate_image", "crop_image", "ocr_extract", "locate_object",
        "generate_image", "edit_image", "get_image_info", "list_ai_images",
    ]


@pytest.mark.asyncio
async def test_parse_error_and_unknown_method(monkeypatch: pytest.MonkeyPatch) -> None:
    writes = await _run_handle(monkeypatch, "{not json")
    assert writes[0]["error"]["code"] == -32700
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "id": 3, "method": "resources/list"})
    assert writes[0]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_ping(monkeypatch: pytest.MonkeyPatch) -> None:
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "id": 4, "method": "ping"})
    assert writes[0]["result"] == {}


@pytest.mark.asyncio
async def test_rotate_returns_json_block(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.rotate_image = AsyncMock(return_value=ToolResponse(
        "http://cdn.test/cache/processed/h/result.png", "rotated-image", "image/png", "Image rotated."
    ))
    writes = await _run_handle(monkeypatch, _call("rotate_image", {"url": "https://x.test/a.png", "direction": "left_90"}))
    payload = writes[0]["result"]
    assert payload["isError"] is False
    assert len(payload["content"]) == 1
    body = json.loads(payload["content"][0]["text"])
    assert body["url"] == "http://cdn.test/cache/processed/h/result.png"
    assert body["mimeType"] == "image/png"
    manager.rotate_image.assert_awaited_once_with("https://x.test/a.png", "left_90")


@pytest.mark.asyncio
async def test_inline_png_becomes_image_block(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.crop_image = AsyncMock(return_value=ToolResponse(
        "", "cropped-image", "image/png", "Image cropped.", inline_png=b"\x89PNG-bytes"
    ))
    writes = await _run_handle(monkeypatch, _call(
        "crop_image", {"url": "https://x.test/a.png", "x1": 0, "y1": "0", "x2": 500.0, "y2": 500}
    ))
    content = writes[0]["result"]["content"]
    image = [b for b in content if b["type"] == "image"][0]
    assert base64.b64decode(image["data"]) == b"\x89PNG-bytes"
    manager.crop_image.assert_awaited_once_with("https://x.test/a.png", 0, 0, 500, 500)


@pytest.mark.asyncio
async def test_tool_error_sets_is_error(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.generate_image = AsyncMock(side_effect=RemoteTaskError("E7", "rejected"))
    writes = await _run_handle(monkeypatch, _call("generate_image", {"prompt": "x"}))
    payload = writes[0]["result"]
    assert payload["isError"] is True
    assert "E7" in payload["content"][0]["text"]


@pytest.mark.asyncio
async def test_bad_integer_argument_sets_is_error(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    writes = await _run_handle(monkeypatch, _call("crop_image", {"url": "https://x.test/a.png", "x1": "left"}))
    assert writes[0]["result"]["isError"] is True
    manager.crop_image.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_tool_sets_is_error(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    writes = await _run_handle(monkeypatch, _call("upscale", {}))
    assert writes[0]["result"]["isError"] is True


@pytest.mark.asyncio
async def test_unexpected_exception_is_internal_error(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.get_image_info = AsyncMock(side_effect=KeyError("boom"))
    writes = await _run_handle(monkeypatch, _call("get_image_info", {"url": "https://x.test/a.png"}, req_id=9))
    assert writes[0]["id"] == 9
    assert writes[0]["error"]["code"] == -32603


@pytest.mark.asyncio
async def test_ocr_accepts_single_string(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.ocr_extract = AsyncMock(return_value=[ToolResponse("u", "ocr-image", "image/png", "hello")])
    writes = await _run_handle(monkeypatch, _call("ocr_extract", {"urls": "https://x.test/a.png"}))
    body = json.loads(writes[0]["result"]["content"][0]["text"])
    assert body == [{"url": "u", "name": "ocr-image", "mimeType": "image/png", "text": "hello"}]
    manager.ocr_extract.assert_awaited_once_with(["https://x.test/a.png"])


@pytest.mark.asyncio
async def test_locate_object_payload(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.locate_object = AsyncMock(return_value=[BoundingBox(1, 2, 3, 4)])
    writes = await _run_handle(monkeypatch, _call("locate_object", {"url": "https://x.test/a.png", "object_name": "cat"}))
    body = json.loads(writes[0]["result"]["content"][0]["text"])
    assert body["count"] == 1
    assert body["boxes"] == [{"x1": 1, "y1": 2, "x2": 3, "y2": 4}]


@pytest.mark.asyncio
async def test_info_and_history(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.get_image_info = AsyncMock(return_value=ImageInfo(4, 2, 8, "image/png", 99, 2.0))
    writes = await _run_handle(monkeypatch, _call("get_image_info", {"url": "https://x.test/a.png"}))
    assert json.loads(writes[0]["result"]["content"][0]["text"])["total_pixels"] == 8

    manager.list_ai_images = MagicMock(return_value=[
        GenerationRecord(image_url="https://out.test/g.png", image_type="generated", prompt="fox",
                         created_at="2026-01-01T00:00:00+00:00"),
    ])
    writes = await _run_handle(monkeypatch, _call("list_ai_images", {"limit": 3, "type": "generated"}))
    body = json.loads(writes[0]["result"]["content"][0]["text"])
    assert body[0]["prompt"] == "fox"
    manager.list_ai_images.assert_called_once_with(3, "generated")


@pytest.mark.asyncio
async def test_validation_error_message_reaches_client(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.fetch_image = AsyncMock(side_effect=ValidationError("url must not be empty"))
    writes = await _run_handle(monkeypatch, _call("fetch_image", {}))
    assert "url must not be empty" in writes[0]["result"]["content"][0]["text"]
    manager.fetch_image.assert_awaited_once_with("", None)


@pytest.mark.asyncio
async def test_array_params_are_invalid_params(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": ["x"]})
    assert writes[0]["id"] == 5
    assert writes[0]["error"]["code"] == -32602
    writes = await _run_handle(monkeypatch, {"jsonrpc": "2.0", "id": 6, "method": "initialize", "params": ["x"]})
    assert writes[0]["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_array_arguments_are_invalid_params(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    req = _call("fetch_image", {}, req_id=7)
    req["params"]["arguments"] = ["x"]
    writes = await _run_handle(monkeypatch, req)
    assert writes[0]["error"]["code"] == -32602
    manager.fetch_image.assert_not_called()


@pytest.mark.asyncio
async def test_image_url_and_image_type_aliases(monkeypatch: pytest.MonkeyPatch, manager: MagicMock) -> None:
    manager.get_image_info = AsyncMock(return_value=ImageInfo(4, 2, 8, "image/png", 99, 2.0))
    await _run_handle(monkeypatch, _call("get_image_info", {"image_url": "https://x.test/a.png"}))
    manager.get_image_info.assert_awaited_once_with("https://x.test/a.png")

    manager.list_ai_images = MagicMock(return_value=[])
    await _run_handle(monkeypatch, _call("list_ai_images", {"image_type": "edited"}))
    manager.list_ai_images.assert_called_once_with(None, "edited")
