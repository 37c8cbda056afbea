"""
MCP (Model Context Protocol) server for imgedit.

Exposes the image tools (fetch, rotate, crop, OCR, object location,
generation, editing, image info and the AI image history) as MCP tools that
any MCP-compatible client can use.

Protocol: JSON-RPC 2.0 over stdio (one JSON object per line). The same
``dispatch`` function backs the HTTP endpoint in :mod:`imgedit.web`.

Transform results that could not be cached come back as an inline
base64-encoded PNG image block instead of a URL.

Usage
-----
Run directly:
    python -m imgedit.mcp_server

Or via the CLI:
    imgedit mcp
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import sys
from typing import Any

from . import __version__
from .config import load_config
from .log import configure_logging
from .tools.errors import ImageToolError, ValidationError
from .tools.manager import ImageToolManager, ToolResponse

log = logging.getLogger("imgedit.mcp")

_manager: ImageToolManager | None = None


def _get_manager() -> ImageToolManager:
    global _manager
    if _manager is None:
        _manager = ImageToolManager.from_config(load_config())
    return _manager


def set_manager(manager: ImageToolManager | None) -> None:
    global _manager
    _manager = manager


# ---------------------------------------------------------------------------
# Tool schema registry, one entry per exposed tool
# ---------------------------------------------------------------------------

_URL_PROP = {"type": "string", "description": "http(s) URL of the source image. image_url is accepted as an alias."}

_TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "name": "fetch_image",
        "description": (
            "Download an image, cache it, and return its cached URL together with a short "
            "name and a description from the vision model. Pass 'focus' to steer the "
            "description towards a particular detail."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "url":   _URL_PROP,
                "focus": {"type": "string", "description": "Optional aspect to describe in detail."},
            },
            "required": ["url"],
        },
    },
    {
        "name": "rotate_image",
        "description": "Rotate an image by 90 degrees either way or flip it by 180, returning the cached PNG URL.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "url": _URL_PROP,
                "direction": {
                    "type": "string",
                    "enum": ["right_90", "left_90", "flip_180"],
                    "description": "right_90 = clockwise, left_90 = counter-clockwise.",
                },
            },
            "required": ["url", "direction"],
        },
    },
    {
        "name": "crop_image",
        "description": (
            "Crop an image to a box given on a 0-999 grid over the image, the same space "
            "locate_object returns. Reversed corners are swapped."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "url": _URL_PROP,
                "x1": {"type": "integer", "minimum": 0, "maximum": 999},
                "y1": {"type": "integer", "minimum": 0, "maximum": 999},
                "x2": {"type": "integer", "minimum": 0, "maximum": 999},
                "y2": {"type": "integer", "minimum": 0, "maximum": 999},
            },
            "required": ["url", "x1", "y1", "x2", "y2"],
        },
    },
    {
        "name": "ocr_extract",
        "description": (
            "Extract the text from one or more images. All images are processed "
            "concurrently; results are returned in input order and any failure fails the call."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "urls": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "description": "Image URLs to read.",
                },
            },
            "required": ["urls"],
        },
    },
    {
        "name": "locate_object",
        "description": (
            "Find every instance of an object in an image. Returns bounding boxes on the "
            "0-999 grid, ready to pass to crop_image."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "url":         _URL_PROP,
                "object_name": {"type": "string", "description": "What to look for, e.g. 'red car'."},
            },
            "required": ["url", "object_name"],
        },
    },
    {
        "name": "generate_image",
        "description": "Generate an image from a text prompt. Waits for the remote job (up to 5 minutes).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "prompt":          {"type": "string"},
                "negative_prompt": {"type": "string", "description": "What to keep out of the image."},
                "aspect_ratio": {
                    "type": "string",
                    "enum": ["1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3"],
                    "description": "Default 1:1.",
                },
                "resolution": {
                    "type": "string",
                    "enum": ["1k", "2k", "4k"],
                    "description": "Default 1k. 4k is capped at 2048 px per side.",
                },
                "steps": {"type": "integer", "minimum": 1},
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "edit_image",
        "description": "Edit an existing image following a text instruction. Waits for the remote job.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "url":    _URL_PROP,
                "prompt": {"type": "string", "description": "The edit to apply."},
                "size":   {"type": "string", "description": "Optional output size, e.g. '1024x1024'."},
                "steps":  {"type": "integer", "minimum": 1},
            },
            "required": ["url", "prompt"],
        },
    },
    {
        "name": "get_image_info",
        "description": "Report an image's width, height, pixel count, MIME type, byte size and aspect ratio.",
        "inputSchema": {
            "type": "object",
            "properties": {"url": _URL_PROP},
            "required": ["url"],
        },
    },
    {
        "name": "list_ai_images",
        "description": "List previously generated or edited images, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "minimum": 1, "description": "Default 10."},
                "type": {
                    "type": "string",
                    "enum": ["all", "generated", "edited"],
                    "description": "Default all. image_type is accepted as an alias.",
                },
            },
        },
    },
]


# ---------------------------------------------------------------------------
# Tool dispatch, returns a list of MCP content blocks
# ---------------------------------------------------------------------------

def _text(s: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": s}]


def _json_text(obj: Any) -> list[dict[str, Any]]:
    return _text(json.dumps(obj, ensure_ascii=False, indent=2))


def _response_blocks(response: ToolResponse) -> list[dict[str, Any]]:
    blocks = _json_text(response.as_dict())
    if response.inline_png is not None:
        b64 = base64.standard_b64encode(response.inline_png).decode("ascii")
        blocks.append({"type": "image", "data": b64, "mimeType": "image/png"})
    return blocks


def _str_arg(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    return value if isinstance(value, str) else ""


def _opt_str(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    return str(value) if value not in (None, "") else None


# Older clients send image_url / image_type; both spellings are accepted.
def _url_arg(arguments: dict[str, Any]) -> str:
    return _str_arg(arguments, "url") or _str_arg(arguments, "image_url")


def _int_arg(arguments: dict[str, Any], key: str) -> int:
    value = arguments.get(key)
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except ValueError as exc:
        raise ValidationError(f"{key} must be an integer") from exc


def _opt_int(arguments: dict[str, Any], key: str) -> int | None:
    return _int_arg(arguments, key) if arguments.get(key) is not None else None


async def _call_tool(name: str, arguments: dict[str, Any]) -> list[dict[str, Any]]:
    """Dispatch a tool call. ImageToolError propagates to the caller."""
    mgr = _get_manager()

    if name == "fetch_image":
        return _response_blocks(await mgr.fetch_image(_url_arg(arguments), _opt_str(arguments, "focus")))

    if name == "rotate_image":
        return _response_blocks(await mgr.rotate_image(
            _url_arg(arguments), _str_arg(arguments, "direction")
        ))

    if name == "crop_image":
        return _response_blocks(await mgr.crop_image(
            _url_arg(arguments),
            _int_arg(arguments, "x1"),
            _int_arg(arguments, "y1"),
            _int_arg(arguments, "x2"),
            _int_arg(arguments, "y2"),
        ))

    if name == "ocr_extract":
        urls = arguments.get("urls")
        if isinstance(urls, str):
            urls = [urls]
        if not isinstance(urls, list):
            raise ValidationError("urls must be a list of strings")
        results = await mgr.ocr_extract([str(u) for u in urls])
        return _json_text([r.as_dict() for r in results])

    if name == "locate_object":
        boxes = await mgr.locate_object(_url_arg(arguments), _str_arg(arguments, "object_name"))
        return _json_text({
            "object": _str_arg(arguments, "object_name"),
            "count": len(boxes),
            "boxes": [{"x1": b.x1, "y1": b.y1, "x2": b.x2, "y2": b.y2} for b in boxes],
        })

    if name == "generate_image":
        return _response_blocks(await mgr.generate_image(
            _str_arg(arguments, "prompt"),
            negative_prompt=_opt_str(arguments, "negative_prompt"),
            aspect_ratio=_opt_str(arguments, "aspect_ratio"),
            resolution=_opt_str(arguments, "resolution"),
            steps=_opt_int(arguments, "steps"),
        ))

    if name == "edit_image":
        return _response_blocks(await mgr.edit_image(
            _url_arg(arguments),
            _str_arg(arguments, "prompt"),
            size=_opt_str(arguments, "size"),
            steps=_opt_int(arguments, "steps"),
        ))

    if name == "get_image_info":
        info = await mgr.get_image_info(_url_arg(arguments))
        return _json_text(info.as_dict())

    if name == "list_ai_images":
        records = mgr.list_ai_images(_opt_int(arguments, "limit"), _opt_str(arguments, "type") or _opt_str(arguments, "image_type"))
        return _json_text([r.model_dump() for r in records])

    raise ValidationError(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 helpers
# ---------------------------------------------------------------------------

def _ok(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _err(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _write(obj: dict) -> None:
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------

async def dispatch(req: Any) -> dict | None:
    """Handle one decoded JSON-RPC request. Notifications return ``None``."""
    if not isinstance(req, dict):
        return _err(None, -32600, "Invalid Request")

    req_id = req.get("id")
    method = req.get("method", "")
    params = req.get("params") or {}
    if not isinstance(params, dict):
        return _err(req_id, -32602, "Invalid params: expected an object")

    if method == "initialize":
        client_ver = params.get("protocolVersion", "2024-11-05")
        agreed_ver = client_ver if client_ver in {"2024-11-05", "2025-03-26"} else "2024-11-05"
        return _ok(req_id, {
            "protocolVersion": agreed_ver,
            "capabilities": {"tools": {}},
            "serverInfo": {
                "name": "imgedit",
                "version": __version__,
            },
        })

    if method == "notifications/initialized":
        return None

    if method == "tools/list":
        return _ok(req_id, {"tools": _TOOL_SCHEMAS})

    if method == "tools/call":
        tool_name = params.get("name", "")
        arguments = params.get("arguments") or {}
        if not isinstance(tool_name, str) or not isinstance(arguments, dict):
            return _err(req_id, -32602, "Invalid params: name must be a string and arguments an object")
        try:
            content_blocks = await _call_tool(tool_name, arguments)
        except ImageToolError as exc:
            log.warning("tool %s failed: %s", tool_name, exc)
            return _ok(req_id, {"content": _text(f"Error: {exc}"), "isError": True})
        except Exception as exc:
            log.exception("tool %s crashed", tool_name)
            return _err(req_id, -32603, f"Internal error: {exc}")
        return _ok(req_id, {"content": content_blocks, "isError": False})

    if method == "ping":
        return _ok(req_id, {})

    if req_id is not None:
        return _err(req_id, -32601, f"Method not found: {method}")
    return None


async def _handle(line: str) -> None:
    try:
        req = json.loads(line)
    except json.JSONDecodeError:
        _write(_err(None, -32700, "Parse error"))
        return
    response = await dispatch(req)
    if response is not None:
        _write(response)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run() -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    while True:
        try:
            line_bytes = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as exc:
            log.error("stdin read failed: %s", exc)
            break
        if not line_bytes:
            break
        line = line_bytes.decode(errors="replace").strip()
        if line:
            await _handle(line)


def main() -> None:
    configure_logging(load_config().log_level)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
