"""imgedit HTTP surface.

Endpoints:
  GET  /health        service health + cache location
  POST <mcp_path>     one JSON-RPC request per POST, same dispatch as stdio
  GET  /cache/<key>   cached artifacts, so public URLs resolve
"""
from __future__ import annotations

import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from . import __version__, mcp_server
from .config import AppConfig
from .log import configure_logging
from .tools.manager import ImageToolManager

log = logging.getLogger("imgedit.web")


def create_app(cfg: AppConfig, manager: ImageToolManager | None = None) -> FastAPI:
    mcp_server.set_manager(manager or ImageToolManager.from_config(cfg))

    app = FastAPI(title="imgedit", version=__version__)

    @app.exception_handler(Exception)
    async def _global_exc(request: Request, exc: Exception) -> JSONResponse:
        log.error("Unhandled [%s %s]: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__, "cache_dir": cfg.cache_dir}

    @app.post(cfg.mcp_path)
    async def mcp(request: Request) -> Response:
        try:
            req = await request.json()
        except ValueError:
            return JSONResponse(mcp_server._err(None, -32700, "Parse error"))
        result = await mcp_server.dispatch(req)
        if result is None:
            return Response(status_code=202)
        return JSONResponse(result)

    cache_dir = Path(cfg.cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/cache", StaticFiles(directory=cache_dir), name="cache")
    return app


def serve(cfg: AppConfig) -> None:
    configure_logging(cfg.log_level)
    log.info("serving MCP on http://%s%s, cache at %s", cfg.bind_address, cfg.mcp_path, cfg.cache_base_url)
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())
