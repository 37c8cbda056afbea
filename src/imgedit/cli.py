from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace

from .cache import LocalFileStorage
from .config import load_config
from .mcp_server import main as mcp_main
from .tools.errors import ImageToolError
from .tools.manager import ImageToolManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgedit",
        description="Image fetch, transform, OCR and generation tools served over MCP.",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser(
        "mcp",
        help=(
            "Run the MCP (Model Context Protocol) server over stdio. "
            "Hook this up to any MCP client."
        ),
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server (MCP endpoint + cached files)")
    serve_parser.add_argument("--host", help="Bind address (default: MCP_HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: MCP_PORT or 3000)")
    serve_parser.set_defaults(func=serve_command)

    history_parser = subparsers.add_parser("history", help="List generated and edited images, newest first")
    history_parser.add_argument("--limit", type=int, default=10, help="Maximum records to print (default: 10)")
    history_parser.add_argument(
        "--type",
        dest="image_type",
        choices=["all", "generated", "edited"],
        default="all",
        help="Filter by record type (default: all)",
    )
    history_parser.set_defaults(func=history_command)

    return parser


def serve_command(args: argparse.Namespace) -> int:
    from .web import serve

    cfg = load_config()
    if args.host:
        cfg = replace(cfg, host=args.host)
    if args.port:
        cfg = replace(cfg, port=args.port)
    serve(cfg)
    return 0


def history_command(args: argparse.Namespace) -> int:
    cfg = load_config()
    manager = ImageToolManager(LocalFileStorage(cfg.cache_dir, cfg.cache_base_url))
    try:
        records = manager.list_ai_images(args.limit, args.image_type)
    except ImageToolError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps([r.model_dump() for r in records], ensure_ascii=False, indent=2))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "mcp":
        mcp_main()
        return
    if hasattr(args, "func"):
        sys.exit(args.func(args))
    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
