from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .cache.storage import collapse_scheme
from .tasks import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT
from .tools.modelscope import (
    DEFAULT_API_ROOT,
    DEFAULT_EDIT_MODEL,
    DEFAULT_GENERATION_MODEL,
    DEFAULT_VISION_MODEL,
)

CONFIG_PATH = Path.home() / ".config" / "imgedit" / "config.yml"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    cache_dir: str = ""                 # empty = resolve_cache_dir()
    cache_base_url: str = ""            # empty = resolve_cache_base_url()
    secret_key: str = ""                # non-empty moves the MCP endpoint to /<secret>/mcp
    modelscope_api_key: str = ""
    modelscope_api_root: str = DEFAULT_API_ROOT
    vision_model: str = DEFAULT_VISION_MODEL
    generation_model: str = DEFAULT_GENERATION_MODEL
    edit_model: str = DEFAULT_EDIT_MODEL
    poll_interval: float = DEFAULT_POLL_INTERVAL    # seconds between task status checks
    task_timeout: float = DEFAULT_TIMEOUT           # seconds before a pending task times out
    http_timeout: float = 60.0
    log_level: str = "INFO"

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def mcp_path(self) -> str:
        return mcp_path(self.secret_key)


def mcp_path(secret_key: str | None) -> str:
    secret = (secret_key or "").strip()
    return f"/{secret}/mcp" if secret else "/mcp"


def resolve_cache_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    explicit = env.get("CACHE_DIR", "").strip()
    if explicit:
        return Path(explicit)
    xdg = env.get("XDG_CACHE_HOME", "").strip()
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "imgedit"


def resolve_cache_base_url(bind_address: str, environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    cache_url = env.get("CACHE_URL", "").strip()
    if cache_url:
        return f"{cache_url.rstrip('/')}/cache"
    domain = env.get("DOMAIN", "").strip() or bind_address
    domain = domain.rstrip("/")
    if not domain.startswith(("http://", "https://")):
        domain = f"http://{domain}"
    return f"{collapse_scheme(domain)}/cache"


def _positive_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    defaults = asdict(AppConfig())
    merged = {**defaults, **{k: v for k, v in cfg.items() if k in defaults}}
    for key in ("host", "modelscope_api_root", "vision_model", "generation_model", "edit_model"):
        if not isinstance(merged.get(key), str) or not merged[key].strip():
            merged[key] = defaults[key]
    for key in ("cache_dir", "cache_base_url", "secret_key", "modelscope_api_key"):
        merged[key] = str(merged.get(key) or "").strip()
    raw_port = merged.get("port")
    try:
        port = int(raw_port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        port = defaults["port"]
    merged["port"] = port if 0 < port < 65536 else defaults["port"]
    merged["poll_interval"] = _positive_float(merged.get("poll_interval"), defaults["poll_interval"])
    merged["task_timeout"] = _positive_float(merged.get("task_timeout"), defaults["task_timeout"])
    merged["http_timeout"] = _positive_float(merged.get("http_timeout"), defaults["http_timeout"])
    level = str(merged.get("log_level") or "").upper()
    merged["log_level"] = level if level in _LOG_LEVELS else defaults["log_level"]
    return merged


# Environment variable -> AppConfig field.
_ENV_FIELDS = {
    "MCP_HOST": "host",
    "MCP_PORT": "port",
    "SECRET_KEY": "secret_key",
    "MODELSCOPE_API_KEY": "modelscope_api_key",
    "MODELSCOPE_API_ROOT": "modelscope_api_root",
    "IMGEDIT_POLL_INTERVAL": "poll_interval",
    "IMGEDIT_TASK_TIMEOUT": "task_timeout",
    "LOG_LEVEL": "log_level",
}


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Defaults, then the YAML file at *path* (if any), then the environment."""
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    config_path = path if path is not None else CONFIG_PATH
    if config_path.is_file():
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if isinstance(loaded, dict):
            raw.update(loaded)
    for env_name, field_name in _ENV_FIELDS.items():
        value = env.get(env_name, "").strip()
        if value:
            raw[field_name] = value

    cfg = AppConfig(**_validate(raw))
    # Environment beats the file for the cache location; the file beats the fallbacks.
    if env.get("CACHE_DIR", "").strip() or not cfg.cache_dir:
        cfg = replace(cfg, cache_dir=str(resolve_cache_dir(env)))
    if env.get("CACHE_URL", "").strip() or env.get("DOMAIN", "").strip() or not cfg.cache_base_url:
        cfg = replace(cfg, cache_base_url=resolve_cache_base_url(cfg.bind_address, env))
    return cfg
