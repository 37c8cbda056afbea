from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from imgedit import config
from imgedit.log import LOG_FORMAT, configure_logging


def test_defaults_without_file_or_env(tmp_path: Path) -> None:
    cfg = config.load_config(tmp_path / "missing.yml", environ={"HOME": str(tmp_path)})
    assert cfg.port == 3000
    assert cfg.host == "0.0.0.0"
    assert cfg.poll_interval == 5.0
    assert cfg.task_timeout == 300.0
    assert cfg.mcp_path == "/mcp"
    assert cfg.cache_base_url == "http://0.0.0.0:3000/cache"
    assert cfg.modelscope_api_key == ""


def test_yaml_then_env_precedence(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text(
        "port: 8080\n"
        "cache_dir: /srv/from-file\n"
        "vision_model: custom/vl\n"
        "poll_interval: 2\n",
        encoding="utf-8",
    )
    cfg = config.load_config(path, environ={"MCP_PORT": "9090", "MODELSCOPE_API_KEY": " tok "})
    assert cfg.port == 9090
    assert cfg.vision_model == "custom/vl"
    assert cfg.poll_interval == 2.0
    assert cfg.cache_dir == "/srv/from-file"
    assert cfg.modelscope_api_key == "tok"

    cfg = config.load_config(path, environ={"CACHE_DIR": "/srv/from-env"})
    assert cfg.cache_dir == "/srv/from-env"


def test_invalid_values_fall_back(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text("port: 99999\npoll_interval: -1\nlog_level: loud\nhost: ''\n", encoding="utf-8")
    cfg = config.load_config(path, environ={"IMGEDIT_TASK_TIMEOUT": "soon"})
    assert cfg.port == 3000
    assert cfg.poll_interval == 5.0
    assert cfg.task_timeout == 300.0
    assert cfg.log_level == "INFO"
    assert cfg.host == "0.0.0.0"


def test_non_mapping_yaml_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert config.load_config(path, environ={}).port == 3000


def test_secret_key_moves_mcp_path(tmp_path: Path) -> None:
    cfg = config.load_config(tmp_path / "none.yml", environ={"SECRET_KEY": "s3cr3t"})
    assert cfg.mcp_path == "/s3cr3t/mcp"
    assert config.mcp_path("  ") == "/mcp"


@pytest.mark.parametrize("env,expected", [
    ({"CACHE_URL": "https://files.test/"}, "https://files.test/cache"),
    ({"DOMAIN": "img.example.com"}, "http://img.example.com/cache"),
    ({"DOMAIN": "http://https://img.example.com/"}, "https://img.example.com/cache"),
    ({}, "http://127.0.0.1:3000/cache"),
])
def test_resolve_cache_base_url(env: dict, expected: str) -> None:
    assert config.resolve_cache_base_url("127.0.0.1:3000", env) == expected


def test_resolve_cache_dir(tmp_path: Path) -> None:
    assert config.resolve_cache_dir({"CACHE_DIR": "/data/c"}) == Path("/data/c")
    assert config.resolve_cache_dir({"XDG_CACHE_HOME": str(tmp_path)}) == tmp_path / "imgedit"
    assert config.resolve_cache_dir({}).name == "imgedit"


def test_configure_logging_installs_one_stderr_handler() -> None:
    logger = configure_logging("debug")
    configure_logging("info")
    handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(handlers) == 1
    assert handlers[0].formatter._fmt == LOG_FORMAT
    assert logger.level == logging.INFO
