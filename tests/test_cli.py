from __future__ import annotations

import json
import sys
from argparse import Namespace
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from imgedit import cli, config
from imgedit.cache import GenerationRecord, LocalFileStorage, save_ai_image_record


def test_main_routes_to_mcp(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"mcp": 0}

    def _mcp_main() -> None:
        calls["mcp"] += 1

    monkeypatch.setattr(cli, "mcp_main", _mcp_main)
    cli.main(["mcp"])
    assert calls["mcp"] == 1


def test_no_subcommand_prints_help_and_exits_2(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2
    assert "usage: imgedit" in capsys.readouterr().out


def test_history_type_is_restricted() -> None:
    parser = cli.build_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_args(["history", "--type", "upscaled"])
    assert exc.value.code == 2


def test_serve_overrides_host_and_port(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[config.AppConfig] = []

    import imgedit.web

    monkeypatch.setattr(imgedit.web, "serve", lambda cfg: seen.append(cfg))
    monkeypatch.setattr(cli, "load_config", lambda: config.AppConfig())
    code = cli.serve_command(Namespace(host="127.0.0.1", port=8123))
    assert code == 0
    assert seen[0].bind_address == "127.0.0.1:8123"


def test_history_prints_records(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    storage = LocalFileStorage(tmp_path, "http://cdn.test/cache")
    for stamp, kind in (("2026-03-01T00:00:00+00:00", "generated"), ("2026-03-02T00:00:00+00:00", "edited")):
        save_ai_image_record(storage, GenerationRecord(
            image_url=f"https://out.test/{kind}.png", image_type=kind, prompt="p", created_at=stamp,
        ))
    monkeypatch.setattr(
        cli, "load_config",
        lambda: config.AppConfig(cache_dir=str(tmp_path), cache_base_url="http://cdn.test/cache"),
    )

    with pytest.raises(SystemExit) as exc:
        cli.main(["history", "--limit", "5", "--type", "generated"])
    assert exc.value.code == 0
    records = json.loads(capsys.readouterr().out)
    assert [r["image_type"] for r in records] == ["generated"]
