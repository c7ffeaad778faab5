from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from caption_localizer.cli import cli
from caption_localizer.cli.commands_render import load_captions
from caption_localizer.config import get_settings


def test_fonts_select() -> None:
    r = CliRunner().invoke(cli, ["fonts", "select", "Xin chào thế giới", "--lang", "vi"])
    assert r.exit_code == 0, r.output
    body = json.loads(r.output)
    assert body["language"] == "vi"
    assert body["primary_font"] == "Roboto"
    assert body["coverage"]["percentage"] == 100.0


def test_fonts_select_unknown_language() -> None:
    r = CliRunner().invoke(cli, ["fonts", "select", "hi", "--lang", "xx"])
    assert r.exit_code == 1
    assert "Error:" in r.output


def test_fonts_validate_and_recommend() -> None:
    r = CliRunner().invoke(cli, ["fonts", "validate", "Roboto", "--lang", "en", "--sample", "Hello"])
    assert r.exit_code == 0, r.output
    assert json.loads(r.output)["is_valid"] is True

    r = CliRunner().invoke(cli, ["fonts", "recommend", "--lang", "ar", "--use-case", "heading"])
    assert r.exit_code == 0, r.output
    rec = json.loads(r.output)
    assert rec["primary"][0] == "Noto Sans Arabic"
    assert any("text direction" in s for s in rec["recommendations"])


def test_config_report_masks_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-very-secret")
    get_settings.cache_clear()
    r = CliRunner().invoke(cli, ["config-report"])
    assert r.exit_code == 0, r.output
    assert "sk-very-secret" not in r.output
    report = json.loads(r.output)
    assert report["secrets"]["openai_api_key"] == "SET"
    assert report["secrets"]["api_token"] == "UNSET"
    assert report["public"]["render_quality"] in ("low", "medium", "high")


def test_load_captions_accepts_both_shapes(tmp_path: Path) -> None:
    flat = tmp_path / "flat.json"
    flat.write_text(json.dumps([{"start": 0, "end": 1, "text": "hi"}]), encoding="utf-8")
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"segments": [{"start_time": 0, "end_time": 1, "text": "hi"}]}), encoding="utf-8")
    assert load_captions(flat, language="en")[0].id == "seg_1"
    assert load_captions(wrapped, language="fr")[0].language == "fr"


def test_fonts_preload_loads_primary_and_top_secondary() -> None:
    r = CliRunner().invoke(cli, ["fonts", "preload", "--lang", "vi"])
    assert r.exit_code == 0, r.output
    body = json.loads(r.output)
    assert [f["font"] for f in body["fonts"]] == ["Roboto", "Open Sans", "Noto Sans", "Lato"]
    # no payloads on disk and downloads are off: fontconfig resolves by name later
    assert all(f["path"] is None and f["error"] is None for f in body["fonts"])
    assert body["metrics"]["failed_loads"] == 0
