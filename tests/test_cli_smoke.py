"""Smoke tests for the CLI entry point."""
from __future__ import annotations

import json

import pandas as pd
import pytest

from lead_sync import __main__
from lead_sync.cli import main


def _write_input(tmp_path, name="zoominfo.csv", title="CTO"):
    input_path = tmp_path / name
    input_path.write_text(
        f"first_name,last_name,phone,email,company,title\nJane,Doe,5551234567,jane@example.com,Acme,{title}\n",
        encoding="utf-8",
    )
    return input_path


def _write_config(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"matching": {"thresholds": {"same": 0.95, "possible_duplicate": 0.8}}}),
        encoding="utf-8",
    )
    return config_path


def test_cli_smoke_creates_then_merges(tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
    store_path = tmp_path / "store.json"
    audit_path = tmp_path / "audit.csv"
    config_path = _write_config(tmp_path)

    exit_code = main(
        [
            "sync",
            str(_write_input(tmp_path)),
            "--config",
            str(config_path),
            "--store",
            str(store_path),
            "--audit",
            str(audit_path),
            "--provider",
            "ZoomInfo",
        ]
    )

    assert exit_code == 0
    assert "created: 1" in capsys.readouterr().out
    payload = json.loads(store_path.read_text(encoding="utf-8"))
    assert [entity["fields"]["email"] for entity in payload["entities"]] == ["jane@example.com"]
    assert payload["entities"][0]["provenance"] == ["ZoomInfo"]
    audit = pd.read_csv(audit_path)
    assert audit.loc[0, "entity_id"] == "L-000001"

    exit_code = main(
        [
            "sync",
            str(_write_input(tmp_path, name="apollo.csv", title="Chief Technology Officer")),
            "--store",
            str(store_path),
            "--provider",
            "Apollo.io",
            "--mode",
            "concurrent",
            "--max-workers",
            "2",
        ]
    )

    assert exit_code == 0
    assert "merged: 1" in capsys.readouterr().out
    payload = json.loads(store_path.read_text(encoding="utf-8"))
    assert len(payload["entities"]) == 1
    # ZoomInfo outranks Apollo.io for contact fields
    assert payload["entities"][0]["fields"]["job_title"] == "CTO"


def test_cli_cursor_skips_already_seen_rows(tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
    input_path = _write_input(tmp_path)
    args = ["sync", str(input_path), "--store", str(tmp_path / "store.json"), "--cursor", str(tmp_path / "cursor.json")]

    assert main(args) == 0
    capsys.readouterr()
    assert main(args) == 0

    assert "records: 0" in capsys.readouterr().out
    assert json.loads((tmp_path / "cursor.json").read_text(encoding="utf-8"))["last_retrieved_at"]


def test_cli_export_writes_entities(tmp_path) -> None:
    store_path = tmp_path / "store.json"
    main(["sync", str(_write_input(tmp_path)), "--store", str(store_path), "--promote"])
    output_path = tmp_path / "entities.xlsx"

    exit_code = main(["export", str(output_path), "--store", str(store_path), "--stage", "lead"])

    assert exit_code == 0
    frame = pd.read_excel(output_path)
    assert frame.loc[0, "id"] == "L-000001"
    assert frame.loc[0, "field.email"] == "jane@example.com"


def test_module_entry_point_delegates_to_cli(tmp_path) -> None:
    """The package entry point should behave like the CLI."""

    store_path = tmp_path / "store.json"

    exit_code = __main__.main(["sync", str(_write_input(tmp_path)), "--store", str(store_path)])

    assert exit_code == 0
    assert "jane@example.com" in store_path.read_text(encoding="utf-8")


def test_module_entry_point_without_arguments_shows_help(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = __main__.main([])

    captured = capsys.readouterr()
    assert "python -m lead_sync" in captured.out
    assert exit_code == 2


def test_package_exports_resolve() -> None:
    import lead_sync

    missing = [name for name in lead_sync.__all__ if not hasattr(lead_sync, name)]

    assert missing == []
    assert lead_sync.providers.FileProvider is not None
    assert lead_sync.ingestion.load_records is not None
