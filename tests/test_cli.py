import json
import sys
from pathlib import Path

import pytest
from loguru import logger
from typer.testing import CliRunner

from bpo_engine import cli

runner = CliRunner()


def _write_seed(path: Path, *, clients: bool = True) -> Path:
    payload = {
        "clients": [
            {
                "client_id": "c1",
                "name": "Padaria Central",
                "destination": "nibo",
                "config": {
                    "sources": ["santander"],
                    "categories": [
                        {"category_id": "cat-energia", "name": "Energia eletrica"},
                        {"category_id": "cat-aluguel", "name": "Aluguel"},
                    ],
                },
            }
        ]
        if clients
        else [],
        "captures": {
            "santander": {
                "c1": [
                    {
                        "source_id": "s-1",
                        "kind": "pagar",
                        "value": "320.50",
                        "description": "Conta energia eletrica marco",
                        "counterpart": "Enel",
                        "due_date": "2026-03-09",
                    }
                ]
            }
        },
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_cli(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
    monkeypatch.delenv("BPO_NOTIFY_WEBHOOK_URL", raising=False)
    yield
    # run-cycle binds loguru to the runner's captured stderr.
    logger.remove()
    logger.add(sys.stderr)


def test_run_cycle_with_seed_prints_summary(tmp_path: Path) -> None:
    seed = _write_seed(tmp_path / "seed.json")

    result = runner.invoke(cli.app, ["run-cycle", "--seed", str(seed), "--date", "2026-03-10"])

    assert result.exit_code == 0, result.output
    assert "2026-03-10" in result.output
    assert "completed" in result.output
    assert "synced" in result.output


def test_run_cycle_without_clients_exits_with_error(tmp_path: Path) -> None:
    seed = _write_seed(tmp_path / "seed.json", clients=False)

    result = runner.invoke(cli.app, ["run-cycle", "--seed", str(seed), "--date", "2026-03-10"])

    assert result.exit_code == 1
    assert "no active" in result.output


def test_run_cycle_rejects_bad_date() -> None:
    result = runner.invoke(cli.app, ["run-cycle", "--date", "10/03/2026"])

    assert result.exit_code == 2
    assert "Invalid --date" in result.output


def test_run_cycle_rejects_unreadable_seed(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    result = runner.invoke(cli.app, ["run-cycle", "--seed", str(broken)])

    assert result.exit_code == 2
    assert "Cannot read seed file" in result.output
