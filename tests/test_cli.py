"""CLI tests for the data and monitoring command groups."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest
from typer.testing import CliRunner

from market_engine import cli
from market_engine.core.config import EngineConfig

runner = CliRunner()


@pytest.fixture
def patched_cli(monkeypatch: pytest.MonkeyPatch, fast_config: EngineConfig) -> EngineConfig:
    for module in ("data", "monitoring"):
        monkeypatch.setattr(
            f"market_engine.cli_commands.{module}.load_config", lambda: fast_config
        )
        monkeypatch.setattr(
            f"market_engine.cli_commands.{module}.setup_logging", lambda *args, **kwargs: None
        )
    return fast_config


def test_instruments_lists_universe(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["data", "instruments"])

    assert result.exit_code == 0
    assert "NIFTY" in result.stdout
    assert "ICICIBANK" in result.stdout


def test_quote_command(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["data", "quote", "nifty", "tcs", "--ticks", "5", "--seed", "1"])

    assert result.exit_code == 0
    assert "NIFTY" in result.stdout
    assert "TCS" in result.stdout


def test_quote_rejects_unknown_symbol(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["data", "quote", "NOPE"])

    assert result.exit_code != 0


def test_chain_command(patched_cli: EngineConfig) -> None:
    result = runner.invoke(
        cli.app,
        ["data", "chain", "NIFTY", "--strikes", "4", "--seed", "3"],
        env={"COLUMNS": "220"},
    )

    assert result.exit_code == 0
    assert "NIFTY" in result.stdout
    assert "19500" in result.stdout


def test_chain_without_options_exits_with_error(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["data", "chain", "HDFCBANK"])

    assert result.exit_code == 1


def test_simulate_exports_csv(patched_cli: EngineConfig, tmp_path: Path) -> None:
    output = tmp_path / "exports" / "history.csv"

    result = runner.invoke(
        cli.app,
        ["data", "simulate", "NIFTY", "TCS", "--ticks", "25", "--output", str(output), "--seed", "9"],
    )

    assert result.exit_code == 0
    assert "Simulated 25 ticks for 2 symbols" in result.stdout
    frame = pd.read_csv(output)
    assert len(frame) == 50
    assert set(frame["symbol"]) == {"NIFTY", "TCS"}
    assert frame["tick"].max() == 25
    assert (frame["ask"] >= frame["bid"]).all()


def test_simulate_is_reproducible_with_seed(patched_cli: EngineConfig, tmp_path: Path) -> None:
    first = tmp_path / "a.csv"
    second = tmp_path / "b.csv"
    for path in (first, second):
        result = runner.invoke(
            cli.app, ["simulate", "RELIANCE", "--ticks", "10", "-o", str(path), "--seed", "5"]
        )
        assert result.exit_code == 0

    assert pd.read_csv(first)["price"].tolist() == pd.read_csv(second)["price"].tolist()


def test_status_command(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["monitoring", "status"])

    assert result.exit_code == 0
    assert "=== Market Engine Status ===" in result.stdout
    assert "Mode: demo" in result.stdout
    assert "Reconnect: 3 attempts" in result.stdout
    assert "Heartbeat: disabled" in result.stdout


def test_stream_command_receives_updates(patched_cli: EngineConfig) -> None:
    result = runner.invoke(
        cli.app, ["monitoring", "stream", "NIFTY", "--chain", "NIFTY", "--duration", "0.2"]
    )

    assert result.exit_code == 0
    assert "[connection] disconnected" in result.stdout
    assert "NIFTY chain" in result.stdout
    assert "Received" in result.stdout


def test_stream_requires_symbols(patched_cli: EngineConfig) -> None:
    result = runner.invoke(cli.app, ["stream", "--duration", "0"])

    assert result.exit_code != 0


def test_root_aliases_registered() -> None:
    names = {command.name for command in cli.app.registered_commands}

    assert {"quote", "chain", "simulate", "instruments", "stream", "dashboard", "status"} <= names
