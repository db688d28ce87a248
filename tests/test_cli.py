"""Tests for the command line entry point."""

import logging
import sys

import pytest

from superbrain.cli import main


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SUPERBRAIN_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SUPERBRAIN_AI_PROVIDER", "none")
    yield tmp_path
    logger = logging.getLogger("superbrain")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def run(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["superbrain", *args])
    return main()


def test_usage_without_command(monkeypatch, capsys):
    assert run(monkeypatch) == 1
    assert "Usage: superbrain" in capsys.readouterr().out


def test_unknown_command(monkeypatch, capsys):
    assert run(monkeypatch, "frobnicate") == 1
    assert "Unknown command: frobnicate" in capsys.readouterr().out


def test_init_creates_database(monkeypatch, capsys, cli_env):
    assert run(monkeypatch, "init") == 0
    assert (cli_env / "data" / "superbrain.db").exists()


def test_remember_then_recall(monkeypatch, capsys):
    assert run(monkeypatch, "remember", "Buy milk", "episodic", "0.5") == 0
    capsys.readouterr()

    assert run(monkeypatch, "recall", "milk") == 0
    assert "[episodic] Buy milk" in capsys.readouterr().out


def test_invalid_importance_reported(monkeypatch, capsys):
    assert run(monkeypatch, "remember", "x", "semantic", "2.0") == 1
    assert capsys.readouterr().out.startswith("Error:")


def test_think_without_provider(monkeypatch, capsys):
    assert run(monkeypatch, "think", "What is 2+2?") == 0
    out = capsys.readouterr().out
    assert out.strip()
    assert ", AI]" not in out


def test_index_and_search(monkeypatch, capsys, cli_env):
    docs = cli_env / "docs"
    docs.mkdir()
    (docs / "notes.txt").write_text("banana bread recipe", encoding="utf-8")

    assert run(monkeypatch, "index", str(docs)) == 0
    assert "1 chunks" in capsys.readouterr().out

    assert run(monkeypatch, "search", "banana", "bread") == 0
    assert "notes.txt" in capsys.readouterr().out


def test_health_without_provider(monkeypatch, capsys):
    assert run(monkeypatch, "health") == 0
    assert "memory-only" in capsys.readouterr().out


def test_goals_persist_between_runs(monkeypatch, capsys):
    assert run(monkeypatch, "goal", "add", "Ship the release", "0.9") == 0
    goal_id = capsys.readouterr().out.strip()

    assert run(monkeypatch, "goal", "update", goal_id, "0.5") == 0
    assert "active (50%)" in capsys.readouterr().out

    assert run(monkeypatch, "goal") == 0
    out = capsys.readouterr().out
    assert goal_id in out
    assert "Ship the release" in out


def test_learn_from_indexed_files(monkeypatch, capsys, cli_env):
    docs = cli_env / "docs"
    docs.mkdir()
    (docs / "taxes.txt").write_text("The tax filing deadline is April 15", encoding="utf-8")
    assert run(monkeypatch, "index", str(docs)) == 0
    capsys.readouterr()

    assert run(monkeypatch, "learn", "tax", "deadline") == 0
    assert "1 new from files" in capsys.readouterr().out

    assert run(monkeypatch, "recall", "tax", "deadline") == 0
    assert "From taxes.txt: The tax filing deadline is April 15" in capsys.readouterr().out
