"""Tests for the operator CLI and the ``python -m memstore`` entry point."""

from __future__ import annotations

import sys

import pytest

import memstore.cli as cli
from memstore.__main__ import main


class TestArguments:
    def test_positional_skips_flags(self) -> None:
        assert cli._positional(["--dry-run", "ops"]) == "ops"
        assert cli._positional(["--apply"]) is None

    def test_option_value(self) -> None:
        assert cli._option(["ops", "--days", "7"], "--days") == "7"
        assert cli._option(["--days"], "--days") is None


class TestCommands:
    def test_health(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.run_health()
        out = capsys.readouterr().out
        assert "memstore health check:" in out
        assert "memories: 0" in out

    def test_stats(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.run_stats(["ops"])
        out = capsys.readouterr().out
        assert "memstore stats (ops):" in out
        assert "PENDING" in out

    def test_sweep_dry_run(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.run_sweep(["--dry-run"])
        out = capsys.readouterr().out
        assert "memstore sweep (dry run):" in out
        assert "groups found: 0" in out

    def test_cleanup_defaults_to_dry_run(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.run_cleanup(["ops", "--days", "10"])
        out = capsys.readouterr().out
        assert "memstore cleanup (ops, dry run):" in out

    @pytest.mark.parametrize("days", ["abc", "0", "-3"])
    def test_cleanup_rejects_bad_days(self, days: str, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.run_cleanup(["ops", "--days", days])
        assert exc.value.code == 1
        captured = capsys.readouterr()
        assert "--days expects a positive whole number" in captured.err
        assert captured.out == ""

    def test_cleanup_apply(self, capsys: pytest.CaptureFixture[str]) -> None:
        cli.run_cleanup(["--apply"])
        out = capsys.readouterr().out
        assert "memstore cleanup (default):" in out


class TestDispatch:
    def test_no_args_falls_through(self) -> None:
        assert cli.dispatch([]) is None

    def test_unknown_command_exits_nonzero(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.dispatch(["bogus"])
        assert exc.value.code == 1
        assert "Unknown command: bogus" in capsys.readouterr().err

    def test_known_command_exits_zero(self) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.dispatch(["health"])
        assert exc.value.code == 0

    def test_main_routes_cli_commands(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: list[list[str]] = []
        monkeypatch.setattr(sys, "argv", ["memstore", "sweep", "ops"])
        monkeypatch.setattr(cli, "dispatch", seen.append)
        main()
        assert seen == [["sweep", "ops"]]
