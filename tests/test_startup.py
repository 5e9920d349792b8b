"""Tests for the command line interface."""

import json

import pytest

from automation_engine.config import reset_config
from automation_engine.startup import create_argument_parser, main
from automation_engine.storage.database import reset_database_engine


@pytest.fixture(autouse=True)
def clean_globals(monkeypatch):
    for key in ("AUTOMATION_ENGINE_RUNNER_SECRET", "AUTOMATION_ENGINE_DEBUG"):
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_database_engine()
    reset_config()


class TestStartup:
    """Test CLI commands."""

    def test_parser_commands(self):
        args = create_argument_parser().parse_args(["db", "recover-locks"])
        assert args.command == "db"
        assert args.db_command == "recover-locks"

    def test_tick_once_on_empty_database(self, tmp_path, capsys):
        main(["--database-url", f"sqlite:///{tmp_path}/engine.db", "--log-level", "WARNING", "--tick-once"])

        output = capsys.readouterr().out.strip().splitlines()[-1]
        assert json.loads(output) == {"ok": True, "processed": 0, "released": 0, "dropped": 0}

    def test_db_init_and_recover_locks(self, tmp_path, capsys):
        url = f"sqlite:///{tmp_path}/engine.db"

        main(["--database-url", url, "--log-level", "WARNING", "db", "init"])
        main(["--database-url", url, "--log-level", "WARNING", "db", "recover-locks"])

        assert "Recovered 0 stale lock(s)" in capsys.readouterr().out
        assert (tmp_path / "engine.db").exists()

    def test_config_validate_fails_without_runner_secret(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--database-url", f"sqlite:///{tmp_path}/engine.db", "config", "validate"])

        assert exc_info.value.code == 1
        assert "FAILED" in capsys.readouterr().out

    def test_config_show_masks_secrets(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("AUTOMATION_ENGINE_RUNNER_SECRET", "s3cret")

        main(["--database-url", f"sqlite:///{tmp_path}/engine.db", "config", "show"])

        output = capsys.readouterr().out
        assert "Runner Secret: set" in output
        assert "s3cret" not in output
