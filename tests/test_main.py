"""
Tests for the command line entry point.
"""

import json

import pytest
import yaml

import main


@pytest.fixture
def config_file(tmp_path, test_config, monkeypatch):
    """test_config written as YAML; logging setup left to pytest."""
    monkeypatch.setattr(main, "configure_logging", lambda config: None)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(test_config), encoding="utf-8")
    return str(path)


class TestParser:
    """Tests for argument parsing."""

    def test_pair_argument(self):
        args = main.build_parser().parse_args(["analyze", "ETH/SOL"])

        assert args.command == "analyze"
        assert args.pair == "ETH/SOL"
        assert args.config == "config.yaml"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    def test_blacklist_add_needs_symbol(self, config_file):
        with pytest.raises(SystemExit):
            main.main(["--config", config_file, "blacklist", "add"])


class TestCommands:
    """Tests for commands that need no network."""

    def test_blacklist_round_trip(self, config_file, capsys):
        """add then list through the CLI."""
        assert main.main(["--config", config_file, "blacklist", "add", "luna"]) == 0
        assert "Blacklist: LUNA" in capsys.readouterr().out

        assert main.main(["--config", config_file, "--json", "blacklist", "list"]) == 0
        assert json.loads(capsys.readouterr().out) == {"symbols": ["LUNA"]}

    def test_empty_trades(self, config_file, capsys):
        assert main.main(["--config", config_file, "trades"]) == 0
        assert "No live trades" in capsys.readouterr().out

    def test_empty_history(self, config_file, capsys):
        assert main.main(["--config", config_file, "history"]) == 0
        assert "Total: 0 trades" in capsys.readouterr().out

    def test_missing_config_is_error(self, tmp_path, capsys):
        code = main.main(["--config", str(tmp_path / "missing.yaml"), "trades"])

        assert code == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_invalid_config_is_error(self, tmp_path, test_config, monkeypatch, capsys):
        """Startup validation failures exit with 1."""
        monkeypatch.setattr(main, "configure_logging", lambda config: None)
        test_config["engine"]["exit_threshold"] = 3.0
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(test_config), encoding="utf-8")

        assert main.main(["--config", str(path), "trades"]) == 1
        assert "Configuration validation failed" in capsys.readouterr().err
