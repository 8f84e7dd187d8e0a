"""
Tests for the command-line entry point.
"""

from unittest.mock import patch

from browsepilot.cli import build_parser, main


class TestParser:
    def test_run_arguments(self):
        args = build_parser().parse_args(["run", "open example.com", "--max-turns", "5"])
        assert args.command == "run"
        assert args.task == "open example.com"
        assert args.max_turns == 5

    def test_supervise_keeps_trailing_command(self):
        args = build_parser().parse_args(
            ["supervise", "--instances", "2", "--", "browsepilot", "workflow", "job.yaml"]
        )
        assert args.instances == 2
        assert [c for c in args.cmd if c != "--"] == ["browsepilot", "workflow", "job.yaml"]


class TestMain:
    def test_supervise_builds_app(self):
        with patch("browsepilot.cli.load_dotenv"), patch("browsepilot.cli.Supervisor") as supervisor:
            code = main(["supervise", "--instances", "3", "--no-restart", "--", "browsepilot", "run", "x"])

        assert code == 0
        (apps,), _ = supervisor.call_args
        assert apps[0].instances == 3
        assert apps[0].autorestart is False
        assert apps[0].command == ["browsepilot", "run", "x"]
        supervisor.return_value.run.assert_called_once()

    def test_invalid_configuration_exits_2(self, monkeypatch):
        monkeypatch.setenv("MAX_PAGES", "-3")
        with patch("browsepilot.cli.load_dotenv"):
            assert main(["run", "anything"]) == 2

    def test_no_command_prints_help(self, capsys):
        with patch("browsepilot.cli.load_dotenv"):
            assert main([]) == 2
        assert "usage" in capsys.readouterr().out
