"""Tests for the command-line entry point."""

import pytest

from sandbox_harness.sandbox.entrypoint import build_parser, main


class TestParser:
    def test_defaults_leave_config_to_environment(self):
        args = build_parser().parse_args([])

        assert args.verbose is None
        assert args.node_url is None
        assert args.startup_timeout is None
        assert args.check_version is None

    def test_options(self):
        args = build_parser().parse_args(
            [
                "--verbose",
                "--node-url",
                "http://localhost:8081",
                "--startup-timeout",
                "30",
                "--force-kill-timeout",
                "2",
                "--check-version",
            ]
        )

        assert args.verbose is True
        assert args.node_url == "http://localhost:8081"
        assert args.startup_timeout == 30.0
        assert args.force_kill_timeout == 2.0
        assert args.check_version == ""


class TestMain:
    def test_missing_binary_exits_nonzero(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SANDBOX_COMMAND", "definitely-not-a-sandbox-binary start --sandbox")

        assert main([]) == 1

    def test_version_check_failure_exits_nonzero(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SANDBOX_COMMAND", "definitely-not-a-sandbox-binary start --sandbox")

        assert main(["--check-version"]) == 1
