"""Tests for the command line interface."""

import json
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from livedev.cli import main
from livedev.errors import StartupError


def test_detect(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"vite": "5"}}))
    result = CliRunner().invoke(main, ["detect", str(tmp_path)])
    assert result.exit_code == 0
    assert result.output.strip() == "vite"


def test_serve_builds_config(project):
    with patch("livedev.cli.LiveServer") as server_cls:
        server_cls.return_value.serve = AsyncMock()
        result = CliRunner().invoke(
            main,
            [
                "serve",
                str(project),
                "--port",
                "8080",
                "--spa",
                "--no-overlay",
                "--no-open",
                "--ignore",
                "dist",
                "--proxy",
                "/api=http://localhost:3000",
            ],
        )

    assert result.exit_code == 0, result.output
    config = server_cls.call_args[0][0]
    assert config.root_path == project.resolve()
    assert config.port == 8080
    assert config.spa_mode is True
    assert config.show_overlay is False
    assert config.open_browser is False
    assert config.watch_ignore_patterns == ("dist",)
    assert dict(config.proxy_rules) == {"/api": "http://localhost:3000"}
    assert config.project_type == "static"
    server_cls.return_value.serve.assert_awaited_once()
    assert "Serving" in result.output


def test_serve_reports_startup_errors(project):
    with patch("livedev.cli.LiveServer") as server_cls:
        server_cls.return_value.serve = AsyncMock(
            side_effect=StartupError("port 8080 in use")
        )
        result = CliRunner().invoke(main, ["serve", str(project), "--no-open"])

    assert result.exit_code == 1
    assert "port 8080 in use" in result.output


def test_bad_proxy_rule(project):
    result = CliRunner().invoke(main, ["serve", str(project), "--proxy", "/api"])
    assert result.exit_code == 2
    assert "PREFIX=URL" in result.output
