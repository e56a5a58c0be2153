"""Unit tests for settings loading and the command line entry point."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cloudns_sync import cli
from cloudns_sync.cli import SyncConfig, UsageError, load_config

NO_ENV: dict = {}


class TestLoadConfigFromArguments:
    """Tests for positional arguments."""

    def test_required_arguments_only(self) -> None:
        config = load_config(["12345", "/cloudns/password"], env=NO_ENV)

        assert config == SyncConfig(
            username="12345", password_parameter="/cloudns/password", ttl="300", stack_names=()
        )

    def test_ttl_and_stack_names(self) -> None:
        config = load_config(
            ["12345", "/cloudns/password", "3600", "web-prod", "api-prod"], env=NO_ENV
        )

        assert config.ttl == "3600"
        assert config.stack_names == ("web-prod", "api-prod")

    def test_missing_username_raises_usage_error(self) -> None:
        with pytest.raises(UsageError, match="Usage: cloudns-sync"):
            load_config([], env=NO_ENV)

    def test_missing_password_parameter_raises_usage_error(self) -> None:
        with pytest.raises(UsageError):
            load_config(["12345"], env=NO_ENV)


class TestLoadConfigFallbacks:
    """Tests for config file and environment fallbacks."""

    def test_environment_fallback(self) -> None:
        env = {
            "CLOUDNS_USERNAME": "env-user",
            "CLOUDNS_PASSWORD_PARAMETER": "/env/password",
            "CLOUDNS_TTL": "600",
            "CLOUDNS_STACK_NAMES": "a, b,,",
        }

        config = load_config([], env=env)

        assert config == SyncConfig(
            username="env-user", password_parameter="/env/password", ttl="600", stack_names=("a", "b")
        )

    def test_config_file_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text(
            """
username: "12345"
password_parameter: /cloudns/password
ttl: 3600
stacks:
  - web-prod
  - api-prod
"""
        )

        config = load_config([], config_path=str(config_file), env=NO_ENV)

        assert config == SyncConfig(
            username="12345",
            password_parameter="/cloudns/password",
            ttl="3600",
            stack_names=("web-prod", "api-prod"),
        )

    def test_arguments_override_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text("username: file-user\npassword_parameter: /file\nttl: 60\n")

        config = load_config(["cli-user", "/cli", "120"], config_path=str(config_file), env=NO_ENV)

        assert config.username == "cli-user"
        assert config.password_parameter == "/cli"
        assert config.ttl == "120"

    def test_config_file_overrides_environment(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text("ttl: 900\n")
        env = {"CLOUDNS_USERNAME": "env-user", "CLOUDNS_PASSWORD_PARAMETER": "/env", "CLOUDNS_TTL": "60"}

        config = load_config([], config_path=str(config_file), env=env)

        assert config.username == "env-user"
        assert config.ttl == "900"

    def test_missing_config_file_is_ignored(self, tmp_path: Path) -> None:
        config = load_config(
            ["12345", "/cloudns/password"], config_path=str(tmp_path / "nope.yaml"), env=NO_ENV
        )

        assert config.username == "12345"

    def test_empty_config_file_is_ignored(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text("")

        config = load_config(["12345", "/p"], config_path=str(config_file), env=NO_ENV)

        assert config.ttl == "300"

    def test_invalid_yaml_raises_usage_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text("username: [unclosed\n")

        with pytest.raises(UsageError, match="Failed to load config"):
            load_config(["12345", "/p"], config_path=str(config_file), env=NO_ENV)

    def test_non_mapping_yaml_raises_usage_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / "cloudns-sync.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(UsageError, match="must contain a mapping"):
            load_config(["12345", "/p"], config_path=str(config_file), env=NO_ENV)


class TestMain:
    """Tests for the command line entry point."""

    def test_missing_arguments_exit_1_without_network_calls(self) -> None:
        with patch.object(cli, "CLOUDNS_SYNC_CONFIG", ""), patch.object(
            cli, "CLOUDNS_USERNAME", ""
        ), patch.object(cli, "CLOUDNS_PASSWORD_PARAMETER", ""), patch.object(
            cli, "fetch_ssm_parameter"
        ) as mock_fetch:
            with pytest.raises(SystemExit) as exc_info:
                cli.main([])

        assert exc_info.value.code == 1
        mock_fetch.assert_not_called()

    def test_successful_run_returns_normally(self) -> None:
        with patch.object(cli, "CLOUDNS_SYNC_CONFIG", ""), patch.object(
            cli, "fetch_ssm_parameter", return_value="secret"
        ) as mock_fetch, patch.object(cli, "CloudFormationExportSource"), patch.object(
            cli, "ClouDNSSyncer"
        ) as mock_syncer_cls:
            cli.main(["12345", "/cloudns/password", "600", "web-prod"])

        mock_fetch.assert_called_once_with("/cloudns/password")
        kwargs = mock_syncer_cls.call_args.kwargs
        assert kwargs["ttl"] == "600"
        assert kwargs["stack_names"] == ("web-prod",)
        mock_syncer_cls.return_value.sync_once.assert_called_once_with()

    def test_sync_error_exits_1(self) -> None:
        syncer = MagicMock()
        syncer.sync_once.side_effect = cli.ZoneNotFound("www.example.com")

        with patch.object(cli, "CLOUDNS_SYNC_CONFIG", ""), patch.object(
            cli, "fetch_ssm_parameter", return_value="secret"
        ), patch.object(cli, "CloudFormationExportSource"), patch.object(
            cli, "ClouDNSSyncer", return_value=syncer
        ):
            with pytest.raises(SystemExit) as exc_info:
                cli.main(["12345", "/cloudns/password"])

        assert exc_info.value.code == 1


def test_parse_timeout() -> None:
    assert cli._parse_timeout("") is None
    assert cli._parse_timeout("2.5") == 2.5
    assert cli._parse_timeout("soon") is None
