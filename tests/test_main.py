"""Tests for the command line parser and config assembly."""

import pytest

from safeguard_access.__main__ import COMMANDS, build_config, create_parser


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    for name in ("SAFEGUARD_APPLIANCE", "SAFEGUARD_API_VERSION", "SAFEGUARD_CA_BUNDLE", "SAFEGUARD_VERIFY_SSL"):
        monkeypatch.delenv(name, raising=False)


class TestParser:
    def test_every_subcommand_has_a_handler(self):
        parser = create_parser()
        for command in ("login", "me", "events"):
            assert parser.parse_args([command]).command in COMMANDS
        assert parser.parse_args(["checkout", "1"]).command in COMMANDS

    def test_checkout_options(self):
        args = create_parser().parse_args(["--user", "admin", "checkout", "42", "--wait", "--timeout", "90"])
        assert args.user == "admin"
        assert args.request_id == "42"
        assert args.wait
        assert args.timeout == 90.0

    def test_auth_options_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--user", "admin", "--interactive", "me"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--interactive"])

    def test_log_file_default_location(self):
        assert create_parser().parse_args(["--log-file", "--debug", "me"]).log_file == "-"


class TestBuildConfig:
    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("SAFEGUARD_APPLIANCE", "https://env.example.com")
        monkeypatch.setenv("SAFEGUARD_API_VERSION", "v3")
        args = create_parser().parse_args(["--appliance", "https://cli.example.com", "me"])

        config = build_config(args)

        assert config.appliance_url == "https://cli.example.com"
        assert config.api_version == "v3"
        assert config.verify_ssl

    def test_saved_config_is_the_base(self, tmp_path):
        from safeguard_access.config import ClientConfig

        ClientConfig(appliance_url="https://saved.example.com", api_version="v4").save()
        assert (tmp_path / "safeguard-access" / "config.json").exists()
        config = build_config(create_parser().parse_args(["--no-verify-ssl", "me"]))

        assert config.appliance_url == "https://saved.example.com"
        assert not config.verify_ssl
