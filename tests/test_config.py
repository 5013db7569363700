"""Tests for daybrief.config: TOML loading, env resolution and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from daybrief.config import ConfigError, load_config, parse_config, resolve_env_vars

pytestmark = pytest.mark.unit

FULL_TOML = """\
[daybrief]
change_check_interval_minutes = 2
change_window_hours = 48
default_timezone = "Europe/Berlin"
shutdown_timeout_s = 10

[daybrief.detection]
debounce_minutes = 0

[daybrief.summary]
min_free_block_minutes = 30

[daybrief.timeouts]
fetch_timeout_s = 5
send_timeout_s = 3.5

[daybrief.logging]
level = "debug"
format = "json"
log_root = "logs"

[daybrief.db]
url = "postgres://u:p@db:5433/calendar"
users_table = "public.users"

[daybrief.twilio]
account_sid = "${TWILIO_ACCOUNT_SID}"
auth_token = "${TWILIO_AUTH_TOKEN}"
from_number = "+15559990000"
default_recipient = "+15550004444"

[daybrief.google]
client_id = "cid"
client_secret = "secret"
calendar_id = "team@example.com"
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "daybrief.toml"
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")

        config = load_config(_write(tmp_path, FULL_TOML))

        assert config.change_check_interval == timedelta(minutes=2)
        assert config.change_window == timedelta(hours=48)
        assert config.default_timezone == "Europe/Berlin"
        assert config.shutdown_timeout_s == 10.0
        assert config.detection.debounce == timedelta(0)
        assert config.summary.min_free_block == timedelta(minutes=30)
        assert config.timeouts.send_timeout_s == 3.5
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "logs"
        assert config.db.url == "postgres://u:p@db:5433/calendar"
        assert config.db.users_table == "public.users"
        assert config.twilio.account_sid == "AC1"
        assert config.twilio.auth_token == "tok"
        assert config.twilio.default_recipient == "+15550004444"
        assert config.google.calendar_id == "team@example.com"

    def test_missing_default_file_yields_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.change_check_interval == timedelta(minutes=5)
        assert config.change_window == timedelta(hours=24)
        assert config.detection.debounce == timedelta(minutes=5)
        assert config.summary.min_free_block == timedelta(minutes=15)
        assert config.timeouts.fetch_timeout_s == 30.0
        assert config.default_timezone == "America/New_York"
        assert config.google.calendar_id == "primary"

    def test_explicit_missing_file_is_an_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[daybrief\n"))


# ---------------------------------------------------------------------------
# parse_config validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        "root",
        [
            {"change_check_interval_minutes": 0},
            {"change_window_hours": -1},
            {"shutdown_timeout_s": "soon"},
            {"change_check_interval_minutes": True},
        ],
    )
    def test_non_positive_numbers_rejected(self, root):
        with pytest.raises(ConfigError, match="positive number"):
            parse_config({"daybrief": root})

    def test_negative_debounce_rejected(self):
        with pytest.raises(ConfigError, match="debounce_minutes"):
            parse_config({"daybrief": {"detection": {"debounce_minutes": -1}}})

    def test_unknown_default_timezone_rejected(self):
        with pytest.raises(ConfigError, match="default_timezone"):
            parse_config({"daybrief": {"default_timezone": "Nowhere/Special"}})

    def test_bad_log_format_rejected(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config({"daybrief": {"logging": {"format": "xml"}}})

    def test_section_must_be_a_table(self):
        with pytest.raises(ConfigError, match="TOML table"):
            parse_config({"daybrief": {"twilio": "AC1"}})

    def test_db_port_must_be_integer(self):
        with pytest.raises(ConfigError, match="port"):
            parse_config({"daybrief": {"db": {"port": "5432"}}})

    def test_blank_strings_become_unset(self):
        config = parse_config({"daybrief": {"twilio": {"account_sid": "  "}}})
        assert config.twilio.account_sid is None


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("A", "1")
        monkeypatch.setenv("B", "two")
        assert resolve_env_vars({"x": ["${A}", {"y": "pre-${B}"}], "n": 3}) == {
            "x": ["1", {"y": "pre-two"}],
            "n": 3,
        }

    def test_all_missing_variables_are_reported(self, monkeypatch):
        monkeypatch.delenv("MISSING_ONE", raising=False)
        monkeypatch.delenv("MISSING_TWO", raising=False)
        with pytest.raises(ConfigError, match="MISSING_ONE, MISSING_TWO"):
            resolve_env_vars("${MISSING_ONE}:${MISSING_TWO}")
