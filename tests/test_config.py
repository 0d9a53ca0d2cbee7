"""
Configuration loading tests.
"""

from pathlib import Path

import pytest
import yaml

from kanban.config import ConfigValidationError, load_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config.example.yaml"


def _write(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoadConfig:
    """Test YAML loading and validation."""

    def test_example_config_loads(self, monkeypatch):
        """Should load the shipped example with unset variables as None."""
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
        monkeypatch.delenv("SMTP_HOST", raising=False)

        config = load_config(str(EXAMPLE_CONFIG))

        assert config.database.path == "data/kanban.db"
        assert config.scheduler.interval_seconds == 300
        assert config.notifications.discord.webhook_url is None
        assert config.notifications.email.smtp_host is None
        assert config.notifications.email.smtp_port == 587

    def test_defaults_for_missing_sections(self, tmp_path):
        """Should fill unspecified sections with defaults."""
        config = load_config(_write(tmp_path, {"database": {"path": ":memory:"}}))

        assert config.scheduler.max_workers == 1
        assert config.scheduler.history_limit == 100
        assert config.notifications.dispatch_workers == 2
        assert config.advanced.log_level == "INFO"

    def test_env_substitution(self, tmp_path, monkeypatch):
        """Should replace ${VAR} with environment values."""
        monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.com/api/webhooks/1/x")
        path = _write(
            tmp_path,
            {
                "database": {"path": ":memory:"},
                "notifications": {"discord": {"webhook_url": "${DISCORD_WEBHOOK_URL}"}},
            },
        )

        config = load_config(path)

        assert config.notifications.discord.webhook_url == "https://discord.com/api/webhooks/1/x"

    def test_log_level_upper_cased(self, tmp_path):
        """Should normalize the log level."""
        path = _write(
            tmp_path, {"database": {"path": ":memory:"}, "advanced": {"log_level": "debug"}}
        )
        assert load_config(path).advanced.log_level == "DEBUG"

    def test_missing_file(self, tmp_path):
        """Should raise for a missing file."""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_database_path_required(self, tmp_path):
        """Should reject a config without a database path."""
        with pytest.raises(ConfigValidationError, match="Database path"):
            load_config(_write(tmp_path, {"scheduler": {"interval_seconds": 60}}))

    @pytest.mark.parametrize(
        "scheduler",
        [
            {"interval_seconds": 0},
            {"max_workers": -1},
            {"lookup_timeout_seconds": "soon"},
            {"max_workers": True},
            {"history_limit": 5},
        ],
    )
    def test_invalid_scheduler_values(self, tmp_path, scheduler):
        """Should reject non-positive or malformed scheduler settings."""
        path = _write(tmp_path, {"database": {"path": ":memory:"}, "scheduler": scheduler})
        with pytest.raises(ConfigValidationError):
            load_config(path)

    def test_invalid_channel_timeout(self, tmp_path):
        """Should reject a non-positive notifier timeout."""
        path = _write(
            tmp_path,
            {
                "database": {"path": ":memory:"},
                "notifications": {"email": {"timeout_seconds": 0}},
            },
        )
        with pytest.raises(ConfigValidationError, match="email.timeout_seconds"):
            load_config(path)

    def test_unknown_log_level(self, tmp_path):
        """Should reject an unknown log level."""
        path = _write(
            tmp_path, {"database": {"path": ":memory:"}, "advanced": {"log_level": "LOUD"}}
        )
        with pytest.raises(ConfigValidationError, match="log level"):
            load_config(path)

    def test_unknown_key(self, tmp_path):
        """Should reject keys the config does not know."""
        path = _write(tmp_path, {"database": {"path": ":memory:", "pool_size": 5}})
        with pytest.raises(ConfigValidationError, match="Unknown configuration key"):
            load_config(path)
