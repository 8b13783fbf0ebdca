"""
Tests pour core/config.py et le CLI de main.py
"""
import pytest
import yaml

from core.config import BotConfig, load_config, write_config_skeleton
from core.errors import ConfigError
from main import init_layout, parse_args


VALID_YAML = """
twitch:
  client_id: abc
  client_secret: secret
  primary_channel_id: 42
  scopes: [chat:read, chat:edit, moderator:read:chatters]
bot:
  command_prefix: "?"
  retry_delay: 2
"""


@pytest.mark.unit
class TestLoadConfig:
    """Tests load_config()"""

    def test_yaml_values(self, tmp_path):
        """Les sections twitch/bot/paths remplissent BotConfig"""
        path = tmp_path / "config.yaml"
        path.write_text(VALID_YAML, encoding="utf-8")

        config = load_config(path, environ={})

        assert config.client_id == "abc"
        assert config.primary_channel_id == 42
        assert config.command_prefix == "?"
        assert config.retry_delay == 2.0
        assert "moderator:read:chatters" in config.scopes
        assert config.chat_port == 6697
        config.validate()

    def test_environment_wins(self, tmp_path):
        """TWITCH_BOT_* écrase le fichier"""
        path = tmp_path / "config.yaml"
        path.write_text(VALID_YAML, encoding="utf-8")

        config = load_config(path, environ={
            "TWITCH_BOT_CLIENT_ID": "from-env",
            "TWITCH_BOT_PRIMARY_CHANNEL_ID": "7",
            "TWITCH_BOT_BROADCASTER_SCOPES": "channel:read:subscriptions,bits:read",
        })

        assert config.client_id == "from-env"
        assert config.primary_channel_id == 7
        assert config.broadcaster_scopes == ["channel:read:subscriptions", "bits:read"]

    def test_missing_file_uses_defaults(self, tmp_path):
        """Fichier absent → valeurs par défaut"""
        config = load_config(tmp_path / "absent.yaml", environ={})
        assert config == BotConfig()

    def test_invalid_yaml(self, tmp_path):
        """YAML illisible → ConfigError"""
        path = tmp_path / "config.yaml"
        path.write_text("twitch: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path, environ={})

    def test_invalid_value(self, tmp_path):
        """Valeur non convertible → ConfigError"""
        with pytest.raises(ConfigError):
            load_config(tmp_path / "absent.yaml", environ={"TWITCH_BOT_CHAT_PORT": "not-a-port"})

    def test_validate_reports_missing_fields(self):
        """Config par défaut → client_id, client_secret et channel manquants"""
        with pytest.raises(ConfigError) as exc_info:
            BotConfig().validate()
        message = str(exc_info.value)
        assert "client_id" in message
        assert "primary_channel_id" in message


@pytest.mark.unit
class TestSkeleton:
    """Tests write_config_skeleton() / --init"""

    def test_skeleton_round_trip(self, tmp_path):
        """Le squelette écrit se recharge en BotConfig par défaut"""
        path = write_config_skeleton(tmp_path / "config" / "config.yaml")

        assert set(yaml.safe_load(path.read_text(encoding="utf-8"))) == {"twitch", "bot", "paths"}
        assert load_config(path, environ={}) == BotConfig()

    def test_skeleton_never_overwrites(self, tmp_path):
        """Fichier existant → ConfigError, contenu intact"""
        path = tmp_path / "config.yaml"
        path.write_text("keep: me", encoding="utf-8")
        with pytest.raises(ConfigError):
            write_config_skeleton(path)
        assert path.read_text(encoding="utf-8") == "keep: me"

    def test_init_layout(self, tmp_path, monkeypatch):
        """--init écrit la config et crée data/ et logs/"""
        monkeypatch.chdir(tmp_path)
        args = parse_args(["--init", "--config", "config/config.yaml"])

        assert init_layout(args) == 0
        assert (tmp_path / "config" / "config.yaml").exists()
        assert (tmp_path / "data").is_dir()
        assert (tmp_path / "logs").is_dir()
        assert init_layout(args) == 1
