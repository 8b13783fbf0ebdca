"""
⚙️ Config - Chargement de la configuration

Ordre de priorité (le dernier gagne):
    1. Valeurs par défaut de BotConfig
    2. Fichier YAML (config/config.yaml)
    3. Variables d'environnement TWITCH_BOT_<CHAMP> (ex: TWITCH_BOT_CLIENT_ID)
"""
import logging
import os
import pathlib
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping, Optional

import yaml

from core.errors import ConfigError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "TWITCH_BOT_"

# Section YAML de chaque champ
_SECTIONS = {
    "twitch": (
        "client_id", "client_secret", "redirect_url", "scopes", "broadcaster_scopes",
        "primary_channel_id", "oauth_url", "helix_url", "eventsub_url", "chat_host", "chat_port",
    ),
    "bot": ("command_prefix", "retry_delay", "join_timeout"),
    "paths": ("data_directory", "log_directory"),
}


@dataclass
class BotConfig:
    """Configuration du bot"""
    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = "http://localhost:3000/oauth/callback"
    scopes: list[str] = field(default_factory=lambda: ["chat:read", "chat:edit"])
    broadcaster_scopes: list[str] = field(default_factory=list)
    primary_channel_id: int = 0

    oauth_url: str = "https://id.twitch.tv/oauth2"
    helix_url: str = "https://api.twitch.tv/helix"
    eventsub_url: str = "wss://eventsub.wss.twitch.tv/ws"
    chat_host: str = "irc.chat.twitch.tv"
    chat_port: int = 6697

    command_prefix: str = "!"
    retry_delay: float = 10.0
    join_timeout: float = 10.0

    data_directory: str = "data"
    log_directory: str = "logs"

    def validate(self) -> None:
        """
        Raises:
            ConfigError: champ obligatoire manquant ou invalide
        """
        problems = []
        if not self.client_id:
            problems.append("twitch.client_id is required")
        if not self.client_secret:
            problems.append("twitch.client_secret is required")
        if self.primary_channel_id <= 0:
            problems.append("twitch.primary_channel_id must be a positive Twitch user id")
        if not self.command_prefix:
            problems.append("bot.command_prefix cannot be empty")
        if not 0 < self.chat_port < 65536:
            problems.append(f"twitch.chat_port {self.chat_port} is not a valid port")
        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))

    def to_yaml_dict(self) -> dict[str, dict[str, Any]]:
        values = asdict(self)
        return {section: {name: values[name] for name in names} for section, names in _SECTIONS.items()}


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Convertit une valeur YAML/env vers le type du champ"""
    try:
        if isinstance(default, list):
            if isinstance(value, str):
                return [v for v in value.replace(",", " ").split() if v]
            return [str(v) for v in value]
        if isinstance(default, bool):
            return str(value).lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{name}': {value!r}") from e


def load_config(
    config_path: str | pathlib.Path = "config/config.yaml",
    environ: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """
    Charge config.yaml puis applique les variables d'environnement.

    Un fichier absent n'est pas une erreur (tout peut venir de l'environnement),
    un fichier illisible l'est.
    """
    environ = os.environ if environ is None else environ
    defaults = BotConfig()
    values: dict[str, Any] = {}

    config_file = pathlib.Path(config_path)
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_file}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_file} must contain a mapping")
        for section, names in _SECTIONS.items():
            for name, value in (raw.get(section) or {}).items():
                if name not in names:
                    LOGGER.warning(f"⚠️ Clé de configuration inconnue: {section}.{name}")
                    continue
                if value is not None:
                    values[name] = value
        LOGGER.info(f"✅ Configuration chargée depuis {config_file}")
    else:
        LOGGER.warning(f"⚠️ Fichier de configuration {config_file} absent, valeurs par défaut + environnement")

    for f in fields(BotConfig):
        env_value = environ.get(ENV_PREFIX + f.name.upper())
        if env_value is not None:
            values[f.name] = env_value

    coerced = {name: _coerce(name, value, getattr(defaults, name)) for name, value in values.items()}
    return BotConfig(**coerced)


def write_config_skeleton(config_path: str | pathlib.Path, config: Optional[BotConfig] = None) -> pathlib.Path:
    """Écrit un fichier de configuration par défaut (mode --init). N'écrase jamais un fichier existant."""
    config_file = pathlib.Path(config_path)
    if config_file.exists():
        raise ConfigError(f"{config_file} already exists, refusing to overwrite it")
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w", encoding="utf-8") as f:
        yaml.safe_dump((config or BotConfig()).to_yaml_dict(), f, sort_keys=False, allow_unicode=True)
    LOGGER.info(f"📝 Configuration par défaut écrite dans {config_file}")
    return config_file
