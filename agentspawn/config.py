import configparser
import logging
import os
from typing import Optional

CONFIG_DIR = os.environ.get(
    "AGENTSPAWN_HOME",
    os.path.join(os.getenv("HOME", os.path.expanduser("~")), ".agentspawn"),
)
CONFIG_FILE = os.path.join(CONFIG_DIR, "agentspawn.cfg")
DEFAULT_REGISTRY_FILE = os.path.join(CONFIG_DIR, "sessions.json")

DEFAULT_SECTION = "agentspawn"

DEFAULT_PROMPT_TIMEOUT_MS = 300000
DEFAULT_SHUTDOWN_TIMEOUT_MS = 5000
DEFAULT_AGENT_BINARY = "claude"
DEFAULT_LOG_LEVEL = "info"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_value(key: str):
    config = configparser.ConfigParser()
    config.read(CONFIG_FILE)
    val = config.get(DEFAULT_SECTION, key, fallback=None)
    return val


def set_config_value(key: str, value: str):
    """Set a config value in the agentspawn section, creating the file if needed."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    config = configparser.ConfigParser()
    config.read(CONFIG_FILE)
    if DEFAULT_SECTION not in config:
        config[DEFAULT_SECTION] = {}
    config[DEFAULT_SECTION][key] = value
    with open(CONFIG_FILE, "w") as f:
        config.write(f)


def _get_int(key: str, default: int) -> int:
    val = get_value(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"Invalid integer for '{key}' in {CONFIG_FILE}: {val!r}, using {default}"
        )
        return default


def get_registry_path() -> str:
    """Return the registry file path, expanding a leading ~."""
    val = get_value("registry_path")
    return os.path.expanduser(val) if val else DEFAULT_REGISTRY_FILE


def get_prompt_timeout_ms() -> int:
    """Per-prompt timeout in milliseconds. 0 disables the timer."""
    return _get_int("prompt_timeout_ms", DEFAULT_PROMPT_TIMEOUT_MS)


def get_shutdown_timeout_ms() -> int:
    return _get_int("shutdown_timeout_ms", DEFAULT_SHUTDOWN_TIMEOUT_MS)


def get_agent_binary() -> str:
    return get_value("agent_binary") or DEFAULT_AGENT_BINARY


def get_log_level() -> str:
    return (get_value("log_level") or DEFAULT_LOG_LEVEL).strip().lower()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the agentspawn logger hierarchy."""
    name = (level or get_log_level()).lower()
    logger = logging.getLogger("agentspawn")
    logger.setLevel(_LOG_LEVELS.get(name, logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
