import os

import yaml
from dotenv import find_dotenv, load_dotenv

from scanflow.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_FILE",
    "DATA_DIR",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_VISION_MODEL",
    "OPENAI_BASE_URL",
    "STORE_URL",
    "STORE_KEY",
    "TEXT_STAGE_TIMEOUT",
    "VISION_STAGE_TIMEOUT",
    "FEWSHOT_FETCH_TIMEOUT",
    "FEWSHOT_CACHE_TTL",
    "FEWSHOT_MAX_DYNAMIC",
    "VISION_CACHE_TTL",
    "CONFIDENCE_THRESHOLD",
    "PREFER_PAST_DATES",
    "PROMOTE_UNKNOWN_KIND_CHANGE",
)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_TEXT_STAGE_TIMEOUT = 15.0
DEFAULT_VISION_STAGE_TIMEOUT = 20.0
DEFAULT_FEWSHOT_FETCH_TIMEOUT = 3.0
DEFAULT_FEWSHOT_CACHE_TTL = 300.0
DEFAULT_FEWSHOT_MAX_DYNAMIC = 15
DEFAULT_VISION_CACHE_TTL = 300.0
DEFAULT_CONFIDENCE_THRESHOLD = 0.6

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}
_FALSE_VALUES = {"0", "false", "no", "off", "n"}


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def read_config_file(path: str | None) -> dict[str, str]:
    """Flat ``KEY: value`` pairs from the YAML config file, as strings."""
    if not path or not os.path.exists(path):
        return {}

    try:
        with open(path, encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as e:
        logger.warning("[ENV] Could not parse %s, ignoring it: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("[ENV] %s is not a key/value mapping, ignoring it.", path)
        return {}

    values: dict[str, str] = {}
    for key, value in data.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            values[str(key).strip()] = text
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        ensure_dir(path)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
    return default


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
    "BEARER",
    "PRIVATE",
)


def _should_mask_env_value(name: str, value: str) -> bool:
    upper_name = name.upper()
    if any(marker in upper_name for marker in _SENSITIVE_ENV_KEYS):
        return True
    if value.startswith("sk-") or value.startswith("rk-"):
        return True
    if value.startswith("Bearer ") or value.startswith("bearer "):
        return True
    if value.startswith("eyJ") and value.count(".") == 2:
        return True
    return False


def mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not _should_mask_env_value(name, sanitized):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    logger.info("[ENV] Config file: %s", get_config_path() or "<none>")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)


def text_stage_timeout() -> float:
    return get_env_float("TEXT_STAGE_TIMEOUT", DEFAULT_TEXT_STAGE_TIMEOUT, min_value=0.1)


def vision_stage_timeout() -> float:
    return get_env_float("VISION_STAGE_TIMEOUT", DEFAULT_VISION_STAGE_TIMEOUT, min_value=0.1)


def fewshot_fetch_timeout() -> float:
    return get_env_float("FEWSHOT_FETCH_TIMEOUT", DEFAULT_FEWSHOT_FETCH_TIMEOUT, min_value=0.1)


def fewshot_cache_ttl() -> float:
    return get_env_float("FEWSHOT_CACHE_TTL", DEFAULT_FEWSHOT_CACHE_TTL, min_value=0.0)


def vision_cache_ttl() -> float:
    return get_env_float("VISION_CACHE_TTL", DEFAULT_VISION_CACHE_TTL, min_value=0.0)


def confidence_threshold() -> float:
    return get_env_float("CONFIDENCE_THRESHOLD", DEFAULT_CONFIDENCE_THRESHOLD, min_value=0.0)


def prefer_past_dates() -> bool:
    return get_env_bool("PREFER_PAST_DATES", False)


def promote_unknown_kind_change() -> bool:
    return get_env_bool("PROMOTE_UNKNOWN_KIND_CHANGE", True)


def fewshot_max_dynamic() -> int:
    return get_env_int("FEWSHOT_MAX_DYNAMIC", DEFAULT_FEWSHOT_MAX_DYNAMIC, min_value=0)
