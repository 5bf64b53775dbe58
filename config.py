import ipaddress
import json
import logging
import math
import os
import re
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Defaults
DEFAULT_PORT = 80
DEFAULT_USER_AGENT = "LU-Server/0.1"
DEFAULT_STALE_TIMEOUT = 600.0  # 10 minutes
DEFAULT_LOG_FILE = "lusd_server.log"
DEFAULT_CONFIG_FILE = "config.json"

# File limits
MAX_CONFIG_FILE_SIZE = 32 * 1024 * 1024
MAX_LOG_FILE_SIZE = 100 * 1024 * 1024
CONFIG_FILE_MODE = 0o600

SYSTEM_DIRS = ["/etc", "/bin", "/sbin", "/usr/bin", "/usr/sbin", "C:\\Windows", "C:\\Program Files"]

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(text: str) -> float:
    """
    Parse a duration such as ``10m``, ``90s`` or ``1h30m``

    A bare number is taken as seconds.

    Returns:
        Duration in seconds

    Raises:
        ValueError: if the text is not a duration
    """
    value = text.strip()
    sign = 1.0
    if value[:1] in ("+", "-"):
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]
    if not value:
        raise ValueError(f"invalid duration: {text!r}")

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration: {text!r}")
        return sign * seconds

    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if match is None:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if secs == 0 and minutes:
        return f"{minutes}m"
    return f"{int(seconds)}s"


def is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def split_host(address: str) -> str:
    """Host part of ``host:port`` (``[v6]:port`` included), or the whole string"""
    if address.startswith("["):
        end = address.find("]")
        if end != -1 and address[end + 1:end + 2] == ":":
            return address[1:end]
        return address
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


class RegistryConfig(BaseModel):
    """Settings the server registry needs"""
    model_config = ConfigDict(frozen=True)

    stale_timeout: float = DEFAULT_STALE_TIMEOUT
    official_servers: Tuple[str, ...] = ()


class AppConfig(BaseModel):
    """Fully validated process configuration"""
    model_config = ConfigDict(frozen=True)

    port: int = DEFAULT_PORT
    allowed_user_agent: str = DEFAULT_USER_AGENT
    stale_timeout: float = DEFAULT_STALE_TIMEOUT
    blacklist: FrozenSet[str] = frozenset()
    official_servers: Tuple[str, ...] = ()
    log_file: str = DEFAULT_LOG_FILE
    log_enabled: bool = True
    config_path: Optional[Path] = None

    def registry_config(self) -> RegistryConfig:
        return RegistryConfig(
            stale_timeout=self.stale_timeout,
            official_servers=self.official_servers,
        )

    @property
    def base_dir(self) -> Path:
        if self.config_path is None:
            return Path.cwd()
        return self.config_path.resolve().parent


class FileConfig(BaseModel):
    """Layout of config.json"""
    model_config = ConfigDict(populate_by_name=True)

    port: int = DEFAULT_PORT
    allowed_user_agent: str = Field(default=DEFAULT_USER_AGENT, alias="allowedUserAgent")
    stale_timeout: str = Field(default=format_duration(DEFAULT_STALE_TIMEOUT), alias="staleTimeout")
    blacklist: List[str] = Field(default_factory=list)
    official_servers: List[str] = Field(default_factory=list, alias="officialServers")
    log_file: str = Field(default=DEFAULT_LOG_FILE, alias="logFile")
    log_enabled: bool = Field(default=True, alias="logEnabled")

    @field_validator("blacklist", "official_servers", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return [] if v is None else v


class EnvOverrides(BaseSettings):
    """LUSD_* environment variables; invalid values are logged and dropped"""
    model_config = SettingsConfigDict(
        env_prefix="LUSD_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    port: Optional[int] = Field(default=None, gt=0, le=65535)
    user_agent: Optional[str] = Field(default=None, min_length=1, max_length=100)
    stale_timeout: Optional[float] = Field(default=None, gt=0)
    log_file: Optional[str] = Field(default=None, min_length=1, max_length=255)
    log_enabled: Optional[bool] = None
    config_file: str = Field(default=DEFAULT_CONFIG_FILE, validation_alias="LUSD_CONFIG")

    @field_validator("stale_timeout", mode="before")
    @classmethod
    def parse_stale_timeout(cls, v):
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("log_file")
    @classmethod
    def reject_traversal(cls, v):
        if v is not None and ".." in v:
            raise ValueError("path traversal in log file")
        return v

    @field_validator("port", "user_agent", "stale_timeout", "log_file", "log_enabled", mode="wrap")
    @classmethod
    def ignore_invalid(cls, value, handler, info):
        try:
            return handler(value)
        except (ValidationError, ValueError):
            logger.warning(f"Invalid LUSD_{info.field_name.upper()} environment variable, ignoring")
            return None


def resolve_log_path(log_file: str, base_dir: Path) -> Path:
    """
    Work out where the log file goes

    Relative paths are placed in ``base_dir``; absolute paths may not point
    into system directories.

    Raises:
        ValueError: if the path is empty or unsafe
    """
    if not log_file:
        raise ValueError("empty log file path")

    path = Path(log_file)
    if path.is_absolute():
        lowered = str(path).lower()
        for sys_dir in SYSTEM_DIRS:
            if lowered.startswith(sys_dir.lower()):
                raise ValueError("cannot write logs to system directory")
    else:
        path = Path(base_dir) / path

    if ".." in path.parts:
        raise ValueError("path traversal detected in log path")
    return path


def _write_default_config(path: Path) -> None:
    defaults = FileConfig()
    data = json.dumps(defaults.model_dump(by_alias=True), indent=2)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CONFIG_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(data)


def _read_config_file(path: Path) -> Optional[FileConfig]:
    """Read config.json; None when it is missing, too large or invalid"""
    if not path.exists():
        logger.info("Config file not found, creating default config")
        try:
            _write_default_config(path)
            logger.info("Created default config")
        except OSError:
            logger.error("Error writing default config, using defaults")
        return None

    try:
        if path.stat().st_size > MAX_CONFIG_FILE_SIZE:
            logger.error("Config file too large, using defaults")
            return None
        raw = path.read_bytes()
    except OSError:
        logger.error("Error reading config file, using defaults")
        return None

    try:
        return FileConfig.model_validate_json(raw)
    except ValidationError:
        logger.error("Error parsing config file, using defaults")
        return None


def _from_file(file_cfg: FileConfig) -> dict:
    values = {}

    try:
        values["stale_timeout"] = parse_duration(file_cfg.stale_timeout)
        if values["stale_timeout"] <= 0:
            raise ValueError("stale timeout must be positive")
    except ValueError:
        logger.warning("Invalid staleTimeout format, using default")
        values["stale_timeout"] = DEFAULT_STALE_TIMEOUT

    blacklist = set()
    for ip in file_cfg.blacklist:
        ip = ip.strip()
        if not ip:
            continue
        if not is_ip(ip):
            logger.warning(f"Skipping invalid IP in blacklist: {ip}")
            continue
        blacklist.add(str(ipaddress.ip_address(ip)))
    values["blacklist"] = frozenset(blacklist)

    official = []
    for addr in file_cfg.official_servers:
        addr = addr.strip()
        if not addr:
            continue
        if not is_ip(split_host(addr)):
            logger.warning("Skipping official server: not a valid IP")
            continue
        official.append(addr)
    values["official_servers"] = tuple(official)

    if 1 <= file_cfg.port <= 65535:
        values["port"] = file_cfg.port
    else:
        logger.warning("Invalid port number, using default")

    if file_cfg.allowed_user_agent:
        values["allowed_user_agent"] = file_cfg.allowed_user_agent
    else:
        logger.warning("Empty allowedUserAgent, using default")

    if file_cfg.log_file:
        values["log_file"] = file_cfg.log_file
    else:
        logger.warning("Empty logFile, using default")

    values["log_enabled"] = file_cfg.log_enabled
    return values


def _apply_env(values: dict, env: EnvOverrides) -> None:
    overrides = {
        "port": env.port,
        "allowed_user_agent": env.user_agent,
        "stale_timeout": env.stale_timeout,
        "log_file": env.log_file,
        "log_enabled": env.log_enabled,
    }
    for key, value in overrides.items():
        if value is not None:
            values[key] = value
            logger.info(f"{key} overridden by environment variable")


def load_config(config_path=None, env: Optional[EnvOverrides] = None) -> AppConfig:
    """
    Build the process configuration

    Reads the JSON config file (falling back to defaults on any problem)
    and then applies valid LUSD_* environment overrides.
    """
    env = env or EnvOverrides()
    path = Path(config_path if config_path is not None else env.config_file)

    values = {}
    if ".." in path.parts:
        logger.warning("Invalid config path detected, using defaults")
    else:
        file_cfg = _read_config_file(path)
        if file_cfg is not None:
            values = _from_file(file_cfg)
            logger.info("Successfully loaded config")

    _apply_env(values, env)
    return AppConfig(config_path=path, **values)
