"""Process configuration: Aha! credentials, transport, and file locations.

Resolution order, highest first: environment variables, the JSON config
file (``~/.aha-mcp-config.json`` unless overridden), built-in defaults.
A missing or corrupt file is never fatal; it is logged and ignored.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TypedDict

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".aha-mcp-config.json"
VALID_MODES: frozenset[str] = frozenset({"stdio", "sse"})

_COMPANY_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9._-]+$")

_ENV_KEYS: dict[str, str] = {
    "AHA_COMPANY": "company",
    "AHA_TOKEN": "token",
    "MCP_TRANSPORT_MODE": "mode",
    "MCP_PORT": "port",
    "MCP_HOST": "host",
    "AHACACHE_DB_PATH": "db_path",
    "AHACACHE_LOG_DIR": "log_dir",
}


class ServerConfig(TypedDict, total=False):
    """Shape of the resolved configuration."""

    company: str
    token: str
    mode: str
    port: int
    host: str
    db_path: str
    log_dir: str


DEFAULTS = ServerConfig(mode="stdio", port=3001, host="0.0.0.0", db_path=str(Path("data") / "aha-mcp.db"))  # noqa: S104


def default_config_path() -> Path:
    return Path.home() / CONFIG_FILENAME


def _obfuscate(token: str) -> str:
    return base64.b64encode(token.encode("utf-8")).decode("ascii")


def _deobfuscate(value: str) -> str:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        # Hand-edited files may hold the token in clear text.
        return value


def read_config_file(path: Path | None = None) -> ServerConfig:
    """Read the JSON config file. Returns ``{}`` if missing or corrupt."""
    config_path = path or default_config_path()
    if not config_path.exists():
        return ServerConfig()
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, ignoring it: %s", config_path, exc)
        return ServerConfig()
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not an object", config_path)
        return ServerConfig()
    result = ServerConfig()
    for key in ServerConfig.__annotations__:
        value = data.get(key)
        if value is None:
            continue
        if key == "token":
            value = _deobfuscate(str(value))
        result[key] = value  # type: ignore[literal-required]
    return result


def _from_env(environ: Mapping[str, str]) -> ServerConfig:
    result = ServerConfig()
    for env_key, key in _ENV_KEYS.items():
        raw = environ.get(env_key)
        if raw is None or raw == "":
            continue
        if key == "port":
            try:
                port = int(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not an integer", env_key, raw)
                continue
            if not 0 < port <= 65535:
                logger.warning("Ignoring %s=%r: out of range", env_key, raw)
                continue
            result["port"] = port
        else:
            result[key] = raw  # type: ignore[literal-required]
    return result


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> ServerConfig:
    """Merge defaults, the config file, and environment variables."""
    merged = ServerConfig(**DEFAULTS)
    merged.update(read_config_file(path))
    merged.update(_from_env(os.environ if environ is None else environ))
    return merged


def validate_config(config: ServerConfig) -> list[str]:
    """Return human-readable problems; an empty list means valid."""
    errors: list[str] = []
    company = config.get("company")
    if company and not _COMPANY_RE.match(company):
        errors.append("Company must be a valid subdomain (alphanumeric and hyphens only)")
    token = config.get("token")
    if token:
        if len(token) < 10:
            errors.append("Token appears to be too short")
        if not _TOKEN_RE.match(token):
            errors.append("Token contains invalid characters")
    mode = config.get("mode", "stdio")
    if mode not in VALID_MODES:
        errors.append('Mode must be either "stdio" or "sse"')
    if mode == "sse":
        port = config.get("port")
        if not isinstance(port, int) or not 0 < port <= 65535:
            errors.append("Port must be between 1 and 65535 for SSE mode")
        if not str(config.get("host") or "").strip():
            errors.append("Host must be specified for SSE mode")
    return errors


def is_config_complete(config: ServerConfig) -> bool:
    return bool(config.get("company") and config.get("token"))


def save_config(config: ServerConfig, path: Path | None = None) -> Path:
    """Validate and write the config file atomically, token obfuscated.

    Raises ``ValueError`` listing the problems when *config* is invalid.
    """
    errors = validate_config(config)
    if errors:
        msg = "Invalid configuration: " + "; ".join(errors)
        raise ValueError(msg)
    config_path = path or default_config_path()
    data: dict[str, Any] = dict(config)
    if data.get("token"):
        data["token"] = _obfuscate(str(data["token"]))
    config_path.parent.mkdir(parents=True, exist_ok=True)
    write_atomic(config_path, json.dumps(data, indent=2) + "\n")
    return config_path


def config_summary(config: ServerConfig, path: Path | None = None) -> dict[str, Any]:
    """Configuration view safe to show to a client: the token is never included."""
    return {
        "company": config.get("company") or "not configured",
        "token_configured": bool(config.get("token")),
        "mode": config.get("mode"),
        "port": config.get("port"),
        "host": config.get("host"),
        "db_path": config.get("db_path"),
        "config_file": str(path or default_config_path()),
        "is_complete": is_config_complete(config),
    }


def write_atomic(path: Path, content: str) -> None:
    """Write content to path atomically via temp file + os.replace()."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
