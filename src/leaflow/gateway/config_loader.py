from __future__ import annotations

import os
import tempfile
import tomllib
import typing
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Union

from .config import SECRET_FIELDS, GatewayConfig

CONFIG_FILE_ENV = "LEAFLOW_CONFIG_FILE"
ENV_PREFIX = "LEAFLOW_"
DEFAULT_CONFIG_PATH = Path("configs/leaflow.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": ["host", "port", "timezone", "cors_allow_origins"],
    "upstream": [
        "upstream_base_url",
        "chat_path",
        "models_path",
        "embeddings_path",
        "request_timeout_ms",
    ],
    "auth": ["inner_token", "authorization_key"],
    "uploads": [
        "allowed_image_types",
        "max_attachment_bytes",
        "max_attachments",
        "payload_field",
        "upload_image_detail",
    ],
    "logging": [
        "log_level",
        "log_dir",
        "enable_access_log",
        "access_log_path",
        "max_log_bytes",
    ],
}

# Variable names used by earlier container deployments.
_LEGACY_ENV: dict[str, str] = {
    "PORT": "port",
    "LLM_BASE_URL": "upstream_base_url",
    "LLM_REQUEST_TIMEOUT_MS": "request_timeout_ms",
    "INNER_TOKEN": "inner_token",
    "AUTHORIZATION_KEY": "authorization_key",
}


def _field_types() -> dict[str, Any]:
    hints = typing.get_type_hints(GatewayConfig)
    return {f.name: hints[f.name] for f in fields(GatewayConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value).strip())


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _coerce_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return tuple(str(item).strip() for item in items if str(item).strip())


_CASTERS: dict[Any, Callable[[Any], Any]] = {
    bool: _coerce_bool,
    int: _coerce_int,
    str: _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    origin = typing.get_origin(field_type)
    if origin is None:
        caster = _CASTERS.get(field_type)
        return caster(value) if caster else value

    if origin is tuple:
        return _coerce_tuple(value)

    if origin is Union:
        args = [arg for arg in typing.get_args(field_type) if arg is not type(None)]
        if value in ("", None):
            return None
        if len(args) == 1 and args[0] in _CASTERS:
            return _CASTERS[args[0]](value)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _default_config_dict() -> dict[str, Any]:
    data = asdict(GatewayConfig())
    data.pop("config_file_path", None)
    return data


def _merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Layer ``updates`` over ``base``, keeping ``base`` where coercion fails."""

    field_types = _field_types()
    merged = dict(base)
    for key, value in updates.items():
        if key not in field_types:
            continue
        try:
            merged[key] = _coerce_value(field_types[key], value)
        except (TypeError, ValueError):
            continue
    return merged


def _env_layer(env: typing.Mapping[str, str]) -> dict[str, Any]:
    legacy = {
        field_name: env[name] for name, field_name in _LEGACY_ENV.items() if name in env
    }
    prefixed = {}
    for f in fields(GatewayConfig):
        if f.name == "config_file_path":
            continue
        name = ENV_PREFIX + f.name.upper()
        if name in env:
            prefixed[f.name] = env[name]
    return {**legacy, **prefixed}


def config_file_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def _ensure_config_file(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    write_config(GatewayConfig(), path)


def load_file_config() -> dict[str, Any]:
    path = config_file_path()
    _ensure_config_file(path)
    return _merge(_default_config_dict(), _read_config_file(path))


def load_gateway_config() -> GatewayConfig:
    """Build the process configuration: env > legacy env > TOML file > defaults."""

    path = config_file_path()
    values = _merge(load_file_config(), _env_layer(os.environ))
    return GatewayConfig(config_file_path=str(path), **values)


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        inner = ", ".join(_format_value(item) for item in value)
        return f"[{inner}]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return '""'
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config(config: GatewayConfig, path: Path | None = None) -> None:
    path = Path(path or config_file_path()).expanduser()
    config_dict = asdict(config)
    lines: list[str] = [
        "# LEAFLOW gateway configuration.",
        "# Generated automatically. LEAFLOW_* environment variables override these values.",
    ]
    for section, keys in _SECTION_MAP.items():
        lines.append("")
        lines.append(f"[{section}]")
        for key in keys:
            lines.append(f"{key} = {_format_value(config_dict[key])}")

    tmp_fd, tmp_path = tempfile.mkstemp(
        prefix="leaflow_config_", suffix=".toml", dir=str(path.parent)
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        Path(tmp_path).replace(path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


def list_env_overrides() -> dict[str, str]:
    return {
        key: ("***" if key[len(ENV_PREFIX):].lower() in SECRET_FIELDS else value)
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX)
    }


def redacted(config: GatewayConfig) -> dict[str, Any]:
    data = asdict(config)
    for key in SECRET_FIELDS:
        if data.get(key):
            data[key] = "***"
    for key, value in data.items():
        if isinstance(value, tuple):
            data[key] = list(value)
    return data
