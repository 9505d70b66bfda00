from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_IMAGE_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
)

SECRET_FIELDS = ("inner_token", "authorization_key")


class ConfigError(RuntimeError):
    """Raised when the gateway cannot start with the given configuration."""


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    timezone: Optional[str] = None
    upstream_base_url: str = "http://llm.ai-infra.svc.cluster.local"
    chat_path: str = "/v1/chat/completions"
    models_path: str = "/v1/models"
    embeddings_path: str = "/v1/embeddings"
    request_timeout_ms: int = 8_000
    # Credential presented to the upstream; callers never see it.
    inner_token: str = ""
    # Inbound key; None or "" leaves the gateway open.
    authorization_key: Optional[str] = None
    allowed_image_types: Tuple[str, ...] = DEFAULT_IMAGE_TYPES
    max_attachment_bytes: int = 6_000_000
    max_attachments: int = 4
    payload_field: str = "payload"
    upload_image_detail: str = "high"
    cors_allow_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    enable_access_log: bool = True
    access_log_path: str = "logs/leaflow.access.jsonl"
    max_log_bytes: int = 25_000_000
    config_file_path: Optional[str] = None

    def _url(self, path: str) -> str:
        return self.upstream_base_url.rstrip("/") + path

    @property
    def chat_url(self) -> str:
        return self._url(self.chat_path)

    @property
    def models_url(self) -> str:
        return self._url(self.models_path)

    @property
    def embeddings_url(self) -> str:
        return self._url(self.embeddings_path)

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000

    @property
    def auth_enabled(self) -> bool:
        return bool(self.authorization_key)

    def validate(self) -> None:
        missing = [name for name in ("inner_token",) if not getattr(self, name)]
        if missing:
            raise ConfigError(
                "Critical configuration is missing: "
                f"{', '.join(missing)}. Server will not start."
            )
        if self.request_timeout_ms <= 0:
            raise ConfigError("request_timeout_ms must be positive")
        if self.max_attachments < 0:
            raise ConfigError("max_attachments must not be negative")
        if self.max_attachment_bytes <= 0:
            raise ConfigError("max_attachment_bytes must be positive")

    @classmethod
    def load(cls) -> "GatewayConfig":
        from .config_loader import load_gateway_config

        return load_gateway_config()
