"""Authenticating gateway in front of an OpenAI-compatible inference service.

Routes: /health, /v1/models, /v1/chat/completions (JSON or multipart, with
live event-stream relay) and /v1/embeddings.
"""

from .app import create_app
from .config import ConfigError, GatewayConfig

__all__ = ["ConfigError", "GatewayConfig", "create_app"]
