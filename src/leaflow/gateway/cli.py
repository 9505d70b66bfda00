"""Typer CLI for running and inspecting the LEAFLOW gateway."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Optional

import typer

from .config import ConfigError, GatewayConfig
from .config_loader import list_env_overrides, load_gateway_config, redacted

app = typer.Typer(help="LEAFLOW authenticating gateway")

logger = logging.getLogger(__name__)


def apply_timezone(timezone: Optional[str]) -> None:
    """Export ``timezone`` as TZ so log timestamps use it."""

    if not timezone:
        return
    os.environ["TZ"] = timezone
    if hasattr(time, "tzset"):
        time.tzset()


@app.command("serve")
def cmd_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Override bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Override bind port"),
):  # noqa: D401 - CLI
    """Run the gateway with uvicorn."""
    import uvicorn

    from ..logging_utils import configure_logging
    from .app import create_app

    cfg = load_gateway_config()
    apply_timezone(cfg.timezone)
    log_path = configure_logging(
        "leaflow_gateway",
        level=cfg.log_level,
        log_dir=Path(cfg.log_dir) if cfg.log_dir else None,
    )
    try:
        gateway = create_app(cfg)
    except ConfigError as exc:
        logger.error("[config] %s", exc)
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    logger.info("[server] Logging to %s", log_path)
    logger.info("[server] Running on %s:%s", host or cfg.host, port or cfg.port)
    uvicorn.run(gateway, host=host or cfg.host, port=port or cfg.port, log_config=None)


@app.command("config")
def cmd_config(
    check: bool = typer.Option(
        False, "--check", help="Exit non-zero if the configuration cannot start"
    ),
):  # noqa: D401 - CLI
    """Print the effective configuration with secrets masked."""
    cfg: GatewayConfig = load_gateway_config()
    typer.echo(
        json.dumps(
            {
                "runtime": redacted(cfg),
                "env_overrides": list_env_overrides(),
                "derived": {
                    "chat_url": cfg.chat_url,
                    "models_url": cfg.models_url,
                    "embeddings_url": cfg.embeddings_url,
                },
            },
            indent=2,
        )
    )
    if check:
        try:
            cfg.validate()
        except ConfigError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
