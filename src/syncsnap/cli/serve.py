"""Serve command for syncsnap CLI.

Commands:
- serve: Run the local agent HTTP API
"""

from __future__ import annotations

import click


@click.command()
@click.option("--host", default=None, help="Interface to bind (default: SYNCSNAP_API_HOST or 127.0.0.1).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: SYNCSNAP_API_PORT or 29999).")
def serve(host: str | None, port: int | None) -> None:
    """Run the local agent HTTP API."""
    import uvicorn

    from syncsnap.core.config import AgentConfig
    from syncsnap.server.app import create_app, setup_logging

    config = AgentConfig.from_env()
    setup_logging(config.log_path, config.log_level)

    click.echo(f"Listening on http://{host or config.api_host}:{port or config.api_port}")
    uvicorn.run(
        create_app(config),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level=config.log_level.lower(),
    )
