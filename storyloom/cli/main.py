"""storyloom command-line interface."""

from __future__ import annotations

import json
import sys

import click

from .serve import CLIError, run_serve


@click.group()
@click.version_option(package_name="storyloom")
def app() -> None:
    """storyloom CLI - inspect tools and run the sync server."""


@app.command()
@click.option("--names-only", is_flag=True, help="Print only the tool names.")
def tools(names_only: bool) -> None:
    """Print the default storybook tool registry."""
    from storyloom.story_tools import default_registry

    registry = default_registry()
    if names_only:
        for name in registry.names():
            click.echo(name)
        return
    click.echo(json.dumps(registry.records(), indent=2, ensure_ascii=False))


@app.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to bind.")
@click.option(
    "--backend-url",
    envvar="STORYLOOM_BACKEND_URL",
    required=True,
    help="Image generation endpoint the tools POST prompts to.",
)
@click.option(
    "--credential-header",
    default="Authorization",
    show_default=True,
    help="Header that carries the user's API key to the backend.",
)
@click.option(
    "--credential-prefix",
    default="Bearer ",
    show_default=True,
    help="Prefix placed before the key in the credential header.",
)
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
)
def serve(
    host: str,
    port: int,
    backend_url: str,
    credential_header: str,
    credential_prefix: str,
    log_level: str,
) -> None:
    """Serve the WebSocket sync endpoint and the session HTTP API."""
    try:
        run_serve(
            host=host,
            port=port,
            backend_url=backend_url,
            credential_header=credential_header,
            credential_prefix=credential_prefix,
            log_level=log_level,
        )
    except CLIError as e:
        click.echo(f"✗ {e.message}", err=True)
        if e.hint:
            click.echo(f"  Hint: {e.hint}", err=True)
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
