"""CLI entry point for claude-webui."""

import asyncio
import logging
import os

import click
import httpx
import uvicorn
from websockets.exceptions import WebSocketException

from .client import run_chat
from .client_store import ClientStore
from .errors import WebUIError


@click.group()
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    help="Logging verbosity.",
)
def main(log_level: str):
    """Web front end for Claude Code sessions."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--no-watch", is_flag=True, help="Do not push project updates on log changes.")
def serve(port: int, host: str, no_watch: bool):
    """Start the web server."""
    if no_watch:
        os.environ["CLAUDE_WEBUI_WATCH"] = "0"
    click.echo(f"Starting claude-webui on http://{host}:{port}")
    uvicorn.run("claude_webui.server:app", host=host, port=port, reload=False)


@main.command()
@click.option("--url", default="ws://127.0.0.1:8080/ws", help="WebSocket URL of a running server.")
@click.option("--project", "project_name", required=True, help="Project name (encoded path).")
@click.option("--session", "session_id", default=None, help="Continue this session instead of starting a new one.")
@click.argument("messages", nargs=-1)
def chat(url: str, project_name: str, session_id: str | None, messages: tuple[str, ...]):
    """Chat with Claude through a running server.

    Sends MESSAGES in order, or prompts interactively when none are given.
    """
    try:
        asyncio.run(run_chat(url, project_name, session_id, list(messages), ClientStore()))
    except WebUIError as e:
        raise click.ClickException(str(e))
    except (OSError, httpx.HTTPError, WebSocketException) as e:
        raise click.ClickException(f"Could not reach {url}: {e}")
