from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, NoReturn, Optional, Tuple

import click
import httpx
from rich.console import Console
from rich.markup import escape

from . import __version__
from .auth import OAuthProvider, build_auth_headers
from .config import parse_target, resolve_config_target
from .errors import AuthenticationRequired, ConfigError, ServerConnectionError, VetterError
from .log import BoundLogger, close_session_log, init_session_log
from .models import HttpTarget, Report, Target
from .negotiate import negotiate
from .probe import probe
from .report import print_auth_error, print_report, render_auth_error_json, render_json, render_markdown
from .rules import evaluate
from .settings import Settings

console = Console()
err_console = Console(stderr=True)


def _fail(message: str, code: int) -> NoReturn:
    err_console.print(f"[red]{escape(message)}[/red]")
    sys.exit(code)


def _parse_headers(raw_headers: Tuple[str, ...]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for h in raw_headers:
        if ":" not in h:
            raise click.UsageError("--header must be in 'Key: Value' format")
        k, v = h.split(":", 1)
        headers[k.strip()] = v.strip()
    return headers


async def run_vet(
    target: Target,
    *,
    settings: Settings,
    log: BoundLogger,
    headers: Optional[Dict[str, str]] = None,
    credentials: Optional[OAuthProvider] = None,
    include_health: bool = True,
) -> Report:
    """Negotiate, probe, release the channel, then evaluate the tool list."""

    try:
        channel = await negotiate(
            target, credentials, log=log, timeout=settings.connect_timeout, headers=headers
        )
        try:
            snapshot = await probe(
                channel, target, log=log, health_timeout=settings.health_timeout, include_health=include_health
            )
        finally:
            await channel.close()
    finally:
        if credentials is not None:
            await credentials.aclose()
    findings = evaluate(snapshot.tools)
    log.info("vet.done", tools=len(snapshot.tools), findings=len(findings))
    return Report(target=target.describe(), snapshot=snapshot, findings=findings)


@click.group()
@click.version_option(__version__, prog_name="mcp-vetter")
def main() -> None:
    """MCP Vetter CLI."""


@main.command("vet")
@click.argument("url", required=False)
@click.option("--command", help="Command line that starts a stdio MCP server, e.g. 'node server.js'")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="MCP client config file to read the server from")
@click.option("--server", help="Server name inside the config file")
@click.option("--output", "fmt", type=click.Choice(["text", "json", "markdown"]), default="text", show_default=True)
@click.option("--output-file", type=click.Path(dir_okay=False, path_type=Path), help="Write report to file")
@click.option("--oauth", is_flag=True, default=False, help="Run the OAuth browser flow if the server requires authentication")
@click.option("--oauth-port", type=int, help="Local port for the OAuth redirect (default 9876)")
@click.option("--auth-type", type=click.Choice(["bearer", "oauth2-client-credentials"]))
@click.option("--auth-token")
@click.option("--token-url")
@click.option("--client-id")
@click.option("--client-secret")
@click.option("--scope")
@click.option("--header", multiple=True, help="Extra request headers, can repeat. Format: 'Key: Value'")
@click.option("--timeout", type=float, help="Connection timeout in seconds (default 30)")
@click.option("--no-health", is_flag=True, default=False, help="Skip the /health check")
@click.option("--verbose", is_flag=True, default=False, help="Print the session log path")
def vet_cmd(url: Optional[str], command: Optional[str], config_path: Optional[Path], server: Optional[str], fmt: str, output_file: Optional[Path], oauth: bool, oauth_port: Optional[int], auth_type: Optional[str], auth_token: Optional[str], token_url: Optional[str], client_id: Optional[str], client_secret: Optional[str], scope: Optional[str], header: Tuple[str, ...], timeout: Optional[float], no_health: bool, verbose: bool) -> None:
    """Connect to an MCP server, list its capabilities and check tool quality."""
    try:
        settings = Settings.from_env().with_overrides(connect_timeout=timeout, oauth_port=oauth_port)
        if url or command:
            target = parse_target(url, command)
        else:
            target = resolve_config_target(config_path, server)
    except ConfigError as exc:
        _fail(str(exc), exc.exit_code)

    headers: Dict[str, str] = {}
    if isinstance(target, HttpTarget):
        try:
            headers = asyncio.run(
                build_auth_headers(auth_type, auth_token, token_url, client_id, client_secret, scope)
            )
        except ValueError as exc:
            raise click.UsageError(str(exc))
        except (httpx.HTTPError, RuntimeError) as exc:
            _fail(f"Could not obtain OAuth2 client-credentials token: {type(exc).__name__}: {exc}", 2)
        headers.update(_parse_headers(header))
    elif oauth or auth_type or header:
        err_console.print("Note: authentication and header options are ignored for stdio servers")

    credentials: Optional[OAuthProvider] = None
    if oauth and isinstance(target, HttpTarget):
        credentials = OAuthProvider(
            port=settings.oauth_port, timeout=settings.oauth_timeout, notify=err_console.print
        )

    log, log_path = init_session_log("vet", settings.log_dir)
    if verbose:
        err_console.print(f"Session log: {log_path}")
    log.info("vet.start", target=target.describe(), mode=target.mode, output=fmt, oauth=credentials is not None)

    try:
        report = asyncio.run(
            run_vet(
                target,
                settings=settings,
                log=log,
                headers=headers,
                credentials=credentials,
                include_health=not no_health,
            )
        )
    except AuthenticationRequired as exc:
        log.info("vet.auth_required", status=exc.challenge.status_code)
        if fmt == "json":
            click.echo(render_auth_error_json(exc.challenge))
        else:
            print_auth_error(exc.challenge, err_console)
        sys.exit(exc.exit_code)
    except ServerConnectionError as exc:
        log.error("vet.connection_error", kind=exc.kind.value)
        _fail(str(exc), exc.exit_code)
    except VetterError as exc:
        log.error("vet.failed", error=str(exc))
        _fail(str(exc), exc.exit_code)
    except Exception as exc:
        log.exception("vet.failed")
        message = str(exc) or type(exc).__name__
        _fail(f"Error: {message}", 1)
    finally:
        close_session_log(log_path)

    if fmt == "json":
        out = render_json(report)
    elif fmt == "markdown":
        out = render_markdown(report)
    else:
        out = None

    if output_file:
        if out is None:
            with output_file.open("w", encoding="utf-8") as fh:
                print_report(report, Console(file=fh, width=120, no_color=True))
        else:
            output_file.write_text(out + "\n", encoding="utf-8")
        console.print(f"Wrote {fmt} report to {output_file}")
    elif out is None:
        print_report(report, console)
    else:
        click.echo(out)
    sys.exit(0)
