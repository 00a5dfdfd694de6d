"""Command-line interface for luminara."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

import click

from . import __version__
from .client import LuminaraClient, create_client
from .models import Response

BACKOFF_CHOICES = ["linear", "exponential", "exponentialCapped", "fibonacci", "jitter", "exponentialJitter"]
RESPONSE_TYPES = ["auto", "json", "text", "html", "xml", "blob", "arrayBuffer", "ndjson"]
METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def parse_headers(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse repeated `Name: value` options."""
    headers = {}
    for item in values:
        name, sep, value = item.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Expected 'Name: value', got {item!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


def parse_query(values: Tuple[str, ...]) -> Dict[str, Any]:
    """Parse repeated `key=value` options; a repeated key becomes a list."""
    query: Dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected 'key=value', got {item!r}", param_hint="--query")
        if key in query:
            existing = query[key]
            query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[key] = value
    return query


def echo_event(event: str, payload: Dict[str, Any]) -> None:
    details = " ".join(
        f"{key}={value}" for key, value in payload.items() if key not in ("error", "method", "url")
    )
    click.echo(f"[{event}] {details}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="luminara")
@click.option("--base-url", "-b", envvar="LUMINARA_BASE_URL", help="Base URL for relative request URLs")
@click.option("--timeout", "-t", "timeout_ms", type=float, help="Per-attempt timeout in milliseconds")
@click.option("--retry", "-r", type=int, default=0, show_default=True, help="Number of retries")
@click.option("--retry-delay", type=float, help="Base retry delay in milliseconds")
@click.option("--backoff", type=click.Choice(BACKOFF_CHOICES), help="Backoff strategy between retries")
@click.option("--dedupe", is_flag=True, help="Coalesce identical in-flight requests")
@click.option("--rate-limit", "rps", type=float, help="Requests per second")
@click.option("--hedge-delay", type=float, help="Enable race hedging with this delay in milliseconds")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging and lifecycle events on stderr")
@click.pass_context
def cli(ctx: click.Context, base_url: Optional[str], timeout_ms: Optional[float], retry: int,
        retry_delay: Optional[float], backoff: Optional[str], dedupe: bool, rps: Optional[float],
        hedge_delay: Optional[float], verbose: bool) -> None:
    """Resilient HTTP requests from the command line."""
    ctx.ensure_object(dict)
    options: Dict[str, Any] = {"retry": retry}
    if base_url:
        options["base_url"] = base_url
    if timeout_ms is not None:
        options["timeout_ms"] = timeout_ms
    if retry_delay is not None:
        options["retry_delay"] = retry_delay
    if backoff:
        options["backoff"] = {"strategy": backoff}
    if dedupe:
        options["dedupe"] = True
    if rps:
        options["rate_limit"] = {"rps": rps}
    if hedge_delay is not None:
        options["hedging"] = {"policy": "race", "hedge_delay_ms": hedge_delay}
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
        options["event_sink"] = echo_event
    ctx.obj["options"] = options
    ctx.obj["verbose"] = verbose


def get_client(ctx: click.Context) -> LuminaraClient:
    """Build a LuminaraClient from the global options and driver stored on the click context."""
    return create_client(driver=ctx.obj.get("driver"), **ctx.obj["options"])


def render(response: Response, json_output: bool) -> str:
    data = response.data
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")

    if json_output:
        output = {
            "status": response.status,
            "url": response.url,
            "headers": dict(response.headers),
            "data": data,
        }
        if response.hedging is not None:
            output["hedging"] = {
                "winner": response.hedging.winner,
                "total_attempts": response.hedging.total_attempts,
                "latency_saved_ms": response.hedging.latency_saved_ms,
            }
        return json.dumps(output, indent=2, default=str)

    if isinstance(data, str):
        return data
    if data is None:
        return ""
    return json.dumps(data, indent=2, default=str)


async def _send(ctx: click.Context, method: str, url: str, headers: Dict[str, str],
                query: Dict[str, Any], body: Any, response_type: str) -> Response:
    async with get_client(ctx) as client:
        return await client.request(
            url,
            method=method,
            headers=headers or None,
            query=query or None,
            body=body,
            response_type=response_type,
        )


def run_request(ctx: click.Context, method: str, url: str, header: Tuple[str, ...], query: Tuple[str, ...],
                json_body: Optional[str], response_type: str, json_output: bool) -> None:
    headers = parse_headers(header)
    params = parse_query(query)
    body = None
    if json_body is not None:
        try:
            body = json.loads(json_body)
        except ValueError as e:
            raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--json")

    try:
        response = asyncio.run(_send(ctx, method, url, headers, params, body, response_type))
    except Exception as e:
        if ctx.obj["verbose"]:
            import traceback
            click.echo(traceback.format_exc(), err=True)
        kind = getattr(getattr(e, "kind", None), "value", None)
        click.echo(f"Error: {kind}: {e}" if kind else f"Error: {e}", err=True)
        sys.exit(1)

    if ctx.obj["verbose"]:
        click.echo(f"{response.status} {response.reason}", err=True)
    click.echo(render(response, json_output))


def request_options(func: Any) -> Any:
    """Options shared by the request commands."""
    decorators: List[Any] = [
        click.option("--header", "-H", multiple=True, help="Header as 'Name: value' (repeatable)"),
        click.option("--query", "-q", multiple=True, help="Query parameter as key=value (repeatable)"),
        click.option("--json", "json_body", help="JSON request body"),
        click.option("--response-type", type=click.Choice(RESPONSE_TYPES), default="auto", show_default=True,
                     help="How to decode the response body"),
        click.option("--json-output", "-j", is_flag=True, help="Output status, headers and data as JSON"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@cli.command()
@click.argument("method", type=click.Choice(METHODS, case_sensitive=False))
@click.argument("url")
@request_options
@click.pass_context
def request(ctx: click.Context, method: str, url: str, header: Tuple[str, ...], query: Tuple[str, ...],
            json_body: Optional[str], response_type: str, json_output: bool) -> None:
    """Send a request and print the response body.

    Example:
        luminara request GET https://httpbin.org/json
        luminara -r 3 --backoff exponential request POST https://httpbin.org/post --json '{"a": 1}'
    """
    run_request(ctx, method.upper(), url, header, query, json_body, response_type, json_output)


@cli.command()
@click.argument("url")
@request_options
@click.pass_context
def get(ctx: click.Context, url: str, header: Tuple[str, ...], query: Tuple[str, ...],
        json_body: Optional[str], response_type: str, json_output: bool) -> None:
    """Shortcut for `request GET URL`.

    Example:
        luminara get https://httpbin.org/get -q page=2
        luminara --hedge-delay 200 get https://httpbin.org/delay/1
    """
    run_request(ctx, "GET", url, header, query, json_body, response_type, json_output)


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
