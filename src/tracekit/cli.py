"""Command-line interface for tracekit."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from tracekit.config import LOG_LEVELS, TelemetryConfig, configure_telemetry
from tracekit.context import Context, get_span_context
from tracekit.errors import ConfigurationError
from tracekit.tracing.baggage import get_baggage, set_baggage_items
from tracekit.tracing.propagator import create_propagator
from tracekit.tracing.provider import TracerProvider
from tracekit.tracing.span import SpanKind

app = typer.Typer(
    name="tracekit",
    help="Trace-context propagation and batched telemetry export",
    add_completion=False,
)

DEFAULT_PROPAGATORS = ["tracecontext", "baggage", "xray"]
DEMO_EXPORTER = "console"
DEMO_SERVICE_NAME = "hello-app"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _setup_logging(level: str) -> None:
    level = level.upper()
    if level not in LOG_LEVELS:
        typer.echo(f"Error: Unknown log level: {level}", err=True)
        raise typer.Exit(1)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _parse_key_values(values: list[str], option: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            typer.echo(f"Error: {option} expects key=value, got {item!r}", err=True)
            raise typer.Exit(1)
        pairs[key.strip()] = value.strip()
    return pairs


def _headers_table(title: str, carrier: dict[str, str]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Header", style="cyan")
    table.add_column("Value", overflow="fold")
    for key, value in sorted(carrier.items()):
        table.add_row(key, value)
    return table


@app.command(name="demo")
def demo_cmd(
    exporter: Annotated[
        Optional[str],
        typer.Option("--exporter", "-e", help="Exporter (otlp, console, memory, none)"),
    ] = None,
    endpoint: Annotated[
        Optional[str],
        typer.Option("--endpoint", help="Collector endpoint (host:port or URL)"),
    ] = None,
    insecure: Annotated[
        bool,
        typer.Option("--insecure", help="Send to the collector over plain HTTP"),
    ] = False,
    requests: Annotated[
        int,
        typer.Option("--requests", "-n", min=1, help="Number of simulated requests"),
    ] = 1,
    service_name: Annotated[
        Optional[str],
        typer.Option("--service-name", help="service.name resource attribute"),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML configuration file"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
) -> None:
    """Simulate requests that create, propagate and export spans and metrics.

    Settings come from --config, or else from the OTEL_* environment with
    the console exporter and service name hello-app as defaults. Options
    given on the command line override both.
    """
    _setup_logging(log_level or "WARNING")

    try:
        if config_file is not None:
            config = TelemetryConfig.from_file(config_file)
        else:
            config = TelemetryConfig.from_env()
            if not os.environ.get("OTEL_TRACES_EXPORTER"):
                config = config.with_overrides(exporter=DEMO_EXPORTER)
            if not os.environ.get("OTEL_SERVICE_NAME"):
                config = config.with_overrides(service_name=DEMO_SERVICE_NAME)
        config = config.with_overrides(
            exporter=exporter,
            endpoint=endpoint,
            insecure=insecure or None,
            service_name=service_name,
            log_level=log_level.upper() if log_level else None,
        )
        telemetry = configure_telemetry(config, register_atexit=False)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    console = Console()
    tracer = telemetry.get_tracer("io.tracekit.demo")
    request_counter = telemetry.registry.counter(
        "demo.requests", description="Handled requests", unit="{request}"
    )
    latency = telemetry.registry.histogram(
        "demo.request.duration", description="Request latency", unit="ms"
    )

    carrier: dict[str, str] = {}
    try:
        for _ in range(requests):
            started = time.perf_counter()
            attributes = {"http.route": "/hello", "http.method": "GET"}

            ctx, parent = tracer.start(
                Context(), "parentSpan", kind=SpanKind.SERVER, attributes=attributes
            )
            parent.set_attribute("http.status_code", 200)
            parent.end()

            # carrier crosses the process boundary here
            carrier = {}
            telemetry.propagator.inject(ctx, carrier)
            remote_ctx = telemetry.propagator.extract(Context(), carrier)

            _, child = tracer.start(remote_ctx, "childSpan")
            child.add_event("test-dummy-event")
            child.record_exception(RuntimeError("errors"))
            child.end()

            request_counter.add(1, attributes)
            latency.record((time.perf_counter() - started) * 1000, attributes)

        console.print(_headers_table("Propagated carrier", carrier))
        telemetry.force_flush(timeout_millis=config.export_timeout_millis)
    finally:
        ok = telemetry.shutdown(timeout_millis=config.export_timeout_millis)

    typer.echo(f"Simulated {requests} request(s) for {config.service_name}")
    if not ok:
        typer.echo("Warning: telemetry did not shut down cleanly", err=True)


@app.command(name="inject")
def inject_cmd(
    propagators: Annotated[
        Optional[list[str]],
        typer.Option("--propagator", "-p", help="Propagation format (repeatable)"),
    ] = None,
    baggage: Annotated[
        Optional[list[str]],
        typer.Option("--baggage", "-b", help="Baggage entry key=value (repeatable)"),
    ] = None,
    name: Annotated[
        str,
        typer.Option("--name", help="Name of the root span"),
    ] = "inject",
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, json)"),
    ] = "console",
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = "WARNING",
) -> None:
    """Start a root span and print the headers that propagate it."""
    _setup_logging(log_level)

    try:
        propagator = create_propagator(propagators or DEFAULT_PROPAGATORS)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    entries = _parse_key_values(baggage or [], "--baggage")
    ctx = set_baggage_items(entries, Context()) if entries else Context()

    provider = TracerProvider()
    ctx, span = provider.get_tracer("io.tracekit.cli").start(ctx, name)
    carrier: dict[str, str] = {}
    propagator.inject(ctx, carrier)
    span.end()
    provider.shutdown(timeout_millis=0)

    if format == "json":
        typer.echo(json.dumps(carrier, indent=2, sort_keys=True))
    else:
        Console().print(_headers_table("Injected headers", carrier))


@app.command(name="extract")
def extract_cmd(
    headers: Annotated[
        Optional[list[str]],
        typer.Option("--header", "-H", help='Incoming header "Name: value" (repeatable)'),
    ] = None,
    propagators: Annotated[
        Optional[list[str]],
        typer.Option("--propagator", "-p", help="Propagation format (repeatable)"),
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, json)"),
    ] = "console",
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = "WARNING",
) -> None:
    """Parse incoming headers and print the trace context they carry."""
    _setup_logging(log_level)

    try:
        propagator = create_propagator(propagators or DEFAULT_PROPAGATORS)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    carrier: dict[str, list[str]] = {}
    for header in headers or []:
        key, sep, value = header.partition(":")
        if not sep or not key.strip():
            typer.echo(f"Ignoring malformed header: {header!r}", err=True)
            continue
        carrier.setdefault(key.strip(), []).append(value.strip())

    ctx = propagator.extract(Context(), carrier)
    span_context = get_span_context(ctx)
    baggage = get_baggage(ctx)

    if format == "json":
        result: dict = {"span_context": None, "baggage": baggage.to_dict()}
        if span_context is not None and span_context.is_valid:
            result["span_context"] = {
                "trace_id": span_context.trace_id,
                "span_id": span_context.span_id,
                "sampled": span_context.is_sampled,
                "remote": span_context.is_remote,
                "trace_state": span_context.trace_state.to_header(),
            }
        typer.echo(json.dumps(result, indent=2, sort_keys=True))
        return

    console = Console()
    if span_context is None or not span_context.is_valid:
        console.print("No span context found")
    else:
        table = Table(title="Span context", show_header=True, header_style="bold")
        table.add_column("Field", style="cyan")
        table.add_column("Value", overflow="fold")
        table.add_row("trace_id", span_context.trace_id)
        table.add_row("span_id", span_context.span_id)
        table.add_row("sampled", str(span_context.is_sampled))
        table.add_row("remote", str(span_context.is_remote))
        table.add_row("trace_state", span_context.trace_state.to_header() or "-")
        console.print(table)

    if baggage:
        console.print(_headers_table("Baggage", dict(baggage)))


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
