"""
sbclient Command-Line Interface

Lists management entities of a namespace and runs the local emulator.

Author: sbclient contributors
Date: 2026-10-17
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn

from . import __version__
from .config import Settings, load_settings
from .exceptions import ServiceBusError
from .logging_utils import configure_logging
from .management import ServiceBusAdministrationClient


ENTITY_KINDS = ["queues", "topics", "subscriptions", "rules"]


def _load(config: Optional[Path], overrides: Optional[dict] = None) -> Settings:
    settings = load_settings(config_file=str(config) if config else None, cli_overrides=overrides)
    configure_logging(settings.logging.level, json_format=settings.logging.format == "json")
    return settings


def _build_client(
    settings: Settings,
    connection_string: Optional[str],
) -> ServiceBusAdministrationClient:
    """Administration client for the namespace named on the command line or in settings."""
    if connection_string:
        return ServiceBusAdministrationClient.from_connection_string(
            connection_string,
            api_version=settings.client.api_version,
            timeout=settings.client.request_timeout,
            max_page_size=settings.client.max_page_size,
        )
    return ServiceBusAdministrationClient.from_config(settings.client)


async def _list_names(
    client: ServiceBusAdministrationClient,
    kind: str,
    topic: Optional[str],
    subscription: Optional[str],
    page_size: Optional[int],
) -> list:
    async with client:
        if kind == "queues":
            return [q.name async for q in client.list_queues(page_size)]
        if kind == "topics":
            return [t.name async for t in client.list_topics(page_size)]
        if kind == "subscriptions":
            return [s.subscription_name async for s in client.list_subscriptions(topic, page_size)]
        return [r.name async for r in client.list_rules(topic, subscription, page_size)]


@click.group()
@click.version_option(version=__version__, prog_name="sbclient")
@click.pass_context
def cli(ctx):
    """
    sbclient - Service Bus management listing and local emulator
    """
    ctx.ensure_object(dict)


@cli.command(name="list")
@click.argument("kind", type=click.Choice(ENTITY_KINDS, case_sensitive=False))
@click.option("--topic", "-t", help="Topic name (subscriptions, rules)")
@click.option("--subscription", "-s", help="Subscription name (rules)")
@click.option("--page-size", type=click.IntRange(1, 1000), help="Entities requested per page")
@click.option("--connection-string", envvar="SBCLIENT_CONNECTION_STRING", help="Namespace connection string")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
def list_entities(
    kind: str,
    topic: Optional[str],
    subscription: Optional[str],
    page_size: Optional[int],
    connection_string: Optional[str],
    config: Optional[Path],
):
    """
    List entity names, one per line.

    Examples:
        sbclient list queues --connection-string "Endpoint=sb://contoso.servicebus.windows.net/;..."
        sbclient list rules --topic orders --subscription audit -c sbclient.yaml
    """
    kind = kind.lower()
    if kind in ("subscriptions", "rules") and not topic:
        raise click.UsageError(f"--topic is required to list {kind}")
    if kind == "rules" and not subscription:
        raise click.UsageError("--subscription is required to list rules")

    try:
        settings = _load(config)
        client = _build_client(settings, connection_string)
        names = asyncio.run(_list_names(client, kind, topic, subscription, page_size))
    except (ServiceBusError, ValueError) as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)

    for name in names:
        click.echo(name)


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default from config: 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind to (default from config: 8000)")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
def emulator(host: Optional[str], port: Optional[int], config: Optional[Path], log_level: Optional[str]):
    """
    Serve the in-memory emulator's management endpoints.

    Examples:
        sbclient emulator
        sbclient emulator --port 8080 --config emulator.yaml --log-level DEBUG
    """
    from .emulator import InMemoryBroker, create_app

    overrides: dict = {}
    if host:
        overrides.setdefault("emulator", {})["host"] = host
    if port:
        overrides.setdefault("emulator", {})["port"] = port
    if log_level:
        overrides["logging"] = {"level": log_level.upper()}

    try:
        settings = _load(config, overrides)
    except ValueError as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(1)

    emulator_config = settings.emulator
    broker = asyncio.run(InMemoryBroker.from_config(emulator_config))
    app = create_app(broker)

    click.echo(f"Starting sbclient emulator v{__version__}")
    click.echo(f"Namespace: {emulator_config.namespace}")
    click.echo(f"Host: {emulator_config.host}:{emulator_config.port}")

    try:
        uvicorn.run(
            app,
            host=emulator_config.host,
            port=emulator_config.port,
            log_level=settings.logging.level.lower(),
            access_log=True,
        )
    except KeyboardInterrupt:
        click.echo("\nShutting down emulator...")


def main():
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
