"""CLI entry point for the EMIS event choreography runtime."""

from __future__ import annotations

import click

from .core.enums import ServiceName

_SERVICES = click.Choice([s.value for s in ServiceName])


@click.group()
def main() -> None:
    """EMIS platform services."""


@main.command()
@click.option("--service", type=_SERVICES, required=True, help="Service to host")
@click.option("--config", default=None, help="Config file path")
def run(service: str, config: str | None) -> None:
    """Run a service: consumer, outbox relay and in-process handlers."""
    import asyncio

    from .main import run as run_service

    asyncio.run(run_service(config_path=config, service=service))


@main.command()
@click.option("--service", type=_SERVICES, required=True, help="Service whose outbox to relay")
@click.option("--config", default=None, help="Config file path")
def relay(service: str, config: str | None) -> None:
    """Run only the outbox relay (requires PostgreSQL)."""
    import asyncio

    from .core.errors import ConfigError
    from .main import run_relay

    try:
        asyncio.run(run_relay(config_path=config, service=service))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
def topics() -> None:
    """List topics and the integration events bound to them."""
    from .integration.schemas import TOPIC_SCHEMAS

    for topic, event_types in TOPIC_SCHEMAS.items():
        click.echo(topic)
        for event_type in event_types:
            click.echo(f"  {event_type.__name__}")


@main.command("dead-letters")
@click.option("--topic", required=True, help="Topic whose dead letters to show")
@click.option("--limit", default=20, type=int, help="Maximum records")
@click.option("--config", default=None, help="Config file path")
def dead_letters(topic: str, limit: int, config: str | None) -> None:
    """Show recent dead letters of a topic."""
    import asyncio

    from .core.config import load_settings
    from .core.enums import StoreBackend
    from .core.errors import ConfigError
    from .integration.dead_letter import dumps
    from .main import build_dead_letter_store, build_session_factory

    settings = load_settings(config_path=config)
    if settings.consumer.dead_letter_backend == StoreBackend.MEMORY:
        raise click.ClickException(
            "Dead letters are kept in process memory; configure the redis or postgres backend"
        )

    async def _show() -> None:
        engine, sessions = build_session_factory(settings)
        store = build_dead_letter_store(settings, sessions)
        connect = getattr(store, "connect", None)
        if connect is not None:
            await connect()
        try:
            letters = await store.recent(topic, limit)
        finally:
            close = getattr(store, "close", None)
            if close is not None:
                await close()
            if engine is not None:
                await engine.dispose()
        if not letters:
            click.echo(f"No dead letters for {topic}")
        for letter in letters:
            click.echo(dumps(letter))

    try:
        asyncio.run(_show())
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
