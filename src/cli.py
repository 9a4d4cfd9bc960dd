"""
Command-line interface for the delivery operations alert engine.

Commands:
    serve       Start the dashboard API (runs the monitors in its lifespan)
    run-once    Run every (or the named) monitor once and exit
    init-db     Create the unified_alerts table and indexes
    stats       Print dashboard alert counters
    health      Check Postgres and Redis connectivity
"""

import asyncio
import sys

import click

from src.config.settings import get_settings
from src.observability.logging import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Delivery operations alert engine."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the dashboard API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    if settings.metrics_enabled:
        click.echo(f"Metrics available on http://localhost:{settings.metrics_port}/metrics")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "src.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command("run-once")
@click.option("--job", "jobs", multiple=True, help="Monitor to run (can repeat; default all)")
def run_once(jobs: tuple[str, ...]) -> None:
    """Run monitors once against the configured database and exit."""
    from src.alerts.engine import build_engine

    async def run() -> int:
        settings = get_settings().model_copy(update={"alerts_scheduler_enabled": False})
        engine = build_engine(settings=settings)
        await engine.start()
        failed = 0
        try:
            names = list(jobs) or list(engine.monitors)
            for name in names:
                if name not in engine.monitors:
                    click.echo(click.style(f"  ✗ {name}: unknown job", fg="red"))
                    failed += 1
                    continue
                try:
                    result = await engine.run_job(name)
                except Exception as e:
                    click.echo(click.style(f"  ✗ {name}: {e}", fg="red"))
                    failed += 1
                    continue
                color = "yellow" if result.errors else "green"
                click.echo(click.style(
                    f"  {name}: {result.detections} detections, "
                    f"{result.created} created, {result.escalated} escalated, "
                    f"{result.resolved} resolved, {result.dispatched} dispatched, "
                    f"{result.errors} errors",
                    fg=color,
                ))
        finally:
            await engine.stop()
        return failed

    sys.exit(1 if asyncio.run(run()) else 0)


@main.command("init-db")
def init_db() -> None:
    """Initialize the unified alert schema."""
    from src.alerts.repository import AlertRepository
    from src.storage.database import Database

    async def run():
        async with Database() as db:
            await AlertRepository(db).ensure_schema()
        click.echo("Database initialized successfully")

    asyncio.run(run())


@main.command()
def stats() -> None:
    """Print alert counters as shown on the dashboard."""
    from src.alerts.repository import AlertRepository
    from src.alerts.stats import AlertStatsAggregator
    from src.storage.database import Database

    async def run():
        async with Database() as db:
            result = await AlertStatsAggregator(AlertRepository(db)).compute()
        for name, value in result.to_dict().items():
            click.echo(f"  {name:<14}{value:>8}")

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}
        settings = get_settings()

        try:
            from src.storage.database import Database
            async with Database() as db:
                results["postgres"] = await db.health_check()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        if settings.redis_configured:
            try:
                import redis.asyncio as redis
                client = redis.from_url(str(settings.redis_url))
                results["redis"] = bool(await client.ping())
                await client.aclose()
            except Exception as e:
                results["redis"] = False
                logger.error("Redis health check failed", error=str(e))

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)
        for name, ok in results.items():
            icon = "✓" if ok else "✗"
            click.echo(click.style(f"  {icon} {name}: {ok}", fg="green" if ok else "red"))
        click.echo("-" * 40)

        if all(results.values()):
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        click.echo(click.style("Some services unhealthy!", fg="red"))
        sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
