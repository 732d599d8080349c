"""Command line interface for the content engine."""

import asyncio
import json
import os
import time
from functools import wraps

import click
import structlog
from dotenv import load_dotenv

from content_engine.config import EngineConfig
from content_engine.engine import Engine
from content_engine.errors import ConfigurationError
from content_engine.log_config import configure_logging
from content_engine.metrics import start_metrics_server
from content_engine.models import ContentType, Priority
from content_engine.providers import default_fetchers

logger = structlog.get_logger(__name__)


def async_command(f):
    """Decorator to run async Click commands."""

    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def build_engine() -> Engine:
    """Engine configured from ``CONTENT_ENGINE_*`` variables with the default fetchers."""
    try:
        config = EngineConfig.from_env()
    except (ConfigurationError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    return Engine.build(config, fetchers=default_fetchers(os.environ))


@click.group()
@click.option(
    "--log-level",
    envvar="CONTENT_ENGINE_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Minimum log level",
)
@click.option("--json-logs/--console-logs", default=True, help="Log output format")
def cli(log_level, json_logs):
    """Quota-aware content caching engine"""
    configure_logging(log_level, json_output=json_logs)


@cli.command()
@click.argument("content_type", type=click.Choice([t.value for t in ContentType]))
@click.argument("keywords", nargs=-1, required=True)
@click.option("--provider", help="Provider to fetch from (defaults per content type)")
@click.option(
    "--priority",
    type=click.Choice([p.value for p in Priority]),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option("--count", type=click.IntRange(1, 100), default=None, help="Number of results")
@async_command
async def resolve(content_type, keywords, provider, priority, count):
    """Resolve one content bucket and print the result as JSON."""
    engine = build_engine()
    try:
        bucket = engine.bucket(content_type, keywords, provider=provider, priority=priority, count=count)
        result = await engine.resolve(bucket)
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    finally:
        await engine.stop()


@cli.command()
@async_command
async def quotas():
    """Print quota usage per provider."""
    engine = build_engine()
    try:
        click.echo(f"{'Provider':<12} {'Daily':>14} {'Hourly':>14} {'Active':>8}")
        click.echo("-" * 51)
        for quota in engine.monitor_quotas():
            daily = f"{quota['daily_used']}/{quota['daily_limit']}"
            hourly = f"{quota['hourly_used']}/{quota['hourly_limit']}"
            click.echo(f"{quota['api_type']:<12} {daily:>14} {hourly:>14} {str(quota['is_active']):>8}")
    finally:
        await engine.stop()


@cli.command()
@async_command
async def cleanup():
    """Sweep long-expired cache entries from both tiers."""
    engine = build_engine()
    try:
        outcome = await engine.cleanup(force=True)
        swept = outcome["swept"]
        click.echo(f"Removed {swept['local']} local and {swept['shared']} shared entries")
    finally:
        await engine.stop()


@cli.command()
@click.option("--host", envvar="CONTENT_ENGINE_HOST", default="localhost", show_default=True)
@click.option("--port", envvar="CONTENT_ENGINE_PORT", default=8080, type=int, show_default=True)
@click.option(
    "--metrics-port",
    envvar="CONTENT_ENGINE_METRICS_PORT",
    default=9090,
    type=int,
    show_default=True,
)
@click.option("--default-jobs/--no-default-jobs", default=True, help="Register the startup job table")
def serve(host, port, metrics_port, default_jobs):
    """Run the scheduler, the admin API and the metrics endpoint."""
    from content_engine.api import EngineLoopThread, start_api_server

    engine = build_engine()
    loop_thread = EngineLoopThread()
    loop_thread.start()

    async def start():
        if default_jobs:
            engine.register_default_jobs()
        engine.start()

    loop_thread.submit(start())
    start_metrics_server(engine.metrics, metrics_port)
    server = start_api_server(engine, loop_thread.loop, host=host, port=port)
    click.echo(f"Serving on http://{host}:{port} (metrics on :{metrics_port})")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
    finally:
        server.shutdown()
        loop_thread.submit(engine.stop())
        loop_thread.shutdown()


def main():
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
