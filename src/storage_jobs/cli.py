"""
CLI commands for the job worker.

`worker` runs the dispatcher with the built-in tasks until interrupted;
`enqueue` and `sign-url` are operator helpers.
"""
import asyncio
import json
import logging
import os
import signal as signals

import click

from storage_jobs.adapters.queue import QueueFactory, QueueOptions, SendOptions
from storage_jobs.adapters.queue.local import LocalJobQueue
from storage_jobs.adapters.storage import create_storage_disk
from storage_jobs.cancellation import CancellationToken
from storage_jobs.jobs.dispatcher import Dispatcher, resolve_connection_target
from storage_jobs.settings import get_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@click.group()
@click.option("--mode",
              type=click.Choice(["local-dev", "aws-mock", "aws-prod"]),
              default=None,
              help="Deployment mode (defaults to DEPLOYMENT_MODE)")
def cli(mode):
    """CLI commands for storage job management"""
    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()

    configure_logging(get_settings().log_level)


@cli.command()
def worker():
    """Start the dispatcher with the built-in tasks"""
    settings = get_settings()
    click.echo(f"Starting worker in {settings.deployment_mode} mode...")
    click.echo(f"  Storage backend: {settings.resolved_storage_backend}")
    click.echo(f"  Queue backend: {settings.resolved_queue_backend}")

    asyncio.run(run_worker())
    click.echo("Worker shutdown complete")


async def run_worker() -> None:
    # registers the built-in tasks
    from storage_jobs.jobs import handlers  # noqa: F401

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    for sig in (signals.SIGINT, signals.SIGTERM):
        loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")

    dispatcher = Dispatcher()
    await dispatcher.start(signal=token)
    click.echo("Worker ready to process tasks")

    await token.wait()
    click.echo("Received shutdown signal...")
    await dispatcher.stop()


@cli.command()
@click.argument("queue_name")
@click.argument("payload_json")
@click.option("--priority", type=int, default=0, help="Job priority (higher runs first)")
@click.option("--start-after", type=float, default=0, help="Seconds to wait before the job is eligible")
def enqueue(queue_name, payload_json, priority, start_after):
    """Submit PAYLOAD_JSON to QUEUE_NAME"""
    try:
        payload = json.loads(payload_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="PAYLOAD_JSON")
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="PAYLOAD_JSON")

    job_id = asyncio.run(send_job(queue_name, payload, SendOptions(priority=priority, start_after_seconds=start_after)))
    if job_id is None:
        click.echo(f"Job not queued on {queue_name} (singleton already pending)")
    else:
        click.echo(f"Queued job {job_id} on {queue_name}")


async def send_job(queue_name: str, payload: dict, options: SendOptions):
    settings = get_settings()
    queue = QueueFactory.create(QueueOptions.from_settings(settings, resolve_connection_target(settings)), settings)
    if isinstance(queue, LocalJobQueue) and queue.queue_dir is None:
        click.echo("Warning: the local queue is in-memory, the job is dropped when this command exits")
    await queue.start()
    try:
        return await queue.send(queue_name, payload, options)
    finally:
        await queue.stop(graceful=False)
        await queue.stopped.wait()


@cli.command("sign-url")
@click.argument("bucket")
@click.argument("key")
@click.option("--version", default=None, help="Object version")
def sign_url(bucket, key, version):
    """Print a signed download URL for BUCKET/KEY"""
    disk = create_storage_disk()
    click.echo(asyncio.run(disk.sign_url(bucket, key, version)))


if __name__ == "__main__":
    cli()
