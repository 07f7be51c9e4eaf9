"""CLI for envelope-store key management."""
import asyncio
import json
import signal

import click

from envelope_store import dependencies
from envelope_store.jobs.rotation_worker import rotation_worker
from envelope_store.logging_hardening import setup_logging
from envelope_store.settings import settings


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level):
    """envelope-store key management CLI."""
    setup_logging(log_level or settings.log_level)


@cli.command("migrate")
@click.option("--config", "config_path", default="alembic.ini", help="Path to alembic.ini")
def migrate(config_path: str):
    """Apply database migrations up to head."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(config_path)
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(alembic_cfg, "head")
    click.echo("Migrations complete.")


@cli.command("rotate")
def rotate():
    """Advance all secrets and re-encrypt stored documents."""
    result = asyncio.run(dependencies.get_rotation_service().rotate_keys())
    if result.is_err():
        click.echo(f"Error: {result.unwrap_err().message}", err=True)
        raise SystemExit(1)

    status = result.unwrap()
    click.echo(json.dumps(status.model_dump(mode="json"), indent=2))
    if any(not info.success for info in status.infos.values()):
        raise SystemExit(1)


@cli.command("rehash")
def rehash():
    """Recompute searchable hashes written under an old hash secret."""
    result = asyncio.run(dependencies.get_principal_service().rehash_searchable_fields())
    if result.is_err():
        click.echo(f"Error: {result.unwrap_err().message}", err=True)
        raise SystemExit(1)

    report = result.unwrap()
    click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    if not report.success:
        raise SystemExit(1)


@cli.command("generate-key")
@click.option("--bits", type=click.Choice(["128", "192", "256"]), default="256", help="AES key size")
def generate_key(bits: str):
    """Print fresh base64 key material, e.g. for seeding a fixed secret."""
    result = dependencies.get_encryption_secret_service().generate_key(int(bits))
    if result.is_err():
        click.echo(f"Error: {result.unwrap_err().message}", err=True)
        raise SystemExit(1)
    click.echo(result.unwrap())


@cli.command("worker")
@click.option("--interval", type=float, default=None, help="Seconds between rotations")
def worker(interval):
    """Run the periodic rotation worker until interrupted."""
    if not settings.rotation_enabled:
        click.echo("Rotation is disabled (set ROTATION_ENABLED=true)", err=True)
        raise SystemExit(1)

    async def main():
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)
        await rotation_worker(dependencies.get_rotation_service(), shutdown_event, interval)

    asyncio.run(main())


if __name__ == "__main__":
    cli()
