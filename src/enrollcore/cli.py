"""CLI entry point for the enrollment engine."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import uvicorn

from enrollcore.config import ConfigError, Settings, load_settings
from enrollcore.coupons import CouponService
from enrollcore.exceptions import EnrollmentEngineError
from enrollcore.logging import setup_logging
from enrollcore.payments import PaymentLedger
from enrollcore.store import RecordStore

config_option = click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to enrollcore.yaml (auto-detected if not specified)",
)


def _load(config_path: Path | None, verbose: bool) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    setup_logging(settings.log_dir, level="DEBUG" if verbose else settings.log_level)
    return settings


@click.group()
@click.version_option(package_name="enrollcore")
def main() -> None:
    """enrollcore - course admission, coupon pricing and payment ledger."""


@main.command("init-db")
@config_option
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def init_db(config_path: Path | None, verbose: bool) -> None:
    """Create the database schema."""
    settings = _load(config_path, verbose)
    store = RecordStore.from_settings(settings)
    try:
        click.echo(f"Database ready at {settings.db_path}")
        if store.db.is_sqlite:
            click.echo(f"  WAL mode: {'on' if store.db.is_wal_mode() else 'off'}")
    finally:
        store.close()


@main.command()
@config_option
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def serve(config_path: Path | None, host: str, port: int, verbose: bool) -> None:
    """Run the REST API."""
    from enrollcore.api.app import create_app

    settings = _load(config_path, verbose)
    click.echo(f"Serving enrollcore API on http://{host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level="info")


@main.command("generate-code")
@config_option
@click.option("--prefix", default=None, help="Code prefix (joined with '_')")
@click.option("--length", type=int, default=None, help="Length of the random part")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def generate_code(
    config_path: Path | None, prefix: str | None, length: int | None, verbose: bool
) -> None:
    """Print a coupon code that is not yet in use."""
    settings = _load(config_path, verbose)
    store = RecordStore.from_settings(settings)
    try:
        service = CouponService(
            store,
            code_attempts=settings.coupon_code_attempts,
            code_length=settings.coupon_code_length,
        )
        click.echo(service.generate_unique_code(prefix, length))
    except EnrollmentEngineError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    finally:
        store.close()


@main.command("expire-subscriptions")
@config_option
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def expire_subscriptions(config_path: Path | None, verbose: bool) -> None:
    """Expire lapsed subscriptions that do not auto-renew."""
    settings = _load(config_path, verbose)
    store = RecordStore.from_settings(settings)
    try:
        ledger = PaymentLedger(store, default_currency=settings.default_currency)
        count = ledger.expire_subscriptions()
        click.echo(f"Expired {count} subscription(s)")
    finally:
        store.close()


if __name__ == "__main__":
    main()
