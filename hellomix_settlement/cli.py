"""
CLI entry point for the HelloMix settlement core.
"""

import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

import structlog
import typer

from .config import Settings
from .errors import ExchangeError
from .models import CreateExchangeInput, OutputAddressInput

app = typer.Typer(
    name="hellomix-settlement",
    help="HelloMix BTC exchange settlement core",
    add_completion=False,
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to .env configuration file")


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog. Logs go to stderr so command output stays clean."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _load_settings(config_path: Optional[Path]) -> Settings:
    settings = Settings.from_env(config_path)
    configure_logging(settings.log_level, settings.log_json)
    return settings


def _build_service(settings: Settings):
    from .service import ExchangeService

    try:
        return ExchangeService(settings)
    except ExchangeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _parse_output(value: str) -> OutputAddressInput:
    """Parse ADDRESS:PERCENT."""
    address, sep, percentage = value.rpartition(":")
    if not sep:
        raise typer.BadParameter(f"expected ADDRESS:PERCENT, got {value!r}")
    try:
        return OutputAddressInput(address=address, percentage=Decimal(percentage))
    except InvalidOperation:
        raise typer.BadParameter(f"invalid percentage in {value!r}")


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    once: bool = typer.Option(
        False,
        "--once",
        help="Poll every due request once and exit",
    ),
) -> None:
    """
    Start the settlement scheduler. Requests left in flight by a previous
    run are resumed.
    """
    settings = _load_settings(config_path)
    service = _build_service(settings)

    async def _run() -> None:
        try:
            if once:
                typer.echo("Running in single-shot mode...")
                results = await service.orchestrator.run_once()
                for request_id, status in results.items():
                    typer.echo(f"  {request_id}: {status}")
                typer.echo(f"Polled {len(results)} requests")
            else:
                typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
                await service.orchestrator.run()
        finally:
            await service.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("\nStopping settlement scheduler...")


@app.command()
def create(
    btc_amount: str = typer.Argument(..., help="BTC amount to deposit (8 decimals max)"),
    currency: str = typer.Argument(..., help="Output currency symbol"),
    outputs: List[str] = typer.Option(
        ...,
        "--to",
        "-t",
        help="Destination as ADDRESS:PERCENT (repeat for a split)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Create an exchange request and print its deposit address.
    """
    settings = _load_settings(config_path)
    try:
        amount = Decimal(btc_amount)
    except InvalidOperation:
        raise typer.BadParameter(f"invalid BTC amount: {btc_amount}")

    data = CreateExchangeInput(
        btc_amount=amount,
        output_currency=currency.upper(),
        output_addresses=[_parse_output(o) for o in outputs],
    )
    service = _build_service(settings)

    async def _create() -> None:
        try:
            request = await service.ledger.create_request(data)
        except ExchangeError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await service.aclose()

        typer.echo(f"Request:          {request.id}")
        typer.echo(f"Deposit address:  {request.payment_address}")
        typer.echo(f"Send exactly:     {request.btc_amount} BTC")
        typer.echo(f"Fee:              {request.fee} BTC")
        typer.echo(f"Estimated output: {request.estimated_output} {request.output_currency}")

    asyncio.run(_create())


@app.command()
def status(
    request_id: str = typer.Argument(..., help="Exchange request id"),
    live: bool = typer.Option(False, "--live", help="Also query the explorer for the deposit"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show an exchange request.
    """
    settings = _load_settings(config_path)
    service = _build_service(settings)

    async def _status() -> None:
        try:
            request = service.ledger.get_request(request_id)
            typer.echo(request.to_view().model_dump_json(indent=2))
            if live:
                payment = await service.orchestrator.payment_status(request_id)
                typer.echo(payment.model_dump_json(indent=2))
        except ExchangeError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await service.aclose()

    asyncio.run(_status())


@app.command()
def prices(
    symbols: Optional[List[str]] = typer.Argument(None, help="Symbols (default: all supported)"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show current USD prices.
    """
    from .db import ExchangeDatabase
    from .prices import CoinGeckoClient, MemoryPriceCache, PriceOracle

    settings = _load_settings(config_path)
    db = ExchangeDatabase(settings.database_url)
    oracle = PriceOracle(
        client=CoinGeckoClient(
            settings.coingecko_api_url,
            api_key=settings.coingecko_api_key,
            timeout=settings.http_timeout_seconds,
        ),
        cache=MemoryPriceCache(settings.price_cache_ttl_seconds),
        snapshots=db,
    )

    async def _prices() -> dict[str, Decimal]:
        try:
            return await oracle.get_prices([s.upper() for s in symbols] if symbols else None)
        finally:
            await oracle.close()
            db.close()

    try:
        result = asyncio.run(_prices())
    except ExchangeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    for symbol, price in sorted(result.items()):
        typer.echo(f"  {symbol:<6} ${price}")


@app.command()
def check(
    address: str = typer.Argument(..., help="Bitcoin deposit address to check"),
    btc_amount: str = typer.Argument(..., help="Expected BTC amount"),
    api_url: Optional[str] = typer.Option(
        None,
        "--api",
        help="Esplora API URL (default: blockstream.info for the configured network)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Classify a deposit address against an expected amount (read-only).
    """
    from .amounts import btc_to_sats
    from .explorer import ChainObserver

    settings = _load_settings(config_path)
    try:
        expected_sats = btc_to_sats(btc_amount)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    observer = ChainObserver(api_url or settings.resolved_explorer_url, settings.http_timeout_seconds)

    async def _check():
        try:
            return await observer.classify_payment(address, expected_sats)
        finally:
            await observer.close()

    typer.echo(f"Checking deposits to: {address}")
    typer.echo(f"Expected: {expected_sats} sats")
    typer.echo("")

    try:
        result = asyncio.run(_check())
    except ExchangeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(result.to_status().model_dump_json(indent=2))


@app.command()
def currencies() -> None:
    """List supported output currencies."""
    from .ledger import ExchangeLedger

    for c in ExchangeLedger.list_currencies():
        typer.echo(
            f"  {c.symbol:<6} {c.name:<10} {c.min_amount} - {c.max_amount}  "
            f"fee {c.fee_rate * 100}%"
        )


@app.command("release-key")
def release_key(
    address: str = typer.Argument(..., help="Deposit address"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Decrypt a deposit key and print it in wallet import format.
    """
    if not yes:
        typer.confirm("This prints a private key to the terminal. Continue?", abort=True)

    settings = _load_settings(config_path)
    service = _build_service(settings)
    try:
        key = service.vault.release_private_key(address)
    except ExchangeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        asyncio.run(service.aclose())

    typer.echo(json.dumps({"address": key.address, "network": key.network, "wif": key.to_wif()}, indent=2))


@app.command("deactivate-key")
def deactivate_key(
    address: str = typer.Argument(..., help="Deposit address"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Soft-revoke a deposit key. The encrypted key is kept for audit.
    """
    settings = _load_settings(config_path)
    service = _build_service(settings)
    try:
        service.vault.deactivate(address)
    except ExchangeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        asyncio.run(service.aclose())

    typer.echo(f"Deactivated: {address}")


@app.command()
def version() -> None:
    """Show the version."""
    from hellomix_settlement import __version__

    typer.echo(f"hellomix-settlement v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
