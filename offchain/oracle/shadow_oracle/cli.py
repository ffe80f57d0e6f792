"""
CLI entry point for the Shadow Oracle.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer

from .config import OracleConfig

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="shadow-oracle",
    help="ShadowCard settlement oracle: attests swipes and pays them out of the BCH covenant",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def _load_config(config_path: Optional[Path], broadcast: bool) -> OracleConfig:
    config = OracleConfig.from_env(config_path)
    missing = config.missing_keys(broadcast=broadcast)
    if missing:
        typer.echo(f"Error: missing required settings: {', '.join(missing)}", err=True)
        raise typer.Exit(1)
    return config


@app.command()
def run(
    config_path: Optional[Path] = CONFIG_OPTION,
    once: bool = typer.Option(
        False,
        "--once",
        help="Process current PENDING and ATTESTED intents once and exit",
    ),
) -> None:
    """
    Start the oracle: watch for new swipes, attest them and broadcast payouts.
    """
    from .orchestrator import OracleOrchestrator

    config = _load_config(config_path, broadcast=False)
    for key in config.missing_keys(broadcast=True):
        typer.echo(f"Warning: {key} not set - payouts will not be broadcast (dry run)")

    orchestrator = OracleOrchestrator(config)

    try:
        if once:
            typer.echo("Running in single-shot mode...")
            outcomes = asyncio.run(orchestrator.run_once())
            for status, count in sorted(outcomes.items()):
                typer.echo(f"  {status}: {count}")
            typer.echo(f"Processed {sum(outcomes.values())} intents")
        else:
            typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
            try:
                asyncio.run(orchestrator.run())
            except KeyboardInterrupt:
                typer.echo("\nStopping oracle...")
                orchestrator.stop()
    finally:
        orchestrator.store.close()


@app.command()
def retry(
    intent_id: Optional[str] = typer.Argument(None, help="Retry only this intent"),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Re-broadcast ATTESTED intents from their stored attestations.
    """
    from .orchestrator import OracleOrchestrator

    config = _load_config(config_path, broadcast=True)
    orchestrator = OracleOrchestrator(config)

    try:
        confirmed = asyncio.run(orchestrator.retry_attested(intent_id))
        typer.echo(f"Confirmed {confirmed} intents")
    finally:
        orchestrator.store.close()


@app.command()
def sweep(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """
    Mark PENDING intents past their expiry as EXPIRED.
    """
    from .db import IntentStore

    config = OracleConfig.from_env(config_path)
    store = IntentStore(config.settings.database_url)
    try:
        expired = store.expire_stale()
        typer.echo(f"Expired {expired} intents")
    finally:
        store.close()


@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of intents to show"),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Show the most recent intents.
    """
    from .db import IntentStore

    config = OracleConfig.from_env(config_path)
    store = IntentStore(config.settings.database_url)
    try:
        intents = store.list_recent(limit)
    finally:
        store.close()

    if not intents:
        typer.echo("No intents found.")
        return

    for intent in intents:
        typer.echo(f"  ID: {intent.id}")
        typer.echo(f"  Status: {intent.status.value}")
        typer.echo(f"  Recipient: {intent.bch_recipient}")
        typer.echo(f"  Amount: ${intent.amount_usd} ({intent.amount_sats or '-'} sats)")
        typer.echo(f"  Nonce: {intent.nonce}")
        if intent.bch_tx_hash:
            typer.echo(f"  BCH TX: {intent.bch_tx_hash}")
        if intent.last_error:
            typer.echo(f"  Last error: {intent.last_error} (attempts: {intent.broadcast_attempts})")
        typer.echo("")


@app.command()
def balance(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """
    Show the covenant's unspent balance.
    """
    import httpx

    from .broadcaster import CovenantBroadcaster
    from .errors import SettlementRPCError
    from .rpc import SettlementRPC

    config = _load_config(config_path, broadcast=True)
    settings = config.settings
    broadcaster = CovenantBroadcaster(
        rpc=SettlementRPC(config.rpc_config),
        redeem_script=config.redeem_script,
        counterparty_private_key=settings.counterparty_private_key,
        function_index=settings.covenant_function_index,
    )

    async def _balance() -> None:
        try:
            utxos = await broadcaster.get_utxos()
        except (SettlementRPCError, httpx.HTTPError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

        total = sum(u.value_sats for u in utxos)
        typer.echo(f"Covenant script: {broadcaster.locking_script.hex()}")
        typer.echo(f"UTXOs: {len(utxos)}")
        for utxo in utxos:
            typer.echo(f"  {utxo.txid}:{utxo.vout}  {utxo.value_sats} sats")
        typer.echo(f"Balance: {total} sats ({total / 1e8:.8f} BCH)")

    asyncio.run(_balance())


@app.command()
def resolve(
    destination: str = typer.Argument(..., help="CashAddr address or 40-char hex HASH160"),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Resolve a payout destination to the 20-byte hash the covenant pays.
    """
    from .cashaddr import P2PKH, encode_cashaddr, resolve_recipient_hash
    from .errors import InvalidAddress, UnsupportedAddressType

    config = OracleConfig.from_env(config_path)
    try:
        recipient_hash = resolve_recipient_hash(
            destination, default_prefix=config.settings.address_prefix
        )
    except (InvalidAddress, UnsupportedAddressType) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Hash160: {recipient_hash.hex()}")
    typer.echo(f"Address: {encode_cashaddr(config.settings.address_prefix, P2PKH, recipient_hash)}")


@app.command()
def version() -> None:
    """Show the oracle version."""
    from shadow_oracle import __version__
    typer.echo(f"shadow-oracle v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
