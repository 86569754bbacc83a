"""
Operator commands for the paygate indexer.
"""

import asyncio
import sys

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command

from paygate.core.config import settings, GatewayConfig
from paygate.core.database import init_database, close_database, DatabaseManager
from paygate.core.exceptions import ChainClientError, PaygateException
from paygate.core.logging import setup_logging, get_logger
from paygate.services.chain_client import EvmChainClient

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Paygate indexer management commands")


@app.command("init-db")
def init_db():
    """Create all tables directly from the models."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("Database initialized")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)

    console.print(f"Database downgraded to: {revision}")


@app.command("reset-db")
def reset_db():
    """Drop all tables."""
    if not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("Cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("All tables dropped")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("Database is healthy")
    else:
        console.print("[red]Database health check failed[/red]")
        sys.exit(1)


@app.command()
def chains():
    """List the chains that would be indexed with the current settings."""
    table = Table(title="Configured Chains")
    table.add_column("Chain ID", style="cyan", justify="right")
    table.add_column("Name", style="green")
    table.add_column("Contract")
    table.add_column("Subscription")

    for chain in GatewayConfig.get_chain_configs(settings):
        table.add_row(
            str(chain.chain_id),
            chain.name + (" (native)" if chain.is_native else ""),
            chain.contract_address or "[red]not configured[/red]",
            "websocket" if chain.websocket_url else "filter polling",
        )

    console.print(table)


@app.command()
def probe():
    """Check every configured RPC endpoint and print its head block."""
    async def _probe() -> bool:
        setup_logging()
        healthy = True
        for chain in GatewayConfig.get_chain_configs(settings):
            try:
                async with EvmChainClient(chain) as client:
                    if not await client.get_health():
                        raise ChainClientError("RPC endpoint did not answer")
                    height = await client.current_height()
            except PaygateException as e:
                healthy = False
                logger.warning("RPC probe failed", chain=chain.name, error=e.message)
                console.print(f"[red]{chain.name} ({chain.chain_id}): {e.message}[/red]")
                continue
            console.print(f"{chain.name} ({chain.chain_id}): head block {height}")
        return healthy

    if not asyncio.run(_probe()):
        sys.exit(1)


@app.command()
def run():
    """Run the indexer without the HTTP API."""
    from paygate.indexer.main import main

    asyncio.run(main())


if __name__ == "__main__":
    app()
