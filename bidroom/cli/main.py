"""
bidroom CLI - Command Line Interface for the auction engine

Main entry point for all CLI commands.
"""

import asyncio
from decimal import Decimal
from pathlib import Path

import click

from bidroom import __version__
from bidroom.core.config import load_config
from bidroom.core.errors import InvalidConfiguration
from bidroom.utils.logger import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--env-file", default=None, type=click.Path(dir_okay=False), help=".env file to load")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, env_file):
    """bidroom - live auction engine for deal rooms"""
    try:
        config = load_config(env_file)
    except InvalidConfiguration as e:
        raise click.ClickException(e.message)

    if debug:
        config.log_level = "DEBUG"
    setup_logging(level=config.log_level, log_dir=str(config.log_dir), log_to_file=config.log_to_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Server
# =============================================================================


@cli.command("serve")
@click.option("--host", default=None, help="Bind address (default: BIDROOM_HOST)")
@click.option("--port", default=None, type=int, help="Port (default: BIDROOM_PORT)")
@click.option("--db", default=None, type=click.Path(dir_okay=False), help="SQLite database path")
@click.option("--dev-auth", is_flag=True, help="Treat bearer tokens as user ids (development only)")
@click.pass_context
def serve(ctx, host, port, db, dev_auth):
    """Run the HTTP/WebSocket server"""
    import uvicorn
    from bidroom.api.app import create_app
    from bidroom.api.dependencies import token_as_user_id

    config = ctx.obj["config"]
    if host:
        config.host = host
    if port:
        config.port = port
    if db:
        config.db_path = Path(db)

    try:
        app = create_app(config, identity_resolver=token_as_user_id if dev_auth else None)
    except InvalidConfiguration as e:
        raise click.ClickException(f"{e.message} (set BIDROOM_JWT_SECRET or pass --dev-auth)")

    click.echo(f"bidroom {__version__} listening on {config.host}:{config.port}")
    click.echo(f"  Storage: {config.db_path or 'in-memory'}")
    click.echo(f"  Orders:  {config.order_service_url or 'in-memory'}")
    if dev_auth:
        click.echo("  ⚠️  Dev auth: bearer tokens are trusted as user ids")
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


# =============================================================================
# Token
# =============================================================================


@cli.command("token")
@click.argument("user_id")
@click.option("--hours", default=1.0, type=float, help="Token lifetime in hours")
@click.pass_context
def token(ctx, user_id, hours):
    """Sign a bearer token for USER_ID with BIDROOM_JWT_SECRET"""
    from datetime import timedelta
    from bidroom.api.dependencies import JWTIdentityResolver

    config = ctx.obj["config"]
    if not config.jwt_secret:
        raise click.ClickException("No secret: set BIDROOM_JWT_SECRET")
    resolver = JWTIdentityResolver(config.jwt_secret, config.jwt_algorithm)
    click.echo(resolver.issue(user_id, expires_in=timedelta(hours=hours)))


# =============================================================================
# Sweep
# =============================================================================


@cli.command("sweep")
@click.option("--db", default=None, type=click.Path(exists=True, dir_okay=False), help="SQLite database path")
@click.pass_context
def sweep(ctx, db):
    """End every active auction in the database whose deadline has passed"""
    from bidroom.core.engine import AuctionEngine

    config = ctx.obj["config"]
    if db:
        config.db_path = Path(db)
    if not config.db_path:
        raise click.ClickException("No database: pass --db or set BIDROOM_DB_PATH")

    async def run_sweep():
        engine = AuctionEngine.from_config(config)
        try:
            closed = await engine.machine.sweep()
            # Give failed settlement emissions their retries before exiting
            await engine.outbox.drain()
            return closed, dict(engine.outbox.dead_letters)
        finally:
            await engine.outbox.close()
            engine.store.adapter.close()

    closed, dead = asyncio.run(run_sweep())
    click.echo(f"Ended {len(closed)} auction(s)")
    for result in closed:
        auction_id = result.auction.auction_id
        if result.winner_id:
            click.echo(f"  {auction_id}: {result.winner_id} wins at {result.final_amount} "
                       f"(order: {result.auction.metadata.get('order_id') or 'pending'})")
        else:
            click.echo(f"  {auction_id}: no bids")
    if dead:
        click.echo(f"❌ {len(dead)} settlement(s) could not be delivered: {', '.join(dead)}")


# =============================================================================
# Demo
# =============================================================================


@cli.command("demo")
@click.pass_context
def demo(ctx):
    """Run a two-bidder auction in-process and print what everyone saw"""
    from bidroom.core.auction.models import AuctionConfig
    from bidroom.core.config import EngineConfig
    from bidroom.core.engine import AuctionEngine
    from bidroom.network.connection import QueueConnection

    click.echo("=" * 60)
    click.echo("  BIDROOM - LIVE AUCTION DEMO")
    click.echo("=" * 60)
    click.echo()

    async def run_demo():
        engine = AuctionEngine.from_config(EngineConfig(invite_only=True))
        machine, channel = engine.machine, engine.channel

        click.echo("📦 Creating auction (start 100, step 10, 30 minutes)...")
        auction = await machine.create(
            AuctionConfig(
                deal_room_id="room-demo",
                seller_id="seller",
                start_price=Decimal("100"),
                minimum_increment=Decimal("10"),
                duration_minutes=30,
                invitee_ids=["alice", "bob"],
            ),
            auto_start=True,
        )
        auction_id = auction.auction_id
        click.echo(f"  ✓ Auction {auction_id[:8]} is {auction.state.value}, ends {auction.end_at:%H:%M:%S} UTC")
        click.echo()

        conns = {user: QueueConnection(user) for user in ("seller", "alice", "bob")}
        for conn in conns.values():
            await channel.join(conn, auction_id)
        click.echo("👥 seller, alice and bob joined the room")
        click.echo()

        click.echo("💸 Bidding...")
        for user, amount in (("alice", "105"), ("alice", "110"), ("seller", "200"), ("bob", "130")):
            outcome = await channel.place_bid(conns[user], auction_id, amount)
            if outcome.accepted:
                click.echo(f"  ✓ {user} bids {amount}: accepted")
            else:
                click.echo(f"  ✗ {user} bids {amount}: {outcome.rejection.reason.value} "
                           f"({outcome.rejection.message})")
        click.echo()

        click.echo("⚖️  Seller ends the auction...")
        closed = await machine.end(auction_id, "seller")
        click.echo(f"  ✓ Winner: {closed.winner_id} at {closed.final_amount}")
        click.echo(f"  ✓ Order: {closed.order_id}")
        click.echo()

        click.echo("📨 Messages received:")
        for user, conn in conns.items():
            types = [m.msg_type.value for m in conn.drain()]
            click.echo(f"  {user:<7} {', '.join(types)}")
        click.echo()

        click.echo("💳 Winner pays...")
        click.echo(f"  Payment complete: {await engine.handoff.is_payment_complete(auction_id)}")
        engine.orders.mark_paid(closed.order_id)
        click.echo(f"  Payment complete: {await engine.handoff.is_payment_complete(auction_id)}")
        click.echo()

        events = engine.store.get(auction_id).events
        click.echo(f"📊 Deal events: {', '.join(e.event_type.value for e in events)}")

    asyncio.run(run_demo())
    click.echo()
    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()
