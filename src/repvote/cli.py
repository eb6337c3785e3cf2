"""
repvote/cli.py

Command line entry point.

    repvote preview --credits 16 --multiplier 2.0
    repvote serve --port 8080 --demo
"""

import json
import logging
import sys

import click
import trio

from .config import DEFAULT_MAX_CREDITS_PER_VOTE, DEFAULT_WEIGHT_CAP, MAX_WEIGHT_CAP, MIN_WEIGHT_CAP, VotingConfig
from .errors import ValidationError
from .protocol.weights import (
    apply_weight_cap,
    format_weight,
    quadratic_weight,
    to_wad,
    validate_credits,
    weight_cap,
)

logger = logging.getLogger("repvote.cli")

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'


@click.group()
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='WARNING',
    show_default=True,
    help='Logging verbosity',
)
def main(log_level):
    """Reputation-weighted quadratic voting."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@main.command()
@click.option('--credits', type=int, required=True, help='Credits to stake')
@click.option('--multiplier', type=click.FloatRange(0.3, 3.0), default=1.0, show_default=True,
              help='Reputation multiplier')
@click.option('--cap', type=click.IntRange(MIN_WEIGHT_CAP, MAX_WEIGHT_CAP), default=DEFAULT_WEIGHT_CAP,
              show_default=True, help='Poll weight cap factor')
@click.option('--total-weight', type=click.FloatRange(min=0), default=0.0, show_default=True,
              help='Weighted votes already recorded on the poll')
@click.option('--total-voters', type=click.IntRange(min=0), default=0, show_default=True,
              help='Votes already recorded on the poll')
@click.option('--max-credits', type=click.IntRange(min=1), default=DEFAULT_MAX_CREDITS_PER_VOTE,
              show_default=True, help='Per-vote credit limit')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON')
def preview(credits, multiplier, cap, total_weight, total_voters, max_credits, as_json):
    """Print the weight the ledger would record for a vote."""
    try:
        validate_credits(credits, max_credits)
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint='--credits')

    multiplier_wad = to_wad(multiplier)
    total_weighted = to_wad(total_weight)
    raw = quadratic_weight(credits, multiplier_wad)
    weight = apply_weight_cap(raw, cap, total_weighted, total_voters)
    limit = weight_cap(cap, total_weighted, total_voters)

    if as_json:
        click.echo(json.dumps({
            "credits": credits,
            "multiplier": multiplier_wad,
            "raw_weight": raw,
            "weight": weight,
            "cap": limit,
            "capped": weight != raw,
        }, indent=2))
        return

    click.echo(f"Weight: {format_weight(weight)}")
    click.echo(f"Raw weight: {format_weight(raw)}")
    if limit < 0:
        click.echo("Cap: none (first vote)")
    else:
        click.echo(f"Cap: {format_weight(limit)}{' (applied)' if weight != raw else ''}")


@main.command()
@click.option('--host', default=None, help='Host to bind (default: REPVOTE_API_HOST or 127.0.0.1)')
@click.option('--port', type=int, default=None, help='Port (default: REPVOTE_API_PORT or 8080)')
@click.option('--demo', is_flag=True, help='Seed a sample poll')
def serve(host, port, demo):
    """Run the REST API over an in-memory ledger."""
    from .api import VotingAPI
    from .service import VotingService

    config = VotingConfig.from_env()
    if host is not None:
        config.api_host = host
    if port is not None:
        config.api_port = port

    async def run():
        service = VotingService.in_memory(config=config)
        if demo:
            poll_id = service.create_poll(
                "What should we prioritize next?",
                ["Security audit", "Mobile app", "Governance tooling"],
                creator="demo",
            )
            logger.info(f"Demo poll {poll_id} created")

        api = VotingAPI(service, host=config.api_host, port=config.api_port)
        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            await nursery.start(api.start)
            click.echo(f"repvote API listening on http://{config.api_host}:{config.api_port}")

    try:
        trio.run(run)
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except OSError as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


@main.command('config')
def show_config():
    """Print the effective configuration."""
    click.echo(json.dumps(VotingConfig.from_env().to_dict(), indent=2))


if __name__ == "__main__":
    main()
