"""Command-line entrypoint for market creation jobs."""

from __future__ import annotations

import argparse
import asyncio
import os

from jobs.config import load_settings
from jobs.create_market import main as run_create_market
from pipelines.economics import compute_bond_split
from pipelines.model import DeployedMarket
from pipelines.sources.deployment_gateway import HttpDeploymentGateway
from storage.db import connect, fetch_deployed_markets


def _format_market(market: DeployedMarket) -> str:
    return (
        f"{market.symbol}: address={market.market_address} chain={market.chain_id} "
        f"tx={market.transaction_hash} deployed={market.deployed_at:%Y-%m-%d %H:%M}"
    )


def _bond_quote(amount: int | None, bps: int | None) -> str:
    if amount is None or bps is None:
        terms = asyncio.run(HttpDeploymentGateway().fetch_bond_terms())
        amount = terms.default_bond_amount if amount is None else amount
        bps = terms.creation_penalty_bps if bps is None else bps
    split = compute_bond_split(amount, bps)
    return f"bond={split.bond_amount} fee={split.fee} refundable={split.refundable} (penalty {bps} bps)"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Market creation job runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser(
        "create-market", help="Discover, validate and deploy a market from a metric description"
    )
    create_parser.add_argument("description", help="Free-text description of the metric to track")
    create_parser.add_argument(
        "--clarify",
        action="append",
        default=[],
        help="Clarification sent if the metric is not yet measurable (repeatable)",
    )
    create_parser.add_argument("--name", help="Market name (defaults to the suggestion)")
    create_parser.add_argument("--market-description", help="Market description (defaults to the suggestion)")
    create_parser.add_argument("--source-url", help="Use this URL instead of discovered sources")
    create_parser.add_argument("--icon-url", help="Market icon URL (defaults to the source favicon)")
    create_parser.add_argument(
        "--direct",
        action="store_true",
        help="Deploy with the gateway wallet instead of the gasless relayer",
    )
    create_parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )

    list_parser = subparsers.add_parser("list-markets", help="Show deployed markets saved in DuckDB")
    list_parser.add_argument("--limit", type=int, default=50)

    quote_parser = subparsers.add_parser("bond-quote", help="Show the creation fee and refundable bond")
    quote_parser.add_argument("--amount", type=int, help="Bond amount in smallest units")
    quote_parser.add_argument("--bps", type=int, help="Creation penalty in basis points")

    args = parser.parse_args(argv)

    if args.command == "list-markets":
        conn = connect()
        try:
            for market in fetch_deployed_markets(conn, limit=args.limit):
                print(_format_market(market))
        finally:
            conn.close()
        return 0

    if args.command == "bond-quote":
        try:
            print(_bond_quote(args.amount, args.bps))
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc
        return 0

    if args.command == "create-market":
        if args.log_level:
            os.environ["LOG_LEVEL"] = args.log_level
        if args.direct:
            os.environ["GASLESS_CREATE_ENABLED"] = "false"
        return run_create_market(
            args.description,
            settings=load_settings(),
            clarifications=args.clarify,
            name=args.name,
            market_description=args.market_description,
            source_url=args.source_url,
            icon_url=args.icon_url,
        )

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
