#!/usr/bin/env python3

import argparse
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .config import FX_SOURCES, Settings
from .core import OversellPolicy, PortfolioOrchestrator, handle_ingest_request
from .errors import PortfolioError, error_payload
from .fx import FxRateSource, NbpRateSource
from .market_data import FmpForexRateSource, FmpMarketDataClient
from .models import DividendRecord, PortfolioAggregate
from .storage import JsonFilePortfolioStore


class _OfflineMarketData:
    """Stand-in used by commands that never reach the market-data feed."""

    def quote(self, symbol: str) -> Decimal:
        raise PortfolioError("Market data is not configured; set FMP_API_KEY.")

    def dividend_history(self, symbol: str) -> List[DividendRecord]:
        raise PortfolioError("Market data is not configured; set FMP_API_KEY.")


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Track a stock portfolio and compute Polish dividend tax (19% less US withholding)'
    )
    parser.add_argument('--store', help='Path to the JSON portfolio store (default: $PORTFOLIO2PIT38_STORE or portfolio.json)')
    parser.add_argument('--fx-source', choices=FX_SOURCES,
                        help='Exchange-rate source: NBP table A archives or FMP forex (default: nbp)')
    fallback = parser.add_mutually_exclusive_group()
    fallback.add_argument('--fx-fallback-rate', type=_decimal_arg,
                          help='USD/PLN rate used when no quote is found (default: 4.00)')
    fallback.add_argument('--fx-fail-fast', action='store_true',
                          help='Abort instead of using a fallback USD/PLN rate')
    parser.add_argument('--oversell', choices=[p.value for p in OversellPolicy],
                        help='Sale larger than holding: reject (default), clamp or allow short')

    sub = parser.add_subparsers(dest='command', required=True)

    ingest = sub.add_parser('ingest', help='Record a buy/sell transaction and recompute the position')
    ingest.add_argument('--symbol', required=True)
    ingest.add_argument('--date', required=True, help='Transaction date, YYYY-MM-DD')
    ingest.add_argument('--kind', required=True, choices=['buy', 'sell'])
    ingest.add_argument('--quantity', required=True)
    ingest.add_argument('--price', required=True, help='Price per unit in USD')
    ingest.add_argument('--commission', default='0')
    ingest.add_argument('--json', action='store_true', help='Print the aggregate as JSON')

    recompute = sub.add_parser('recompute', help='Refresh price, dividends and taxes of a stored symbol')
    recompute.add_argument('symbol')
    recompute.add_argument('--json', action='store_true', help='Print the aggregate as JSON')

    show = sub.add_parser('show', help='Print a stored position')
    show.add_argument('symbol')
    show.add_argument('--json', action='store_true', help='Print the aggregate as JSON')

    sub.add_parser('list', help='List stored positions')

    delete = sub.add_parser('delete', help='Remove a stored position')
    delete.add_argument('symbol')
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    """Overlay CLI flags on environment-derived settings."""
    update = {}
    if args.store:
        update['store_path'] = args.store
    if args.fx_source:
        update['fx_source'] = args.fx_source
    if args.fx_fail_fast:
        update['fx_fallback_rate'] = None
    elif args.fx_fallback_rate is not None:
        update['fx_fallback_rate'] = args.fx_fallback_rate
    if args.oversell:
        update['oversell_policy'] = OversellPolicy(args.oversell)
    return base.model_copy(update=update)


def build_orchestrator(settings: Settings, needs_market_data: bool = True) -> PortfolioOrchestrator:
    """Wire store, market data and FX source from settings."""
    if settings.fmp_api_key:
        market_data = FmpMarketDataClient(settings.fmp_api_key, settings.fmp_base_url, settings.http_timeout)
    elif needs_market_data:
        raise PortfolioError("Market data is not configured; set FMP_API_KEY.")
    else:
        market_data = _OfflineMarketData()

    fx_source: FxRateSource
    if settings.fx_source == 'fmp':
        if not settings.fmp_api_key:
            raise PortfolioError("FMP forex rates need FMP_API_KEY.")
        fx_source = FmpForexRateSource(settings.fmp_api_key, settings.fmp_base_url, settings.http_timeout)
    else:
        fx_source = NbpRateSource(timeout=settings.http_timeout)

    return PortfolioOrchestrator(
        JsonFilePortfolioStore(settings.store_path),
        market_data,
        fx_source,
        oversell_policy=settings.oversell_policy,
        fx_policy=settings.fx_policy,
    )


def _print_list(orchestrator: PortfolioOrchestrator) -> None:
    table = Table(title="Stored positions", title_style="bold cyan")
    for column in ("Symbol", "Held", "Invested USD", "Dividends USD", "Tax due PLN"):
        table.add_column(column, justify="right")
    for aggregate in orchestrator.list_portfolios():
        table.add_row(
            aggregate.symbol,
            str(aggregate.quantity_held),
            f"{aggregate.money_invested:.2f}",
            f"{aggregate.total_dividend_value:.2f}",
            f"{aggregate.tax_due_in_poland:.2f}",
        )
    Console().print(table)


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: dispatch a portfolio command and print the result."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    try:
        settings = settings_from_args(args, Settings())
    except ValueError as exc:
        parser.error(str(exc))
    logging.debug("Settings: %s", settings.dict_for_logging())

    try:
        orchestrator = build_orchestrator(settings, needs_market_data=args.command in ('ingest', 'recompute'))
        if args.command == 'ingest':
            result = handle_ingest_request(orchestrator, {
                'symbol': args.symbol,
                'date': args.date,
                'kind': args.kind,
                'quantity': args.quantity,
                'price': args.price,
                'commission': args.commission,
            })
            if 'kind' in result and 'message' in result:
                print(json.dumps(result))
                sys.exit(1)
            aggregate = PortfolioAggregate.from_dict(result)
        elif args.command == 'recompute':
            aggregate = orchestrator.recompute(args.symbol)
        elif args.command == 'show':
            aggregate = orchestrator.get(args.symbol)
            if aggregate is None:
                parser.error(f"No portfolio stored for {args.symbol.upper()}")
        elif args.command == 'list':
            _print_list(orchestrator)
            return
        else:
            if not orchestrator.delete(args.symbol):
                sys.exit(1)
            return
    except PortfolioError as exc:
        print(json.dumps(error_payload(exc)))
        sys.exit(1)

    if args.json:
        print(json.dumps(aggregate.to_dict(), indent=2))
    else:
        aggregate.print()
