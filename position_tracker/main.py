"""
Position Tracker command line entry point
Aggregates a wallet's positions once (or continuously with --watch) and
prints the portfolio summary.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Dict, Any, List, Optional

from position_tracker.core.config_manager import ConfigManager
from position_tracker.core.state_manager import StateManager
from position_tracker.core.storage import PersistenceError
from position_tracker.utils.log_manager import LogManager
from position_tracker.portfolio_manager import PortfolioManager
from position_tracker.accounting.performance_tracker import format_pnl, format_pnl_percent

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='DeFi position tracker')
    parser.add_argument('wallet', type=str, help='Wallet address to track')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--offline', action='store_true', help='Use fallback prices only')
    parser.add_argument('--json', action='store_true', help='Print the full summary as JSON')
    parser.add_argument('--log-level', type=str, help='Override the configured log level')
    parser.add_argument('--watch', action='store_true', help='Keep refreshing until interrupted')
    return parser.parse_args(argv)


def format_summary(summary: Dict[str, Any]) -> str:
    """Render a portfolio summary as plain text"""
    performance = summary['performance']
    analytics = summary['analytics']

    lines = [
        f"Wallet: {summary['wallet_address']}",
        f"Total value: ${summary['total_value']:.2f}",
        f"Unrealized P&L: {format_pnl(performance['unrealized_pnl'])} "
        f"({format_pnl_percent(performance['unrealized_pnl_percent'])})",
        f"24h: {format_pnl(performance['daily_change'])} ({format_pnl_percent(performance['daily_change_percent'])})",
        f"Risk score: {analytics['risk_score']:.0f}/100, "
        f"diversification: {analytics['diversification_score']:.0f}/100",
        "",
        "Positions:"
    ]

    for position in summary['positions']:
        lines.append(f"  {position['id']:<40} {position['protocol']:<16} {position['kind']:<14} "
                     f"${position['value']:>12.2f}  APY {position['apy']:.2f}%")

    degraded = [s for s in summary['sources'] if s['status'] != 'ok']
    if degraded:
        lines.append("")
        lines.append("Degraded sources:")
        for source in degraded:
            lines.append(f"  {source['source_name']}: {source['status']} ({source['error']})")

    for risk in analytics['risk_factors']:
        lines.append(f"[{risk['severity'].upper()}] {risk['title']}: {risk['description']}")
    for opportunity in analytics['opportunities']:
        lines.append(f"[OPPORTUNITY] {opportunity['title']}: {opportunity['description']}")

    optimizer = summary.get('optimizer')
    if optimizer:
        picks = optimizer['high_impact_opportunities'] + optimizer['quick_wins']
        seen = set()
        for pick in picks:
            if pick['id'] in seen:
                continue
            seen.add(pick['id'])
            gain = pick['potential_gain']
            lines.append(f"[YIELD] {pick['title']}: {format_pnl(gain['amount'])} per {gain['timeframe']}, "
                         f"gas ~${pick['gas_estimate']:.0f}")

    return "\n".join(lines)


async def run(args: argparse.Namespace) -> int:
    config_manager = ConfigManager(args.config)
    if args.log_level:
        config_manager.set('log_level', args.log_level)

    log_manager = LogManager.from_config(config_manager)
    log_manager.setup()

    state_manager = StateManager()

    try:
        return await run_manager(args, config_manager, state_manager)
    finally:
        log_manager.close()


async def run_manager(args: argparse.Namespace, config_manager: ConfigManager, state_manager: StateManager) -> int:
    try:
        manager = PortfolioManager.from_config(config_manager, state_manager=state_manager, offline=args.offline)
    except PersistenceError as e:
        logger.critical(f"Cannot load stored state: {e}")
        return 1

    try:
        summary = await manager.get_portfolio_summary(args.wallet, refresh=True)
        print(json.dumps(summary, indent=2, default=str) if args.json else format_summary(summary))

        if args.watch:
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop_event.set)
                except NotImplementedError:
                    logger.warning(f"Cannot install handler for {sig.name}")

            await manager.start(args.wallet)
            await stop_event.wait()
    except PersistenceError as e:
        logger.critical(f"Failed to persist accounting state: {e}")
        return 1
    finally:
        await manager.stop()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application"""
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nPosition tracker terminated by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
