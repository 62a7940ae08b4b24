#!/usr/bin/env python3
"""
Trading Dashboard Main Entry Point

Runs the API optimization layer from the command line: fetches Trading212
account data through the cache, batcher and rate limiter, runs AI exit
strategy analysis, and warms the cache in the background.

Usage:
    # Account summaries for the configured user
    python main_dashboard.py configs/dashboard_config.json --user user-1

    # Aggregated totals across all accounts
    python main_dashboard.py --user user-1 --aggregate

    # AI recommendations for one account
    python main_dashboard.py --user user-1 --analyze acc-1

    # Keep the cache warm (runs until interrupted)
    python main_dashboard.py --scheduled

Prerequisites:
    Set the API keys referenced by the config in .env:
       TRADING212_API_KEY_ACC1=your_key
       OPENAI_API_KEY=your_key          (optional, rules-only without it)
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, List

from dotenv import load_dotenv

load_dotenv()

from broker_tools.trading212_client import Trading212Client, Trading212ClientError
from core.background_sync import BackgroundSyncService
from core.config import DashboardConfig, load_config
from core.data_structures import AccountCredentials, BatchAnalysisRequest, PositionData, RiskProfile
from core.services import OptimizationServices, build_services
from tools.sync_logger import SyncLogger

logger = logging.getLogger(__name__)


def setup_logging(config: DashboardConfig) -> None:
    """Log to a dated file under log_dir and to the console"""
    os.makedirs(config.log_dir, exist_ok=True)

    log_file = os.path.join(
        config.log_dir,
        f"dashboard_{datetime.now().strftime('%Y%m%d')}.log"
    )

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def print_json(data: Any) -> None:
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        data = dataclasses.asdict(data)
    elif isinstance(data, list):
        data = [dataclasses.asdict(d) if dataclasses.is_dataclass(d) else d for d in data]
    print(json.dumps(data, indent=2, default=str))


def find_account(accounts: List[AccountCredentials], account_id: str) -> AccountCredentials:
    account = next((a for a in accounts if a.id == account_id), None)
    if account is None:
        raise ValueError(
            f"Account '{account_id}' not configured. Available accounts: {[a.id for a in accounts]}"
        )
    return account


async def verify_connections(accounts: List[AccountCredentials]) -> bool:
    """Verify every configured account can reach Trading212"""
    all_ok = True

    print("=" * 50)
    print("  Trading212 Connection Check")
    print("=" * 50)

    for account in accounts:
        try:
            client = Trading212Client(account.api_key, account.is_practice)
            ok = await client.validate_connection()
        except Trading212ClientError as e:
            logger.error(f"Account {account.id}: {e}")
            ok = False

        mode = "practice" if account.is_practice else "live"
        print(f"  {account.id} ({mode}): {'OK' if ok else 'FAILED'}")
        all_ok = all_ok and ok

    print("=" * 50)
    return all_ok


async def run_analysis(
    services: OptimizationServices,
    user_id: str,
    account: AccountCredentials,
    risk_profile: RiskProfile,
    refresh: bool,
):
    """Fetch an account's positions and run the AI batch analysis on them"""
    if refresh:
        summary = await services.brokerage.force_refresh_account_data(
            user_id, account.id, account.api_key, account.is_practice
        )
    else:
        summary = await services.brokerage.get_account_data(
            user_id, account.id, account.api_key, account.is_practice
        )

    positions = [PositionData.from_trading212(p) for p in summary.positions]
    if not positions:
        print(f"No open positions in account {account.id}")
        return None

    return await services.ai.analyze_positions_batch(BatchAnalysisRequest(
        positions=positions,
        market_data=[],
        user_id=user_id,
        account_id=account.id,
        risk_profile=risk_profile,
    ))


async def run_sync(services: OptimizationServices, scheduled: bool) -> None:
    """Warm the cache for every configured user, once or on a schedule"""
    config = services.config

    async def configured_users():
        return [(user_id, config.get_accounts(user_id)) for user_id in config.users]

    sync = BackgroundSyncService(
        services.brokerage,
        configured_users,
        interval_seconds=config.sync.interval_seconds,
        max_users_per_sync=config.sync.max_users_per_sync,
        max_accounts_per_user=config.sync.max_accounts_per_user,
        user_delay_seconds=config.sync.user_delay_seconds,
        sync_logger=SyncLogger(config.log_dir),
    )

    if not scheduled:
        print_json(await sync.run_sync())
        return

    print(f"Running background sync every {config.sync.interval_seconds:.0f}s (Ctrl+C to stop)")
    await sync.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await sync.stop()


async def run(args, config: DashboardConfig) -> int:
    services = build_services(config)
    try:
        return await dispatch(args, config, services)
    finally:
        services.batcher.close()


async def dispatch(args, config: DashboardConfig, services: OptimizationServices) -> int:
    if args.sync or args.scheduled:
        await run_sync(services, scheduled=args.scheduled)
        return 0

    if args.health:
        report = services.monitor.get_health_report(
            services.cache.get_stats(),
            services.batcher.get_stats(),
            extra={"optimization": services.brokerage.health_check(), "ai": services.ai.get_stats()},
        )
        print_json(report)
        return 0

    user_id = args.user or next(iter(config.users), None)
    if user_id is None:
        print("No users configured")
        return 1

    accounts = config.get_accounts(user_id)
    if not accounts:
        print(f"No accounts configured for user {user_id}")
        return 1

    if args.verify_only:
        return 0 if await verify_connections(accounts) else 1

    if args.portfolio:
        account = find_account(accounts, args.portfolio)
        if args.refresh:
            services.brokerage.invalidate_cache(user_id, account.id)
        print_json(await services.brokerage.get_portfolio_data(
            user_id, account.id, account.api_key, account.is_practice
        ))
    elif args.analyze:
        account = find_account(accounts, args.analyze)
        result = await run_analysis(services, user_id, account, RiskProfile(args.risk_profile), args.refresh)
        if result is not None:
            print_json(result)
    elif args.aggregate:
        if args.refresh:
            services.brokerage.invalidate_cache(user_id)
        print_json(await services.brokerage.get_aggregated_account_data(user_id, accounts))
    else:
        print_json(await services.brokerage.get_multi_account_data(
            user_id, accounts, force_refresh=args.refresh, include_orders=True
        ))

    return 0


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Trading Dashboard API Optimization Layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main_dashboard.py                              # Account summaries, default config
  python main_dashboard.py --user user-1 --aggregate    # Totals across accounts
  python main_dashboard.py --portfolio acc-1            # Positions of one account
  python main_dashboard.py --analyze acc-1 --risk-profile CONSERVATIVE
  python main_dashboard.py --sync                       # One cache warming run
  python main_dashboard.py --scheduled                  # Periodic cache warming
  python main_dashboard.py --health                     # Cache/batcher health report
        """
    )

    parser.add_argument(
        "config",
        nargs="?",
        default="configs/dashboard_config.json",
        help="Path to configuration file (default: configs/dashboard_config.json)"
    )
    parser.add_argument(
        "--user", "-u",
        help="User whose accounts to use (default: first configured user)"
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--aggregate", "-a",
        action="store_true",
        help="Print totals aggregated across all accounts"
    )
    mode.add_argument(
        "--portfolio", "-p",
        metavar="ACCOUNT",
        help="Print the portfolio of one account"
    )
    mode.add_argument(
        "--analyze",
        metavar="ACCOUNT",
        help="Run AI exit strategy analysis on one account"
    )
    mode.add_argument(
        "--sync",
        action="store_true",
        help="Run one background sync over all configured users"
    )
    mode.add_argument(
        "--scheduled", "-s",
        action="store_true",
        help="Run background sync at regular intervals"
    )
    mode.add_argument(
        "--health",
        action="store_true",
        help="Print the optimization health report"
    )
    mode.add_argument(
        "--verify-only",
        action="store_true",
        help="Only verify Trading212 connections"
    )

    parser.add_argument(
        "--refresh", "-r",
        action="store_true",
        help="Bypass cached data"
    )
    parser.add_argument(
        "--risk-profile",
        default=RiskProfile.MODERATE.value,
        choices=[p.value for p in RiskProfile],
        help="Risk profile for --analyze (default: MODERATE)"
    )

    args = parser.parse_args()

    # Load config (defaults when the default path is absent)
    config_path = args.config
    if not os.path.exists(config_path):
        if config_path != parser.get_default("config"):
            print(f"❌ Config file not found: {config_path}")
            sys.exit(1)
        config_path = None

    try:
        config = load_config(config_path)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(config)

    try:
        sys.exit(asyncio.run(run(args, config)))

    except KeyboardInterrupt:
        print("\n\n🛑 Stopped by user")
    except (Trading212ClientError, ValueError) as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
