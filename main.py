#!/usr/bin/env python3
"""
Ledger Reports - Main Entry Point

Runs the reporting core against a generated demo ledger.

Usage:
    python main.py report dashboard_metrics             # Print a report as JSON
    python main.py report staff_detail --staff-id staff-1
    python main.py export cash_flow_series out.xlsx --start 2025-03-01 --end 2025-03-31
    python main.py setup                                # Show effective configuration
"""
import os
import sys
import json
import asyncio
import argparse
import logging
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

logger = logging.getLogger(__name__)

REPORT_KINDS = [
    "dashboard_metrics",
    "collection_trend",
    "payment_method_distribution",
    "staff_roster",
    "staff_detail",
    "scheme_roster",
    "market_rates",
    "withdrawals_roster",
    "inflow_series",
    "outflow_series",
    "cash_flow_series",
    "daily_report",
    "staff_performance_report",
    "customer_payment_report",
    "scheme_performance_report",
    "access_control_roster",
]


def setup_environment():
    """Load environment variables from .env file if present."""
    env_file = PROJECT_ROOT / '.env'
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())


def setup_logging():
    from config.settings import get_config

    logging.basicConfig(
        level=getattr(logging, get_config().log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


async def run_report(kind: str, args):
    """Build a service over a demo ledger and compute one report."""
    from src.agents.report_service import ReportService
    from src.data.gateway import InMemoryGateway
    from src.tools.mock_data_generator import generate_mock_ledger

    as_of = args.as_of or date.today()
    start = args.start or as_of - timedelta(days=29)
    end = args.end or as_of

    gateway = InMemoryGateway(generate_mock_ledger(as_of=as_of, seed=args.seed))
    async with ReportService(gateway, today=lambda: as_of) as service:
        calls = {
            "dashboard_metrics": lambda: service.dashboard_metrics(as_of),
            "collection_trend": lambda: service.collection_trend(as_of),
            "payment_method_distribution": service.payment_method_distribution,
            "staff_roster": lambda: service.staff_roster(as_of),
            "staff_detail": lambda: service.staff_detail(args.staff_id or "", as_of),
            "scheme_roster": service.scheme_roster,
            "market_rates": lambda: service.market_rates(as_of),
            "withdrawals_roster": service.withdrawals_roster,
            "inflow_series": lambda: service.inflow_series(start, end),
            "outflow_series": lambda: service.outflow_series(start, end),
            "cash_flow_series": lambda: service.cash_flow_series(start, end),
            "daily_report": lambda: service.daily_report(as_of),
            "staff_performance_report": lambda: service.staff_performance_report(start, end),
            "customer_payment_report": lambda: service.customer_payment_report(start, end, args.search),
            "scheme_performance_report": service.scheme_performance_report,
            "access_control_roster": service.access_control_roster,
        }
        report = await calls[kind]()
        for (failed_kind, _), error in service.last_errors.items():
            logger.warning(f"{failed_kind}: {error.category.name} - {error.message}")
        return report


def cmd_report(args):
    """Print one report as JSON."""
    from src.data.report_models import to_plain

    report = asyncio.run(run_report(args.kind, args))
    print(json.dumps(to_plain(report), indent=2, ensure_ascii=False))


def cmd_export(args):
    """Write one report to an Excel workbook."""
    from src.tools.excel_output import ReportWorkbookExporter

    report = asyncio.run(run_report(args.kind, args))
    title = args.kind.replace("_", " ").title()
    result = ReportWorkbookExporter().export(report, title, file_path=args.path)
    print(f"Wrote {result.row_count} rows x {result.column_count} columns to {result.file_path}")


def cmd_setup(args):
    """Show the effective configuration."""
    from config.settings import get_config

    config = get_config()
    print("\n" + "="*60)
    print("CONFIGURATION")
    print("="*60)
    print(f"\nCache refresh intervals (seconds):")
    for kind, interval in config.cache.refresh_intervals().items():
        print(f"   {kind}: {interval if interval else 'invalidation only'}")
    print(f"   sweeper: every {config.cache.sweep_interval_seconds}s")
    print(f"\nReports:")
    print(f"   trend window: {config.reports.trend_days} days")
    print(f"   recent payments: {config.reports.recent_payments_limit}")
    print(f"   max parallel fetches: {config.reports.max_parallel_fetches}")
    print(f"   timezone: {config.reports.timezone}")
    print(f"\nLog level: {config.log_level}")


def main():
    setup_environment()
    setup_logging()

    parser = argparse.ArgumentParser(
        description="Savings-scheme ledger reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py report dashboard_metrics --as-of 2025-03-31
  python main.py export staff_performance_report perf.xlsx --start 2025-03-01 --end 2025-03-31

Environment Variables:
  DASHBOARD_REFRESH_SECONDS     Dashboard refresh interval (default: 30)
  MARKET_RATES_REFRESH_SECONDS  Market rates refresh interval (default: 60)
  REPORT_TREND_DAYS             Collection trend window (default: 30)
  LOG_LEVEL                     Logging level (default: INFO)
        """
    )

    def add_report_args(p):
        p.add_argument('kind', choices=REPORT_KINDS, help='Report kind')
        p.add_argument('--as-of', type=date.fromisoformat, help='Reference date (YYYY-MM-DD)')
        p.add_argument('--start', type=date.fromisoformat, help='Range start (YYYY-MM-DD)')
        p.add_argument('--end', type=date.fromisoformat, help='Range end (YYYY-MM-DD)')
        p.add_argument('--staff-id', help='Staff id for staff_detail')
        p.add_argument('--search', help='Name/phone filter for customer_payment_report')
        p.add_argument('--seed', type=int, default=42, help='Demo ledger seed')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    report_parser = subparsers.add_parser('report', help='Print a report as JSON')
    add_report_args(report_parser)
    report_parser.set_defaults(func=cmd_report)

    export_parser = subparsers.add_parser('export', help='Export a report to Excel')
    add_report_args(export_parser)
    export_parser.add_argument('path', help='Output .xlsx path')
    export_parser.set_defaults(func=cmd_export)

    setup_parser = subparsers.add_parser('setup', help='Show configuration')
    setup_parser.set_defaults(func=cmd_setup)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
