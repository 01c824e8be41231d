#!/usr/bin/env python3
"""
tickersync - CLI Entry Point

Incremental, watermark-driven sync of Polygon.io market data:
- Range planning from per-series watermarks
- Batched dispatch to Redis-backed workers (or in-process with --sync)
- Durable batch tracking and failed-unit requeue
- Queue supervision with graceful worker restarts
"""
import argparse
import logging
import sys
import time
from datetime import date
from typing import Any, Dict, List, Optional

from common.config.settings import (
    FUNDAMENTAL_TIMEFRAMES,
    RESOLUTION_CONFIGS,
    IngestConfig,
    SyncConfig,
)
from common.errors import IngestError
from common.models.data_models import Batch, BatchStatus, SeriesKind, WorkUnit
from core.orchestrator.refresh_all import select_steps
from core.orchestrator.sync_run import SyncRequest
from scraper.pipeline.dispatcher import DispatchMode
from scraper.worker import QueueWorker
from scraper.utils.structured_logging import get_logger
from cli.runtime import Runtime

SERIES_COMMANDS = {
    'prices': SeriesKind.PRICE_HISTORY,
    'fundamentals': SeriesKind.FUNDAMENTALS,
    'news': SeriesKind.NEWS,
    'overviews': SeriesKind.OVERVIEW,
}


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def _symbols(value: Optional[str]) -> Optional[List[str]]:
    """Comma-separated symbols; case is preserved (ABRpD != ABRPD)."""
    if not value:
        return None
    return [s.strip() for s in value.split(',') if s.strip()]


def _add_sync_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--tickers', type=str, help='Comma-separated symbols (default: all active tickers)')
    parser.add_argument('--limit', type=int, help='Process at most this many tickers')
    parser.add_argument('--batch-size', type=int, help='Work units per batch')
    parser.add_argument('--window-days', type=int, help='Days per fetch window')
    parser.add_argument('--redundancy-days', type=int, help='Days re-fetched behind the watermark')
    parser.add_argument('--sleep', type=float, help='Seconds to wait between batch submissions')
    parser.add_argument('--from', dest='date_from', type=_iso_date, help='Explicit start date (single window)')
    parser.add_argument('--to', dest='date_to', type=_iso_date, help='Explicit end date (single window)')
    parser.add_argument('--sync', action='store_true', help='Execute units in-process instead of queueing')
    parser.add_argument('--no-progress', action='store_true', help='Disable progress bars')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tickersync',
        description='Incremental Polygon.io sync engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Queue daily bars for two tickers
  %(prog)s prices --tickers AAPL,MSFT

  # Pull fundamentals for every timeframe in-process
  %(prog)s fundamentals --timeframe all --sync

  # Run a worker until 25 units or 240 seconds
  %(prog)s worker

  # Daily umbrella refresh, waiting for workers between steps
  %(prog)s refresh-all --daily --wait
        """
    )
    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARN', 'ERROR'],
        default='INFO',
        help='Set logging level (default: INFO)'
    )
    sub = parser.add_subparsers(dest='command', required=True)

    prices = sub.add_parser('prices', help='Sync price history bars')
    _add_sync_options(prices)
    prices.add_argument('--resolution', choices=sorted(RESOLUTION_CONFIGS), default='1d')
    prices.add_argument('--unadjusted', action='store_true', help='Request unadjusted bars')

    fundamentals = sub.add_parser('fundamentals', help='Sync financial filings')
    _add_sync_options(fundamentals)
    fundamentals.add_argument('--timeframe', choices=list(FUNDAMENTAL_TIMEFRAMES) + ['all'], default='quarterly')
    fundamentals.add_argument('--order', choices=['asc', 'desc'], default='asc')
    fundamentals.add_argument('--page-limit', type=int, default=100, help='Filings per page (max 100)')
    for key in ('gte', 'gt', 'lte', 'lt'):
        fundamentals.add_argument(f'--filing-date-{key}', type=_iso_date,
                                  help=f'filing_date.{key} filter (single window)')

    news = sub.add_parser('news', help='Sync news articles')
    _add_sync_options(news)
    news.add_argument('--page-limit', type=int, default=1000, help='Articles per page')

    overviews = sub.add_parser('overviews', help='Sync ticker overviews (once per day)')
    _add_sync_options(overviews)

    tickers = sub.add_parser('tickers', help='Refresh the ticker universe')
    tickers.add_argument('--market', default='stocks')
    tickers.add_argument('--include-inactive', action='store_true')
    tickers.add_argument('--max-pages', type=int)

    refresh = sub.add_parser('refresh-all', help='Run the standard refresh sequence')
    refresh.add_argument('--daily', action='store_true', help='Skip fundamentals')
    refresh.add_argument('--weekly', action='store_true', help='Fundamentals only')
    refresh.add_argument('--core', action='store_true', help='Tickers and overviews only')
    refresh.add_argument('--fast', action='store_true', help='Double batch sizes, no pacing')
    refresh.add_argument('--wait', action='store_true', help='Wait for the queue to drain between steps')
    refresh.add_argument('--wait-timeout', type=float, default=3600)
    refresh.add_argument('--sync', action='store_true', help='Execute units in-process')
    refresh.add_argument('--tickers', type=str)
    refresh.add_argument('--limit', type=int)
    refresh.add_argument('--no-progress', action='store_true')

    worker = sub.add_parser('worker', help='Process queued work units')
    worker.add_argument('--sleep', type=int, help='Seconds to sleep when the queue is empty')
    worker.add_argument('--backoff', type=int, help='Base seconds between unit retries')
    worker.add_argument('--max-jobs', type=int, help='Exit after this many units (0 = no limit)')
    worker.add_argument('--max-time', type=int, help='Exit after this many seconds (0 = no limit)')
    worker.add_argument('--tries', type=int, help='Attempts per unit before it fails')
    worker.add_argument('--stop-when-empty', action='store_true')

    supervise = sub.add_parser('supervise', help='Monitor queue health and signal restarts')
    supervise.add_argument('--dry', action='store_true', help='Report only, never signal')
    supervise.add_argument('--force-restart', action='store_true')
    supervise.add_argument('--once', action='store_true', help='Single check instead of a loop')
    supervise.add_argument('--interval', type=int, help='Seconds between checks')

    status = sub.add_parser('batch-status', help='List recent batches')
    status.add_argument('--id', dest='batch_id', type=str)
    status.add_argument('--limit', type=int, default=5)
    status.add_argument('--failed', action='store_true', help='Only batches with failures')
    status.add_argument('--active', action='store_true', help='Only batches with pending units')
    status.add_argument('--watch', action='store_true', help='Poll active batches until done')
    status.add_argument('--interval', type=float, default=5.0)

    cancel = sub.add_parser('batch-cancel', help='Cancel a running batch')
    cancel.add_argument('batch_id')

    cleanup = sub.add_parser('batch-cleanup', help='Delete finished batches')
    cleanup.add_argument('--days', type=int, default=7)
    cleanup.add_argument('--all', dest='include_failed', action='store_true',
                         help='Also delete partial_failure and cancelled batches')

    retry = sub.add_parser('retry-failed', help='Re-dispatch failed work units')
    retry.add_argument('--series', choices=[k.value for k in SeriesKind])
    retry.add_argument('--limit', type=int, default=0)
    retry.add_argument('--batch-size', type=int)
    retry.add_argument('--sync', action='store_true')
    retry.add_argument('--list', dest='list_only', action='store_true', help='Only list failed units')

    sub.add_parser('init-db', help='Create missing tables')
    return parser


def _sync_config(runtime: Runtime, kind: SeriesKind, args: argparse.Namespace) -> SyncConfig:
    return runtime.config.sync_for(kind).with_overrides(
        batch_size=getattr(args, 'batch_size', None),
        window_days=getattr(args, 'window_days', None),
        redundancy_days=getattr(args, 'redundancy_days', None),
        sleep_seconds=getattr(args, 'sleep', None),
    )


def _series_request(kind: SeriesKind, args: argparse.Namespace) -> SyncRequest:
    params: Dict[str, Any] = {}
    resolution = None
    if kind == SeriesKind.PRICE_HISTORY:
        resolution = args.resolution
        if args.unadjusted:
            params['adjusted'] = False
    elif kind == SeriesKind.FUNDAMENTALS:
        resolution = args.timeframe
        params['order'] = args.order
        params['limit'] = args.page_limit
        filters = {
            f'filing_date.{key}': getattr(args, f'filing_date_{key}').isoformat()
            for key in ('gte', 'gt', 'lte', 'lt')
            if getattr(args, f'filing_date_{key}')
        }
        if filters:
            params['filters'] = filters
    elif kind == SeriesKind.NEWS:
        params['limit'] = args.page_limit

    return SyncRequest(
        series_kind=kind,
        symbols=_symbols(args.tickers),
        limit=args.limit,
        resolution=resolution,
        params=params,
        explicit_from=args.date_from,
        explicit_to=args.date_to,
        mode=DispatchMode.SYNC if args.sync else DispatchMode.QUEUED,
    )


def cmd_series(runtime: Runtime, args: argparse.Namespace) -> int:
    kind = SERIES_COMMANDS[args.command]
    config = _sync_config(runtime, kind, args)
    request = _series_request(kind, args)
    summary = runtime.orchestrator(sync=args.sync).run(request, config)
    for line in summary.lines():
        print(line)
    return 1 if summary.has_failures else 0


def cmd_tickers(runtime: Runtime, args: argparse.Namespace) -> int:
    summary = runtime.orchestrator().sync_universe(
        market=args.market,
        active=None if args.include_inactive else True,
        max_pages=args.max_pages,
    )
    print(f"Tickers fetched: {summary.fetched}, stored: {summary.stored}")
    if summary.error:
        print(f"Error: {summary.error}")
    return 1 if summary.has_failures else 0


def cmd_refresh_all(runtime: Runtime, args: argparse.Namespace) -> int:
    steps = select_steps(daily=args.daily, weekly=args.weekly, core=args.core)
    mode = DispatchMode.SYNC if args.sync else DispatchMode.QUEUED
    report = runtime.refresh_runner(sync=args.sync).run(
        steps, mode=mode, fast=args.fast, wait=args.wait,
        wait_timeout=args.wait_timeout, symbols=_symbols(args.tickers), limit=args.limit,
    )
    for line in report.lines():
        print(line)
    return 0 if report.ok else 1


def cmd_worker(runtime: Runtime, args: argparse.Namespace) -> int:
    config = runtime.config.worker
    for name in ('sleep', 'backoff', 'max_jobs', 'max_time', 'tries'):
        value = getattr(args, name)
        if value is not None:
            setattr(config, name, value)
    worker = QueueWorker(
        runtime.queue,
        runtime.executor(tries=config.tries, backoff=config.backoff),
        config,
        obs=runtime.obs,
        sleep=runtime.sleep,
    )
    stats = worker.run(stop_when_empty=args.stop_when_empty)
    print(f"Worker stopped ({stats.stop_reason}): {stats.succeeded} succeeded, "
          f"{stats.failed} failed, {stats.retried} retried, {stats.skipped} skipped")
    return 0


def cmd_supervise(runtime: Runtime, args: argparse.Namespace) -> int:
    supervisor = runtime.supervisor()
    if args.once or args.force_restart:
        report = supervisor.tick(dry_run=args.dry, force_restart=args.force_restart)
        sample = report.sample
        print(f"Backlog         : {sample.backlog}")
        print(f"Running batches : {sample.running_batches}")
        print(f"Failed units    : {sample.failed_units}")
        print(f"Since restart   : "
              f"{sample.minutes_since_restart if sample.minutes_since_restart is not None else '-'} min")
        print(f"State           : {report.state.value}" + (f" ({report.reason})" if report.reason else ''))
        return 0

    supervisor.start(dry_run=args.dry, interval_seconds=args.interval)
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        runtime.obs.info('supervisor_shutdown_requested')
    finally:
        supervisor.stop()
    return 0


def _print_batches(batches: List[Batch]) -> None:
    if not batches:
        print("No batches found.")
        return
    print(f"{'ID':<34} {'Name':<36} {'Status':<16} {'Total':>6} {'Pend':>6} {'Fail':>6} {'Done':>6} {'%':>7}")
    for b in batches:
        print(f"{b.id:<34} {b.name:<36} {b.status.value:<16} {b.total:>6} {b.pending:>6} "
              f"{b.failed:>6} {b.processed:>6} {b.progress:>6.2f}%")


def cmd_batch_status(runtime: Runtime, args: argparse.Namespace) -> int:
    monitor = runtime.monitor
    if args.batch_id:
        batch = monitor.status(args.batch_id)
        if batch is None:
            print(f"Batch not found: {args.batch_id}")
            return 1
        _print_batches([batch])
        return 0

    if args.watch:
        while True:
            active = monitor.list_batches(limit=args.limit, active_only=True)
            _print_batches(active)
            if not any(b.status == BatchStatus.RUNNING for b in active):
                return 0
            runtime.sleep(args.interval)

    _print_batches(monitor.list_batches(limit=args.limit, failed_only=args.failed,
                                        active_only=args.active))
    return 0


def cmd_batch_cancel(runtime: Runtime, args: argparse.Namespace) -> int:
    if runtime.monitor.cancel(args.batch_id):
        print(f"Cancelled batch {args.batch_id}")
        return 0
    print(f"Batch {args.batch_id} is not running (or does not exist)")
    return 1


def cmd_batch_cleanup(runtime: Runtime, args: argparse.Namespace) -> int:
    deleted = runtime.monitor.cleanup(days=args.days, include_failed=args.include_failed)
    print(f"Deleted {deleted} finished batch(es) older than {args.days} day(s)")
    return 0


def cmd_retry_failed(runtime: Runtime, args: argparse.Namespace) -> int:
    monitor = runtime.monitor
    kind = SeriesKind(args.series) if args.series else None
    failed = monitor.list_failed(series_kind=kind, limit=args.limit)
    if args.list_only or not failed:
        for item in failed:
            window = item.unit.window
            print(f"{item.unit_key:<40} {item.symbol or '-':<10} {window.from_date}..{window.to_date} "
                  f"attempts={item.attempts} {item.reason}")
        if not failed:
            print("No failed work units.")
        return 0

    # Fresh retry state; the failed record is cleared before dispatch and
    # written again if the unit fails again
    units = [WorkUnit(window=item.unit.window) for item in failed]
    monitor.forget_failed([item.unit_key for item in failed])

    config = SyncConfig().with_overrides(batch_size=args.batch_size, sleep_seconds=0)
    mode = DispatchMode.SYNC if args.sync else DispatchMode.QUEUED
    batches = runtime.dispatcher(sync=args.sync).dispatch(units, config, name='RetryFailed', mode=mode)
    _print_batches(batches)
    return 1 if any(b.failed for b in batches) else 0


def cmd_init_db(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.store.schema_manager.initialize_schema()
    print("Schema ready.")
    return 0


COMMANDS = {
    'prices': cmd_series,
    'fundamentals': cmd_series,
    'news': cmd_series,
    'overviews': cmd_series,
    'tickers': cmd_tickers,
    'refresh-all': cmd_refresh_all,
    'worker': cmd_worker,
    'supervise': cmd_supervise,
    'batch-status': cmd_batch_status,
    'batch-cancel': cmd_batch_cancel,
    'batch-cleanup': cmd_batch_cleanup,
    'retry-failed': cmd_retry_failed,
    'init-db': cmd_init_db,
}


def main(argv: Optional[List[str]] = None, runtime: Optional[Runtime] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Arguments (default: sys.argv[1:])
        runtime: Pre-built services; the caller keeps ownership

    Returns:
        0 on success, 1 when the command completed with failures
    """
    args = build_parser().parse_args(argv)
    log_level = getattr(logging, args.log_level)
    logger = get_logger('tickersync', level=log_level)

    owned = runtime is None
    if owned:
        runtime = Runtime(IngestConfig.default(), logger,
                          progress=not getattr(args, 'no_progress', False))

    runtime.obs.info('tickersync_command_started', command=args.command)
    try:
        return COMMANDS[args.command](runtime, args)
    except IngestError as e:
        runtime.obs.error('tickersync_command_failed', command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        runtime.obs.error('tickersync_invalid_arguments', command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if owned:
            runtime.close()


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    run()
