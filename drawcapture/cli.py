"""
Command line surface.

    python main.py run [--lottery PT_RIO] [--date YYYY-MM-DD] [--fail-on-critical]
    python main.py import 2025-12-29 [--hour 11:00]
    python main.py import-range 2025-12-01 2025-12-29
    python main.py build-calendar
    python main.py audit [--date YYYY-MM-DD]
    python main.py show --date 2025-12-29 [--positions 1-5]
    python main.py watch --every 5
"""

import argparse
import json
import sys
from typing import List, Optional

from loguru import logger

from drawcapture import database
from drawcapture.audit import AuditReporter, MissingSlotLedger
from drawcapture.calendar_classifier import (
    CalendarBook,
    ClassifierThresholds,
    classify_history,
    format_rules_table,
    rules_path,
    save_rules,
)
from drawcapture.client import DayStatusProvider, IngestionClient
from drawcapture.config import Settings, get_lottery, load_lotteries, load_settings
from drawcapture.date_utils import Clock, clock_at_hhmm
from drawcapture.errors import CaptureError, FutureDateError
from drawcapture.importer import DrawImporter
from drawcapture.log_config import configure_logging
from drawcapture.schedule_state import DayState
from drawcapture.scheduler import CaptureScheduler, resolve_run_date, tiers_from_rule
from drawcapture.state_store import create_state_store

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FATAL = 2


def build_scheduler(settings: Settings, lottery_key: str, clock: Optional[Clock] = None) -> CaptureScheduler:
    """Wires a CaptureScheduler from settings (store, client, importer, calendar, audit)."""
    clock = clock or Clock(settings.timezone)
    lotteries = load_lotteries(settings=settings)
    lottery = get_lottery(lotteries, lottery_key)
    store = create_state_store(settings)
    importer = DrawImporter(IngestionClient(settings), lotteries, clock)
    day_status = None
    if settings.day_status_url:
        day_status = DayStatusProvider(settings.day_status_url, store, clock, settings.day_status_ttl_seconds)
    return CaptureScheduler(
        lottery=lottery,
        settings=settings,
        store=store,
        importer=importer,
        calendar=CalendarBook.load(settings, lottery),
        clock=clock,
        reporter=AuditReporter(settings.warn_after_minutes, settings.crit_after_minutes,
                               settings.resolve(settings.report_dir)),
        day_status=day_status,
        ledger=MissingSlotLedger(settings.resolve(settings.report_dir)),
    )


def _clock(settings: Settings) -> Clock:
    if settings.now_hm:
        return clock_at_hhmm(settings.now_hm, settings.timezone)
    return Clock(settings.timezone)


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def cmd_run(args, settings: Settings) -> int:
    clock = _clock(settings)
    # before wiring: stores and the importer create files on construction
    date = resolve_run_date(args.date, clock)
    scheduler = build_scheduler(settings, args.lottery, clock)
    outcome = scheduler.run(date)
    _print(outcome.to_dict())
    return outcome.exit_code


def cmd_import(args, settings: Settings) -> int:
    clock = _clock(settings)
    lotteries = load_lotteries(settings=settings)
    importer = DrawImporter(IngestionClient(settings), lotteries, clock)
    verdict = importer.run_import(args.date, args.lottery, args.hour, skip_if_already_complete=args.skip_complete)
    _print(verdict.to_dict())
    return EXIT_OK


def cmd_import_range(args, settings: Settings) -> int:
    clock = _clock(settings)
    lotteries = load_lotteries(settings=settings)
    importer = DrawImporter(IngestionClient(settings), lotteries, clock)
    summary = importer.import_range(args.start, args.end, args.lottery)
    _print({k: v for k, v in summary.items() if k != 'days'} if not args.verbose else summary)
    return EXIT_OK if summary['fail'] == 0 else EXIT_ERROR


def cmd_build_calendar(args, settings: Settings) -> int:
    clock = _clock(settings)
    lottery = get_lottery(load_lotteries(settings=settings), args.lottery)
    database.initialize_database()
    thresholds = ClassifierThresholds.from_settings(settings)
    history = database.get_lottery_draws_df(lottery.key)
    rules = classify_history(history, lottery.key, lottery.hours, clock.now().year, thresholds,
                             lottery.conditional_core)
    path = args.output or rules_path(settings, lottery.key)
    save_rules(path, lottery.key, rules, thresholds)
    print(format_rules_table(rules))
    return EXIT_OK


def cmd_audit(args, settings: Settings) -> int:
    clock = _clock(settings)
    lottery = get_lottery(load_lotteries(settings=settings), args.lottery)
    date = args.date or clock.today()
    store = create_state_store(settings)
    state = DayState.load(store, lottery.key, date, lottery.hours)
    rule = CalendarBook.load(settings, lottery).lookup(date)
    reporter = AuditReporter(settings.warn_after_minutes, settings.crit_after_minutes,
                             settings.resolve(settings.report_dir))
    report = reporter.build(lottery, state, tiers_from_rule(rule, lottery.hours), clock.now(),
                            tz=clock.timezone, clock_override=clock.is_override)
    reporter.log(report)
    reporter.write(report)
    _print(report.to_dict())
    return reporter.exit_code(report, settings.fail_on_critical)


def _parse_positions(text: Optional[str]) -> Optional[List[int]]:
    if not text:
        return None
    if '-' in text:
        first, last = text.split('-', 1)
        return list(range(int(first), int(last) + 1))
    return [int(p) for p in text.split(',') if p.strip()]


def cmd_show(args, settings: Settings) -> int:
    lottery = get_lottery(load_lotteries(settings=settings), args.lottery)
    date = args.date or _clock(settings).today()
    database.initialize_database()
    draws = database.get_draws_for_date(lottery.key, date)
    prizes = database.load_prizes_for_draws([d['id'] for d in draws], _parse_positions(args.positions))
    for draw in draws:
        draw['prizes'] = prizes.get(draw['id'], [])
    _print({'lottery': lottery.key, 'date': date, 'draws': draws})
    return EXIT_OK


def cmd_watch(args, settings: Settings) -> int:
    from apscheduler.schedulers.blocking import BlockingScheduler

    def tick():
        try:
            build_scheduler(settings, args.lottery).run()
        except CaptureError as e:
            logger.error(f"Scheduled run failed: {e}")

    scheduler = BlockingScheduler(timezone=settings.timezone)
    scheduler.add_job(
        func=tick,
        trigger='interval',
        minutes=args.every,
        id=f'capture_{args.lottery}',
        name=f'Capture run {args.lottery}',
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"⏱️ Watching {args.lottery} every {args.every} minute(s); Ctrl+C to stop")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Watch stopped")
    return EXIT_OK


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='drawcapture', description='Scheduled draw capture pipeline')
    parser.add_argument('--log-level', default=None, help='Override log level (DEBUG, INFO, ...)')
    sub = parser.add_subparsers(dest='command', required=True)

    def with_lottery(p):
        p.add_argument('--lottery', default=settings.default_lottery, help='Lottery key (default: %(default)s)')
        return p

    run = with_lottery(sub.add_parser('run', help='Run one capture pass'))
    run.add_argument('--date', help='Target date YYYY-MM-DD (default: today)')
    run.add_argument('--warn-min', type=int, help='Audit warning threshold in minutes')
    run.add_argument('--crit-min', type=int, help='Audit critical threshold in minutes')
    run.add_argument('--lock-ttl', type=int, help='Lock time-to-live in seconds')
    run.add_argument('--fail-on-critical', action='store_true', default=None,
                     help='Exit with code 2 when the audit is critical')
    run.add_argument('--now-hm', help='Pretend the current local time is HH:MM')
    run.set_defaults(func=cmd_run)

    imp = with_lottery(sub.add_parser('import', help='Import one date (optionally one hour)'))
    imp.add_argument('date')
    imp.add_argument('--hour', help='Close hour, e.g. 11:00')
    imp.add_argument('--skip-complete', action='store_true', help='Do not rewrite complete draws')
    imp.set_defaults(func=cmd_import)

    rng = with_lottery(sub.add_parser('import-range', help='Backfill a date range day by day'))
    rng.add_argument('start')
    rng.add_argument('end')
    rng.add_argument('--verbose', action='store_true', help='Print per-day results')
    rng.set_defaults(func=cmd_import_range)

    cal = with_lottery(sub.add_parser('build-calendar', help='Classify hours from history'))
    cal.add_argument('--output', help='Rules file path')
    cal.set_defaults(func=cmd_build_calendar)

    aud = with_lottery(sub.add_parser('audit', help='Recompute the audit report'))
    aud.add_argument('--date')
    aud.set_defaults(func=cmd_audit)

    show = with_lottery(sub.add_parser('show', help='Print draws and prizes of a date'))
    show.add_argument('--date')
    show.add_argument('--positions', help='e.g. 1-5 or 1,2,3')
    show.set_defaults(func=cmd_show)

    watch = with_lottery(sub.add_parser('watch', help='Trigger run on a fixed interval'))
    watch.add_argument('--every', type=int, default=5, help='Minutes between runs')
    watch.set_defaults(func=cmd_watch)

    return parser


def _apply_overrides(args, settings: Settings) -> None:
    if getattr(args, 'warn_min', None) is not None:
        settings.warn_after_minutes = args.warn_min
    if getattr(args, 'crit_min', None) is not None:
        settings.crit_after_minutes = args.crit_min
    if getattr(args, 'lock_ttl', None) is not None:
        settings.lock_ttl_seconds = args.lock_ttl
    if getattr(args, 'fail_on_critical', None):
        settings.fail_on_critical = True
    if getattr(args, 'now_hm', None):
        settings.now_hm = args.now_hm
    if args.log_level:
        settings.log_level = args.log_level.upper()


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    settings = settings or load_settings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)
    _apply_overrides(args, settings)
    configure_logging(settings.log_level, settings.resolve(settings.log_dir), settings.timezone)

    try:
        return args.func(args, settings)
    except FutureDateError as e:
        logger.error(f"⛔ {e}")
        _print(e.to_dict())
        return EXIT_FATAL
    except CaptureError as e:
        logger.error(f"❌ {e}")
        _print(e.to_dict())
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
