import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pytz
from loguru import logger

from drawcapture import database
from drawcapture.client import FetchResult, IngestionClient
from drawcapture.config import LotteryConfig, get_lottery
from drawcapture.date_utils import Clock, is_valid_date, iter_dates
from drawcapture.errors import CaptureError, FutureDateError, ValidationError
from drawcapture.normalize import (
    build_draw_id,
    canonical_bucket,
    extract_prizes,
    normalize_prize,
    pick_source_id,
)

SOURCE_TAG = "kingapostas"

BLOCKED_NO_DRAW_FOR_SLOT = "NO_DRAW_FOR_SLOT"
BLOCKED_API_MISSING_SLOT = "API_MISSING_SLOT"


@dataclass
class ImportVerdict:
    """Structured outcome of one import call."""
    lottery_key: str
    date: str
    close_hour: Optional[str] = None
    captured: bool = False
    api_has_prizes: bool = False
    already_complete: bool = False
    already_complete_all: bool = False
    saved_count: int = 0
    write_count: int = 0
    blocked_reason: Optional[str] = None
    target_draw_ids: List[str] = field(default_factory=list)
    expected_targets: int = 0
    available_hours: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    took_ms: int = 0

    @property
    def is_definitive(self) -> bool:
        """True when the slot needs no further attempts."""
        if self.blocked_reason == BLOCKED_NO_DRAW_FOR_SLOT:
            return True
        if self.already_complete_all:
            return True
        return self.captured and (self.saved_count > 0 or self.write_count > 0)

    def to_dict(self) -> Dict:
        return asdict(self)


class DrawImporter:
    """
    Normalizes provider records into Draw/Prize rows and upserts them.

    Writes are additive merges keyed by deterministic draw ids, so the same
    upstream data imported twice leaves one draw with the same prizes.
    """

    def __init__(self, client: IngestionClient, lotteries: Dict[str, LotteryConfig], clock: Optional[Clock] = None):
        self.client = client
        self.lotteries = lotteries
        self.clock = clock or Clock()
        database.initialize_database()

    def _validate(self, date: str, lottery_key: str) -> LotteryConfig:
        if not is_valid_date(date):
            raise ValidationError(f"Invalid date: {date!r} (expected YYYY-MM-DD)", code="INVALID_DATE", date=date)
        lottery = get_lottery(self.lotteries, lottery_key)
        today = self.clock.today()
        if date > today:
            raise FutureDateError(f"Refusing to import {date}: after today ({today})", date=date, today=today)
        return lottery

    def fetch(self, date: str, lottery_key: str) -> FetchResult:
        lottery = self._validate(date, lottery_key)
        return self.client.fetch(date, lottery)

    def run_import(self, date: str, lottery_key: str, close_hour: Optional[str] = None,
                   fetched: Optional[FetchResult] = None,
                   skip_if_already_complete: bool = False) -> ImportVerdict:
        """
        Imports one date (optionally one close-hour slot) for a lottery.

        Args:
            date: YYYY-MM-DD
            lottery_key: Lottery key, e.g. "PT_RIO"
            close_hour: Slot or close-hour variant to import; None imports all
            fetched: Already fetched records for this (date, lottery)
            skip_if_already_complete: Do not rewrite draws that already have prizes

        Returns:
            ImportVerdict

        Raises:
            ValidationError: Invalid date, hour or lottery
            FutureDateError: Date after today in the operating timezone
            UpstreamError: Fetch failed on every source
        """
        start = time.time()
        lottery = self._validate(date, lottery_key)

        bucket = None
        if close_hour is not None:
            bucket, _ = canonical_bucket(close_hour, lottery.hour_policy)
            if bucket is None:
                raise ValidationError(f"Invalid close hour: {close_hour!r}", code="INVALID_HOUR", close_hour=close_hour)

        result = fetched if fetched is not None else self.client.fetch(date, lottery)
        records = [r for r in result.records if str(r.get('date') or '').strip() == date]

        by_bucket: Dict[str, List[Dict]] = {}
        for record in records:
            rb, _ = canonical_bucket(record.get('close_hour'), lottery.hour_policy)
            if rb:
                by_bucket.setdefault(rb, []).append(record)
        available = sorted(by_bucket)

        verdict = ImportVerdict(lottery_key=lottery.key, date=date, close_hour=bucket, available_hours=available)

        if bucket is not None:
            selected = by_bucket.get(bucket, [])
            if not selected:
                verdict.blocked_reason = BLOCKED_API_MISSING_SLOT
                verdict.took_ms = int((time.time() - start) * 1000)
                logger.info(f"⏳ [IMPORT] {lottery.key} {date} {bucket}: not published (close_hours=[{', '.join(available)}])")
                return verdict
            if self._explicit_no_draw(selected, lottery):
                verdict.blocked_reason = BLOCKED_NO_DRAW_FOR_SLOT
                verdict.took_ms = int((time.time() - start) * 1000)
                logger.info(f"🚫 [IMPORT] {lottery.key} {date} {bucket}: provider reports no draw for this slot")
                return verdict
        else:
            selected = records

        self.import_records(selected, lottery, date, verdict, skip_if_already_complete)
        verdict.took_ms = int((time.time() - start) * 1000)

        logger.info(
            f"[IMPORT] {lottery.key} {date} {bucket or 'ALL'} captured={verdict.captured} "
            f"already_complete={verdict.already_complete_all} saved={verdict.saved_count} "
            f"writes={verdict.write_count} took={verdict.took_ms}ms"
        )
        return verdict

    @staticmethod
    def _explicit_no_draw(records: List[Dict], lottery: LotteryConfig) -> bool:
        if not lottery.no_draw_statuses:
            return False
        flagged = [r for r in records if str(r.get('status') or '').strip().lower() in lottery.no_draw_statuses]
        return bool(flagged) and not any(extract_prizes(r) for r in records)

    def import_records(self, records: List[Dict], lottery: LotteryConfig, date: str,
                       verdict: ImportVerdict, skip_if_already_complete: bool = False) -> ImportVerdict:
        """
        Validates and upserts records into the store, filling in verdict.

        Records with an invalid date/hour or no non-empty prizes are skipped.
        """
        counts = {'records': len(records), 'invalid': 0, 'empty': 0, 'already_complete': 0,
                  'draws_written': 0, 'prizes_written': 0}
        imported_at = datetime.now(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ')
        complete_targets = 0

        conn = database.get_db_connection()
        try:
            for record in records:
                record_date = str(record.get('date') or '').strip()
                bucket, raw_hour = canonical_bucket(record.get('close_hour'), lottery.hour_policy)
                if not is_valid_date(record_date) or bucket is None:
                    counts['invalid'] += 1
                    logger.warning(f"[IMPORT] Skipping record with invalid date/hour: "
                                   f"date={record.get('date')!r} close_hour={record.get('close_hour')!r}")
                    continue

                prizes = extract_prizes(record)
                if not prizes:
                    counts['empty'] += 1
                    continue

                verdict.api_has_prizes = True
                draw_id = build_draw_id(lottery.key, record_date, bucket, pick_source_id(record))
                verdict.target_draw_ids.append(draw_id)

                if database.draw_is_complete(draw_id, conn):
                    complete_targets += 1
                    if skip_if_already_complete:
                        counts['already_complete'] += 1
                        logger.debug(f"[IMPORT] {draw_id} already complete, skipping")
                        continue

                database.upsert_draw(conn, {
                    'id': draw_id,
                    'lottery_key': lottery.key,
                    'lottery_name': str(record.get('lottery_name') or lottery.display_name).strip(),
                    'uf': lottery.uf,
                    'date': record_date,
                    'hour_bucket': bucket,
                    'hour_bucket_raw': raw_hour,
                    'source_id': pick_source_id(record),
                    'prize_count': len(prizes),
                    'source': SOURCE_TAG,
                    'imported_at': imported_at,
                })
                counts['draws_written'] += 1
                for position, raw in sorted(prizes.items()):
                    prize = normalize_prize(raw)
                    prize['position'] = position
                    if database.upsert_prize(conn, draw_id, prize):
                        counts['prizes_written'] += 1
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        verdict.expected_targets = max(1, len(verdict.target_draw_ids))
        verdict.already_complete = complete_targets > 0
        verdict.already_complete_all = bool(verdict.target_draw_ids) and complete_targets >= len(verdict.target_draw_ids)
        verdict.saved_count = counts['draws_written']
        verdict.write_count = counts['draws_written'] + counts['prizes_written']
        verdict.captured = verdict.api_has_prizes or verdict.already_complete
        verdict.counts = counts
        return verdict

    def import_range(self, start: str, end: str, lottery_key: str) -> Dict:
        """
        Backfills every date from start to end (inclusive), one at a time.

        Returns:
            Summary dict with ok/fail counts and per-date results
        """
        if not is_valid_date(start) or not is_valid_date(end):
            raise ValidationError("Range dates must be YYYY-MM-DD", code="INVALID_DATE", start=start, end=end)
        if start > end:
            raise ValidationError(f"Range start {start} is after end {end}", code="INVALID_DATE", start=start, end=end)
        today = self.clock.today()
        if end > today:
            raise FutureDateError(f"Range end {end} is after today ({today})", end=end, today=today)

        logger.info("=" * 80)
        logger.info(f"📥 [RANGE] {lottery_key} {start} -> {end}")
        logger.info("=" * 80)

        summary = {'lottery': lottery_key, 'start': start, 'end': end, 'ok': 0, 'fail': 0, 'days': []}
        for date in iter_dates(start, end):
            try:
                verdict = self.run_import(date, lottery_key)
                summary['ok'] += 1
                summary['days'].append({
                    'date': date, 'ok': True, 'captured': verdict.captured,
                    'saved': verdict.saved_count, 'hours': verdict.available_hours,
                })
            except CaptureError as e:
                summary['fail'] += 1
                summary['days'].append({'date': date, 'ok': False, 'error': e.to_dict()})
                logger.error(f"❌ [RANGE] {lottery_key} {date}: {e}")

        logger.info(f"[RANGE] {lottery_key} done: ok={summary['ok']} fail={summary['fail']}")
        return summary
