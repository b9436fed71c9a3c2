import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import requests
from loguru import logger

from drawcapture.config import LotteryConfig, Settings
from drawcapture.date_utils import Clock, is_valid_date
from drawcapture.errors import (
    MalformedPayloadError,
    TransientUpstreamError,
    UpstreamError,
    UpstreamHTTPError,
    ValidationError,
)
from drawcapture.normalize import canonical_bucket, count_prizes, pick_source_id
from drawcapture.retry import RetryPolicy
from drawcapture.state_store import StateStore

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class FetchStatus(str, Enum):
    """Diagnostic status codes for one upstream request."""
    SUCCESS = "SUCCESS"
    TIMEOUT = "TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"


@dataclass
class FetchDiagnostic:
    """Outcome of one (date, source id) request after retries."""
    source_id: Optional[str]
    status: FetchStatus
    records: int = 0
    http_status: Optional[int] = None
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['status'] = self.status.value
        return result


@dataclass
class FetchResult:
    """Merged records for one (date, lottery) plus per-source diagnostics."""
    lottery_key: str
    date: str
    records: List[Dict] = field(default_factory=list)
    diagnostics: List[FetchDiagnostic] = field(default_factory=list)

    @property
    def errors(self) -> List[FetchDiagnostic]:
        return [d for d in self.diagnostics if d.status != FetchStatus.SUCCESS]

    @property
    def requests(self) -> int:
        return len(self.diagnostics)


def _status_for(error: Exception) -> FetchStatus:
    if isinstance(error, MalformedPayloadError):
        return FetchStatus.INVALID_RESPONSE
    if isinstance(error, UpstreamHTTPError):
        return FetchStatus.HTTP_ERROR
    code = getattr(error, 'code', '')
    if code == 'UPSTREAM_TIMEOUT':
        return FetchStatus.TIMEOUT
    if code == 'UPSTREAM_CONNECTION':
        return FetchStatus.CONNECTION_ERROR
    if getattr(error, 'context', {}).get('http_status') == 429:
        return FetchStatus.RATE_LIMITED
    return FetchStatus.SERVER_ERROR


def merge_and_dedup(records: List[Dict], lottery: LotteryConfig) -> List[Dict]:
    """
    Deduplicates by (date, canonical bucket, source id); the variant with
    more non-empty prizes wins, ties keep the first one seen.
    """
    best: Dict[Tuple, Dict] = {}
    order: List[Tuple] = []
    for record in records:
        bucket, _ = canonical_bucket(record.get('close_hour'), lottery.hour_policy)
        key = (str(record.get('date') or '').strip(), bucket, pick_source_id(record))
        if key not in best:
            best[key] = record
            order.append(key)
        elif count_prizes(record) > count_prizes(best[key]):
            best[key] = record
    return [best[k] for k in order]


class IngestionClient:
    """
    Fetches draw results from the upstream provider.

    One request is issued per configured source identifier of the lottery;
    responses are stamped with their source id, merged and deduplicated.
    Retries for transient failures happen here and nowhere else.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep, policy: Optional[RetryPolicy] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.sleep = sleep
        self.policy = policy or RetryPolicy(
            max_attempts=settings.retries,
            base_delay=settings.retry_base_seconds,
            max_delay=settings.retry_max_seconds,
            jitter=settings.retry_jitter,
        )
        self.headers = {
            'Accept': 'application/json, text/plain, */*',
            'Origin': settings.origin,
            'Referer': settings.origin.rstrip('/') + '/',
            'User-Agent': 'Mozilla/5.0 (X11; Linux x86_64) drawcapture',
        }

    def _get_json(self, date: str, source_id: str) -> Dict:
        params = {'dates[]': date, 'lotteries[]': source_id}
        try:
            response = self.session.get(
                self.settings.base_url, params=params, headers=self.headers,
                timeout=self.settings.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise TransientUpstreamError(f"Timeout fetching {date} ({source_id})",
                                         code="UPSTREAM_TIMEOUT", source_id=source_id) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientUpstreamError(f"Connection error fetching {date} ({source_id}): {e}",
                                         code="UPSTREAM_CONNECTION", source_id=source_id) from e

        status = response.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            raise TransientUpstreamError(f"HTTP {status} from upstream", code="UPSTREAM_RETRYABLE_STATUS",
                                         http_status=status, source_id=source_id)
        if status >= 400:
            raise UpstreamHTTPError(f"HTTP {status} from upstream", http_status=status, source_id=source_id)

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedPayloadError("Upstream response is not JSON", source_id=source_id) from e

        if not isinstance(payload, dict) or payload.get('success') is not True or not isinstance(payload.get('data'), list):
            raise MalformedPayloadError("Upstream payload must carry success=true and a data list",
                                        source_id=source_id, keys=sorted(payload) if isinstance(payload, dict) else None)
        return payload

    def fetch_source(self, date: str, source_id: str) -> Tuple[List[Dict], FetchDiagnostic]:
        """Fetches one source id with retries; records are stamped with it."""
        start = time.time()
        payload = self.policy.call(
            lambda: self._get_json(date, source_id),
            is_retryable=lambda e: isinstance(e, UpstreamError) and e.retryable,
            sleep=self.sleep,
            label=f"fetch {date} {source_id[:8]}",
        )
        records = []
        for item in payload['data']:
            if not isinstance(item, dict):
                continue
            record = dict(item)
            if not pick_source_id(record):
                record['lottery_id'] = source_id
            records.append(record)
        diagnostic = FetchDiagnostic(
            source_id=source_id,
            status=FetchStatus.SUCCESS,
            records=len(records),
            http_status=200,
            response_time_ms=int((time.time() - start) * 1000),
        )
        return records, diagnostic

    def fetch(self, date: str, lottery: LotteryConfig) -> FetchResult:
        """
        Fetches and merges every source of a lottery for one date.

        Args:
            date: YYYY-MM-DD
            lottery: Lottery configuration (source ids, hour policy)

        Returns:
            FetchResult with merged records; failed sources appear in errors

        Raises:
            ValidationError: Invalid date or no source ids configured
            UpstreamError: When every source failed (the last error)
        """
        if not is_valid_date(date):
            raise ValidationError(f"Invalid date: {date!r}", code="INVALID_DATE", date=date)
        if not lottery.sources:
            raise ValidationError(f"No upstream source ids configured for {lottery.key}",
                                  code="NO_SOURCES", lottery=lottery.key)

        result = FetchResult(lottery_key=lottery.key, date=date)
        collected: List[Dict] = []
        last_error: Optional[UpstreamError] = None

        for source_id in lottery.sources:
            try:
                records, diagnostic = self.fetch_source(date, source_id)
                collected.extend(records)
                result.diagnostics.append(diagnostic)
                logger.debug(f"[FETCH] {lottery.key} {date} source={source_id[:8]} records={len(records)}")
            except UpstreamError as e:
                last_error = e
                result.diagnostics.append(FetchDiagnostic(
                    source_id=source_id,
                    status=_status_for(e),
                    http_status=e.context.get('http_status'),
                    error_message=str(e),
                ))
                logger.warning(f"⚠️ [FETCH] {lottery.key} {date} source={source_id[:8]} failed: {e}")

        if last_error is not None and not any(d.status == FetchStatus.SUCCESS for d in result.diagnostics):
            logger.error(f"❌ [FETCH] {lottery.key} {date}: all {len(lottery.sources)} source(s) failed")
            raise last_error

        result.records = merge_and_dedup(collected, lottery)
        buckets = sorted({canonical_bucket(r.get('close_hour'), lottery.hour_policy)[0] or '?' for r in result.records})
        logger.info(
            f"[FETCH] {lottery.key} {date} records={len(result.records)} (raw {len(collected)}) "
            f"close_hours=[{', '.join(buckets)}] errors={len(result.errors)}"
        )
        return result


class DayStatusProvider:
    """
    Optional external day-status signal (e.g. holiday with no draws),
    cached in the state store for cache_ttl_seconds.
    """

    def __init__(self, url_template: str, store: StateStore, clock: Clock, ttl_seconds: int = 600,
                 session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.url_template = url_template
        self.store = store
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.session = session or requests.Session()
        self.timeout = timeout

    def get(self, lottery_key: str, date: str) -> Optional[Dict]:
        """
        Returns {"dayStatus": ..., ...} or None when unavailable.
        """
        if not self.url_template:
            return None
        key = f"day_status:{lottery_key}:{date}"
        now_ts = self.clock.now().timestamp()
        cached = self.store.get(key)
        if cached and now_ts - float(cached.get('fetched_ts', 0)) < self.ttl_seconds:
            return cached.get('value')

        url = self.url_template.format(lottery=lottery_key, date=date)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            value = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"⚠️ Day status unavailable for {lottery_key} {date}: {e}")
            return None

        if not isinstance(value, dict):
            logger.warning(f"⚠️ Day status for {lottery_key} {date} is not an object, ignoring")
            return None
        self.store.set(key, {'fetched_ts': now_ts, 'value': value})
        return value
