"""
Capture Scheduler
=================

One invocation = one short-lived run for one lottery and one date:

1. resolve the date (never after today)
2. take the lottery's advisory lock (a held lock ends the run quietly)
3. load the day state and the calendar rule; close out RARE slots
4. honour an optional day-status signal (holiday)
5. attempt due slots inside their window, via catch-up, or one-shot
6. persist state after every attempt, raise once-per-slot alerts
7. write the audit report
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger

from drawcapture import database
from drawcapture.audit import AuditReport, AuditReporter, MissingSlotLedger
from drawcapture.calendar_classifier import CalendarBook, CalendarRule
from drawcapture.client import DayStatusProvider, FetchResult
from drawcapture.config import LotteryConfig, OneShotRule, Settings, SlotDefinition
from drawcapture.date_utils import Clock, is_valid_date, local_datetime, minutes_between, parse_date
from drawcapture.errors import CaptureError, FutureDateError, ValidationError
from drawcapture.importer import BLOCKED_NO_DRAW_FOR_SLOT, DrawImporter, ImportVerdict
from drawcapture.normalize import canonical_bucket, candidate_hours
from drawcapture.schedule_state import (
    NA_HOLIDAY,
    NA_NO_DRAW_FOR_SLOT,
    NA_NOT_APPLICABLE,
    NA_OFF_WEEKDAY,
    OUTCOME_ALREADY_HAD,
    OUTCOME_CAPTURED,
    OUTCOME_ONE_SHOT_FINAL,
    DayState,
    SlotState,
)
from drawcapture.state_store import AdvisoryLock, StateStore

TIER_HARD = "HARD"
TIER_SOFT = "SOFT"
TIER_OFF = "OFF"

TIER_BY_CLASS = {'CORE': TIER_HARD, 'OPTIONAL': TIER_SOFT, 'RARE': TIER_OFF}

DAY_STATUS_HOLIDAY = "holiday_no_draw"

DUE_WINDOW = "window"
DUE_CATCHUP = "catchup"
DUE_ONE_SHOT = "one_shot"
NOT_DUE_WAIT = "wait"
NOT_DUE_EXPIRED = "expired"

RUN_COMPLETED = "completed"
RUN_LOCKED = "locked"
RUN_DAY_COMPLETE = "day_complete"
RUN_HOLIDAY = "holiday"


@dataclass
class RunOutcome:
    lottery_key: str
    date: str
    status: str
    attempts: int = 0
    fetches: int = 0
    captured: List[str] = field(default_factory=list)
    report: Optional[AuditReport] = None
    report_path: Optional[str] = None
    exit_code: int = 0

    def to_dict(self) -> Dict:
        return {
            'lottery': self.lottery_key,
            'date': self.date,
            'status': self.status,
            'attempts': self.attempts,
            'fetches': self.fetches,
            'captured': self.captured,
            'report': self.report.to_dict() if self.report else None,
            'reportPath': self.report_path,
            'exitCode': self.exit_code,
        }


def tiers_from_rule(rule: CalendarRule, hours: List[str]) -> Dict[str, str]:
    """Maps classifier tiers onto scheduler tiers for every slot hour."""
    return {hour: TIER_BY_CLASS[rule.tier_of(hour)] for hour in hours}


def resolve_run_date(date: Optional[str], clock: Clock) -> str:
    """Today by default; malformed or future dates raise before anything is touched."""
    today = clock.today()
    if date is None:
        return today
    if not is_valid_date(date):
        raise ValidationError(f"Invalid date: {date!r} (expected YYYY-MM-DD)", code="INVALID_DATE", date=date)
    if date > today:
        raise FutureDateError(f"Refusing to run for {date}: after today ({today})", date=date, today=today)
    return date


def slot_due(slot: SlotDefinition, date: str, now: datetime, tz, horizon_minutes: int,
             is_today: bool, one_shot: Optional[OneShotRule] = None) -> str:
    """
    Decides whether a pending slot should be attempted now.

    Args:
        slot: Slot definition (window times)
        date: Target date
        now: Current time (aware)
        tz: Operating timezone
        horizon_minutes: How long after the window a catch-up is allowed
        is_today: False when the run targets a past date (no horizon)
        one_shot: One-shot rule for this slot, if any

    Returns:
        One of window / catchup / one_shot / wait / expired
    """
    if one_shot is not None:
        at = local_datetime(date, slot.hour, tz) + timedelta(minutes=one_shot.offset_minutes)
        until = at + timedelta(minutes=one_shot.tolerance_minutes)
        if now < at:
            return NOT_DUE_WAIT
        if now <= until:
            return DUE_ONE_SHOT
        if not is_today or minutes_between(until, now) <= horizon_minutes:
            return DUE_CATCHUP
        return NOT_DUE_EXPIRED

    start = local_datetime(date, slot.window_start, tz)
    release = local_datetime(date, slot.release, tz)
    end = local_datetime(date, slot.window_end, tz)
    if start <= now <= end:
        return DUE_WINDOW
    if now < start:
        return NOT_DUE_WAIT
    if now >= release and (not is_today or minutes_between(end, now) <= horizon_minutes):
        return DUE_CATCHUP
    return NOT_DUE_EXPIRED


class CaptureScheduler:
    """Runs one capture pass for one lottery."""

    def __init__(self, lottery: LotteryConfig, settings: Settings, store: StateStore, importer: DrawImporter,
                 calendar: CalendarBook, clock: Clock, reporter: AuditReporter,
                 day_status: Optional[DayStatusProvider] = None, ledger: Optional[MissingSlotLedger] = None):
        self.lottery = lottery
        self.settings = settings
        self.store = store
        self.importer = importer
        self.calendar = calendar
        self.clock = clock
        self.reporter = reporter
        self.day_status = day_status
        self.ledger = ledger
        self.log = logger.bind(lottery=lottery.key)

    def resolve_date(self, date: Optional[str] = None) -> str:
        """
        Target date for the run: today by default, never after today.

        Raises:
            ValidationError: Malformed date
            FutureDateError: Date after today in the operating timezone
        """
        return resolve_run_date(date, self.clock)

    def run(self, date: Optional[str] = None) -> RunOutcome:
        target = self.resolve_date(date)

        lock = AdvisoryLock(self.store, f"lock:{self.lottery.key}", self.settings.lock_ttl_seconds, self.clock)
        if not lock.acquire():
            self.log.info(f"🔒 Another run holds the {self.lottery.key} lock; nothing to do")
            return RunOutcome(lottery_key=self.lottery.key, date=target, status=RUN_LOCKED)

        try:
            return self._run_locked(target)
        finally:
            lock.release()

    def _run_locked(self, date: str) -> RunOutcome:
        now = self.clock.now()
        tz = self.clock.timezone
        is_today = date == self.clock.today()
        outcome = RunOutcome(lottery_key=self.lottery.key, date=date, status=RUN_COMPLETED)

        state = DayState.load(self.store, self.lottery.key, date, self.lottery.hours, now.isoformat(timespec='seconds'))
        rule = self.calendar.lookup(date)
        tiers = tiers_from_rule(rule, self.lottery.hours)

        self.log.info("=" * 80)
        self.log.info(f"🚀 CAPTURE RUN {self.lottery.key} {date} at {now.strftime('%H:%M')} "
                      f"(calendar {rule.provenance.value}"
                      f"{' from ' + str(rule.inherited_from_year) if rule.inherited_from_year else ''})")
        self.log.info(f"   tiers: {', '.join(f'{h}={t}' for h, t in tiers.items())}")
        self.log.info("=" * 80)

        if self._close_inapplicable(state, tiers, rule):
            state.save()

        applicable = [h for h in self.lottery.hours if tiers[h] != TIER_OFF]
        if state.all_done(applicable):
            self.log.info(f"✅ DAY COMPLETE {self.lottery.key} {date}: {state.summary()}")
            outcome.status = RUN_DAY_COMPLETE
            return self._finish(outcome, state, tiers)

        if self._holiday(date):
            for hour in applicable:
                slot_state = state.slot(hour)
                if not slot_state.done:
                    slot_state.mark_not_applicable(NA_HOLIDAY)
            state.save()
            self.log.info(f"🏖️ {self.lottery.key} {date}: day-status reports no draws, closing remaining slots")
            outcome.status = RUN_HOLIDAY
            return self._finish(outcome, state, tiers)

        fetched: Dict[str, FetchResult] = {}
        weekday = parse_date(date).weekday()
        for slot in self.lottery.slots:
            slot_state = state.slot(slot.hour)
            tier = tiers[slot.hour]
            if slot_state.done or tier == TIER_OFF:
                continue
            if slot.max_tries is not None and slot_state.tries >= slot.max_tries:
                self.log.info(f"⏹️ {slot.hour} reached max tries ({slot.max_tries}) for today")
                continue

            one_shot = self.lottery.one_shot_for(slot.hour, weekday)
            horizon = self.settings.catchup_max_after_end_minutes
            if tier == TIER_SOFT:
                horizon = max(horizon, self.settings.soft_catchup_min_minutes)
            due = slot_due(slot, date, now, tz, horizon, is_today, one_shot)

            if due == NOT_DUE_WAIT:
                self.log.debug(f"⏳ {slot.hour} ({tier}) not yet in window {slot.window_start}-{slot.window_end}")
                continue
            if due == NOT_DUE_EXPIRED:
                self.log.debug(f"⌛ {slot.hour} ({tier}) past catch-up horizon")
                continue

            self._attempt(slot, slot_state, state, tier, due, one_shot, date, fetched, outcome)

        self._raise_alerts(state, tiers, date, now, tz)
        self._verify_persisted(outcome, date)
        return self._finish(outcome, state, tiers)

    def _close_inapplicable(self, state: DayState, tiers: Dict[str, str], rule: CalendarRule) -> bool:
        changed = False
        for hour, tier in tiers.items():
            slot_state = state.slot(hour)
            if tier != TIER_OFF or slot_state.done:
                continue
            reason = NA_OFF_WEEKDAY if rule.off_day else NA_NOT_APPLICABLE
            slot_state.mark_not_applicable(reason)
            self.log.info(f"➖ {hour} not applicable ({reason}, {rule.provenance.value})")
            changed = True
        return changed

    def _holiday(self, date: str) -> bool:
        if self.day_status is None:
            return False
        status = self.day_status.get(self.lottery.key, date)
        return bool(status) and str(status.get('dayStatus', '')).lower() == DAY_STATUS_HOLIDAY

    def _attempt(self, slot: SlotDefinition, slot_state: SlotState, state: DayState, tier: str, due: str,
                 one_shot: Optional[OneShotRule], date: str, fetched: Dict[str, FetchResult],
                 outcome: RunOutcome) -> None:
        offsets = self.lottery.candidate_offsets if tier == TIER_HARD else (0,)
        candidates = candidate_hours(slot.hour, offsets)
        now_iso = self.clock.now().isoformat(timespec='seconds')

        slot_state.record_attempt(now_iso, candidates)
        state.save()
        outcome.attempts += 1
        self.log.info(f"🎯 [{due.upper()}] {slot.hour} ({tier}) attempt #{slot_state.tries} "
                      f"candidates={candidates}")

        verdict: Optional[ImportVerdict] = None
        try:
            if date not in fetched:
                outcome.fetches += 1
                fetched[date] = self.importer.fetch(date, self.lottery.key)
            seen = set()
            for candidate in candidates:
                bucket, _ = canonical_bucket(candidate, self.lottery.hour_policy)
                if bucket in seen:
                    continue
                seen.add(bucket)
                verdict = self.importer.run_import(date, self.lottery.key, candidate,
                                                   fetched=fetched[date], skip_if_already_complete=True)
                if verdict.is_definitive:
                    break
        except CaptureError as e:
            slot_state.record_result({'ok': False, 'code': e.code, 'message': e.message, 'at': now_iso})
            if one_shot is not None:
                slot_state.mark_done(OUTCOME_ONE_SHOT_FINAL)
            state.save()
            self.log.error(f"❌ {slot.hour} attempt failed: {e} - slot stays "
                           f"{'closed (one-shot)' if one_shot else 'pending'}")
            return

        slot_state.record_result(self._summarize(verdict, now_iso))
        if verdict.blocked_reason == BLOCKED_NO_DRAW_FOR_SLOT:
            slot_state.mark_not_applicable(NA_NO_DRAW_FOR_SLOT)
            self.log.info(f"🚫 {slot.hour} provider reports no draw: closed as not applicable")
        elif verdict.is_definitive:
            captured_now = verdict.saved_count > 0
            slot_state.mark_done(OUTCOME_CAPTURED if captured_now else OUTCOME_ALREADY_HAD)
            if captured_now:
                outcome.captured.append(slot.hour)
            self.log.info(f"✅ {slot.hour} DONE ({slot_state.outcome}) saved={verdict.saved_count} "
                          f"writes={verdict.write_count}")
        elif one_shot is not None:
            slot_state.mark_done(OUTCOME_ONE_SHOT_FINAL)
            self.log.info(f"🔚 {slot.hour} one-shot used without capture ({verdict.blocked_reason or 'no prizes'})")
        else:
            self.log.info(f"⏳ {slot.hour} not captured yet ({verdict.blocked_reason or 'no prizes'}), "
                          f"available={verdict.available_hours}")
        state.save()

    @staticmethod
    def _summarize(verdict: ImportVerdict, at: str) -> Dict:
        return {
            'ok': True,
            'at': at,
            'close_hour': verdict.close_hour,
            'captured': verdict.captured,
            'already_complete': verdict.already_complete_all,
            'saved': verdict.saved_count,
            'writes': verdict.write_count,
            'blocked_reason': verdict.blocked_reason,
            'targets': len(verdict.target_draw_ids),
        }

    def _raise_alerts(self, state: DayState, tiers: Dict[str, str], date: str, now: datetime, tz) -> None:
        changed = False
        for slot in self.lottery.slots:
            slot_state = state.slot(slot.hour)
            if slot_state.done or tiers.get(slot.hour) != TIER_HARD:
                continue
            if not slot_state.alert_missed_window and now > local_datetime(date, slot.window_end, tz):
                slot_state.alert_missed_window = True
                changed = True
                self.log.warning(f"🚨 ALERT missed window {slot.hour} ({slot.window_start}-{slot.window_end}) "
                                 f"tries={slot_state.tries} last={slot_state.last_result}")
            release = local_datetime(date, slot.release, tz)
            if (not slot_state.alert_critical and now >= release
                    and minutes_between(release, now) >= self.reporter.crit_after_minutes):
                slot_state.alert_critical = True
                changed = True
                self.log.critical(f"🚨 ALERT critical {slot.hour}: {minutes_between(release, now)}min after release "
                                  f"without capture")
        if changed:
            state.save()

    def _verify_persisted(self, outcome: RunOutcome, date: str) -> None:
        if not self.settings.verify_persisted or not outcome.captured:
            return
        for hour in outcome.captured:
            completion = database.get_slot_completion(self.lottery.key, date, hour)
            if completion['complete'] > 0:
                continue
            self.log.critical(f"🧾 {hour} reported captured but no complete draw found in store: {completion}")
            if self.ledger is not None:
                self.ledger.record(self.lottery.key, date, hour, 'captured_but_missing',
                                   self.clock.now().isoformat(timespec='seconds'))

    def _finish(self, outcome: RunOutcome, state: DayState, tiers: Dict[str, str]) -> RunOutcome:
        report = self.reporter.build(self.lottery, state, tiers, self.clock.now(), tz=self.clock.timezone,
                                     clock_override=self.clock.is_override)
        self.reporter.log(report)
        outcome.report = report
        outcome.report_path = self.reporter.write(report)
        outcome.exit_code = self.reporter.exit_code(report, self.settings.fail_on_critical)
        self.log.info(f"🏁 RUN END {self.lottery.key} {outcome.date}: status={outcome.status} "
                      f"attempts={outcome.attempts} captured={outcome.captured} audit={report.status}")
        return outcome
