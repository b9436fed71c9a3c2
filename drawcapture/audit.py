"""
Audit of missed captures.

The report is observational only: it is always recomputable from the
schedule state plus the clock and never mutates anything besides writing
its own JSON file.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from loguru import logger

from drawcapture.config import LotteryConfig
from drawcapture.date_utils import local_datetime, minutes_between
from drawcapture.schedule_state import DayState

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_CRITICAL = "critical"

EXIT_CRITICAL = 2


@dataclass
class AuditFinding:
    slot: str
    tier: str
    rule: str
    releaseAt: str
    windowEnd: str
    sinceMinutes: int
    tries: int
    lastAttemptAt: Optional[str] = None
    lastResult: Optional[Dict] = None


@dataclass
class AuditReport:
    lottery: str
    date: str
    generatedAt: str
    thresholds: Dict[str, int]
    status: str = STATUS_OK
    critical: List[AuditFinding] = field(default_factory=list)
    warning: List[AuditFinding] = field(default_factory=list)
    softLate: List[AuditFinding] = field(default_factory=list)
    clockOverride: bool = False

    @property
    def critical_count(self) -> int:
        return len(self.critical)

    @property
    def warning_count(self) -> int:
        return len(self.warning)

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['ok'] = self.status == STATUS_OK
        result['criticalCount'] = self.critical_count
        result['warningCount'] = self.warning_count
        result['softLateCount'] = len(self.softLate)
        return result


class AuditReporter:
    """Classifies pending slots past their release as warning or critical."""

    def __init__(self, warn_after_minutes: int = 20, crit_after_minutes: int = 60, report_dir: Optional[str] = None):
        self.warn_after_minutes = warn_after_minutes
        self.crit_after_minutes = crit_after_minutes
        self.report_dir = report_dir

    def build(self, lottery: LotteryConfig, state: DayState, tiers: Dict[str, str], now: datetime,
              tz=None, clock_override: bool = False) -> AuditReport:
        """
        Builds the day report.

        Args:
            lottery: Lottery configuration (slot windows)
            state: Day schedule state
            tiers: Slot hour -> "HARD" | "SOFT" | "OFF"
            now: Current time (aware, operating timezone)
            tz: pytz timezone for slot times (defaults to now.tzinfo)

        Returns:
            AuditReport
        """
        report = AuditReport(
            lottery=lottery.key,
            date=state.date,
            generatedAt=now.isoformat(timespec='seconds'),
            thresholds={'warnAfterMinutes': self.warn_after_minutes, 'critAfterMinutes': self.crit_after_minutes},
            clockOverride=clock_override,
        )

        for slot in lottery.slots:
            slot_state = state.slot(slot.hour)
            tier = tiers.get(slot.hour, 'OFF')
            if slot_state.done or tier == 'OFF':
                continue
            release = local_datetime(state.date, slot.release, tz or now.tzinfo)
            if now < release:
                continue
            since = minutes_between(release, now)
            finding = AuditFinding(
                slot=slot.hour,
                tier=tier,
                rule='one_shot' if lottery.one_shot_for(slot.hour, release.weekday()) else 'window',
                releaseAt=slot.release,
                windowEnd=slot.window_end,
                sinceMinutes=since,
                tries=slot_state.tries,
                lastAttemptAt=slot_state.last_attempt_at,
                lastResult=slot_state.last_result,
            )
            if tier == 'SOFT':
                if since >= self.warn_after_minutes:
                    report.softLate.append(finding)
            elif since >= self.crit_after_minutes:
                report.critical.append(finding)
            elif since >= self.warn_after_minutes:
                report.warning.append(finding)

        if report.critical:
            report.status = STATUS_CRITICAL
        elif report.warning:
            report.status = STATUS_WARNING
        return report

    def log(self, report: AuditReport) -> None:
        if report.status == STATUS_OK:
            logger.info(f"✅ [AUDIT] {report.lottery} {report.date}: ok (soft late {len(report.softLate)})")
            return
        emit = logger.error if report.status == STATUS_CRITICAL else logger.warning
        emit(f"🚨 [AUDIT] {report.lottery} {report.date}: {report.status.upper()} "
             f"critical={report.critical_count} warning={report.warning_count}")
        for finding in report.critical + report.warning:
            emit(f"   {finding.slot} ({finding.tier}) release {finding.releaseAt} +{finding.sinceMinutes}min "
                 f"tries={finding.tries} last={finding.lastResult}")

    def write(self, report: AuditReport) -> Optional[str]:
        """Writes audit-<LOTTERY>-<date>.json and returns its path."""
        if not self.report_dir:
            return None
        os.makedirs(self.report_dir, exist_ok=True)
        path = os.path.join(self.report_dir, f"audit-{report.lottery}-{report.date}.json")
        tmp = path + '.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
        return path

    @staticmethod
    def exit_code(report: AuditReport, fail_on_critical: bool) -> int:
        if fail_on_critical and report.status == STATUS_CRITICAL:
            return EXIT_CRITICAL
        return 0


class MissingSlotLedger:
    """Month files listing slots that were reported captured but not found in the store."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, lottery_key: str, date: str) -> str:
        return os.path.join(self.directory, f"missing_slots-{lottery_key}-{date[:7]}.json")

    def record(self, lottery_key: str, date: str, hour: str, reason: str, at: str) -> str:
        os.makedirs(self.directory, exist_ok=True)
        path = self.path_for(lottery_key, date)
        entries = {}
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                entries = json.load(f)
        key = f"{date}__{hour}"
        entry = entries.get(key, {'date': date, 'hour': hour, 'first_seen_at': at, 'count': 0})
        entry.update({'reason': reason, 'last_seen_at': at, 'count': entry.get('count', 0) + 1})
        entries[key] = entry
        tmp = path + '.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(entries, f, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp, path)
        logger.critical(f"🧾 [LEDGER] {lottery_key} {date} {hour} missing after capture: {reason}")
        return path
