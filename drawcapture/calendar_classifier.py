"""
Calendar Classifier
===================

Learns, per lottery and (year, weekday), which scheduled hours actually
produce a draw:

- CORE      hour present on >= core_min of the days in the group
- OPTIONAL  hour present on >= optional_min of the days
- RARE      everything else

Groups with fewer than min_samples_per_group days are not trusted. The
current (still accumulating) year is computed as PARTIAL once it has
min_samples_current_year days, otherwise it inherits the nearest prior
year's rule for the same weekday.
"""

import json
import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
import pytz
from loguru import logger

from drawcapture.config import ConditionalCoreRule, LotteryConfig, Settings
from drawcapture.date_utils import parse_date
from drawcapture.errors import ConfigError

WEEKDAY_NAMES = ['Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun']


class Provenance(str, Enum):
    COMPUTED = "COMPUTED"
    PARTIAL = "PARTIAL"
    INHERITED = "INHERITED"
    FALLBACK = "FALLBACK"
    CONFIGURED = "CONFIGURED"


@dataclass(frozen=True)
class ClassifierThresholds:
    core_min: float = 0.90
    optional_min: float = 0.50
    min_samples_per_group: int = 20
    min_samples_current_year: int = 3

    def __post_init__(self):
        if self.core_min < self.optional_min:
            raise ConfigError("core_min must be >= optional_min",
                              core_min=self.core_min, optional_min=self.optional_min)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'ClassifierThresholds':
        return cls(
            core_min=settings.core_min,
            optional_min=settings.optional_min,
            min_samples_per_group=settings.min_samples_per_group,
            min_samples_current_year=settings.min_samples_current_year,
        )


@dataclass
class CalendarRule:
    lottery_key: str
    year: int
    weekday: int
    core: List[str] = field(default_factory=list)
    optional: List[str] = field(default_factory=list)
    rare: List[str] = field(default_factory=list)
    sample_size: int = 0
    provenance: Provenance = Provenance.COMPUTED
    inherited_from_year: Optional[int] = None
    ratios: Dict[str, float] = field(default_factory=dict)
    off_day: bool = False

    def tier_of(self, hour: str) -> str:
        if hour in self.core:
            return 'CORE'
        if hour in self.optional:
            return 'OPTIONAL'
        return 'RARE'

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['provenance'] = self.provenance.value
        return result

    @classmethod
    def from_dict(cls, raw: Dict) -> 'CalendarRule':
        data = dict(raw)
        data['provenance'] = Provenance(data.get('provenance', 'COMPUTED'))
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def partition_hours(hours: Sequence[str], ratios: Dict[str, float],
                    thresholds: ClassifierThresholds) -> Tuple[List[str], List[str], List[str]]:
    """Splits hours into (core, optional, rare) by occurrence ratio."""
    core, optional, rare = [], [], []
    for hour in hours:
        ratio = ratios.get(hour, 0.0)
        if ratio >= thresholds.core_min:
            core.append(hour)
        elif ratio >= thresholds.optional_min:
            optional.append(hour)
        else:
            rare.append(hour)
    return core, optional, rare


def _conditional_for(rules: Iterable[ConditionalCoreRule], hour: str, weekday: int) -> Optional[ConditionalCoreRule]:
    for rule in rules:
        if rule.hour == hour and rule.applies_to(weekday):
            return rule
    return None


def classify_history(draws: pd.DataFrame,
                     lottery_key: str,
                     candidate_hours: Sequence[str],
                     current_year: int,
                     thresholds: Optional[ClassifierThresholds] = None,
                     conditional_rules: Sequence[ConditionalCoreRule] = ()) -> List[CalendarRule]:
    """
    Builds calendar rules from historical draws.

    Args:
        draws: DataFrame with at least 'date' (YYYY-MM-DD) and 'hour_bucket'
        lottery_key: Lottery the draws belong to
        candidate_hours: Scheduled hours to classify
        current_year: Year treated as still accumulating
        thresholds: Ratio and sample-size thresholds
        conditional_rules: Hours that only count from a cutover date on

    Returns:
        List of CalendarRule sorted by (year, weekday)
    """
    thresholds = thresholds or ClassifierThresholds()
    hours = list(candidate_hours)

    df = draws[['date', 'hour_bucket']].dropna().copy() if not draws.empty else pd.DataFrame(columns=['date', 'hour_bucket'])
    df['date'] = pd.to_datetime(df['date'], format='%Y-%m-%d', errors='coerce')
    df = df.dropna(subset=['date'])
    df['year'] = df['date'].dt.year
    df['weekday'] = df['date'].dt.weekday
    df['day'] = df['date'].dt.strftime('%Y-%m-%d')

    computed: Dict[Tuple[int, int], CalendarRule] = {}
    for (year, weekday), group in df.groupby(['year', 'weekday']):
        year, weekday = int(year), int(weekday)
        dates = set(group['day'])
        ratios = {}
        for hour in hours:
            hour_dates = set(group.loc[group['hour_bucket'] == hour, 'day'])
            conditional = _conditional_for(conditional_rules, hour, weekday)
            if conditional:
                eligible = {d for d in dates if d >= conditional.effective_from}
                hour_dates &= eligible
                denominator = len(eligible)
            else:
                denominator = len(dates)
            ratios[hour] = round(len(hour_dates) / denominator, 4) if denominator else 0.0

        core, optional, rare = partition_hours(hours, ratios, thresholds)
        sample_size = len(dates)
        if sample_size >= thresholds.min_samples_per_group:
            provenance = Provenance.COMPUTED
        elif year == current_year and sample_size >= thresholds.min_samples_current_year:
            provenance = Provenance.PARTIAL
        else:
            logger.debug(f"[CALENDAR] {lottery_key} {year} {WEEKDAY_NAMES[weekday]}: {sample_size} day(s), not trusted")
            continue
        computed[(year, weekday)] = CalendarRule(
            lottery_key=lottery_key, year=year, weekday=weekday,
            core=core, optional=optional, rare=rare,
            sample_size=sample_size, provenance=provenance, ratios=ratios,
        )

    for weekday in range(7):
        if (current_year, weekday) in computed:
            continue
        base = _nearest_prior(computed.values(), current_year, weekday)
        if base is None:
            continue
        computed[(current_year, weekday)] = replace(
            base,
            year=current_year,
            provenance=Provenance.INHERITED,
            inherited_from_year=base.year,
            sample_size=int(df[(df['year'] == current_year) & (df['weekday'] == weekday)]['date'].nunique()),
        )

    rules = [computed[k] for k in sorted(computed)]
    logger.info(f"[CALENDAR] {lottery_key}: {len(rules)} rule(s) from {df['date'].nunique()} distinct day(s)")
    return rules


def _nearest_prior(rules: Iterable[CalendarRule], year: int, weekday: int) -> Optional[CalendarRule]:
    candidates = [
        r for r in rules
        if r.weekday == weekday and r.year < year and r.provenance in (Provenance.COMPUTED, Provenance.PARTIAL)
    ]
    return max(candidates, key=lambda r: r.year) if candidates else None


class CalendarBook:
    """Rule lookup for one lottery, with inheritance and fallback."""

    def __init__(self, lottery: LotteryConfig, rules: Iterable[CalendarRule] = ()):
        self.lottery = lottery
        self._rules = {(r.year, r.weekday): r for r in rules}

    def __len__(self):
        return len(self._rules)

    def _configured(self, year: int, weekday: int) -> CalendarRule:
        hours = self.lottery.hours
        tiers = {h: self.lottery.fixed_tiers.get(h, 'RARE') for h in hours}
        return CalendarRule(
            lottery_key=self.lottery.key, year=year, weekday=weekday,
            core=[h for h in hours if tiers[h] == 'CORE'],
            optional=[h for h in hours if tiers[h] == 'OPTIONAL'],
            rare=[h for h in hours if tiers[h] == 'RARE'],
            provenance=Provenance.CONFIGURED,
        )

    def _fallback(self, year: int, weekday: int) -> CalendarRule:
        hours = self.lottery.hours
        core = [h for h in hours if h in self.lottery.fallback_core]
        optional = [h for h in hours if h in self.lottery.fallback_optional and h not in core]
        return CalendarRule(
            lottery_key=self.lottery.key, year=year, weekday=weekday,
            core=core, optional=optional,
            rare=[h for h in hours if h not in core and h not in optional],
            provenance=Provenance.FALLBACK,
        )

    def lookup(self, date: str) -> CalendarRule:
        """
        Rule for a date: exact (year, weekday), else nearest prior year for
        the weekday, else the configured fallback. Configured off weekdays
        and conditional cutovers are applied on top.
        """
        day = parse_date(date)
        year, weekday = day.year, day.weekday()

        if self.lottery.calendar == 'fixed':
            rule = self._configured(year, weekday)
        elif (year, weekday) in self._rules:
            rule = self._rules[(year, weekday)]
        else:
            prior = _nearest_prior(self._rules.values(), year, weekday)
            if prior is not None:
                rule = replace(prior, year=year, provenance=Provenance.INHERITED, inherited_from_year=prior.year)
            else:
                rule = self._fallback(year, weekday)

        if weekday in self.lottery.off_weekdays:
            hours = self.lottery.hours
            return replace(rule, core=[], optional=[], rare=list(hours), off_day=True)

        demoted = [
            c.hour for c in self.lottery.conditional_core
            if c.applies_to(weekday) and day < parse_date(c.effective_from) and c.hour not in rule.rare
        ]
        if demoted:
            rule = replace(
                rule,
                core=[h for h in rule.core if h not in demoted],
                optional=[h for h in rule.optional if h not in demoted],
                rare=rule.rare + demoted,
            )
        return rule

    @classmethod
    def load(cls, settings: Settings, lottery: LotteryConfig) -> 'CalendarBook':
        if lottery.calendar == 'fixed':
            return cls(lottery)
        path = rules_path(settings, lottery.key)
        if not os.path.exists(path):
            logger.warning(f"[CALENDAR] No rules file for {lottery.key} at {path}; using fallback tiers")
            return cls(lottery)
        return cls(lottery, load_rules(path))


def rules_path(settings: Settings, lottery_key: str) -> str:
    return os.path.join(settings.resolve(settings.calendar_dir), f"calendar_rules-{lottery_key}.json")


def save_rules(path: str, lottery_key: str, rules: List[CalendarRule], thresholds: ClassifierThresholds,
               generated_at: Optional[str] = None) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    payload = {
        'lottery': lottery_key,
        'generatedAt': generated_at or datetime.now(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ'),
        'thresholds': asdict(thresholds),
        'rules': [r.to_dict() for r in rules],
    }
    tmp = path + '.tmp'
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)
    logger.info(f"💾 Saved {len(rules)} calendar rule(s) to {path}")


def load_rules(path: str) -> List[CalendarRule]:
    with open(path, 'r', encoding='utf-8') as f:
        payload = json.load(f)
    return [CalendarRule.from_dict(r) for r in payload.get('rules', [])]


def format_rules_table(rules: List[CalendarRule]) -> str:
    """Human-readable CORE / OPTIONAL / RARE table, one line per rule."""
    lines = [f"{'YEAR':<6}{'DOW':<5}{'DAYS':>5}  {'PROVENANCE':<11} CORE | OPTIONAL | RARE"]
    for r in rules:
        origin = f" (from {r.inherited_from_year})" if r.inherited_from_year else ''
        lines.append(
            f"{r.year:<6}{WEEKDAY_NAMES[r.weekday]:<5}{r.sample_size:>5}  {r.provenance.value:<11} "
            f"{','.join(r.core) or '-'} | {','.join(r.optional) or '-'} | {','.join(r.rare) or '-'}{origin}"
        )
    return "\n".join(lines)
