"""
Configuration loading: runtime settings from config/config.ini (with
environment overrides) and typed per-lottery schedule tables from
config/lotteries.json.
"""

import configparser
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from loguru import logger

from drawcapture.date_utils import to_minutes
from drawcapture.errors import ConfigError, ValidationError

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
CONFIG_PATH = os.path.join(REPO_ROOT, 'config', 'config.ini')

TIERS = ('CORE', 'OPTIONAL', 'RARE')


@dataclass(frozen=True)
class SlotDefinition:
    """One scheduled draw hour and its capture window (all HH:MM)."""
    hour: str
    window_start: str
    release: str
    window_end: str
    max_tries: Optional[int] = None


@dataclass(frozen=True)
class OneShotRule:
    """A slot attempted exactly once, offset_minutes after its hour."""
    hour: str
    offset_minutes: int = 0
    tolerance_minutes: int = 10
    weekdays: Optional[Tuple[int, ...]] = None

    def applies_to(self, weekday: int) -> bool:
        return self.weekdays is None or weekday in self.weekdays


@dataclass(frozen=True)
class ConditionalCoreRule:
    """Hour that only counts as a draw hour from effective_from onwards."""
    hour: str
    effective_from: str
    weekdays: Optional[Tuple[int, ...]] = None

    def applies_to(self, weekday: int) -> bool:
        return self.weekdays is None or weekday in self.weekdays


@dataclass(frozen=True)
class HourPolicy:
    """
    How provider close-hour text maps to a canonical "HH:00" bucket.

    mode "floor" buckets by hour; minutes listed in marker_minutes are
    provider markers and are dropped; minutes within jitter_tolerance_minutes
    of the next hour round up. mode "raw" keeps the exact HH:MM.
    """
    mode: str = 'floor'
    marker_minutes: Tuple[int, ...] = ()
    jitter_tolerance_minutes: int = 0


@dataclass(frozen=True)
class LotteryConfig:
    key: str
    display_name: str
    uf: str
    slots: Tuple[SlotDefinition, ...]
    sources: Tuple[str, ...] = ()
    calendar: str = 'classifier'
    hour_policy: HourPolicy = field(default_factory=HourPolicy)
    candidate_offsets: Tuple[int, ...] = (0,)
    no_draw_statuses: Tuple[str, ...] = ()
    fallback_core: Tuple[str, ...] = ()
    fallback_optional: Tuple[str, ...] = ()
    fixed_tiers: Dict[str, str] = field(default_factory=dict)
    off_weekdays: Tuple[int, ...] = ()
    conditional_core: Tuple[ConditionalCoreRule, ...] = ()
    one_shot: Tuple[OneShotRule, ...] = ()

    @property
    def hours(self) -> List[str]:
        return [slot.hour for slot in self.slots]

    def slot(self, hour: str) -> Optional[SlotDefinition]:
        for slot in self.slots:
            if slot.hour == hour:
                return slot
        return None

    def one_shot_for(self, hour: str, weekday: int) -> Optional[OneShotRule]:
        for rule in self.one_shot:
            if rule.hour == hour and rule.applies_to(weekday):
                return rule
        return None


@dataclass
class Settings:
    """Runtime settings resolved from config.ini and the environment."""
    timezone: str = 'America/Sao_Paulo'
    default_lottery: str = 'PT_RIO'
    log_level: str = 'INFO'
    database_file: str = 'data/drawcapture.db'
    log_dir: str = 'logs'
    state_backend: str = 'file'
    state_dir: str = 'data/state'
    calendar_dir: str = 'data/calendar'
    report_dir: str = 'logs'
    lotteries_file: str = 'config/lotteries.json'
    lock_ttl_seconds: int = 90
    catchup_max_after_end_minutes: int = 90
    soft_catchup_min_minutes: int = 360
    verify_persisted: bool = True
    warn_after_minutes: int = 20
    crit_after_minutes: int = 60
    fail_on_critical: bool = False
    base_url: str = 'https://app_services.apionline.cloud/api/results'
    origin: str = 'https://app.kingapostas.com'
    timeout_seconds: float = 30.0
    retries: int = 3
    retry_base_seconds: float = 0.6
    retry_max_seconds: float = 10.0
    retry_jitter: float = 0.1
    day_status_url: str = ''
    day_status_ttl_seconds: int = 600
    core_min: float = 0.90
    optional_min: float = 0.50
    min_samples_per_group: int = 20
    min_samples_current_year: int = 3
    now_hm: Optional[str] = None

    def resolve(self, path: str) -> str:
        """Absolute path for a repo-relative setting."""
        return path if os.path.isabs(path) else os.path.join(REPO_ROOT, path)


def _env_bool(value: str) -> bool:
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


# (section, option, attribute, type)
_INI_FIELDS = [
    ('paths', 'database_file', 'database_file', str),
    ('paths', 'log_dir', 'log_dir', str),
    ('paths', 'state_backend', 'state_backend', str),
    ('paths', 'state_dir', 'state_dir', str),
    ('paths', 'calendar_dir', 'calendar_dir', str),
    ('paths', 'report_dir', 'report_dir', str),
    ('paths', 'lotteries_file', 'lotteries_file', str),
    ('runtime', 'timezone', 'timezone', str),
    ('runtime', 'default_lottery', 'default_lottery', str),
    ('runtime', 'log_level', 'log_level', str),
    ('scheduler', 'lock_ttl_seconds', 'lock_ttl_seconds', int),
    ('scheduler', 'catchup_max_after_end_minutes', 'catchup_max_after_end_minutes', int),
    ('scheduler', 'soft_catchup_min_minutes', 'soft_catchup_min_minutes', int),
    ('scheduler', 'verify_persisted', 'verify_persisted', bool),
    ('audit', 'warn_after_minutes', 'warn_after_minutes', int),
    ('audit', 'crit_after_minutes', 'crit_after_minutes', int),
    ('audit', 'fail_on_critical', 'fail_on_critical', bool),
    ('upstream', 'base_url', 'base_url', str),
    ('upstream', 'origin', 'origin', str),
    ('upstream', 'timeout_seconds', 'timeout_seconds', float),
    ('upstream', 'retries', 'retries', int),
    ('upstream', 'retry_base_seconds', 'retry_base_seconds', float),
    ('upstream', 'retry_max_seconds', 'retry_max_seconds', float),
    ('upstream', 'retry_jitter', 'retry_jitter', float),
    ('day_status', 'url', 'day_status_url', str),
    ('day_status', 'cache_ttl_seconds', 'day_status_ttl_seconds', int),
    ('classifier', 'core_min', 'core_min', float),
    ('classifier', 'optional_min', 'optional_min', float),
    ('classifier', 'min_samples_per_group', 'min_samples_per_group', int),
    ('classifier', 'min_samples_current_year', 'min_samples_current_year', int),
]

_ENV_FIELDS = {
    'LOTTERY': ('default_lottery', str),
    'AUDIT_WARN_MIN': ('warn_after_minutes', int),
    'AUDIT_CRIT_MIN': ('crit_after_minutes', int),
    'FAIL_ON_CRITICAL': ('fail_on_critical', bool),
    'LOCK_TTL_SEC': ('lock_ttl_seconds', int),
    'CATCHUP_MAX_AFTER_END_MIN': ('catchup_max_after_end_minutes', int),
    'DRAWCAPTURE_DB': ('database_file', str),
    'STATE_BACKEND': ('state_backend', str),
    'DAY_STATUS_URL': ('day_status_url', str),
    'LOG_LEVEL': ('log_level', str),
    'NOW_HM': ('now_hm', str),
}


def _convert(raw: str, kind):
    if kind is bool:
        return _env_bool(raw)
    return kind(raw)


def load_settings(config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Builds Settings from config.ini, then applies environment overrides.

    Args:
        config_path: Alternate ini file (defaults to config/config.ini)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ConfigError: If a value cannot be converted to its expected type
    """
    settings = Settings()
    config = configparser.ConfigParser()
    path = config_path or CONFIG_PATH

    try:
        config.read(path)
    except (configparser.Error, OSError) as e:
        logger.error(f"Error reading config file {path}: {e}. Using defaults.")

    for section, option, attr, kind in _INI_FIELDS:
        if not config.has_option(section, option):
            continue
        raw = config.get(section, option)
        try:
            setattr(settings, attr, _convert(raw, kind))
        except ValueError as e:
            raise ConfigError(f"Invalid value for [{section}] {option}: {raw!r}", section=section, option=option) from e

    env = os.environ if environ is None else environ
    for name, (attr, kind) in _ENV_FIELDS.items():
        raw = env.get(name)
        if raw is None or str(raw).strip() == '':
            continue
        try:
            setattr(settings, attr, _convert(raw.strip(), kind))
        except ValueError as e:
            raise ConfigError(f"Invalid value for {name}: {raw!r}", variable=name) from e

    if settings.state_backend not in ('file', 'sqlite'):
        raise ConfigError(f"Unknown state backend: {settings.state_backend}", state_backend=settings.state_backend)
    if settings.core_min < settings.optional_min:
        raise ConfigError("core_min must be >= optional_min", core_min=settings.core_min, optional_min=settings.optional_min)

    return settings


def _require_hhmm(value, where: str) -> str:
    text = str(value or '').strip()
    if to_minutes(text) is None:
        raise ConfigError(f"Invalid HH:MM in {where}: {value!r}", where=where)
    return text


def _weekdays(value) -> Optional[Tuple[int, ...]]:
    if value is None:
        return None
    days = tuple(int(v) for v in value)
    if any(d < 0 or d > 6 for d in days):
        raise ConfigError(f"Weekdays must be 0..6 (Monday=0): {value}")
    return days


def parse_lottery(key: str, raw: Dict, environ: Optional[Dict[str, str]] = None) -> LotteryConfig:
    """Validates one lottery table and returns its typed config."""
    key = key.strip().upper()
    slots = []
    for item in raw.get('slots', []):
        where = f"{key}.slots"
        slot = SlotDefinition(
            hour=_require_hhmm(item.get('hour'), where),
            window_start=_require_hhmm(item.get('window_start'), where),
            release=_require_hhmm(item.get('release'), where),
            window_end=_require_hhmm(item.get('window_end'), where),
            max_tries=item.get('max_tries'),
        )
        if not (to_minutes(slot.window_start) <= to_minutes(slot.window_end)
                and to_minutes(slot.window_start) <= to_minutes(slot.release) <= to_minutes(slot.window_end)):
            raise ConfigError(f"Window for {key} {slot.hour} must satisfy start <= release <= end", lottery=key, hour=slot.hour)
        slots.append(slot)
    if not slots:
        raise ConfigError(f"Lottery {key} has no slots", lottery=key)

    hours = {s.hour for s in slots}
    policy_raw = raw.get('hour_policy') or {}
    policy = HourPolicy(
        mode=policy_raw.get('mode', 'floor'),
        marker_minutes=tuple(int(m) for m in policy_raw.get('marker_minutes', [])),
        jitter_tolerance_minutes=int(policy_raw.get('jitter_tolerance_minutes', 0)),
    )
    if policy.mode not in ('floor', 'raw'):
        raise ConfigError(f"Unknown hour policy mode for {key}: {policy.mode}", lottery=key)

    calendar = raw.get('calendar', 'classifier')
    if calendar not in ('classifier', 'fixed'):
        raise ConfigError(f"Unknown calendar mode for {key}: {calendar}", lottery=key)

    fixed_tiers = {}
    for hour, tier in (raw.get('fixed_tiers') or {}).items():
        if tier not in TIERS:
            raise ConfigError(f"Unknown tier {tier!r} for {key} {hour}", lottery=key)
        fixed_tiers[_require_hhmm(hour, f"{key}.fixed_tiers")] = tier

    one_shot = []
    for item in raw.get('one_shot', []):
        hour = _require_hhmm(item.get('hour'), f"{key}.one_shot")
        if hour not in hours:
            raise ConfigError(f"One-shot hour {hour} is not a scheduled slot of {key}", lottery=key)
        one_shot.append(OneShotRule(
            hour=hour,
            offset_minutes=int(item.get('offset_minutes', 0)),
            tolerance_minutes=int(item.get('tolerance_minutes', 10)),
            weekdays=_weekdays(item.get('weekdays')),
        ))

    conditional = tuple(
        ConditionalCoreRule(
            hour=_require_hhmm(item.get('hour'), f"{key}.conditional_core"),
            effective_from=str(item.get('effective_from')),
            weekdays=_weekdays(item.get('weekdays')),
        )
        for item in raw.get('conditional_core', [])
    )

    fallback = raw.get('fallback') or {}

    sources = tuple(raw.get('sources', []))
    env = os.environ if environ is None else environ
    override = str(env.get(f"LOTTERY_SOURCES_{key}", '') or '').strip()
    if override:
        sources = tuple(s.strip() for s in override.split(',') if s.strip())
        logger.info(f"[CONFIG] {key}: {len(sources)} source id(s) from environment")

    return LotteryConfig(
        key=key,
        display_name=raw.get('display_name', key),
        uf=raw.get('uf', ''),
        slots=tuple(slots),
        sources=sources,
        calendar=calendar,
        hour_policy=policy,
        candidate_offsets=tuple(int(o) for o in raw.get('candidate_offsets', [0])),
        no_draw_statuses=tuple(str(s).lower() for s in raw.get('no_draw_statuses', [])),
        fallback_core=tuple(fallback.get('core', [])),
        fallback_optional=tuple(fallback.get('optional', [])),
        fixed_tiers=fixed_tiers,
        off_weekdays=tuple(int(d) for d in raw.get('off_weekdays', [])),
        conditional_core=conditional,
        one_shot=tuple(one_shot),
    )


def load_lotteries(path: Optional[str] = None, settings: Optional[Settings] = None,
                   environ: Optional[Dict[str, str]] = None) -> Dict[str, LotteryConfig]:
    """
    Loads every lottery schedule table.

    Args:
        path: JSON file (defaults to settings.lotteries_file)

    Returns:
        Dict mapping lottery key to LotteryConfig
    """
    settings = settings or Settings()
    path = path or settings.resolve(settings.lotteries_file)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read lottery configuration {path}: {e}", path=path) from e

    return {key.upper(): parse_lottery(key, table, environ) for key, table in raw.items()}


def get_lottery(lotteries: Dict[str, LotteryConfig], key: str) -> LotteryConfig:
    """Looks up a lottery by key, raising ValidationError when unknown."""
    normalized = str(key or '').strip().upper()
    if normalized not in lotteries:
        raise ValidationError(f"Unknown lottery: {key!r}", code="UNKNOWN_LOTTERY",
                              lottery=key, known=sorted(lotteries))
    return lotteries[normalized]
