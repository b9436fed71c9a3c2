"""
Per-day capture progress, one SlotState per scheduled hour.

A slot moves pending -> attempted* -> done; done is terminal for the date.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from drawcapture.state_store import StateStore

NA_NOT_APPLICABLE = "NOT_APPLICABLE"
NA_OFF_WEEKDAY = "OFF_WEEKDAY"
NA_HOLIDAY = "HOLIDAY_NO_DRAW"
NA_NO_DRAW_FOR_SLOT = "NO_DRAW_FOR_SLOT"

OUTCOME_CAPTURED = "captured"
OUTCOME_ALREADY_HAD = "already_had"
OUTCOME_ONE_SHOT_FINAL = "one_shot_final"


@dataclass
class SlotState:
    done: bool = False
    tries: int = 0
    last_attempt_at: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None
    not_applicable: bool = False
    not_applicable_reason: Optional[str] = None
    last_tried_variants: List[str] = field(default_factory=list)
    outcome: Optional[str] = None
    alert_missed_window: bool = False
    alert_critical: bool = False

    @classmethod
    def from_dict(cls, raw: Any) -> 'SlotState':
        # Older state files stored a bare boolean per slot
        if isinstance(raw, bool):
            return cls(done=raw)
        if not isinstance(raw, dict):
            return cls()
        known = {k: raw[k] for k in cls.__dataclass_fields__ if k in raw}
        state = cls(**known)
        state.tries = int(state.tries or 0)
        state.last_tried_variants = list(state.last_tried_variants or [])
        return state

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def mark_not_applicable(self, reason: str) -> None:
        self.done = True
        self.not_applicable = True
        self.not_applicable_reason = reason

    def record_attempt(self, at: str, variants: Iterable[str]) -> None:
        self.tries += 1
        self.last_attempt_at = at
        self.last_tried_variants = list(variants)

    def record_result(self, result: Dict[str, Any]) -> None:
        self.last_result = result

    def mark_done(self, outcome: str) -> None:
        self.done = True
        self.outcome = outcome


class DayState:
    """ScheduleState for one (lottery, date), persisted through a StateStore."""

    def __init__(self, store: StateStore, lottery_key: str, date: str, slots: Dict[str, SlotState],
                 created_at: Optional[str] = None):
        self.store = store
        self.lottery_key = lottery_key
        self.date = date
        self.slots = slots
        self.created_at = created_at

    @staticmethod
    def key_for(lottery_key: str, date: str) -> str:
        return f"state:{lottery_key}:{date}"

    @property
    def key(self) -> str:
        return self.key_for(self.lottery_key, self.date)

    @classmethod
    def load(cls, store: StateStore, lottery_key: str, date: str, hours: Iterable[str],
             now_iso: Optional[str] = None) -> 'DayState':
        """
        Loads the day's state, creating empty slots for any configured hour
        that is missing (first run of the day or a newly added slot).
        """
        raw = store.get(cls.key_for(lottery_key, date)) or {}
        raw_slots = raw.get('slots', {}) if isinstance(raw, dict) else {}
        slots = {hour: SlotState.from_dict(raw_slots.get(hour)) for hour in hours}
        created_at = raw.get('created_at') if raw else now_iso
        if not raw:
            logger.info(f"📄 New schedule state for {lottery_key} {date}")
        return cls(store, lottery_key, date, slots, created_at)

    def slot(self, hour: str) -> SlotState:
        if hour not in self.slots:
            self.slots[hour] = SlotState()
        return self.slots[hour]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lottery': self.lottery_key,
            'date': self.date,
            'created_at': self.created_at,
            'slots': {hour: state.to_dict() for hour, state in self.slots.items()},
        }

    def save(self) -> None:
        self.store.set(self.key, self.to_dict())

    def all_done(self, hours: Iterable[str]) -> bool:
        return all(self.slot(h).done for h in hours)

    def summary(self) -> Dict[str, List[str]]:
        done = [h for h, s in self.slots.items() if s.done and not s.not_applicable]
        na = [h for h, s in self.slots.items() if s.not_applicable]
        pending = [h for h, s in self.slots.items() if not s.done]
        return {'done': done, 'not_applicable': na, 'pending': pending}
