"""
Normalization of provider records: close-hour text into canonical hour
buckets, raw prize values into derived fields, and deterministic draw ids.
"""

import math
import re
from typing import Dict, List, Optional, Tuple

from drawcapture.config import HourPolicy
from drawcapture.date_utils import format_hhmm

MAX_PRIZES = 15

GROUP_TO_ANIMAL = {
    1: "Avestruz", 2: "Águia", 3: "Burro", 4: "Borboleta", 5: "Cachorro",
    6: "Cabra", 7: "Carneiro", 8: "Camelo", 9: "Cobra", 10: "Coelho",
    11: "Cavalo", 12: "Elefante", 13: "Galo", 14: "Gato", 15: "Jacaré",
    16: "Leão", 17: "Macaco", 18: "Porco", 19: "Pavão", 20: "Peru",
    21: "Touro", 22: "Tigre", 23: "Urso", 24: "Veado", 25: "Vaca",
}

_HOUR_RE = re.compile(r'^(\d{1,2})(?:\s*[:hH]\s*(\d{1,2})?)?$')


def normalize_hhmm(value) -> Optional[str]:
    """
    Accepts "10", "10h", "10:9", "10:09", "10h30" and returns "HH:MM".

    Returns:
        Normalized string, or None when the value is not a valid time
    """
    text = str(value or '').strip()
    if not text:
        return None
    match = _HOUR_RE.match(text)
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def canonical_bucket(value, policy: HourPolicy) -> Tuple[Optional[str], Optional[str]]:
    """
    Maps a provider close hour to (bucket, raw).

    raw is only returned when the minute is a genuine alternate minute;
    marker minutes and exact hours yield raw None.
    """
    hhmm = normalize_hhmm(value)
    if hhmm is None:
        return None, None
    if policy.mode == 'raw':
        return hhmm, None

    hours, minutes = int(hhmm[:2]), int(hhmm[3:])
    if minutes == 0 or minutes in policy.marker_minutes:
        return f"{hours:02d}:00", None
    if policy.jitter_tolerance_minutes and minutes >= 60 - policy.jitter_tolerance_minutes and hours < 23:
        return f"{hours + 1:02d}:00", hhmm
    return f"{hours:02d}:00", hhmm


def candidate_hours(hour: str, offsets) -> List[str]:
    """Close-hour variants around a slot hour, in offset order, deduplicated."""
    base = int(hour[:2]) * 60 + int(hour[3:])
    seen = []
    for offset in offsets or (0,):
        value = format_hhmm(base + int(offset))
        if value not in seen:
            seen.append(value)
    return seen


def _prize_text(value) -> str:
    if value is None:
        return ''
    text = str(value).strip()
    if text.lower() in ('null', 'none', '-', '--'):
        return ''
    return text


def extract_prizes(record: Dict) -> Dict[int, str]:
    """Non-empty prize_1..prize_15 values keyed by position."""
    prizes = {}
    for position in range(1, MAX_PRIZES + 1):
        text = _prize_text(record.get(f"prize_{position}"))
        if text:
            prizes[position] = text
    return prizes


def count_prizes(record: Dict) -> int:
    return len(extract_prizes(record))


def normalize_prize(raw: str) -> Dict:
    """
    Derives the 4/3/2-digit suffixes, group and animal from a raw prize.

    Args:
        raw: Provider value, e.g. "1234" or "0789"

    Returns:
        Dict with raw_value, last4, last3, last2, group_index, animal_label
    """
    raw_value = str(raw).strip()
    digits = re.sub(r'\D', '', raw_value)
    if not digits:
        return {
            'raw_value': raw_value, 'last4': None, 'last3': None,
            'last2': None, 'group_index': None, 'animal_label': None,
        }

    last4 = digits[-4:].zfill(4)
    last2 = last4[-2:]
    tens = int(last2)
    group = 25 if tens == 0 else math.ceil(tens / 4)
    return {
        'raw_value': raw_value,
        'last4': last4,
        'last3': last4[-3:],
        'last2': last2,
        'group_index': group,
        'animal_label': GROUP_TO_ANIMAL[group],
    }


def safe_id_part(value) -> str:
    text = str(value if value is not None else '').strip()
    if not text:
        return 'NA'
    text = re.sub(r'\s+', '_', text)
    text = re.sub(r'[/\\?#\[\]]', '_', text)
    text = re.sub(r':+', '-', text)
    return text[:80]


def build_draw_id(lottery_key: str, date: str, hour_bucket: str, source_id: Optional[str]) -> str:
    """Deterministic id: LOTTERY__YYYY-MM-DD__HH-00__source."""
    return "__".join([
        safe_id_part(lottery_key.upper()),
        date,
        safe_id_part(hour_bucket),
        safe_id_part(source_id),
    ])


def pick_source_id(record: Dict) -> Optional[str]:
    for field in ('lottery_id', 'lotteryId', 'lottery_uuid', 'lottery'):
        value = str(record.get(field) or '').strip()
        if value:
            return value
    return None
