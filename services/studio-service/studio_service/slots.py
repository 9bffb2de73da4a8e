from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .config import OpeningHours


@dataclass(frozen=True)
class Slot:
    room_id: str
    day: date
    start: time
    end: time


def fmt_time(t: time) -> str:
    return t.strftime("%H:%M")


def hourly_slots(room_id: str, day: date, hours: OpeningHours) -> list[Slot]:
    slots = []
    for hour in range(hours.start, hours.end):
        start = datetime.combine(day, time(hour, 0))
        slots.append(Slot(room_id, day, start.time(), (start + timedelta(hours=1)).time()))
    return slots


def duration_slots(room_id: str, day: date, start: time, end: time, minutes: int) -> list[Slot]:
    """
    Fixed-length slots from `start`, truncated so that no slot runs past `end`.
    """
    if minutes <= 0:
        raise ValueError("slot duration must be positive")

    cursor = datetime.combine(day, start)
    limit = datetime.combine(day, end)
    step = timedelta(minutes=minutes)

    slots = []
    while cursor + step <= limit:
        nxt = cursor + step
        slots.append(Slot(room_id, day, cursor.time(), nxt.time()))
        cursor = nxt
    return slots
