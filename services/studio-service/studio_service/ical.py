from datetime import datetime, timedelta, timezone

PRODID = "-//Photo Studio//Booking System//EN"


def _ics_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def build_calendar(snapshot: dict, *, clock, stamp: datetime | None = None) -> str:
    """
    iCalendar text with one VEVENT per booked item of an order snapshot.

    Item times are business-local wall times; they are converted to UTC here so
    the attachment lands at the right hour whatever the reader's timezone.
    """
    stamp = stamp or clock.utcnow()
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", f"PRODID:{PRODID}", "CALSCALE:GREGORIAN", "METHOD:PUBLISH"]

    for item in snapshot["items"]:
        if item["status"] != "booked":
            continue
        start = clock.localize(item["date"], item["start_time"])
        end = clock.localize(item["date"], item["end_time"])
        if end <= start:
            # slot ending at midnight
            end = clock.localize(item["date"] + timedelta(days=1), item["end_time"])

        summary = f"Photo Studio Booking - {item.get('room_name') or item['room_id']}"
        description = f"Booking confirmation for {snapshot['customer_name']}\nCheck-in code: {item.get('checkin_code') or '-'}"

        lines += [
            "BEGIN:VEVENT",
            f"UID:{item['id']}@photostudio",
            f"DTSTAMP:{_ics_utc(stamp)}",
            f"DTSTART:{_ics_utc(start)}",
            f"DTEND:{_ics_utc(end)}",
            f"SUMMARY:{_escape(summary)}",
            f"DESCRIPTION:{_escape(description)}",
            "LOCATION:Photo Studio",
            "STATUS:CONFIRMED",
            "END:VEVENT",
        ]

    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"
