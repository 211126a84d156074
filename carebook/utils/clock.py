from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_hhmm(value: str) -> time:
    """Parse an "HH:MM" slot boundary"""
    return datetime.strptime(value, "%H:%M").time()


def slot_end_datetime(slot_date: date, end_time: str) -> datetime:
    """Combine a slot's date and "HH:MM" end time into a naive UTC datetime"""
    return datetime.combine(slot_date, parse_hhmm(end_time))
