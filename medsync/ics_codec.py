from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.parser import Contentlines

from medsync.models import CalendarEvent

logger = logging.getLogger(__name__)

DEFAULT_PRODID = "-//MedSync//Agenda Medica//PT"
DEFAULT_CALENDAR_NAME = "Agenda Médica"
DEFAULT_UID_DOMAIN = "medsync.local"

# Checked in order; the first matching rule wins.
EVENT_TYPE_RULES = (
    ("shift", ("plantão", "plantao")),
    ("appointment", ("consulta", "atendimento")),
    ("procedure", ("cirurgia", "procedimento")),
    ("meeting", ("reunião", "reuniao")),
    ("class", ("aula", "curso")),
)
DEFAULT_EVENT_TYPE = "other"
EVENT_TYPES = tuple(tag for tag, _ in EVENT_TYPE_RULES) + (DEFAULT_EVENT_TYPE,)


class ICSFormatError(ValueError):
    pass


def classify_event_type(title: str) -> str:
    text = str(title or "").casefold()
    for tag, keywords in EVENT_TYPE_RULES:
        if any(keyword in text for keyword in keywords):
            return tag
    return DEFAULT_EVENT_TYPE


def parse_ics_datetime(
    token: str, tz: tzinfo = timezone.utc, now: datetime | None = None
) -> tuple[datetime, bool]:
    """Return ``(moment, all_day)`` for a DTSTART/DTEND value.

    ``YYYYMMDD`` is an all-day date at local midnight, ``YYYYMMDDTHHMMSS`` a
    local time (UTC when suffixed with ``Z``). Anything else yields ``now``.
    """
    value = token.strip()
    try:
        if len(value) == 8:
            return datetime.strptime(value, "%Y%m%d").replace(tzinfo=tz), True
        if len(value) >= 15:
            parsed = datetime.strptime(value[:15], "%Y%m%dT%H%M%S")
            zone = timezone.utc if value.upper().endswith("Z") else tz
            return parsed.replace(tzinfo=zone), False
    except ValueError:
        pass
    logger.debug("Unparsable ICS date %r, using current time", token)
    return (now or datetime.now(timezone.utc)), False


def _fallback_uid(title: str, start: datetime) -> str:
    digest = hashlib.sha1(f"{title}|{start.isoformat()}".encode("utf-8")).hexdigest()  # nosec B324
    return f"ics-{digest[:16]}"


def _placeable_lines(lines: Iterable[Any]) -> str:
    """Keep the content lines icalendar can place in a component tree.

    Unreadable lines, properties outside any component or directly on the
    calendar, and END lines that close nothing open are dropped. An END that
    closes an outer component also closes the ones left open inside it.
    """
    kept: list[str] = []
    stack: list[str] = []
    for line in lines:
        try:
            name, _, value = line.parts()
        except ValueError:
            logger.debug("Skipping unreadable ICS line %r", str(line)[:80])
            continue
        name = name.upper()
        component = value.strip().upper()
        if name == "BEGIN":
            stack.append(component)
        elif name == "END":
            if component not in stack:
                logger.debug("Skipping stray END:%s", component)
                continue
            while stack[-1] != component:
                kept.append(f"END:{stack.pop()}")
            stack.pop()
            kept.append(f"END:{component}")
            continue
        elif not stack or stack[-1] == "VCALENDAR":
            continue
        kept.append(str(line))
    return "\r\n".join(kept) + "\r\n"


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _text(vevent: Any, name: str) -> str:
    value = _first(vevent.get(name))
    return "" if value is None else str(value)


def _date_token(vevent: Any, name: str) -> str | None:
    value = _first(vevent.get(name))
    if value is not None:
        return value.to_ical().decode("utf-8")
    # icalendar drops values it cannot decode and records them as errors.
    if any(str(error_name).upper() == name for error_name, _ in getattr(vevent, "errors", ())):
        return ""
    return None


def _build_event(vevent: Any, tz: tzinfo, now: datetime | None) -> CalendarEvent | None:
    title = _text(vevent, "SUMMARY").strip()
    raw_start = _date_token(vevent, "DTSTART")
    if not title or raw_start is None:
        logger.debug("Skipping VEVENT without title or start (uid=%r)", _text(vevent, "UID"))
        return None
    start, all_day = parse_ics_datetime(raw_start, tz, now)
    end: datetime | None = None
    raw_end = _date_token(vevent, "DTEND")
    if raw_end:
        end, _ = parse_ics_datetime(raw_end, tz, now)
    if end is None or end <= start:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    return CalendarEvent(
        uid=_text(vevent, "UID").strip() or _fallback_uid(title, start),
        title=title,
        start=start,
        end=end,
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION").strip(),
        status=_text(vevent, "STATUS").strip().lower() or "confirmed",
        all_day=all_day,
        event_type=classify_event_type(title),
    )


def parse(text: str, tz: tzinfo = timezone.utc, now: datetime | None = None) -> list[CalendarEvent]:
    lines = [line for line in Contentlines.from_ical(text or "") if line]
    markers = {str(line).strip().upper() for line in lines}
    if "BEGIN:VCALENDAR" not in markers or "END:VCALENDAR" not in markers:
        raise ICSFormatError("document is not an iCalendar file (BEGIN/END:VCALENDAR missing)")

    try:
        calendars = ICalendar.from_ical(_placeable_lines(lines), multiple=True)
    except ValueError as exc:
        raise ICSFormatError(f"unreadable iCalendar document: {exc}") from exc

    events: list[CalendarEvent] = []
    for calendar in calendars:
        # walk() only yields VEVENTs, so VALARM descriptions never leak in.
        for vevent in calendar.walk("VEVENT"):
            event = _build_event(vevent, tz, now)
            if event is not None:
                events.append(event)
    return events


def export_uid(uid: str, domain: str = DEFAULT_UID_DOMAIN) -> str:
    if "@" in uid:
        return uid
    return f"{uid}@{domain}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def _as_local_date(value: datetime, tz: tzinfo) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(tz).date()


def serialize(
    events: Iterable[CalendarEvent],
    *,
    prodid: str = DEFAULT_PRODID,
    calendar_name: str = DEFAULT_CALENDAR_NAME,
    timezone_name: str = "UTC",
    uid_domain: str = DEFAULT_UID_DOMAIN,
    tz: tzinfo = timezone.utc,
    dtstamp: datetime | None = None,
) -> str:
    stamp = _as_utc(dtstamp or datetime.now(timezone.utc))
    calendar = ICalendar()
    calendar.add("PRODID", prodid)
    calendar.add("VERSION", "2.0")
    calendar.add("CALSCALE", "GREGORIAN")
    calendar.add("METHOD", "PUBLISH")
    calendar.add("X-WR-CALNAME", calendar_name)
    calendar.add("X-WR-TIMEZONE", timezone_name)
    for event in events:
        vevent = ICEvent()
        vevent.add("UID", export_uid(event.uid or _fallback_uid(event.title, event.start), uid_domain))
        vevent.add("DTSTAMP", stamp)
        if event.all_day:
            vevent.add("DTSTART", _as_local_date(event.start, tz))
            vevent.add("DTEND", _as_local_date(event.end, tz))
        else:
            vevent.add("DTSTART", _as_utc(event.start))
            vevent.add("DTEND", _as_utc(event.end))
        vevent.add("SUMMARY", event.title)
        if event.description:
            vevent.add("DESCRIPTION", event.description)
        if event.location:
            vevent.add("LOCATION", event.location)
        vevent.add("STATUS", (event.status or "confirmed").upper())
        vevent.add("SEQUENCE", 0)
        calendar.add_component(vevent)
    return calendar.to_ical().decode("utf-8")
