from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from medsync import ics_codec
from medsync.models import (
    ACTION_CREATE,
    RESOURCE_EVENT,
    CalendarConfig,
    CalendarEvent,
    ImportResult,
    parse_iso_datetime,
)
from medsync.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "ics_import"
EXPORT_UID_PREFIX = "evento-"


def resolve_timezone(name: str) -> tzinfo:
    if name.strip().upper() in {"UTC", "Z"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown calendar timezone %r, using UTC", name)
        return timezone.utc


def _dedup_key(title: str, start: datetime | None) -> tuple[str, datetime | None]:
    return title.strip().casefold(), start


class ICSManager:
    """Imports ICS files into the events mirror and exports it back out."""

    def __init__(self, orchestrator: SyncOrchestrator, config: CalendarConfig | None = None) -> None:
        self.orchestrator = orchestrator
        self.config = config or CalendarConfig()

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.config.timezone)

    def _existing_keys(self) -> set[tuple[str, datetime | None]]:
        keys: set[tuple[str, datetime | None]] = set()
        for record in self.orchestrator.mirror(RESOURCE_EVENT) or []:
            if not isinstance(record, dict):
                continue
            try:
                start = parse_iso_datetime(record.get("start_date"))
            except (AttributeError, TypeError, ValueError):
                continue
            keys.add(_dedup_key(str(record.get("title", "") or ""), start))
        return keys

    @staticmethod
    def _import_row(event: CalendarEvent) -> dict[str, Any]:
        row = event.to_record()
        # Remote ids are client-generated UUIDs; the file's UID is kept for reference.
        row.pop("id", None)
        row["external_id"] = event.uid
        row["external_source"] = IMPORT_SOURCE
        return row

    async def import_calendar(self, text: str | bytes) -> ImportResult:
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        try:
            events = ics_codec.parse(text, tz=self.tz)
        except ics_codec.ICSFormatError as exc:
            logger.warning("ICS import rejected: %s", exc)
            return ImportResult(ok=False, error=str(exc))
        if not events:
            return ImportResult(ok=False, error="no events found")

        seen = self._existing_keys()
        result = ImportResult(ok=True)
        for event in events:
            key = _dedup_key(event.title, event.start)
            if key in seen:
                result.duplicates += 1
                continue
            seen.add(key)
            outcome = await self.orchestrator.mutate(ACTION_CREATE, RESOURCE_EVENT, self._import_row(event))
            if not outcome.ok:
                result.failed += 1
                logger.warning("Could not import %r: %s", event.title, outcome.error)
                continue
            result.imported += 1
            if outcome.queued:
                result.queued += 1

        if result.failed:
            result.ok = False
            result.error = f"{result.failed} event(s) could not be imported"
        logger.info(
            "ICS import: %s imported (%s queued), %s duplicates, %s failed",
            result.imported,
            result.queued,
            result.duplicates,
            result.failed,
        )
        return result

    def _export_event(self, record: dict[str, Any]) -> CalendarEvent | None:
        try:
            event = CalendarEvent.from_record(record)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.debug("Skipping event %r on export: %s", record.get("id"), exc)
            return None
        event.uid = f"{EXPORT_UID_PREFIX}{event.uid}" if event.uid else ""
        return event

    async def export_calendar(self, now: datetime | None = None, window_days: int | None = None) -> str:
        if self.orchestrator.monitor.is_online:
            await self.orchestrator.pull(RESOURCE_EVENT)
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(days=window_days or self.config.export_window_days)

        events: list[CalendarEvent] = []
        for record in self.orchestrator.mirror(RESOURCE_EVENT) or []:
            if not isinstance(record, dict):
                continue
            event = self._export_event(record)
            if event is not None and now <= event.start <= horizon:
                events.append(event)
        events.sort(key=lambda item: item.start)
        return ics_codec.serialize(
            events,
            prodid=self.config.prodid,
            calendar_name=self.config.calendar_name,
            timezone_name=self.config.timezone,
            uid_domain=self.config.uid_domain,
            tz=self.tz,
            dtstamp=now,
        )
