from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any


ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"
ACTION_TYPES = (ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE)

RESOURCE_EVENT = "event"
RESOURCE_CALENDAR = "calendar"
RESOURCE_FINANCIAL_EVENT = "financial_event"
RESOURCE_PROFILE = "profile"

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_AGE_DAYS = 30
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


def now_ms() -> int:
    return int(time.time() * 1000)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def ms_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def date_to_datetime(value: datetime | date | None, tz: Any = timezone.utc) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, dt_time.min, tzinfo=tz)


@dataclass
class RemoteConfig:
    base_url: str = ""
    api_key: str = ""
    access_token: str = ""
    user_id: str = ""
    timeout_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip().rstrip("/"),
            api_key=str(data.get("api_key", "")).strip(),
            access_token=str(data.get("access_token", "")).strip(),
            user_id=str(data.get("user_id", "")).strip(),
            timeout_seconds=max(1.0, float(data.get("timeout_seconds", 30.0))),
        )


@dataclass
class StorageConfig:
    path: str = "data/offline.db"
    max_age_days: int = DEFAULT_MAX_AGE_DAYS
    quota_bytes: int = DEFAULT_QUOTA_BYTES

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            path=str(data.get("path", "data/offline.db")).strip() or "data/offline.db",
            max_age_days=max(1, int(data.get("max_age_days", DEFAULT_MAX_AGE_DAYS))),
            quota_bytes=max(1024, int(data.get("quota_bytes", DEFAULT_QUOTA_BYTES))),
        )

    @property
    def max_age_ms(self) -> int:
        return self.max_age_days * DAY_MS


@dataclass
class SyncConfig:
    retry_interval_seconds: int = 300
    auto_sync_delay_seconds: float = 1.0
    replay_delay_seconds: float = 0.0
    error_summary_limit: int = 2
    start_online: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            retry_interval_seconds=int(data.get("retry_interval_seconds", 300)),
            auto_sync_delay_seconds=max(0.0, float(data.get("auto_sync_delay_seconds", 1.0))),
            replay_delay_seconds=max(0.0, float(data.get("replay_delay_seconds", 0.0))),
            error_summary_limit=max(1, int(data.get("error_summary_limit", 2))),
            start_online=bool(data.get("start_online", True)),
        )


@dataclass
class CalendarConfig:
    timezone: str = "America/Sao_Paulo"
    prodid: str = "-//MedSync//Agenda Medica//PT"
    calendar_name: str = "Agenda Médica"
    uid_domain: str = "medsync.local"
    export_window_days: int = 180

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "America/Sao_Paulo")).strip() or "America/Sao_Paulo",
            prodid=str(data.get("prodid", "-//MedSync//Agenda Medica//PT")).strip()
            or "-//MedSync//Agenda Medica//PT",
            calendar_name=str(data.get("calendar_name", "Agenda Médica")).strip() or "Agenda Médica",
            uid_domain=str(data.get("uid_domain", "medsync.local")).strip() or "medsync.local",
            export_window_days=max(1, int(data.get("export_window_days", 180))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            storage=StorageConfig.from_dict(data.get("storage")),
            sync=SyncConfig.from_dict(data.get("sync")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class StoredItem:
    data: Any
    timestamp: int
    synced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "timestamp": self.timestamp, "synced": self.synced}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StoredItem":
        if not isinstance(payload, dict) or "data" not in payload:
            raise ValueError("stored item must be an object with a data field")
        return cls(
            data=payload["data"],
            timestamp=int(payload.get("timestamp", 0)),
            synced=bool(payload.get("synced", False)),
        )


@dataclass
class PendingAction:
    id: str
    type: str
    resource: str
    data: dict[str, Any]
    timestamp: int
    attempts: int = 0
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingAction":
        if not isinstance(payload, dict):
            raise ValueError("pending action must be an object")
        action_id = str(payload.get("id", "")).strip()
        if not action_id:
            raise ValueError("pending action id missing")
        action_type = str(payload.get("type", "")).strip().upper()
        if action_type not in ACTION_TYPES:
            raise ValueError(f"pending action type not supported: {action_type!r}")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("pending action data must be an object")
        return cls(
            id=action_id,
            type=action_type,
            resource=str(payload.get("resource", "")).strip(),
            data=data,
            timestamp=int(payload.get("timestamp", 0)),
            attempts=int(payload.get("attempts", 0) or 0),
            last_error=str(payload.get("last_error", "") or ""),
        )

    def describe(self) -> str:
        return f"{self.type} {self.resource}"


@dataclass
class SyncStatus:
    is_online: bool
    is_syncing: bool = False
    last_sync: int | None = None
    pending_actions: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_at"] = serialize_datetime(ms_to_datetime(self.last_sync))
        return payload


@dataclass
class StorageStats:
    size_bytes: int = 0
    item_count: int = 0
    pending_actions: int = 0
    last_sync: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["size"] = format_bytes(self.size_bytes)
        return payload


@dataclass
class DrainResult:
    ok: bool
    synced: int
    failed: int
    errors: list[str]
    duration_ms: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "synced": self.synced,
            "failed": self.failed,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class MutationResult:
    ok: bool
    queued: bool = False
    action_id: str | None = None
    record: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportResult:
    ok: bool
    imported: int = 0
    duplicates: int = 0
    failed: int = 0
    queued: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    uid: str
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    status: str = "confirmed"
    all_day: bool = False
    event_type: str = "other"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.uid,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_date": serialize_datetime(self.start),
            "end_date": serialize_datetime(self.end),
            "event_type": self.event_type,
            "all_day": self.all_day,
            "status": self.status,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CalendarEvent":
        start = parse_iso_datetime(record.get("start_date"))
        if start is None:
            raise ValueError("event record has no start_date")
        end = parse_iso_datetime(record.get("end_date")) or start + timedelta(hours=1)
        return cls(
            uid=str(record.get("id", "") or ""),
            title=str(record.get("title", "") or ""),
            start=start,
            end=end,
            description=str(record.get("description", "") or ""),
            location=str(record.get("location", "") or ""),
            status=str(record.get("status", "") or "confirmed"),
            all_day=bool(record.get("all_day", False)),
            event_type=str(record.get("event_type", "") or "other"),
        )


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
