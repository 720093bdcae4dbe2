from __future__ import annotations

import logging
from typing import Any, Callable

from medsync.models import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_UPDATE,
    RESOURCE_CALENDAR,
    RESOURCE_EVENT,
    RESOURCE_FINANCIAL_EVENT,
    RESOURCE_PROFILE,
    PendingAction,
)
from medsync.remote_store import RemoteStore

logger = logging.getLogger(__name__)

OWNER_COLUMN = "user_id"
KEY_COLUMN = "id"


class DispatchError(Exception):
    pass


class UnknownResourceError(DispatchError):
    pass


class UnsupportedActionError(DispatchError):
    pass


class MalformedActionError(DispatchError):
    pass


class ResourceHandler:
    """Replays one resource kind against its remote table.

    UPDATE and DELETE are always filtered on both the row id and the owning
    user so a queued action can never touch another tenant's rows.
    """

    collection = True

    def __init__(self, table: str, *, order: str | None = None) -> None:
        self.table = table
        self.order = order

    @property
    def mirror_key(self) -> str:
        return self.table

    def _record_id(self, action: PendingAction) -> Any:
        record_id = action.data.get(KEY_COLUMN)
        if record_id in (None, ""):
            raise MalformedActionError(f"{action.describe()} requires data.{KEY_COLUMN}")
        return record_id

    async def execute(self, remote: RemoteStore, action: PendingAction, user_id: str) -> dict[str, Any] | None:
        if action.type == ACTION_CREATE:
            return await remote.insert(self.table, {**action.data, OWNER_COLUMN: user_id})
        if action.type == ACTION_UPDATE:
            changes = {key: value for key, value in action.data.items() if key != OWNER_COLUMN}
            rows = await remote.update(
                self.table,
                changes,
                {KEY_COLUMN: self._record_id(action), OWNER_COLUMN: user_id},
            )
            return rows[0] if rows else None
        if action.type == ACTION_DELETE:
            await remote.delete(self.table, {KEY_COLUMN: self._record_id(action), OWNER_COLUMN: user_id})
            return None
        raise UnsupportedActionError(f"action type not supported for {self.table}: {action.type}")


class ProfileHandler(ResourceHandler):
    # One profile row per user, keyed by the owner column itself.
    collection = False

    async def execute(self, remote: RemoteStore, action: PendingAction, user_id: str) -> dict[str, Any] | None:
        if action.type != ACTION_UPDATE:
            raise UnsupportedActionError(f"action type not supported for {self.table}: {action.type}")
        changes = {key: value for key, value in action.data.items() if key != OWNER_COLUMN}
        rows = await remote.update(self.table, changes, {OWNER_COLUMN: user_id})
        return rows[0] if rows else None


def default_handlers() -> dict[str, ResourceHandler]:
    return {
        RESOURCE_EVENT: ResourceHandler("events", order="start_date.asc"),
        RESOURCE_CALENDAR: ResourceHandler("calendars"),
        RESOURCE_FINANCIAL_EVENT: ResourceHandler("financial_events", order="date.asc"),
        RESOURCE_PROFILE: ProfileHandler("profiles"),
    }


class ActionDispatcher:
    def __init__(
        self,
        remote: RemoteStore,
        user_id: str | Callable[[], str | None],
        handlers: dict[str, ResourceHandler] | None = None,
    ) -> None:
        self.remote = remote
        self._user_id = user_id
        self._handlers: dict[str, ResourceHandler] = {}
        for resource, handler in (default_handlers() if handlers is None else handlers).items():
            self.register(resource, handler)

    def register(self, resource: str, handler: ResourceHandler) -> None:
        self._handlers[resource.strip().lower()] = handler

    def resources(self) -> list[str]:
        return sorted(self._handlers)

    def handler_for(self, resource: str) -> ResourceHandler:
        handler = self._handlers.get(str(resource or "").strip().lower())
        if handler is None:
            raise UnknownResourceError(f"unsupported resource kind: {resource!r}")
        return handler

    def current_user_id(self) -> str:
        user_id = self._user_id() if callable(self._user_id) else self._user_id
        if not user_id:
            raise DispatchError("no authenticated user")
        return str(user_id)

    async def execute(self, action: PendingAction) -> dict[str, Any] | None:
        handler = self.handler_for(action.resource)
        user_id = self.current_user_id()
        logger.debug("Executing %s %s (%s)", action.type, action.resource, action.id)
        return await handler.execute(self.remote, action, user_id)
