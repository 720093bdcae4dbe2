from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from medsync.connectivity import ConnectivityMonitor
from medsync.dispatcher import OWNER_COLUMN, ActionDispatcher, DispatchError, ResourceHandler
from medsync.local_store import LocalStore
from medsync.models import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_TYPES,
    DrainResult,
    MutationResult,
    PendingAction,
    SyncConfig,
    SyncStatus,
    now_ms,
)

logger = logging.getLogger(__name__)

NO_CONNECTION = "no connection"

StatusListener = Callable[[SyncStatus], Any]


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _apply_record(records: list[dict[str, Any]], action_type: str, data: dict[str, Any]) -> list[dict[str, Any]]:
    record_id = data.get("id")
    if action_type == ACTION_DELETE:
        return [record for record in records if record.get("id") != record_id]
    updated = list(records)
    for index, record in enumerate(updated):
        if record_id is not None and record.get("id") == record_id:
            updated[index] = {**record, **data}
            return updated
    updated.append(dict(data))
    return updated


class SyncOrchestrator:
    """Replays the pending action log against the remote store and tracks SyncStatus.

    One drain runs at a time. A drain requested while another is in flight
    joins the in-flight one; it does not start a second pass.
    """

    def __init__(
        self,
        store: LocalStore,
        dispatcher: ActionDispatcher,
        monitor: ConnectivityMonitor,
        config: SyncConfig | None = None,
        *,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.config = config or SyncConfig()
        self._clock = clock or now_ms
        self._sleep = sleep or asyncio.sleep
        self._is_syncing = False
        self._error: str | None = None
        self._last_sync: int | None = store.stats().last_sync
        self._loop: asyncio.AbstractEventLoop | None = None
        self._drain_task: asyncio.Task[DrainResult] | None = None
        self._auto_sync_task: asyncio.Task[None] | None = None
        self._listeners: list[StatusListener] = []
        self.last_result: DrainResult | None = None
        self._unsubscribe = monitor.subscribe(self._on_connectivity_change)

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.monitor.is_online,
            is_syncing=self._is_syncing,
            last_sync=self._last_sync,
            pending_actions=self.store.pending_count(),
            error=self._error,
        )

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Sync status listener %r failed", listener)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._error = None
            if self.store.pending_count() > 0:
                self.request_drain("reconnect")
        self._notify()

    def close(self) -> None:
        self._unsubscribe()
        if self._auto_sync_task is not None and not self._auto_sync_task.done():
            self._auto_sync_task.cancel()

    # Draining.

    def _running_loop(self) -> asyncio.AbstractEventLoop | None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return self._loop

    def request_drain(self, trigger: str = "manual") -> asyncio.Task[DrainResult] | None:
        """Start a drain, or join the one in flight.

        Called off the loop (e.g. ``set_online`` from another thread), the
        request is handed to the last loop this orchestrator ran on and
        ``None`` is returned.
        """
        loop = self._running_loop()
        if loop is None:
            bound = self._loop
            if bound is None or bound.is_closed():
                logger.warning("No event loop bound, dropping %s drain request", trigger)
                return None
            bound.call_soon_threadsafe(self.request_drain, trigger)
            return None
        if self._drain_task is not None and not self._drain_task.done():
            logger.debug("Drain already in flight, coalescing %s request", trigger)
            return self._drain_task
        self._drain_task = loop.create_task(self._run_drain(trigger))
        return self._drain_task

    async def drain(self, trigger: str = "manual") -> bool:
        task = self.request_drain(trigger)
        if task is None:
            return False
        result = await asyncio.shield(task)
        return result.ok

    async def wait_idle(self) -> None:
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _run_drain(self, trigger: str) -> DrainResult:
        started_at = datetime.now(timezone.utc)
        if not self.monitor.is_online:
            self._error = NO_CONNECTION
            self._notify()
            return DrainResult(ok=False, synced=0, failed=0, errors=[NO_CONNECTION], duration_ms=0, trigger=trigger)

        snapshot = self.store.pending_actions()
        if not snapshot:
            return DrainResult(ok=True, synced=0, failed=0, errors=[], duration_ms=0, trigger=trigger)

        self._is_syncing = True
        self._error = None
        self._notify()
        synced = 0
        errors: list[str] = []
        touched: set[str] = set()
        try:
            for index, action in enumerate(snapshot):
                if index and self.config.replay_delay_seconds:
                    await self._sleep(self.config.replay_delay_seconds)
                try:
                    record = await self.dispatcher.execute(action)
                except Exception as exc:
                    errors.append(f"{action.describe()}: {exc}")
                    self.store.record_action_failure(action.id, f"{type(exc).__name__}: {exc}")
                    logger.warning("Pending action %s (%s) failed: %s", action.id, action.describe(), exc)
                    continue
                self.store.remove_pending_action(action.id)
                synced += 1
                touched.add(action.resource)
                if record and action.type != ACTION_DELETE:
                    self._apply_to_mirror(action.type, action.resource, record, synced=False)
        except Exception as exc:
            logger.exception("Drain (%s) aborted", trigger)
            errors.append(f"drain aborted: {type(exc).__name__}: {exc}")
        finally:
            self._is_syncing = False

        remaining = self.store.pending_actions()
        still_pending = {action.resource for action in remaining}
        for resource in touched - still_pending:
            key = self._mirror_key(resource)
            if key is not None:
                self.store.mark_synced(key)

        failed = len(errors)
        if failed == 0:
            self._last_sync = self._clock()
            self._error = None
            status = "success"
            message = f"Synchronized {synced} action(s)."
        else:
            summary = ", ".join(errors[: self.config.error_summary_limit])
            self._error = f"Some items were not synchronized: {summary}"
            status = "partial" if synced else "error"
            message = f"Synchronized {synced} action(s), {failed} failed: {summary}"

        duration_ms = _elapsed_ms(started_at)
        self.store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
            synced=synced,
            failed=failed,
        )
        logger.info("Drain (%s) finished: %s", trigger, message)
        result = DrainResult(
            ok=failed == 0,
            synced=synced,
            failed=failed,
            errors=errors,
            duration_ms=duration_ms,
            trigger=trigger,
        )
        self.last_result = result
        self._notify()
        return result

    # Mutations.

    def _handler(self, resource: str) -> ResourceHandler | None:
        try:
            return self.dispatcher.handler_for(resource)
        except DispatchError:
            return None

    def _mirror_key(self, resource: str) -> str | None:
        handler = self._handler(resource)
        return handler.mirror_key if handler is not None else None

    def _apply_to_mirror(self, action_type: str, resource: str, data: dict[str, Any], *, synced: bool) -> bool:
        handler = self._handler(resource)
        if handler is None:
            return False
        current = self.store.get(handler.mirror_key)
        if handler.collection:
            records = current if isinstance(current, list) else []
            mirrored: Any = _apply_record(records, action_type, data)
        else:
            mirrored = {**(current if isinstance(current, dict) else {}), **data}
        return self.store.save(handler.mirror_key, mirrored, synced=synced)

    @staticmethod
    def _prepare(action_type: str, data: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
        action_type = str(action_type or "").strip().upper()
        payload = dict(data or {})
        if action_type == ACTION_CREATE and not payload.get("id"):
            payload["id"] = str(uuid.uuid4())
        return action_type, payload

    def _queue(self, action_type: str, resource: str, payload: dict[str, Any]) -> str | None:
        action_id = self.store.add_pending_action(action_type, resource, payload)
        if action_id is None:
            return None
        self._apply_to_mirror(action_type, resource, payload, synced=False)
        self._notify()
        return action_id

    def enqueue(self, action_type: str, resource: str, data: dict[str, Any] | None) -> str | None:
        action_type, payload = self._prepare(action_type, data)
        action_id = self._queue(action_type, resource, payload)
        if action_id is not None and self.monitor.is_online and self.config.auto_sync_delay_seconds > 0:
            self._schedule_auto_sync()
        return action_id

    def _schedule_auto_sync(self) -> None:
        if self._auto_sync_task is not None and not self._auto_sync_task.done():
            return
        loop = self._running_loop()
        if loop is None:
            return
        self._auto_sync_task = loop.create_task(self._delayed_drain(self.config.auto_sync_delay_seconds))

    async def _delayed_drain(self, delay: float) -> None:
        await self._sleep(delay)
        if self.monitor.is_online:
            await self.drain("auto")

    def _has_pending(self, resource: str) -> bool:
        key = str(resource or "").strip().lower()
        return any(action.resource.strip().lower() == key for action in self.store.pending_actions())

    async def mutate(self, action_type: str, resource: str, data: dict[str, Any] | None) -> MutationResult:
        self._running_loop()
        action_type, payload = self._prepare(action_type, data)
        if action_type not in ACTION_TYPES:
            return MutationResult(ok=False, error=f"action type not supported: {action_type!r}")

        online = self.monitor.is_online
        # A direct write must not overtake older queued actions on the same resource.
        behind_queue = online and self._has_pending(resource)
        if not online or behind_queue:
            action_id = self._queue(action_type, resource, payload)
            if action_id is None:
                return MutationResult(ok=False, record=payload, error="could not queue action")
            if behind_queue:
                logger.debug("Queueing %s %s behind pending actions", action_type, resource)
                self.request_drain("auto")
            return MutationResult(ok=True, queued=True, action_id=action_id, record=payload)

        action = PendingAction(
            id=f"direct_{uuid.uuid4().hex[:9]}",
            type=action_type,
            resource=resource,
            data=payload,
            timestamp=self._clock(),
        )
        try:
            record = await self.dispatcher.execute(action)
        except Exception as exc:
            logger.warning("Direct %s failed, queueing for retry: %s", action.describe(), exc)
            action_id = self._queue(action_type, resource, payload)
            return MutationResult(
                ok=action_id is not None,
                queued=action_id is not None,
                action_id=action_id,
                record=payload,
                error=f"{type(exc).__name__}: {exc}",
            )
        mirrored = payload if action_type == ACTION_DELETE or not record else record
        self._apply_to_mirror(action_type, resource, mirrored, synced=True)
        self._notify()
        return MutationResult(ok=True, record=mirrored)

    async def pull(self, resource: str) -> Any:
        if not self.monitor.is_online:
            return None
        handler = self._handler(resource)
        if handler is None:
            logger.warning("Cannot pull unknown resource kind %r", resource)
            return None
        try:
            user_id = self.dispatcher.current_user_id()
            rows = await self.dispatcher.remote.select(handler.table, {OWNER_COLUMN: user_id}, order=handler.order)
        except Exception as exc:
            logger.warning("Pulling %s failed: %s", handler.table, exc)
            return None

        mirrored: Any = rows if handler.collection else (rows[0] if rows else {})
        pending = [action for action in self.store.pending_actions() if action.resource == resource]
        for action in pending:
            if handler.collection:
                mirrored = _apply_record(mirrored, action.type, action.data)
            else:
                mirrored = {**mirrored, **action.data}
        self.store.save(handler.mirror_key, mirrored, synced=not pending)
        return mirrored

    def mirror(self, resource: str) -> Any:
        handler = self._handler(resource)
        if handler is None:
            return None
        cached = self.store.get(handler.mirror_key)
        if cached is None:
            return [] if handler.collection else {}
        return cached

    def clear_offline_data(self) -> bool:
        cleared = self.store.clear_all()
        self._error = None
        self._notify()
        return cleared
