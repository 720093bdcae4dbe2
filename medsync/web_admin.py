from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from medsync.config_manager import ConfigManager, strip_masked_secrets
from medsync.connectivity import ConnectivityMonitor
from medsync.dispatcher import ActionDispatcher, DispatchError
from medsync.ics_manager import ICSManager
from medsync.local_store import LocalStore
from medsync.models import ACTION_TYPES, AppConfig
from medsync.remote_store import RemoteStore, RestRemoteStore
from medsync.scheduler import SyncScheduler
from medsync.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectivityRequest(BaseModel):
    online: bool


class ActionRequest(BaseModel):
    type: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    queue_only: bool = False


class ICSImportRequest(BaseModel):
    content: str = Field(min_length=1)


class BackupImportRequest(BaseModel):
    backup: dict[str, Any]


class AppContext:
    def __init__(
        self,
        config_path: str,
        storage_path: str | None = None,
        remote: RemoteStore | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.monitor = ConnectivityMonitor(initial_online=config.sync.start_online)
        self.store = LocalStore(
            storage_path or config.storage.path,
            max_age_ms=config.storage.max_age_ms,
            quota_bytes=config.storage.quota_bytes,
            online=lambda: self.monitor.is_online,
        )
        self.remote = remote or RestRemoteStore(config.remote)
        self.dispatcher = ActionDispatcher(self.remote, self._user_id)
        self.orchestrator = SyncOrchestrator(self.store, self.dispatcher, self.monitor, config.sync)
        self.scheduler = SyncScheduler(self.orchestrator, self.config_manager)
        self.ics = ICSManager(self.orchestrator, config.calendar)

    def _user_id(self) -> str:
        return self.config_manager.load().remote.user_id

    def apply_config(self, config: AppConfig) -> None:
        if isinstance(self.remote, RestRemoteStore):
            self.remote.config = config.remote
        self.store.max_age_ms = config.storage.max_age_ms
        self.store.quota_bytes = config.storage.quota_bytes
        self.orchestrator.config = config.sync
        self.ics.config = config.calendar

    async def aclose(self) -> None:
        await self.scheduler.stop()
        self.orchestrator.close()
        await self.remote.aclose()
        self.store.close()


def _attachment(filename: str) -> dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("MEDSYNC_CONFIG_PATH", "config.yaml")
        storage_path = os.getenv("MEDSYNC_STORAGE_PATH") or None
        context = AppContext(config_path=config_path, storage_path=storage_path)

    app = FastAPI(title="MedSync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.aclose()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        manager = app.state.context.config_manager
        current = manager.load().to_dict()
        try:
            updated = manager.update(strip_masked_secrets(request.payload, current))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid config: {exc}") from exc
        app.state.context.apply_config(updated)
        return {"message": "config updated", "config": manager.masked()}

    @app.get("/api/status")
    async def get_status() -> dict[str, Any]:
        return app.state.context.orchestrator.status.to_dict()

    @app.get("/api/storage")
    def get_storage() -> dict[str, Any]:
        store = app.state.context.store
        return {"stats": store.stats().to_dict(), "quota": store.check_quota()}

    @app.get("/api/pending")
    def get_pending() -> dict[str, Any]:
        return {"actions": [action.to_dict() for action in app.state.context.store.pending_actions()]}

    @app.post("/api/sync")
    async def trigger_sync() -> dict[str, Any]:
        orchestrator = app.state.context.orchestrator
        task = orchestrator.request_drain("manual")
        if task is None:
            raise HTTPException(status_code=503, detail="sync could not be started")
        result = await task
        return {"result": result.to_dict(), "status": orchestrator.status.to_dict()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(limit=limit)}

    @app.post("/api/connectivity")
    async def set_connectivity(request: ConnectivityRequest) -> dict[str, Any]:
        context = app.state.context
        changed = context.monitor.set_online(request.online)
        if request.online:
            await context.orchestrator.wait_idle()
        return {"changed": changed, "status": context.orchestrator.status.to_dict()}

    @app.post("/api/actions")
    async def submit_action(request: ActionRequest) -> dict[str, Any]:
        context = app.state.context
        action_type = request.type.strip().upper()
        if action_type not in ACTION_TYPES:
            raise HTTPException(status_code=400, detail=f"unsupported action type: {request.type}")
        try:
            context.dispatcher.handler_for(request.resource)
        except DispatchError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if request.queue_only:
            action_id = context.orchestrator.enqueue(action_type, request.resource, request.data)
            if action_id is None:
                raise HTTPException(status_code=507, detail="could not queue action")
            return {"ok": True, "queued": True, "action_id": action_id}

        result = await context.orchestrator.mutate(action_type, request.resource, request.data)
        if not result.ok:
            raise HTTPException(status_code=507, detail=result.error or "could not apply action")
        return result.to_dict()

    @app.post("/api/ics/import")
    async def import_ics(request: ICSImportRequest) -> dict[str, Any]:
        result = await app.state.context.ics.import_calendar(request.content)
        if not result.ok and result.imported == 0:
            raise HTTPException(status_code=400, detail=result.error or "import failed")
        return result.to_dict()

    @app.get("/api/ics/export")
    async def export_ics(window_days: int | None = None) -> Response:
        if window_days is not None and window_days < 1:
            raise HTTPException(status_code=400, detail="window_days must be positive")
        content = await app.state.context.ics.export_calendar(window_days=window_days)
        return Response(
            content=content,
            media_type="text/calendar; charset=utf-8",
            headers=_attachment("agenda-medica.ics"),
        )

    @app.get("/api/backup")
    def export_backup() -> Response:
        backup = app.state.context.store.export_backup()
        if backup is None:
            raise HTTPException(status_code=500, detail="backup export failed")
        today = datetime.now(timezone.utc).date().isoformat()
        return Response(
            content=backup,
            media_type="application/json",
            headers=_attachment(f"backup-offline-{today}.json"),
        )

    @app.post("/api/backup")
    async def import_backup(request: BackupImportRequest) -> dict[str, Any]:
        context = app.state.context
        if not context.store.import_backup(request.backup):
            raise HTTPException(status_code=400, detail="invalid backup")
        logger.info("Offline backup restored with %d pending action(s)", context.store.pending_count())
        return {"message": "backup imported", "status": context.orchestrator.status.to_dict()}

    @app.delete("/api/offline-data")
    async def clear_offline_data() -> dict[str, Any]:
        context = app.state.context
        if not context.orchestrator.clear_offline_data():
            raise HTTPException(status_code=500, detail="could not clear offline data")
        return {"message": "offline data cleared", "status": context.orchestrator.status.to_dict()}

    return app


app = create_app()
