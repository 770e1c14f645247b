"""HTTP surface for LayerSync.

The caller's identity is taken from the ``X-User-Id`` header and resolved
against the store. Errors from the sync core map to status codes in
``STATUS_CODES``; admission rejections answer 403 with the rejection reason.
"""

import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from models.errors import (
    ConflictDetected,
    InvalidTransition,
    LayerSyncError,
    PermissionDenied,
    ResolutionPending,
    Unauthenticated,
    UnknownDevice,
    UnknownEntry,
    UnknownItem,
    UnknownRole,
    UnknownUser,
)
from models.records import (
    CompletionAction,
    ConflictDecision,
    FailureKind,
    Identity,
    Record,
)
from roles.config import DeviceType, Permission, authorize, get_role_profile, parse_role
from services.sync_service import SyncRequest, SyncService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    Unauthenticated: 401,
    PermissionDenied: 403,
    UnknownRole: 404,
    UnknownUser: 404,
    UnknownDevice: 404,
    UnknownItem: 404,
    UnknownEntry: 404,
    InvalidTransition: 409,
    ConflictDetected: 409,
    ResolutionPending: 409,
}


class DeviceBody(Record):
    device_type: DeviceType
    device_name: str = ""


class ItemBody(Record):
    name: str = ""
    mission_id: Optional[str] = None


class QueueBody(Record):
    item_id: str
    source_device_id: str
    target_device_id: Optional[str] = None
    base_version: Optional[int] = None
    action: CompletionAction = CompletionAction.MODIFIED


class FailBody(Record):
    error_kind: FailureKind = FailureKind.TRANSFER
    error: Optional[str] = None


class DecisionBody(Record):
    decision: ConflictDecision


class SyncAllBody(Record):
    requests: List[QueueBody]


def _error_payload(exc: LayerSyncError) -> dict:
    payload = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ConflictDetected):
        payload.update(resolutionRequired=True, itemId=exc.item_id,
                       baseVersion=exc.base_version, currentVersion=exc.current_version)
    elif isinstance(exc, ResolutionPending):
        payload.update(resolutionRequired=True, itemId=exc.item_id, entryId=exc.entry_id)
    return payload


def _dump(record) -> Optional[dict]:
    return record.model_dump(mode="json", by_alias=True) if record is not None else None


def create_app(service: Optional[SyncService] = None) -> FastAPI:
    service = service or SyncService.from_env()
    app = FastAPI(title="LayerSync")
    app.state.service = service

    @app.exception_handler(LayerSyncError)
    async def layersync_error(request: Request, exc: LayerSyncError):
        status = next((code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 400)
        if status >= 403:
            logger.info(f"{request.method} {request.url.path} -> {status}: {exc}")
        return JSONResponse(status_code=status, content=_error_payload(exc))

    def current_identity(x_user_id: Optional[str] = Header(None)) -> Identity:
        if not x_user_id:
            raise Unauthenticated("X-User-Id header is required")
        try:
            return service.get_identity(x_user_id)
        except UnknownUser:
            raise Unauthenticated(f"Unknown user: {x_user_id}")

    def require_own_device(identity: Identity, device_id: str) -> None:
        device = service.registry.get_device(device_id)
        if device.user_id != identity.user_id:
            raise PermissionDenied(f"Device {device_id} does not belong to {identity.user_id}")

    @app.get("/")
    def root():
        return "running"

    @app.get("/roles/{role}")
    def role_profile(role: str):
        profile = get_role_profile(parse_role(role))
        return {
            "role": profile.role.value,
            "permissions": sorted(p.value for p in profile.permissions),
            "mobility": profile.mobility.value,
            "syncPriority": profile.sync_priority,
            "conflictStrategy": profile.conflict_strategy.value,
            "prompts": list(profile.prompts),
        }

    @app.post("/devices", status_code=201)
    def add_device(body: DeviceBody, identity: Identity = Depends(current_identity)):
        result = service.register_device(identity.user_id, body.device_type, body.device_name)
        if not result.allowed:
            raise HTTPException(status_code=403, detail=result.reason)
        return _dump(result.device)

    @app.get("/devices")
    def list_devices(identity: Identity = Depends(current_identity)):
        return [_dump(d) for d in service.registry.get_user_devices(identity.user_id)]

    @app.post("/items", status_code=201)
    def add_item(body: ItemBody, identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.WRITE)
        return _dump(service.add_item(identity.user_id, body.name, body.mission_id))

    @app.get("/items/{item_id}")
    def get_item(item_id: str, identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.READ)
        return _dump(service.queue.get_item(item_id))

    @app.post("/items/{item_id}/resolve")
    def resolve_item(item_id: str, body: DecisionBody,
                     identity: Identity = Depends(current_identity)):
        entry = service.queue.resolve_layer_conflict(item_id, body.decision, decided_by=identity)
        return {"item": _dump(service.queue.get_item(item_id)), "entry": _dump(entry)}

    @app.post("/sync/queue", status_code=201)
    def queue_sync(body: QueueBody, identity: Identity = Depends(current_identity)):
        require_own_device(identity, body.source_device_id)
        entry = service.request_sync(body.item_id, body.source_device_id, body.target_device_id,
                                     body.base_version, body.action)
        return _dump(entry)

    @app.post("/sync/dequeue")
    def dequeue(identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.SYNC)
        return _dump(service.queue.dequeue_next())

    @app.post("/sync/{entry_id}/complete")
    def complete(entry_id: str, resolve: bool = True,
                 identity: Identity = Depends(current_identity)):
        """Finish an entry. With ``resolve=false`` a stale write answers 409."""
        authorize(identity, Permission.SYNC)
        if not resolve:
            return {"entry": _dump(service.queue.mark_completed(entry_id)), "outcome": "accepted"}

        resolution = service.queue.process(entry_id)
        entry = service.queue.get_entry(entry_id)
        if resolution.pending:
            raise ResolutionPending(entry.item_id, entry.entry_id)
        return {"entry": _dump(entry), "outcome": resolution.outcome.value, "reason": resolution.reason}

    @app.post("/sync/{entry_id}/fail")
    def fail(entry_id: str, body: FailBody, identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.SYNC)
        return _dump(service.queue.mark_failed(entry_id, body.error_kind, body.error))

    @app.post("/sync/all")
    def sync_all(body: SyncAllBody, identity: Identity = Depends(current_identity)):
        for request in body.requests:
            require_own_device(identity, request.source_device_id)
        summary = service.sync_all(
            SyncRequest(r.item_id, r.source_device_id, r.target_device_id, r.base_version, r.action)
            for r in body.requests
        )
        return {
            "success": summary.success,
            "failed": summary.failed,
            "errors": [asdict(e) for e in summary.errors],
        }

    @app.get("/missions/{mission_id}/stats")
    def mission_stats(mission_id: str, identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.READ)
        stats = service.tracker.get_stats_by_mission(mission_id)
        return {
            "missionId": mission_id,
            "totalFeatures": stats.total_features,
            "contributors": stats.contributors,
            **service.tracker.get_completion_stats(mission_id),
        }

    @app.get("/missions/{mission_id}/history")
    def mission_history(mission_id: str, days: Optional[int] = None,
                        identity: Identity = Depends(current_identity)):
        authorize(identity, Permission.READ)
        days = service.settings.history_days if days is None else days
        if days < 0:
            raise HTTPException(status_code=422, detail="days must not be negative")
        return [asdict(b) for b in service.tracker.get_completion_history(mission_id, days)]

    return app
