import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from ftth_inventory.config import get_settings
from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.error import upstream_error
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import PartnerItem, SyncLogRead, SyncResult, SyncStatus
from ftth_inventory.services.artacom import (
    ArtacomClient,
    ArtacomSync,
    UpstreamError,
    normalize_record,
    sync_history,
    sync_status,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/artacom", tags=["artacom"])


def get_artacom_client(request: Request) -> ArtacomClient:
    return request.app.state.artacom_client


@router.post("/sync", response_model=SyncResult)
def run_sync(
    session: Session = Depends(get_session),
    client: ArtacomClient = Depends(get_artacom_client),
    ctx: AuthContext = Depends(require_permission(Permission.ARTACOM_SYNC)),
):
    sync = ArtacomSync(session, client, get_settings().default_warehouse_id, actor=ctx.user)
    try:
        log, message = sync.run()
    except UpstreamError as e:
        upstream_error(f"Artacom unreachable: {e}")

    return {
        "sync_id": log.id,
        "status": log.status,
        "created": sync.created,
        "updated": sync.updated,
        "unchanged": sync.unchanged,
        "histories_imported": sync.histories_imported,
        "errors": sync.errors,
        "message": message,
    }


@router.get("/status", response_model=SyncStatus)
def status(
    session: Session = Depends(get_session),
    client: ArtacomClient = Depends(get_artacom_client),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    return sync_status(session, client)


@router.get("/history", response_model=list[SyncLogRead])
def history(
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    return sync_history(session, limit)


@router.get("/inventory", response_model=list[PartnerItem])
def partner_inventory(
    client: ArtacomClient = Depends(get_artacom_client),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    try:
        records = client.fetch_inventory()
    except UpstreamError as e:
        upstream_error(f"Artacom unreachable: {e}")

    items = []
    for raw in records:
        try:
            items.append(normalize_record(raw))
        except ValueError:
            logger.debug("skipping partner record without serial number")
    return items
