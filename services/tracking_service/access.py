"""Shipment access rule shared by ingestion, queries and subscriptions."""
import logging
from uuid import UUID

from shared.errors import AuthorizationError, NotFoundError

from .domain import CallerIdentity, Role, ShipmentView
from .store import LocationStore

logger = logging.getLogger(__name__)


def can_access(shipment: ShipmentView, caller: CallerIdentity) -> bool:
    """Assigned courier, or an administrator of the shipment's organization."""
    if caller.role == Role.COURIER:
        return shipment.courier_id is not None and shipment.courier_id == caller.user_id
    if caller.role == Role.ADMIN:
        return caller.organization_id == shipment.organization_id
    return False


def ensure_shipment_access(shipment: ShipmentView, caller: CallerIdentity) -> None:
    if not can_access(shipment, caller):
        logger.warning(
            f"Access denied to shipment {shipment.id} for {caller.role.value} {caller.user_id}"
        )
        raise AuthorizationError("Access denied to this shipment")


async def load_authorized_shipment(
    store: LocationStore, shipment_id: UUID, caller: CallerIdentity
) -> ShipmentView:
    """Fetch a shipment and apply the access rule."""
    shipment = await store.get_shipment(shipment_id)
    if not shipment:
        raise NotFoundError("Shipment not found", code="SHIPMENT_NOT_FOUND")
    ensure_shipment_access(shipment, caller)
    return shipment
