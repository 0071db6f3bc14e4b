"""Per-shipment publish/subscribe hub for live tracking events."""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set
from uuid import UUID

from shared.errors import TrackingError
from shared.events import EventType, TrackingEvent
from shared.message_broker import MessageBroker

from .domain import CallerIdentity, SubscriptionAck

logger = logging.getLogger(__name__)

# Unknown and forbidden shipments are indistinguishable to observers
DENIED_REASON = "Access denied to this shipment"


class FrameSender(Protocol):
    """Anything that can push a JSON frame to one observer (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...


Authorizer = Callable[[UUID, CallerIdentity], Awaitable[Any]]


class BroadcastHub:
    """
    Membership table of connection <-> shipment rooms and at-most-once fan-out.

    Subscribing re-checks access through the injected authorizer, which raises
    a TrackingError on denial. Room membership is guarded by one lock per
    shipment; sends happen outside the lock on a snapshot of members, and a
    member that disconnected in between is skipped.
    """

    def __init__(
        self,
        authorizer: Authorizer,
        send_timeout: float = 1.0,
        message_broker: Optional[MessageBroker] = None,
    ):
        self.authorizer = authorizer
        self.send_timeout = send_timeout
        self.message_broker = message_broker
        self._connections: Dict[str, FrameSender] = {}
        self._memberships: Dict[str, Set[UUID]] = defaultdict(set)
        self._rooms: Dict[UUID, Set[str]] = defaultdict(set)
        self._room_locks: Dict[UUID, asyncio.Lock] = {}
        self._running = False

    async def start(self):
        """Start the hub and, when configured, relayed-event consumption."""
        if self._running:
            logger.warning("Broadcast hub already running")
            return

        if self.message_broker:
            await self.message_broker.consume_relayed(self.deliver_local)
        self._running = True
        logger.info("Broadcast hub started")

    async def close(self):
        """Drop every connection and membership."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id)
        self._room_locks.clear()
        self._running = False
        logger.info("Broadcast hub stopped")

    def connect(self, connection_id: str, sender: FrameSender):
        self._connections[connection_id] = sender
        logger.info(
            f"Connection {connection_id} registered "
            f"(total connections: {len(self._connections)})"
        )

    async def disconnect(self, connection_id: str):
        """Forget a connection and every room it joined."""
        self._connections.pop(connection_id, None)
        shipment_ids = self._memberships.pop(connection_id, set())
        for shipment_id in shipment_ids:
            lock = self._room_locks.get(shipment_id)
            if lock is None:
                continue
            async with lock:
                self._leave_room(connection_id, shipment_id)

        logger.info(
            f"Connection {connection_id} disconnected, left {len(shipment_ids)} room(s) "
            f"(total connections: {len(self._connections)})"
        )

    async def subscribe(
        self, connection_id: str, shipment_id: UUID, caller: CallerIdentity
    ) -> SubscriptionAck:
        if connection_id not in self._connections:
            return SubscriptionAck(
                shipment_id=shipment_id, accepted=False, reason="Unknown connection"
            )

        try:
            await self.authorizer(shipment_id, caller)
        except TrackingError as e:
            logger.info(
                f"Subscription denied: connection={connection_id} "
                f"shipment={shipment_id} reason={e.code}"
            )
            return SubscriptionAck(shipment_id=shipment_id, accepted=False, reason=DENIED_REASON)

        async with self._room_locks.setdefault(shipment_id, asyncio.Lock()):
            # The connection may have dropped while authorization was awaited
            if connection_id not in self._connections:
                if not self._rooms.get(shipment_id):
                    self._room_locks.pop(shipment_id, None)
                return SubscriptionAck(
                    shipment_id=shipment_id, accepted=False, reason="Unknown connection"
                )
            self._rooms[shipment_id].add(connection_id)
            self._memberships[connection_id].add(shipment_id)

        logger.info(f"Connection {connection_id} joined shipment room {shipment_id}")
        return SubscriptionAck(shipment_id=shipment_id, accepted=True)

    async def unsubscribe(self, connection_id: str, shipment_id: UUID):
        memberships = self._memberships.get(connection_id)
        if memberships is not None:
            memberships.discard(shipment_id)

        lock = self._room_locks.get(shipment_id)
        if lock is not None:
            async with lock:
                self._leave_room(connection_id, shipment_id)

        logger.info(f"Connection {connection_id} left shipment room {shipment_id}")

    def _leave_room(self, connection_id: str, shipment_id: UUID):
        """Remove one member; an emptied room releases its lock. Caller holds the room lock."""
        members = self._rooms.get(shipment_id)
        if members is not None:
            members.discard(connection_id)
            if members:
                return
            del self._rooms[shipment_id]
        self._room_locks.pop(shipment_id, None)

    def is_subscribed(self, connection_id: str, shipment_id: UUID) -> bool:
        return connection_id in self._rooms.get(shipment_id, ())

    async def publish(
        self, shipment_id: UUID, event_type: EventType, payload: Dict[str, Any]
    ) -> int:
        """
        Deliver an event to current members of the shipment room.

        Returns the number of observers reached on this node. Delivery
        failures are dropped; nothing is queued or replayed.
        """
        event = TrackingEvent(event_type=event_type, shipment_id=shipment_id, payload=payload)
        delivered = await self.deliver_local(event)

        if self.message_broker:
            try:
                await asyncio.wait_for(
                    self.message_broker.publish_event(event), timeout=self.send_timeout
                )
            except Exception as e:
                logger.warning(f"Failed to relay {event_type.value} for {shipment_id}: {e!r}")

        return delivered

    async def deliver_local(self, event: TrackingEvent) -> int:
        lock = self._room_locks.get(event.shipment_id)
        if lock is None:
            return 0
        async with lock:
            members = list(self._rooms.get(event.shipment_id, ()))

        if not members:
            return 0

        frame = event.to_frame()
        results = await asyncio.gather(
            *(self._send(connection_id, frame) for connection_id in members)
        )
        delivered = sum(results)

        logger.debug(
            f"Event {event.event_type.value} for shipment {event.shipment_id} "
            f"delivered to {delivered}/{len(members)} observer(s)"
        )
        return delivered

    async def _send(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        sender = self._connections.get(connection_id)
        if sender is None:
            return False
        try:
            await asyncio.wait_for(sender.send_json(frame), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.debug(f"Dropped frame for connection {connection_id}: {str(e)}")
            return False

    def stats(self) -> Dict[str, int]:
        return {
            "total_connections": len(self._connections),
            "active_rooms": len(self._rooms),
            "total_subscriptions": sum(len(m) for m in self._rooms.values()),
        }
