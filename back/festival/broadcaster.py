"""
Notification Broadcaster

Publishes domain events to live connections, targeting rooms per the event
catalog. Delivery is at-most-once: nothing is persisted or retried, and clients
that reconnect reconcile state through the HTTP read endpoints.
"""
import logging
from datetime import datetime, timezone

from .connection_registry import ConnectionRegistry
from .event_catalog import EVENT_CATALOG, Delivery, DomainEvent, resolve_deliveries

logger = logging.getLogger(__name__)


class NotificationBroadcaster:
    def __init__(
        self,
        registry: ConnectionRegistry,
        relay=None,
        catalog: dict[DomainEvent, tuple[Delivery, ...]] = EVENT_CATALOG,
    ):
        self.registry = registry
        # Optional RedisRelay; when set, envelopes go through Redis to every process
        self.relay = relay
        self.catalog = catalog

    def publish(self, event: DomainEvent, payload: dict, exclude: str | None = None) -> None:
        """Fan `event` out to its audiences. Never raises."""
        data = {**payload, "timestamp": datetime.now(timezone.utc).isoformat()}
        try:
            deliveries = resolve_deliveries(event, payload, self.catalog)
        except Exception as e:
            logger.error(f"Could not resolve audience for {event.value}: {e}", exc_info=True)
            return

        for event_name, rooms in deliveries:
            envelope = {
                "rooms": sorted(rooms) if rooms is not None else None,
                "exclude": exclude,
                "message": {"event": event_name, "data": data},
            }
            self._dispatch(envelope)

    def send_to(self, connection_id: str, event_name: str, data: dict) -> bool:
        """Deliver a message to a single connection (replies, errors)."""
        client = self.registry.get(connection_id)
        if client is None:
            return False
        message = {
            "event": event_name,
            "data": {**data, "timestamp": datetime.now(timezone.utc).isoformat()},
        }
        try:
            client.deliver(message)
        except Exception as e:
            logger.warning(f"Delivery of {event_name} to {connection_id} failed: {e}")
            return False
        return True

    def deliver_local(self, envelope: dict) -> int:
        """Deliver an envelope to this process's connections; returns the number reached."""
        rooms = envelope.get("rooms")
        exclude = envelope.get("exclude")
        message = envelope["message"]

        if rooms is None:
            clients = self.registry.all()
        else:
            clients = self.registry.members_of(rooms)

        sent = 0
        for client in clients:
            if client.connection_id == exclude:
                continue
            try:
                client.deliver(message)
                sent += 1
            except Exception as e:
                # One dead socket must not stop the rest of the fan-out
                logger.warning(
                    f"Delivery of {message['event']} to {client.connection_id} failed: {e}"
                )
        return sent

    def _dispatch(self, envelope: dict) -> None:
        if self.relay is not None:
            if self.relay.publish(envelope):
                return
            logger.warning("Redis relay unavailable, delivering locally only")
        self.deliver_local(envelope)
