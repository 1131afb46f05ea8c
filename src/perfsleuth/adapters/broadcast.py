"""Fan-out of dashboard snapshots to connected clients.

Every client has its own bounded queue. Publishing never waits on a
client: when a queue is full its oldest snapshot is dropped, so a slow
consumer always catches up to the latest state instead of a backlog.
"""

import asyncio
import json
import uuid
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

from perfsleuth.core.config import BroadcastConfig
from perfsleuth.core.encoding.snapshot import encode_snapshot
from perfsleuth.core.errors import ConnectionRejectedError, ErrorKind
from perfsleuth.core.logs import get_logger, log_exception
from perfsleuth.core.models import DashboardSnapshot
from perfsleuth.core.ports import ConnectionGate, accept_all

logger = get_logger(__name__)


class ClientChannel:
    """Outbound queue of one dashboard client.

    Payloads are pre-encoded JSON strings shared by every client.
    """

    def __init__(self, client_id: str, queue_size: int) -> None:
        self.id = client_id
        self.subscribed = True
        self.dropped = 0
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, payload: str) -> bool:
        """Queue ``payload`` without waiting.

        Returns:
            False if older payloads had to be dropped to make room.
        """
        if self._closed:
            return True
        delivered_cleanly = True
        while True:
            try:
                self._queue.put_nowait(payload)
                return delivered_cleanly
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                delivered_cleanly = False

    async def receive(self) -> str | None:
        """Wait for the next payload. Returns None once the channel is closed."""
        if self._closed and self._queue.empty():
            return None
        payload = await self._queue.get()
        return payload

    def close(self) -> None:
        """Discard queued payloads and wake any pending receiver."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class BroadcastHub:
    """Pushes snapshots to every subscribed client.

    Args:
        config: Per-client queue size.
        gate: Validates client identity tokens before connection.
        initial_snapshot: Provides the snapshot sent on connect when nothing
            has been published yet.
        encoder: Serializes a snapshot once per publish.
    """

    def __init__(
        self,
        config: BroadcastConfig | None = None,
        gate: ConnectionGate = accept_all,
        initial_snapshot: Callable[[], DashboardSnapshot | None] | None = None,
        encoder: Callable[[DashboardSnapshot], str] = encode_snapshot,
    ) -> None:
        self._config = config or BroadcastConfig()
        self._gate = gate
        self._initial_snapshot = initial_snapshot
        self._encoder = encoder
        self._clients: dict[str, ClientChannel] = {}
        self._latest_payload: str | None = None
        self._counts: Counter[ErrorKind] = Counter()
        self._rejected = 0
        self._closed = False

    @property
    def clients(self) -> list[ClientChannel]:
        return list(self._clients.values())

    @property
    def rejected(self) -> int:
        return self._rejected

    @property
    def closed(self) -> bool:
        return self._closed

    def _admit(self, token: str | None) -> bool:
        try:
            return bool(self._gate(token))
        except Exception:
            log_exception("Connection gate failed; rejecting client", logger=logger)
            return False

    def _latest(self) -> str | None:
        if self._latest_payload is None and self._initial_snapshot is not None:
            snapshot = self._initial_snapshot()
            if snapshot is not None:
                self._latest_payload = self._encoder(snapshot)
        return self._latest_payload

    def connect(self, token: str | None = None) -> ClientChannel:
        """Register a client and queue the current full snapshot for it.

        Raises:
            ConnectionRejectedError: If the gate refuses the token or the hub
                is closed.
        """
        if self._closed:
            raise ConnectionRejectedError("broadcast hub is closed")
        if not self._admit(token):
            self._rejected += 1
            logger.info("Dashboard client rejected by connection gate")
            raise ConnectionRejectedError("client identity rejected")
        client = ClientChannel(uuid.uuid4().hex, self._config.queue_size)
        self._clients[client.id] = client
        latest = self._latest()
        if latest is not None:
            client.offer(latest)
        logger.info(
            "Dashboard client connected",
            extra={"client_id": client.id, "clients": len(self._clients)},
        )
        return client

    def subscribe(self, client: ClientChannel) -> None:
        """Resume delivery to ``client`` starting with the latest snapshot."""
        if client.subscribed or client.closed:
            return
        client.subscribed = True
        latest = self._latest()
        if latest is not None:
            client.offer(latest)

    def unsubscribe(self, client: ClientChannel) -> None:
        client.subscribed = False

    def handle_message(
        self, client: ClientChannel, message: str | Mapping[str, Any]
    ) -> bool:
        """Apply a client control message.

        Accepts ``{"type": "subscribe"}`` and ``{"type": "unsubscribe"}``,
        either decoded or as JSON text.

        Returns:
            True if the message was understood.
        """
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                logger.debug(
                    "Ignoring non-JSON client message", extra={"client_id": client.id}
                )
                return False
        kind = message.get("type") if isinstance(message, Mapping) else None
        if kind == "subscribe":
            self.subscribe(client)
            return True
        if kind == "unsubscribe":
            self.unsubscribe(client)
            return True
        logger.debug("Ignoring unknown client message type %r", kind)
        return False

    def publish(self, snapshot: DashboardSnapshot) -> int:
        """Offer ``snapshot`` to every subscribed client without blocking.

        The snapshot is encoded once and the same payload is queued for all
        clients.

        Returns:
            Number of clients the snapshot was queued for.
        """
        payload = self._encoder(snapshot)
        self._latest_payload = payload
        delivered = 0
        for client in list(self._clients.values()):
            if client.closed:
                self._clients.pop(client.id, None)
                continue
            if not client.subscribed:
                continue
            if not client.offer(payload):
                self._counts[ErrorKind.SLOW_CONSUMER] += 1
                level = logger.warning if client.dropped == 1 else logger.debug
                level(
                    "Slow dashboard client %s: dropped oldest snapshot (%d so far)",
                    client.id,
                    client.dropped,
                    extra={"error_kind": ErrorKind.SLOW_CONSUMER.value},
                )
            delivered += 1
        return delivered

    def disconnect(self, client: ClientChannel) -> None:
        """Remove ``client`` and discard its queue. Safe to call repeatedly."""
        if self._clients.pop(client.id, None) is not None:
            logger.info(
                "Dashboard client disconnected",
                extra={"client_id": client.id, "clients": len(self._clients)},
            )
        client.close()

    def close(self) -> None:
        """Close every client channel and refuse new connections."""
        for client in list(self._clients.values()):
            self.disconnect(client)
        self._closed = True

    def counters(self) -> Counter[ErrorKind]:
        return Counter(self._counts)
