"""
Live subscriber registry for WebSocket fan-out.

Connections go through a two-phase lifecycle:

    opened (pending) --stabilization delay, still open--> setup complete
    opened (pending) --setup timeout--------------------> closed, never counted

A transport can report itself open before it is able to receive, so
the initial snapshot is only sent once the connection has survived the
stabilization delay. Only set-up connections receive broadcasts and
count towards the client total.

Broadcasts are best-effort: a failed send marks that one connection as
disconnected and never affects the other recipients. Dead connections
are removed after each broadcast and by a periodic sweep.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Callable, Any, List

from skytrack.config import config
from skytrack.exceptions import PersistenceFailure
from skytrack.tracking.events import EventType, encode_event

logger = logging.getLogger(__name__)


TimerFactory = Callable[[float, Callable[[], None]], Any]


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


@dataclass
class SubscriberConnection:
    """
    One live transport session.

    The transport must provide send(str) and close(); its `connected`
    attribute (as on simple_websocket.Server) is the ready-state.
    """
    transport: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    setup_complete: bool = False
    connected: bool = True
    setup_timer: Any = None
    stabilize_timer: Any = None

    @property
    def transport_open(self) -> bool:
        return bool(getattr(self.transport, 'connected', True))

    @property
    def is_active(self) -> bool:
        """Eligible to receive broadcasts."""
        return self.connected and self.setup_complete and self.transport_open

    def cancel_timers(self) -> None:
        for timer in (self.setup_timer, self.stabilize_timer):
            if timer is not None:
                timer.cancel()


class SubscriberRegistry:
    """
    Thread-safe registry of subscriber connections.

    WebSocket handlers, the polling thread and the sweeper thread all
    touch the registry, so every mutation happens under one lock. Sends
    happen outside the lock so a slow client cannot stall registration.
    """

    def __init__(
        self,
        snapshot_provider: Optional[Callable[[], Any]] = None,
        setup_timeout: Optional[float] = None,
        stabilization_delay: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        timer_factory: TimerFactory = _daemon_timer,
    ):
        self.snapshot_provider = snapshot_provider
        self.setup_timeout = setup_timeout or config.subscribers.setup_timeout_seconds
        self.stabilization_delay = stabilization_delay or config.subscribers.stabilization_delay_seconds
        self.sweep_interval = sweep_interval or config.subscribers.sweep_interval_seconds
        self._timer_factory = timer_factory

        self._connections: Dict[str, SubscriberConnection] = {}
        self._lock = threading.RLock()

        self._sweep_stop = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None

        # Statistics
        self._broadcasts = 0
        self._send_failures = 0
        self._timed_out = 0

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def on_open(self, transport: Any) -> SubscriberConnection:
        """Register a newly opened transport as a pending connection."""
        connection = SubscriberConnection(transport=transport)

        with self._lock:
            self._connections[connection.id] = connection

        connection.setup_timer = self._start_timer(
            self.setup_timeout, lambda: self._on_setup_timeout(connection.id)
        )
        connection.stabilize_timer = self._start_timer(
            self.stabilization_delay, lambda: self.complete_setup(connection.id)
        )

        logger.debug(f'Subscriber {connection.id} opened, awaiting setup')
        return connection

    def complete_setup(self, connection_id: str) -> bool:
        """
        Promote a pending connection once it has stabilized.

        Sends the initial snapshot to that connection alone, then tells
        everyone the new client count. Returns False if the connection is
        gone, already set up, or its transport has closed in the meantime.
        A connection whose snapshot cannot be read is dropped and closed.
        """
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.setup_complete:
                return False
            if not connection.transport_open:
                logger.debug(f'Subscriber {connection_id} closed before setup completed')
                return False
            connection.setup_complete = True
            if connection.setup_timer is not None:
                connection.setup_timer.cancel()

        try:
            snapshot = self.snapshot_provider() if self.snapshot_provider else None
        except PersistenceFailure as e:
            logger.error(f'Could not build initial state for subscriber {connection_id}, closing: {e}')
            with self._lock:
                self._connections.pop(connection_id, None)
            self._close(connection)
            return False

        if not self._send(connection, encode_event(EventType.INITIAL_STATE, snapshot)):
            with self._lock:
                self._connections.pop(connection_id, None)
            return False

        logger.info(f'Subscriber {connection_id} set up ({self.count} active)')
        self.broadcast(EventType.CLIENT_ADDED, self.count)
        return True

    def _on_setup_timeout(self, connection_id: str) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.setup_complete:
                return
            del self._connections[connection_id]
            self._timed_out += 1

        logger.warning(f'Subscriber {connection_id} did not complete setup in {self.setup_timeout}s, closing')
        self._close(connection)

    def _close(self, connection: SubscriberConnection) -> None:
        connection.cancel_timers()
        try:
            connection.transport.close()
        except Exception as e:
            logger.debug(f'Error closing subscriber {connection.id}: {e}')

    def on_close(self, connection: SubscriberConnection) -> None:
        """Forget a closed connection; announce the new count if it was counted."""
        with self._lock:
            removed = self._connections.pop(connection.id, None)

        connection.cancel_timers()
        if removed is None:
            return

        logger.debug(f'Subscriber {connection.id} closed')
        if removed.setup_complete:
            self.broadcast(EventType.CLIENT_REMOVED, self.count)

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    def _send(self, connection: SubscriberConnection, message: str) -> bool:
        try:
            connection.transport.send(message)
            return True
        except Exception as e:
            connection.connected = False
            self._send_failures += 1
            logger.warning(f'Send to subscriber {connection.id} failed: {e}')
            return False

    def broadcast(self, event: EventType, data: Any) -> Dict[str, bool]:
        """
        Send an event to every set-up, open connection.

        The payload is serialized once. Returns the per-recipient outcome
        keyed by connection id; connections that were skipped are absent.
        """
        message = encode_event(event, data)

        with self._lock:
            recipients = [c for c in self._connections.values() if c.is_active]
            self._broadcasts += 1

        outcomes = {c.id: self._send(c, message) for c in recipients}

        with self._lock:
            dead = [
                cid for cid, c in self._connections.items()
                if c.setup_complete and not c.connected
            ]
            for cid in dead:
                self._connections.pop(cid).cancel_timers()

        if dead:
            logger.info(f'Dropped {len(dead)} subscribers after failed send')

        logger.debug(f'Broadcast {EventType(event).value} to {len(recipients)} subscribers')
        return outcomes

    def sweep_stale(self) -> int:
        """
        Remove set-up connections whose transport is no longer open.

        Pending connections are left to their setup timer.
        """
        with self._lock:
            stale = [
                cid for cid, c in self._connections.items()
                if c.setup_complete and not c.transport_open
            ]
            for cid in stale:
                self._connections.pop(cid).cancel_timers()

        if stale:
            logger.info(f'Swept {len(stale)} stale subscribers')
            self.broadcast(EventType.CLIENT_REMOVED, self.count)
        return len(stale)

    # -------------------------------------------------------------------------
    # Background sweeper
    # -------------------------------------------------------------------------

    def _run_sweeper(self) -> None:
        while not self._sweep_stop.wait(self.sweep_interval):
            try:
                self.sweep_stale()
            except Exception as e:
                logger.error(f'Subscriber sweep failed: {e}')

    def start_sweeper(self) -> None:
        """Start the periodic stale-connection sweep in a background thread."""
        if self._sweep_thread and self._sweep_thread.is_alive():
            return

        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._run_sweeper,
            name='subscriber-sweeper',
            daemon=True,
        )
        self._sweep_thread.start()
        logger.info(f'Subscriber sweeper started (interval={self.sweep_interval}s)')

    def stop_sweeper(self) -> None:
        self._sweep_stop.set()
        if self._sweep_thread:
            self._sweep_thread.join(timeout=5)
            self._sweep_thread = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def _start_timer(self, interval: float, function: Callable[[], None]) -> Any:
        timer = self._timer_factory(interval, function)
        timer.start()
        return timer

    @property
    def connections(self) -> List[SubscriberConnection]:
        with self._lock:
            return list(self._connections.values())

    @property
    def count(self) -> int:
        """Number of set-up, live connections."""
        with self._lock:
            return sum(1 for c in self._connections.values() if c.is_active)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                'active': sum(1 for c in self._connections.values() if c.is_active),
                'pending': sum(1 for c in self._connections.values() if not c.setup_complete),
                'broadcasts': self._broadcasts,
                'send_failures': self._send_failures,
                'setup_timeouts': self._timed_out,
            }
