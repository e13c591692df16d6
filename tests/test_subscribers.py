from skytrack.exceptions import PersistenceFailure
from skytrack.tracking.events import EventType

from conftest import SETUP_TIMEOUT, STABILIZATION_DELAY, FakeTransport, connect


def test_connection_is_pending_until_stabilized(registry, timers):
    transport = FakeTransport()
    registry.on_open(transport)

    assert registry.count == 0
    assert transport.sent == []

    timers.with_interval(STABILIZATION_DELAY)[0].fire()

    assert registry.count == 1
    assert transport.event_names() == ['initial_state', 'client_added']


def test_initial_state_comes_from_snapshot_provider(registry, timers):
    registry.snapshot_provider = lambda: {'client_count': registry.count, 'active_flight': None}

    _, transport = connect(registry, timers)

    initial = transport.events()[0]
    assert initial['event'] == 'initial_state'
    assert initial['data']['active_flight'] is None


def test_unreadable_snapshot_drops_the_connection(registry, timers):
    _, watcher = connect(registry, timers)
    watcher.sent.clear()

    def broken_snapshot():
        raise PersistenceFailure('database is locked')

    registry.snapshot_provider = broken_snapshot
    transport = FakeTransport()
    registry.on_open(transport)
    timers.with_interval(STABILIZATION_DELAY)[-1].fire()

    assert transport.closed
    assert transport.sent == []
    assert registry.count == 1
    assert len(registry.connections) == 1
    assert watcher.sent == []


def test_connection_closed_before_stabilizing_is_never_counted(registry, timers):
    _, watcher = connect(registry, timers)
    watcher.sent.clear()

    early = FakeTransport()
    connection = registry.on_open(early)
    early.close()
    timers.with_interval(STABILIZATION_DELAY)[-1].fire()
    registry.on_close(connection)

    assert registry.count == 1
    assert early.sent == []
    assert watcher.sent == []


def test_setup_timeout_closes_pending_connection(registry, timers):
    transport = FakeTransport()
    registry.on_open(transport)

    timers.with_interval(SETUP_TIMEOUT)[0].fire()

    assert transport.closed
    assert registry.connections == []
    assert registry.stats['setup_timeouts'] == 1


def test_setup_timer_is_cancelled_once_set_up(registry, timers):
    connect(registry, timers)

    assert timers.with_interval(SETUP_TIMEOUT)[0].cancelled


def test_close_of_counted_connection_broadcasts_new_count(registry, timers):
    first, _ = connect(registry, timers)
    _, second = connect(registry, timers)
    second.sent.clear()

    registry.on_close(first)

    assert second.events() == [{'event': 'client_removed', 'data': 1}]


def test_failed_send_does_not_affect_other_subscribers(registry, timers):
    _, healthy = connect(registry, timers)
    broken_connection, broken = connect(registry, timers)
    healthy.sent.clear()
    broken.fail_sends = True

    outcomes = registry.broadcast(EventType.POSITION_UPDATE, {'flight_id': 'X'})

    assert outcomes[broken_connection.id] is False
    assert healthy.event_names() == ['position_update']
    assert registry.count == 1
    assert broken_connection.id not in {c.id for c in registry.connections}


def test_broadcast_skips_pending_connections(registry, timers):
    pending = FakeTransport()
    registry.on_open(pending)

    assert registry.broadcast(EventType.POSITION_UPDATE, {}) == {}
    assert pending.sent == []


def test_sweep_removes_closed_transports(registry, timers):
    _, alive = connect(registry, timers)
    _, gone = connect(registry, timers)
    alive.sent.clear()
    gone.connected = False

    assert registry.sweep_stale() == 1
    assert registry.count == 1
    assert alive.events() == [{'event': 'client_removed', 'data': 1}]
    assert registry.sweep_stale() == 0
