import threading

import pytest

from skytrack.ingestion.poller import PollingLoop, TickOutcome

from conftest import connect, make_journey, make_position, sample


FLIGHT = 'BAW117-1704100000-airline-0001'


@pytest.fixture
def loop(store, feed, registry):
    return PollingLoop(
        FLIGHT,
        store=store,
        client=feed,
        registry=registry,
        interval=3600,
        max_consecutive_errors=5,
        ground_altitude=0,
    )


@pytest.fixture
def tracked(store):
    return store.insert(make_journey(
        FLIGHT,
        is_tracking=True,
        status='En Route / On Time',
        standardized_status='active',
        actual_off='2024-01-01T10:00:00Z',
        track=[sample('2024-01-01T10:10:00Z', lat=51.4, lon=-2.0)],
    ))


def test_tick_stops_when_flag_cleared(loop, store):
    store.insert(make_journey(FLIGHT, is_tracking=False))

    assert loop.tick() == TickOutcome.NOT_TRACKING


def test_tick_appends_and_broadcasts_new_position(loop, store, feed, registry, timers, tracked):
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:20:00Z', lat=52.0, lon=-20.0)))

    assert loop.tick() == TickOutcome.POSITION_ADDED

    journey = store.require(FLIGHT)
    assert [p.timestamp for p in journey.track] == ['2024-01-01T10:10:00Z', '2024-01-01T10:20:00Z']
    assert journey.progress_percent > 0

    events = transport.events()
    assert [e['event'] for e in events] == ['position_update']
    assert events[0]['data']['flight_id'] == FLIGHT
    assert events[0]['data']['position']['timestamp'] == '2024-01-01T10:20:00Z'
    assert events[0]['data']['progress_percent'] == journey.progress_percent


def test_same_timestamp_is_not_stored_or_broadcast_twice(loop, store, feed, registry, timers, tracked):
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:10:00Z')))

    assert loop.tick() == TickOutcome.DUPLICATE
    assert loop.tick() == TickOutcome.DUPLICATE

    assert len(store.require(FLIGHT).track) == 1
    assert transport.sent == []


def test_liftoff_moves_taxiing_journey_to_active(loop, store, feed, registry, timers):
    store.insert(make_journey(
        FLIGHT,
        is_tracking=True,
        status='Taxiing / Left Gate',
        standardized_status='taxiing',
        scheduled_off='2024-01-01T09:45:00Z',
    ))
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(
        FLIGHT,
        sample('2024-01-01T10:02:00Z', altitude=20, groundspeed=160),
        actual_off='2024-01-01T10:00:00Z',
    ))

    assert loop.tick() == TickOutcome.POSITION_ADDED

    journey = store.require(FLIGHT)
    assert journey.standardized_status == 'active'
    assert journey.actual_off == '2024-01-01T10:00:00Z'
    assert journey.departure_delay == 900

    events = transport.events()
    assert [e['event'] for e in events] == ['flight_status_update', 'position_update']
    assert events[0]['data']['previous_status'] == 'taxiing'
    assert events[0]['data']['standardized_status'] == 'active'


def test_liftoff_transition_happens_once(loop, store, feed, registry, timers):
    store.insert(make_journey(FLIGHT, is_tracking=True, standardized_status='scheduled'))
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:02:00Z'), actual_off='2024-01-01T10:00:00Z'))
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:03:00Z'), actual_off='2024-01-01T10:00:00Z'))

    loop.tick()
    loop.tick()

    assert transport.event_names().count('flight_status_update') == 1


def test_actual_on_means_landed(loop, feed, tracked):
    feed.queue_position(make_position(
        FLIGHT,
        sample('2024-01-01T17:50:00Z', lat=40.64, lon=-73.77, altitude=0, groundspeed=12),
        actual_on='2024-01-01T17:48:00Z',
    ))

    assert loop.tick() == TickOutcome.LANDED


def test_stopped_on_ground_after_liftoff_means_landed(loop, feed, tracked):
    feed.queue_position(make_position(
        FLIGHT,
        sample('2024-01-01T17:50:00Z', lat=40.64, lon=-73.77, altitude=0, groundspeed=0),
    ))

    assert loop.tick() == TickOutcome.LANDED


def test_on_ground_before_liftoff_is_not_landed(loop, store, feed):
    store.insert(make_journey(FLIGHT, is_tracking=True, standardized_status='taxiing'))
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T09:40:00Z', altitude=0, groundspeed=0)))

    assert loop.tick() == TickOutcome.POSITION_ADDED


def test_consecutive_feed_errors_reach_threshold(loop, feed, tracked):
    feed.fail_positions = True

    outcomes = [loop.tick() for _ in range(5)]

    assert outcomes[:4] == [TickOutcome.FEED_ERROR] * 4
    assert outcomes[4] == TickOutcome.ERROR_THRESHOLD


def test_empty_responses_count_as_errors(loop, feed, tracked):
    for _ in range(4):
        assert loop.tick() == TickOutcome.FEED_ERROR
    assert loop.tick() == TickOutcome.ERROR_THRESHOLD


def test_success_resets_error_counter(loop, feed, tracked):
    feed.fail_positions = True
    for _ in range(4):
        loop.tick()

    feed.fail_positions = False
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:30:00Z')))
    assert loop.tick() == TickOutcome.POSITION_ADDED
    assert loop.consecutive_errors == 0

    feed.fail_positions = True
    assert loop.tick() == TickOutcome.FEED_ERROR


def test_cancelled_loop_does_no_work(loop, feed, tracked):
    loop.cancel()

    assert loop.tick() == TickOutcome.CANCELLED
    assert feed.calls == []
    assert not loop.is_running


def _hold_position_fetch(monkeypatch, feed):
    """Make the next position fetch wait until the test releases it."""
    entered = threading.Event()
    release = threading.Event()
    fetch = feed.get_flight_position

    def held_fetch(fa_flight_id):
        entered.set()
        release.wait(timeout=5)
        return fetch(fa_flight_id)

    monkeypatch.setattr(feed, 'get_flight_position', held_fetch)
    return entered, release


def _tick_in_background(loop):
    outcomes = []
    worker = threading.Thread(target=lambda: outcomes.append(loop.tick()), daemon=True)
    worker.start()
    return worker, outcomes


def test_stop_during_feed_call_discards_position(loop, store, feed, registry, timers, tracked, monkeypatch):
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:20:00Z', lat=52.0, lon=-20.0)))
    entered, release = _hold_position_fetch(monkeypatch, feed)

    worker, outcomes = _tick_in_background(loop)
    assert entered.wait(timeout=5)

    loop.cancel()
    store.update_fields(FLIGHT, is_tracking=False, standardized_status='completed')
    release.set()
    worker.join(timeout=5)

    assert outcomes == [TickOutcome.CANCELLED]
    journey = store.require(FLIGHT)
    assert [p.timestamp for p in journey.track] == ['2024-01-01T10:10:00Z']
    assert journey.standardized_status == 'completed'
    assert transport.sent == []


def test_flag_cleared_during_feed_call_discards_position(loop, store, feed, registry, timers, tracked,
                                                          monkeypatch):
    _, transport = connect(registry, timers)
    transport.sent.clear()
    feed.queue_position(make_position(FLIGHT, sample('2024-01-01T10:20:00Z', lat=52.0, lon=-20.0)))
    entered, release = _hold_position_fetch(monkeypatch, feed)

    worker, outcomes = _tick_in_background(loop)
    assert entered.wait(timeout=5)

    store.update_fields(FLIGHT, is_tracking=False)
    release.set()
    worker.join(timeout=5)

    assert outcomes == [TickOutcome.NOT_TRACKING]
    assert len(store.require(FLIGHT).track) == 1
    assert transport.sent == []
