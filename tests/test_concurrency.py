"""
Races that matter for dispatch: many drivers accepting at once, an accept
landing together with a cancel or an expiry, and one driver accepting
several rides at the same time.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

from dispatch.results import Rejection
from rides.models import RideState


def run_together(*calls):
    """Start every call at the same instant and return their results in order."""
    barrier = threading.Barrier(len(calls))

    def worker(call):
        barrier.wait()
        return call()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(worker, call) for call in calls]
        return [future.result() for future in futures]


def test_simultaneous_accepts_have_exactly_one_winner(dispatcher, connect, rider):
    driver_ids = [f"driver-{i}" for i in range(20)]
    drivers = {driver_id: connect(dispatcher, driver_id) for driver_id in driver_ids}
    request_id = dispatcher.submit_ride_request("rider-1", "A", "B", 10).request_id

    outcomes = run_together(
        *[lambda d=driver_id: dispatcher.driver_respond(request_id, d, "accept") for driver_id in driver_ids]
    )

    winners = [driver_id for driver_id, outcome in zip(driver_ids, outcomes) if outcome.ok]
    assert len(winners) == 1
    assert all(
        outcome.rejection == Rejection.ALREADY_RESOLVED
        for outcome in outcomes
        if not outcome.ok
    )

    winner = winners[0]
    record = dispatcher.get_request(request_id)
    assert record.state == RideState.ACCEPTED
    assert record.assigned_driver_id == winner

    # one assignment for the rider, one withdrawal per loser
    assert rider.types() == ["ride_assigned"]
    assert rider.messages[0]["driver_id"] == winner
    for driver_id, connection in drivers.items():
        if driver_id == winner:
            assert connection.types() == ["ride_offer", "ride_assigned"]
        else:
            assert connection.types() == ["ride_offer", "offer_withdrawn"]

    # only the winner is bound to the request
    assigned = [d for d in driver_ids if dispatcher.registry.assignment_of(d) is not None]
    assert assigned == [winner]


def test_accept_racing_cancel_resolves_one_way(make_dispatcher, connect):
    for _ in range(50):
        dispatcher = make_dispatcher()
        connect(dispatcher, "A")
        rider = connect(dispatcher, "rider-1", role="rider")
        request_id = dispatcher.submit_ride_request("rider-1", "A", "B", 10).request_id

        accepted, cancelled = run_together(
            lambda: dispatcher.driver_respond(request_id, "A", "accept"),
            lambda: dispatcher.cancel_request(request_id, "rider-1"),
        )

        # exactly one side wins, and the stored state agrees with it
        assert accepted.ok != cancelled.ok
        record = dispatcher.get_request(request_id)
        if accepted.ok:
            assert record.state == RideState.ACCEPTED
            assert rider.types() == ["ride_assigned"]
        else:
            assert record.state == RideState.CANCELLED
            assert rider.types() == ["ride_cancelled"]
            assert dispatcher.registry.assignment_of("A") is None


def test_accept_racing_expiry_resolves_one_way(make_dispatcher, connect):
    for _ in range(50):
        dispatcher = make_dispatcher()
        connect(dispatcher, "A")
        rider = connect(dispatcher, "rider-1", role="rider")
        request_id = dispatcher.submit_ride_request("rider-1", "A", "B", 10).request_id

        accepted, expired = run_together(
            lambda: dispatcher.driver_respond(request_id, "A", "accept"),
            lambda: dispatcher.expire_request(request_id),
        )

        assert accepted.ok != expired.ok
        if accepted.ok:
            assert dispatcher.get_request(request_id).state == RideState.ACCEPTED
            assert rider.types() == ["ride_assigned"]
        else:
            assert dispatcher.get_request(request_id).state == RideState.EXPIRED
            assert rider.types() == ["ride_expired"]


def test_one_driver_accepting_many_rides_gets_one(dispatcher, connect):
    connect(dispatcher, "A")
    request_ids = []
    for i in range(10):
        connect(dispatcher, f"rider-{i}", role="rider")
        request_ids.append(dispatcher.submit_ride_request(f"rider-{i}", "A", "B", 10).request_id)

    outcomes = run_together(
        *[lambda r=request_id: dispatcher.driver_respond(r, "A", "accept") for request_id in request_ids]
    )

    won = [request_id for request_id, outcome in zip(request_ids, outcomes) if outcome.ok]
    assert len(won) == 1
    # losers either saw A already taken, or a request that ran out of drivers
    assert all(
        outcome.rejection in (Rejection.NOT_ELIGIBLE, Rejection.ALREADY_RESOLVED)
        for outcome in outcomes
        if not outcome.ok
    )
    assert dispatcher.registry.assignment_of("A") == won[0]
    assert dispatcher.current_ride("A").id == won[0]


def test_independent_requests_resolve_in_parallel(dispatcher, connect):
    pairs = []
    for i in range(10):
        connect(dispatcher, f"driver-{i}")
    for i in range(10):
        rider = connect(dispatcher, f"rider-{i}", role="rider")
        request_id = dispatcher.submit_ride_request(f"rider-{i}", "A", "B", 10).request_id
        pairs.append((f"driver-{i}", request_id, rider))

    outcomes = run_together(
        *[lambda d=driver_id, r=request_id: dispatcher.driver_respond(r, d, "accept") for driver_id, request_id, _ in pairs]
    )

    assert all(outcome.ok for outcome in outcomes)
    for driver_id, request_id, rider in pairs:
        assert dispatcher.registry.assignment_of(driver_id) == request_id
        assert rider.types() == ["ride_assigned"]
    # every per-request lock was released and dropped
    assert len(dispatcher.locks) == 0
