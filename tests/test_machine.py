"""Tests for the per-machine stochastic simulation."""

import itertools
import random
from datetime import datetime, timezone

import pytest

from oee_factory_sim.config import SimulationConfig
from oee_factory_sim.events import MachineStatus, ProductionEvent, StatusEvent
from oee_factory_sim.machine import MachineSimulator, MachineState

FIXED_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_machine(seed=42, sleeps=None, **overrides):
    """Machine with a seeded RNG that never really sleeps."""
    config = SimulationConfig(**overrides)
    recorded = sleeps if sleeps is not None else []

    def sleep(seconds):
        recorded.append(seconds)
        return False

    return MachineSimulator(
        machine_id=1,
        config=config,
        rng=random.Random(seed),
        sleep=sleep,
        clock=lambda: FIXED_TIME,
    )


def take(machine, n):
    return list(itertools.islice(machine.events(), n))


class TestMachineState:
    """Tests for MachineState."""

    def test_initial_state_is_running(self):
        state = MachineState(machine_id=5)

        assert state.status == MachineStatus.RUNNING
        assert state.cycle_count == 0
        assert state.parts_produced == 0
        assert state.parts_scrapped == 0


class TestEventSequence:
    """Tests for the shape and order of emitted events."""

    def test_first_event_is_running_status(self):
        machine = make_machine()

        first = take(machine, 1)[0]

        assert isinstance(first, StatusEvent)
        assert first.status == MachineStatus.RUNNING
        assert first.machine_id == 1
        assert first.timestamp == FIXED_TIME

    def test_status_events_alternate(self):
        machine = make_machine(downtime_chance=0.5)

        statuses = [e.status for e in take(machine, 2000) if isinstance(e, StatusEvent)]

        assert len(statuses) > 10
        assert statuses[0] == MachineStatus.RUNNING
        for previous, current in zip(statuses, statuses[1:]):
            assert previous != current

    def test_production_events_have_exactly_one_part(self):
        machine = make_machine(scrap_rate=0.5)

        production = [e for e in take(machine, 1000) if isinstance(e, ProductionEvent)]

        assert production
        for event in production:
            assert {event.parts_produced, event.parts_scrapped} == {0, 1}
        assert any(e.parts_scrapped == 1 for e in production)
        assert any(e.parts_produced == 1 for e in production)

    def test_zero_scrap_rate_never_scraps(self):
        machine = make_machine(scrap_rate=0.0, downtime_chance=0.3)

        production = [e for e in take(machine, 1000) if isinstance(e, ProductionEvent)]

        assert production
        assert all(e.parts_scrapped == 0 for e in production)

    def test_zero_downtime_chance_never_stops(self):
        machine = make_machine(downtime_chance=0.0)

        events = take(machine, 500)

        statuses = [e for e in events if isinstance(e, StatusEvent)]
        assert len(statuses) == 1
        assert statuses[0].status == MachineStatus.RUNNING
        assert all(isinstance(e, ProductionEvent) for e in events[1:])

    def test_stopped_immediately_follows_production(self):
        machine = make_machine(downtime_chance=0.5)

        events = take(machine, 500)

        for index, event in enumerate(events):
            if isinstance(event, StatusEvent) and event.status == MachineStatus.STOPPED:
                assert isinstance(events[index - 1], ProductionEvent)

    def test_running_follows_stopped(self):
        machine = make_machine(downtime_chance=1.0)

        events = take(machine, 7)

        kinds = [
            e.status.value if isinstance(e, StatusEvent) else "production"
            for e in events
        ]
        assert kinds == [
            "running",
            "production",
            "stopped",
            "running",
            "production",
            "stopped",
            "running",
        ]

    def test_counters_track_events(self):
        machine = make_machine(scrap_rate=0.3, downtime_chance=0.2)

        events = take(machine, 300)

        production = [e for e in events if isinstance(e, ProductionEvent)]
        statuses = [e for e in events if isinstance(e, StatusEvent)]
        assert machine.state.cycle_count == len(production)
        assert machine.state.parts_scrapped == sum(e.parts_scrapped for e in production)
        assert machine.state.parts_produced == sum(e.parts_produced for e in production)
        assert machine.state.status_changes == len(statuses)
        assert machine.state.status == statuses[-1].status


class TestDurations:
    """Tests for the suspension intervals drawn by the machine."""

    def test_cycle_time_without_performance_loss(self):
        sleeps = []
        machine = make_machine(
            sleeps=sleeps,
            ideal_cycle_time=3.0,
            performance_loss_chance=0.0,
            downtime_chance=0.0,
        )

        take(machine, 50)

        assert sleeps
        assert all(s == 3.0 for s in sleeps)

    def test_slow_cycles_add_bounded_delay(self):
        sleeps = []
        machine = make_machine(
            sleeps=sleeps,
            ideal_cycle_time=3.0,
            performance_loss_chance=1.0,
            performance_loss_max_delay=2.0,
            downtime_chance=0.0,
        )

        take(machine, 200)

        assert all(3.0 <= s < 5.0 for s in sleeps)
        assert machine.state.slow_cycles == len(sleeps)

    def test_downtime_within_bounds(self):
        sleeps = []
        machine = make_machine(
            sleeps=sleeps,
            ideal_cycle_time=1.0,
            performance_loss_chance=0.0,
            downtime_chance=1.0,
            downtime_min=10.0,
            downtime_max=30.0,
        )

        take(machine, 300)

        downtimes = [s for s in sleeps if s != 1.0]
        assert downtimes
        assert all(10.0 <= s < 30.0 for s in downtimes)


class TestReproducibility:
    """Tests for per-machine random sources."""

    def test_same_seed_same_sequence(self):
        first = take(make_machine(seed=7, scrap_rate=0.3, downtime_chance=0.2), 200)
        second = take(make_machine(seed=7, scrap_rate=0.3, downtime_chance=0.2), 200)

        assert first == second

    def test_different_seeds_diverge(self):
        first = take(make_machine(seed=1, scrap_rate=0.5, downtime_chance=0.5), 200)
        second = take(make_machine(seed=2, scrap_rate=0.5, downtime_chance=0.5), 200)

        assert first != second


class TestLifecycle:
    """Tests for single-use streams, cancellation and run()."""

    def test_events_cannot_be_restarted(self):
        machine = make_machine()
        machine.events()

        with pytest.raises(RuntimeError):
            machine.events()

    def test_interrupted_sleep_ends_stream(self):
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            return len(calls) >= 3

        machine = MachineSimulator(
            1,
            SimulationConfig(downtime_chance=0.0),
            rng=random.Random(0),
            sleep=sleep,
        )

        events = list(machine.events())

        # running + two completed cycles, third sleep was interrupted
        assert len(events) == 3
        assert isinstance(events[0], StatusEvent)
        assert all(isinstance(e, ProductionEvent) for e in events[1:])

    def test_run_dispatches_by_event_type(self):
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            return len(calls) > 5

        machine = MachineSimulator(
            3,
            SimulationConfig(downtime_chance=0.0),
            rng=random.Random(0),
            sleep=sleep,
        )
        statuses, productions = [], []

        machine.run(statuses.append, productions.append)

        assert len(statuses) == 1
        assert statuses[0].machine_id == 3
        assert len(productions) == 5

    def test_run_survives_failing_emitter(self):
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            return len(calls) > 3

        def failing_emit(event):
            raise ConnectionError("broker gone")

        machine = MachineSimulator(
            1,
            SimulationConfig(downtime_chance=0.0),
            rng=random.Random(0),
            sleep=sleep,
        )
        productions = []

        machine.run(failing_emit, productions.append)

        assert len(productions) == 3

    def test_stop_uses_stop_event(self):
        machine = MachineSimulator(1, SimulationConfig(), rng=random.Random(0))

        assert machine.stopped is False
        machine.stop()
        assert machine.stopped is True

        # Default sleep is the stop event's wait, which returns at once when set
        events = list(machine.events())
        assert len(events) == 1
        assert events[0].status == MachineStatus.RUNNING
