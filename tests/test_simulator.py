"""Tests for the FactorySimulator thread wiring."""

import time

import pytest
from unittest.mock import MagicMock

from oee_factory_sim.config import Config
from oee_factory_sim.events import MachineStatus, ProductionEvent, StatusEvent
from oee_factory_sim.simulator import FactorySimulator, machine_rng


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestMachineRng:
    """Tests for per-machine random sources."""

    def test_seeded_is_reproducible(self):
        assert machine_rng(1, seed=42).random() == machine_rng(1, seed=42).random()

    def test_machines_get_different_streams(self):
        assert machine_rng(1, seed=42).random() != machine_rng(2, seed=42).random()


class TestFactorySimulator:
    """Tests for FactorySimulator."""

    @pytest.fixture
    def config(self):
        config = Config()
        config.simulation.machine_ids = [1, 2, 3]
        config.simulation.ideal_cycle_time = 0.01
        config.simulation.performance_loss_max_delay = 0.01
        config.simulation.downtime_min = 0.01
        config.simulation.downtime_max = 0.02
        config.simulation.random_seed = 1
        return config

    @pytest.fixture
    def mock_publisher(self):
        publisher = MagicMock()
        publisher.connect.return_value = True
        publisher.publish.return_value = True
        return publisher

    @pytest.fixture
    def simulator(self, config, mock_publisher):
        sim = FactorySimulator(config, publisher=mock_publisher)
        yield sim
        sim.stop(timeout=1)

    def test_init_creates_machines(self, simulator):
        assert sorted(simulator.machines) == [1, 2, 3]
        assert simulator.machines[2].machine_id == 2

    def test_machines_have_independent_rngs(self, simulator):
        rngs = [m._rng for m in simulator.machines.values()]

        assert len({id(r) for r in rngs}) == 3

    def test_start_fails_without_broker(self, simulator, mock_publisher):
        mock_publisher.connect.return_value = False

        assert simulator.start() is False
        assert simulator.running is False

    def test_start_publishes_running_for_every_machine(self, simulator, mock_publisher):
        assert simulator.start(dry_run=True) is True
        mock_publisher.connect.assert_called_once_with(dry_run=True)

        def all_running():
            topics = {c.args[0] for c in mock_publisher.publish.call_args_list}
            return all(f"factory/machine/{m}/status" in topics for m in (1, 2, 3))

        assert wait_until(all_running)

    def test_production_events_flow(self, simulator, mock_publisher):
        simulator.start()

        def has_production():
            return any(
                isinstance(c.args[1], ProductionEvent)
                for c in mock_publisher.publish.call_args_list
            )

        assert wait_until(has_production)

    def test_publish_failure_keeps_machines_running(self, simulator, mock_publisher):
        mock_publisher.publish.return_value = False
        simulator.start()

        assert wait_until(lambda: mock_publisher.publish.call_count > 10)
        assert simulator.running is True

    def test_clean_start_clears_retained(self, simulator, mock_publisher):
        simulator.start(clean_start=True)

        mock_publisher.clear_retained_topics.assert_called_once()
        assert list(mock_publisher.clear_retained_topics.call_args.args[0]) == [1, 2, 3]

    def test_stop_joins_threads_and_disconnects(self, simulator, mock_publisher):
        simulator.start()
        threads = list(simulator._threads)

        simulator.stop(timeout=2)

        assert all(not t.is_alive() for t in threads)
        assert simulator.running is False
        assert simulator.wait(timeout=0) is True
        mock_publisher.disconnect.assert_called()

    def test_stopping_one_machine_leaves_others_running(self, simulator, mock_publisher):
        simulator.start()
        simulator.machines[1].stop()
        threads = {t.name: t for t in simulator._threads}

        threads["machine-1"].join(timeout=2)
        assert not threads["machine-1"].is_alive()
        assert not simulator.machines[2].stopped
        assert not simulator.machines[3].stopped

        def machine_publishes(machine_id):
            return sum(
                1
                for c in mock_publisher.publish.call_args_list
                if c.args[1].machine_id == machine_id
            )

        before = machine_publishes(2)
        assert wait_until(lambda: machine_publishes(2) > before)
        assert threads["machine-2"].is_alive()
        assert simulator.running is True

    def test_stop_stops_every_machine(self, simulator):
        simulator.start()

        simulator.stop(timeout=2)

        assert all(m.stopped for m in simulator.machines.values())

    def test_per_machine_order(self, simulator, mock_publisher):
        simulator.start()
        assert wait_until(lambda: mock_publisher.publish.call_count > 60)
        simulator.stop(timeout=2)

        for machine_id in (1, 2, 3):
            statuses = [
                c.args[1].status
                for c in mock_publisher.publish.call_args_list
                if isinstance(c.args[1], StatusEvent) and c.args[1].machine_id == machine_id
            ]
            assert statuses[0] == MachineStatus.RUNNING
            for previous, current in zip(statuses, statuses[1:]):
                assert previous != current
