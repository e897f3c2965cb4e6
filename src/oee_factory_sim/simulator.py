"""Factory simulator: one independent thread per machine.

Each machine gets its own ``random.Random``, seeded from the configured
seed and the machine id, so machines never contend for a shared generator
and a seeded run is reproducible per machine.
"""

import logging
import random
import threading
from typing import Dict, List, Optional

from .config import Config
from .events import ProductionEvent, StatusEvent
from .machine import MachineSimulator
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


def machine_rng(machine_id: int, seed: Optional[int] = None) -> random.Random:
    """Independent random source for one machine."""
    if seed is None:
        return random.Random()
    return random.Random(f"{seed}:{machine_id}")


class FactorySimulator:
    """Runs every configured machine and publishes its events."""

    def __init__(self, config: Config, publisher: Optional[EventPublisher] = None):
        self.config = config
        self._publisher = publisher or EventPublisher(config.mqtt)
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

        self.machines: Dict[int, MachineSimulator] = {}
        for machine_id in config.simulation.machine_ids:
            self.machines[machine_id] = MachineSimulator(
                machine_id,
                config.simulation,
                rng=machine_rng(machine_id, config.simulation.random_seed),
            )
        logger.info(f"Initialized {len(self.machines)} machines: {list(self.machines)}")

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    def start(self, dry_run: bool = False, clean_start: bool = False) -> bool:
        """Connect to the broker and launch one thread per machine."""
        if not self._publisher.connect(dry_run=dry_run):
            logger.error("Failed to connect to MQTT broker")
            return False

        if clean_start:
            self._publisher.clear_retained_topics(self.machines)

        for machine_id, machine in self.machines.items():
            thread = threading.Thread(
                target=machine.run,
                args=(self._emit_status, self._emit_production),
                name=f"machine-{machine_id}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

        logger.info(f"Starting IoT simulator for {len(self.machines)} machines...")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Signal every machine loop to return, then disconnect."""
        self._stop_event.set()
        for machine in self.machines.values():
            machine.stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._publisher.disconnect()
        logger.info("Simulator stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if it was."""
        return self._stop_event.wait(timeout)

    def _emit_status(self, event: StatusEvent) -> None:
        logger.info(f"[Machine {event.machine_id}] Publishing to {event.topic}: {event.status.value}")
        self._publisher.publish(event.topic, event)

    def _emit_production(self, event: ProductionEvent) -> None:
        outcome = "scrap" if event.is_scrap else "good"
        logger.debug(f"[Machine {event.machine_id}] Publishing to {event.topic}: {outcome}")
        self._publisher.publish(event.topic, event)
