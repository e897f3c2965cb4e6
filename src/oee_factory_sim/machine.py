"""Per-machine stochastic simulation.

Each machine alternates between two states:

- RUNNING: completes cycles of ``ideal_cycle_time`` seconds, sometimes slowed
  down by a random extra delay (performance loss). Each cycle yields a good
  part or a scrapped one (quality loss), then may break down (availability
  loss).
- STOPPED: waits a random downtime in ``[downtime_min, downtime_max)`` and
  comes back online.

Every transition and every completed cycle yields exactly one event.
"""

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from .config import SimulationConfig
from .events import Event, MachineStatus, ProductionEvent, StatusEvent, utc_now

logger = logging.getLogger(__name__)

# sleep(seconds) -> truthy when the machine has been asked to stop
SleepFn = Callable[[float], Optional[bool]]


@dataclass
class MachineState:
    """Runtime state for one machine, owned by its simulation loop."""

    machine_id: int
    status: MachineStatus = MachineStatus.RUNNING
    cycle_count: int = 0
    parts_produced: int = 0
    parts_scrapped: int = 0
    status_changes: int = 0
    slow_cycles: int = 0


class MachineSimulator:
    """Independent stochastic process for a single machine."""

    def __init__(
        self,
        machine_id: int,
        config: SimulationConfig,
        rng: Optional[random.Random] = None,
        sleep: Optional[SleepFn] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.machine_id = machine_id
        self.config = config
        self._rng = rng or random.Random()
        self._stop_event = stop_event or threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._clock = clock or utc_now
        self._started = False
        self.state = MachineState(machine_id=machine_id)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the simulation loop to return at its next suspension point."""
        self._stop_event.set()

    # -------------------------------------------------------------------------
    # Random draws
    # -------------------------------------------------------------------------

    def _cycle_duration(self) -> float:
        """Ideal cycle time, plus a delay in [0, max_delay) on slow cycles."""
        duration = self.config.ideal_cycle_time
        if self._rng.random() < self.config.performance_loss_chance:
            delay = self._rng.random() * self.config.performance_loss_max_delay
            self.state.slow_cycles += 1
            logger.debug(f"[Machine {self.machine_id}] Performance loss: +{delay:.2f}s")
            duration += delay
        return duration

    def _downtime_duration(self) -> float:
        """Uniform draw in [downtime_min, downtime_max)."""
        low = self.config.downtime_min
        high = self.config.downtime_max
        return low + self._rng.random() * (high - low)

    # -------------------------------------------------------------------------
    # Event stream
    # -------------------------------------------------------------------------

    def _status_event(self, status: MachineStatus) -> StatusEvent:
        self.state.status = status
        self.state.status_changes += 1
        return StatusEvent(
            machine_id=self.machine_id,
            status=status,
            timestamp=self._clock(),
        )

    def _production_event(self, scrap: bool) -> ProductionEvent:
        self.state.cycle_count += 1
        if scrap:
            self.state.parts_scrapped += 1
        else:
            self.state.parts_produced += 1
        return ProductionEvent(
            machine_id=self.machine_id,
            parts_produced=0 if scrap else 1,
            parts_scrapped=1 if scrap else 0,
            timestamp=self._clock(),
        )

    def events(self) -> Iterator[Event]:
        """Lazy, infinite event sequence. Can only be consumed once.

        Returns (ends the iteration) only when a suspension is interrupted
        by the stop signal.
        """
        if self._started:
            raise RuntimeError(f"Machine {self.machine_id} simulation already started")
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[Event]:
        # All machines start running
        yield self._status_event(MachineStatus.RUNNING)

        while True:
            if self.state.status == MachineStatus.RUNNING:
                if self._sleep(self._cycle_duration()):
                    return

                scrap = self._rng.random() < self.config.scrap_rate
                yield self._production_event(scrap)

                if self._rng.random() < self.config.downtime_chance:
                    yield self._status_event(MachineStatus.STOPPED)

            else:
                downtime = self._downtime_duration()
                logger.info(f"[Machine {self.machine_id}] is DOWN for {downtime:.1f}s")
                if self._sleep(downtime):
                    return

                yield self._status_event(MachineStatus.RUNNING)

    def run(
        self,
        emit_status: Callable[[StatusEvent], object],
        emit_production: Callable[[ProductionEvent], object],
    ) -> None:
        """Drive the event stream into the given callbacks until stopped."""
        logger.info(f"[Machine {self.machine_id}] Simulation started")

        for event in self.events():
            emit = emit_status if isinstance(event, StatusEvent) else emit_production
            try:
                emit(event)
            except Exception as e:
                logger.error(f"[Machine {self.machine_id}] Error emitting {event.kind.value} event: {e}")

        logger.info(
            f"[Machine {self.machine_id}] Simulation stopped after "
            f"{self.state.cycle_count} cycles ({self.state.parts_scrapped} scrapped)"
        )
