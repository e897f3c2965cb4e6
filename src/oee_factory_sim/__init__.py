"""OEE Factory Simulator - MQTT machine telemetry and TimescaleDB ingestion."""

__version__ = "0.1.0"

from .config import Config, ConfigError
from .events import MachineStatus, ProductionEvent, StatusEvent
from .ingestion import IngestionRouter
from .machine import MachineSimulator
from .simulator import FactorySimulator

__all__ = [
    "Config",
    "ConfigError",
    "FactorySimulator",
    "IngestionRouter",
    "MachineSimulator",
    "MachineStatus",
    "ProductionEvent",
    "StatusEvent",
    "__version__",
]
