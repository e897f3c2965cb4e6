"""Configuration management for the simulator and the ingestion service."""

import math
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv


class ConfigError(ValueError):
    """Raised when a configuration value is malformed or out of range."""


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "oee-simulator"
    qos: int = 1
    keepalive: int = 60
    connect_timeout: float = 10.0
    publish_timeout: float = 5.0


@dataclass
class SimulationConfig:
    """Simulation parameters. Durations are in seconds."""

    machine_ids: List[int] = field(default_factory=lambda: [1, 2, 3])
    ideal_cycle_time: float = 3.0
    scrap_rate: float = 0.05
    downtime_chance: float = 0.1
    downtime_min: float = 10.0
    downtime_max: float = 30.0
    performance_loss_chance: float = 0.20
    performance_loss_max_delay: float = 2.0
    random_seed: Optional[int] = None


@dataclass
class DatabaseConfig:
    """PostgreSQL / TimescaleDB connection parameters."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    dbname: str = "oee"

    @property
    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} user={self.user} "
            f"password={self.password} dbname={self.dbname}"
        )


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def default(cls) -> "Config":
        """Create a validated default configuration."""
        config = cls()
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Expected a mapping at the top of {config_path}")

        config = cls._from_dict(data)
        config.validate()
        return config

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Load configuration from environment variables (and a .env file)."""
        load_dotenv(find_dotenv(usecwd=True))
        config = base or cls()

        # MQTT settings
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = _env_int("MQTT_PORT", config.mqtt.port)
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)
        config.mqtt.client_id = os.getenv("MQTT_CLIENT_ID", config.mqtt.client_id)
        config.mqtt.qos = _env_int("MQTT_QOS", config.mqtt.qos)

        # Simulation settings
        sim = config.simulation
        machine_ids = os.getenv("MACHINE_IDS")
        if machine_ids:
            sim.machine_ids = parse_machine_ids(machine_ids)
        sim.ideal_cycle_time = _env_float("IDEAL_CYCLE_TIME", sim.ideal_cycle_time)
        sim.scrap_rate = _env_float("SCRAP_RATE", sim.scrap_rate)
        sim.downtime_chance = _env_float("DOWNTIME_CHANCE", sim.downtime_chance)
        sim.downtime_min = _env_float("DOWNTIME_MIN", sim.downtime_min)
        sim.downtime_max = _env_float("DOWNTIME_MAX", sim.downtime_max)
        sim.performance_loss_chance = _env_float(
            "PERFORMANCE_LOSS_CHANCE", sim.performance_loss_chance
        )
        sim.performance_loss_max_delay = _env_float(
            "PERFORMANCE_LOSS_MAX_DELAY", sim.performance_loss_max_delay
        )
        if os.getenv("RANDOM_SEED"):
            sim.random_seed = _env_int("RANDOM_SEED", 0)

        # Database settings
        db = config.database
        db.host = os.getenv("PG_HOST", db.host)
        db.port = _env_int("PG_PORT", db.port)
        db.user = os.getenv("PG_USER", db.user)
        db.password = os.getenv("PG_PASSWORD", db.password)
        db.dbname = os.getenv("PG_DB", db.dbname)

        config.validate()
        return config

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """YAML file (if given) first, then environment overrides."""
        config = cls.from_yaml(config_path) if config_path else cls()
        return cls.from_env(base=config)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls()

        try:
            if "mqtt" in data:
                mqtt_data = data["mqtt"] or {}
                config.mqtt = MQTTConfig(
                    broker=mqtt_data.get("broker", config.mqtt.broker),
                    port=int(mqtt_data.get("port", config.mqtt.port)),
                    username=mqtt_data.get("username", config.mqtt.username),
                    password=mqtt_data.get("password", config.mqtt.password),
                    client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                    qos=int(mqtt_data.get("qos", config.mqtt.qos)),
                    keepalive=int(mqtt_data.get("keepalive", config.mqtt.keepalive)),
                    connect_timeout=float(
                        mqtt_data.get("connect_timeout", config.mqtt.connect_timeout)
                    ),
                    publish_timeout=float(
                        mqtt_data.get("publish_timeout", config.mqtt.publish_timeout)
                    ),
                )

            if "simulation" in data:
                sim_data = data["simulation"] or {}
                defaults = config.simulation
                machine_ids = sim_data.get("machine_ids", defaults.machine_ids)
                if isinstance(machine_ids, str):
                    machine_ids = parse_machine_ids(machine_ids)
                seed = sim_data.get("random_seed")
                config.simulation = SimulationConfig(
                    machine_ids=[int(m) for m in machine_ids],
                    ideal_cycle_time=float(
                        sim_data.get("ideal_cycle_time", defaults.ideal_cycle_time)
                    ),
                    scrap_rate=float(sim_data.get("scrap_rate", defaults.scrap_rate)),
                    downtime_chance=float(
                        sim_data.get("downtime_chance", defaults.downtime_chance)
                    ),
                    downtime_min=float(sim_data.get("downtime_min", defaults.downtime_min)),
                    downtime_max=float(sim_data.get("downtime_max", defaults.downtime_max)),
                    performance_loss_chance=float(
                        sim_data.get(
                            "performance_loss_chance", defaults.performance_loss_chance
                        )
                    ),
                    performance_loss_max_delay=float(
                        sim_data.get(
                            "performance_loss_max_delay",
                            defaults.performance_loss_max_delay,
                        )
                    ),
                    random_seed=int(seed) if seed is not None else None,
                )

            if "database" in data:
                db_data = data["database"] or {}
                config.database = DatabaseConfig(
                    host=db_data.get("host", config.database.host),
                    port=int(db_data.get("port", config.database.port)),
                    user=db_data.get("user", config.database.user),
                    password=db_data.get("password", config.database.password),
                    dbname=db_data.get("dbname", config.database.dbname),
                )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        return config

    def validate(self) -> None:
        """Check every parameter eagerly; raise ConfigError on the first problem."""
        sim = self.simulation

        for name in (
            "ideal_cycle_time",
            "scrap_rate",
            "downtime_chance",
            "downtime_min",
            "downtime_max",
            "performance_loss_chance",
            "performance_loss_max_delay",
        ):
            value = getattr(sim, name)
            if not math.isfinite(value):
                raise ConfigError(f"{name} must be a finite number, got {value}")

        for name in ("ideal_cycle_time", "downtime_max", "performance_loss_max_delay"):
            if getattr(sim, name) > threading.TIMEOUT_MAX:
                raise ConfigError(f"{name} exceeds the longest supported wait")

        if not sim.machine_ids:
            raise ConfigError("At least one machine id is required")
        if len(set(sim.machine_ids)) != len(sim.machine_ids):
            raise ConfigError(f"Duplicate machine ids: {sim.machine_ids}")
        if any(m < 0 for m in sim.machine_ids):
            raise ConfigError(f"Machine ids must be non-negative: {sim.machine_ids}")

        if sim.ideal_cycle_time <= 0:
            raise ConfigError("ideal_cycle_time must be > 0")

        for name in ("scrap_rate", "downtime_chance", "performance_loss_chance"):
            value = getattr(sim, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")

        if sim.downtime_min < 0:
            raise ConfigError("downtime_min must be >= 0")
        if sim.downtime_max <= sim.downtime_min:
            raise ConfigError(
                f"downtime_max ({sim.downtime_max}) must be greater than "
                f"downtime_min ({sim.downtime_min})"
            )
        if sim.performance_loss_max_delay <= 0:
            raise ConfigError("performance_loss_max_delay must be > 0")

        for label, port in (("MQTT", self.mqtt.port), ("database", self.database.port)):
            if not 1 <= port <= 65535:
                raise ConfigError(f"{label} port out of range: {port}")
        if self.mqtt.qos not in (0, 1, 2):
            raise ConfigError(f"MQTT QoS must be 0, 1 or 2, got {self.mqtt.qos}")
        timeouts = (self.mqtt.connect_timeout, self.mqtt.publish_timeout)
        if not all(math.isfinite(t) and t > 0 for t in timeouts):
            raise ConfigError("MQTT timeouts must be finite and > 0")

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
            },
            "simulation": {
                "machine_ids": list(self.simulation.machine_ids),
                "ideal_cycle_time": self.simulation.ideal_cycle_time,
                "scrap_rate": self.simulation.scrap_rate,
                "downtime_chance": self.simulation.downtime_chance,
                "downtime_min": self.simulation.downtime_min,
                "downtime_max": self.simulation.downtime_max,
                "performance_loss_chance": self.simulation.performance_loss_chance,
                "performance_loss_max_delay": self.simulation.performance_loss_max_delay,
                "random_seed": self.simulation.random_seed,
            },
            "database": {
                "host": self.database.host,
                "port": self.database.port,
                "user": self.database.user,
                "password": self.database.password,
                "dbname": self.database.dbname,
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def parse_machine_ids(value: str) -> List[int]:
    """Parse a comma-separated id list such as "1, 2,3"."""
    ids = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            raise ConfigError(f"Invalid machine id '{part}'") from None
    return ids


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Invalid {key}: {value!r}") from None


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Invalid {key}: {value!r}") from None
