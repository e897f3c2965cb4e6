"""Command-line interface for the OEE factory simulator."""

import json
import logging
import signal
import sys
import threading
from pathlib import Path

import click
import paho.mqtt.client as mqtt

from . import __version__
from .config import Config, ConfigError, MQTTConfig, parse_machine_ids
from .events import TOPIC_PREFIX
from .ingestion import IngestionRouter, IngestionService
from .publisher import EventPublisher
from .schema import apply_schema
from .simulator import FactorySimulator
from .store import EventStore, StoreError

logger = logging.getLogger(__name__)

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file (environment variables override it)",
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path, **overrides) -> Config:
    """Load and validate config; any problem ends the process before connecting."""
    try:
        config = Config.load(config_path)
        if overrides.get("broker"):
            config.mqtt.broker = overrides["broker"]
        if overrides.get("port"):
            config.mqtt.port = overrides["port"]
        if overrides.get("client_id"):
            config.mqtt.client_id = overrides["client_id"]
        if overrides.get("machines"):
            config.simulation.machine_ids = parse_machine_ids(overrides["machines"])
        if overrides.get("seed") is not None:
            config.simulation.random_seed = overrides["seed"]
        config.validate()
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    return config


def _install_signal_handlers(stop) -> None:
    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def main(verbose):
    """OEE Factory Simulator - machine telemetry over MQTT into TimescaleDB.

    Machines alternate between running and stopped, publishing status and
    production events to:

      factory/machine/{machine_id}/status
      factory/machine/{machine_id}/production

    The ingest command stores those events for downstream OEE computation.
    """
    _setup_logging(verbose)


@main.command()
@config_option
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option("--machines", "-m", default=None, help="Comma-separated machine ids")
@click.option("--seed", type=int, default=None, help="Random seed for reproducible runs")
@click.option("--dry-run", is_flag=True, default=False, help="Log events instead of publishing")
@click.option(
    "--clean-start",
    is_flag=True,
    default=False,
    help="Clear the machines' retained MQTT topics before starting",
)
def simulate(config_path, broker, port, machines, seed, dry_run, clean_start):
    """Start the machine simulator."""
    config = _load_config(
        config_path, broker=broker, port=port, machines=machines, seed=seed
    )
    sim_config = config.simulation

    logger.info("Configuration loaded:")
    logger.info(f"  MQTT Broker: {config.mqtt.broker}:{config.mqtt.port}")
    logger.info(f"  Machine IDs: {sim_config.machine_ids}")
    logger.info(
        f"  Cycle: {sim_config.ideal_cycle_time}s (+<{sim_config.performance_loss_max_delay}s "
        f"at {sim_config.performance_loss_chance:.0%}), scrap {sim_config.scrap_rate:.0%}, "
        f"downtime {sim_config.downtime_chance:.0%} for "
        f"{sim_config.downtime_min}-{sim_config.downtime_max}s"
    )

    sim = FactorySimulator(config)
    if not sim.start(dry_run=dry_run, clean_start=clean_start):
        click.echo(
            f"Failed to connect to MQTT broker at {config.mqtt.broker}:{config.mqtt.port}. "
            "Is your MQTT broker running?",
            err=True,
        )
        sys.exit(1)

    _install_signal_handlers(sim.stop)
    click.echo("Press Ctrl+C to stop")
    sim.wait()


@main.command()
@config_option
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option("--client-id", default=None, help="MQTT client id (default: oee-ingestor)")
@click.option("--workers", "-w", type=click.IntRange(1, 64), default=4, help="Worker threads")
def ingest(config_path, broker, port, client_id, workers):
    """Store machine events from the bus into the database."""
    config = _load_config(config_path, broker=broker, port=port, client_id=client_id)
    if not client_id and config.mqtt.client_id == MQTTConfig.client_id:
        # Client ids must be unique per broker connection
        config.mqtt.client_id = "oee-ingestor"

    try:
        store = EventStore(config.database, max_conn=max(workers, 1) + 1)
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    service = IngestionService(config.mqtt, IngestionRouter(store), max_workers=workers)
    if not service.start():
        store.close()
        click.echo(
            f"Failed to connect to MQTT broker at {config.mqtt.broker}:{config.mqtt.port}",
            err=True,
        )
        sys.exit(1)

    stop_event = threading.Event()
    _install_signal_handlers(stop_event.set)
    click.echo("Press Ctrl+C to stop")
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        service.stop()
        store.close()


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file.

    Creates config.yaml with default settings for MQTT, the simulated
    machines and the database.
    """
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker settings")
    click.echo("  - Machine ids, cycle time, scrap and downtime rates")
    click.echo("  - Database connection")
    click.echo()
    click.echo(f"Run with: oee-sim simulate --config {config_path}")


@main.command("init-db")
@config_option
@click.option(
    "--no-timescale",
    is_flag=True,
    default=False,
    help="Plain PostgreSQL tables (no hypertables or retention policies)",
)
@click.option(
    "--retention-days",
    type=click.IntRange(0, None),
    default=30,
    help="Drop events older than this many days (0 disables)",
)
@click.option(
    "--no-planning",
    is_flag=True,
    default=False,
    help="Skip the machines, shifts and production_plan tables",
)
def init_db(config_path, no_timescale, retention_days, no_planning):
    """Create the event tables and the OEE planning tables."""
    config = _load_config(config_path)

    try:
        store = EventStore(config.database)
        try:
            count = apply_schema(
                store,
                timescale=not no_timescale,
                retention_days=retention_days,
                planning=not no_planning,
            )
        finally:
            store.close()
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Schema ready ({count} statements) on {config.database.dbname}")


@main.command("clear-retained")
@config_option
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option("--machines", "-m", default=None, help="Comma-separated machine ids")
def clear_retained(config_path, broker, port, machines):
    """Clear the retained status/production topics of the configured machines."""
    config = _load_config(config_path, broker=broker, port=port, machines=machines)

    publisher = EventPublisher(config.mqtt)
    if not publisher.connect():
        click.echo("Error: could not connect to MQTT broker", err=True)
        sys.exit(1)

    try:
        cleared = publisher.clear_retained_topics(config.simulation.machine_ids)
    finally:
        publisher.disconnect()

    click.echo(f"Cleared {cleared} retained topics")


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option(
    "--filter",
    "-f",
    "topic_filter",
    default="#",
    help="Topic filter below factory/machine (default: # for all)",
)
def subscribe(broker, port, topic_filter):
    """Subscribe to machine topics and display messages.

    Useful for debugging and monitoring the simulator output.
    """
    full_topic = f"{TOPIC_PREFIX}/{topic_filter}"

    def on_message(client, userdata, msg):
        short_topic = msg.topic.replace(TOPIC_PREFIX + "/", "")
        retained = " (retained)" if msg.retain else ""
        try:
            payload = json.loads(msg.payload.decode())
            click.echo(f"{short_topic}{retained}: {json.dumps(payload)}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            click.echo(f"{short_topic}{retained}: {msg.payload!r}")

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(full_topic, qos=1)
            click.echo(f"Subscribed to: {full_topic}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker, port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
