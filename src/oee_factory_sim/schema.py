"""Table definitions.

The event tables are partitioned by ``time`` (TimescaleDB hypertables) and
expire rows after a retention window. The planning tables (machines, shifts
and the per-shift production plan) are read by the downstream OEE queries;
nothing in this package writes them after they are seeded.
"""

import logging
from typing import List

from .store import EventStore

logger = logging.getLogger(__name__)

CREATE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS status_events (
        time timestamptz NOT NULL,
        machine_id integer NOT NULL,
        status text NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS production_events (
        time timestamptz NOT NULL,
        machine_id integer NOT NULL,
        parts_produced integer NOT NULL,
        parts_scrapped integer NOT NULL
    )
    """,
]

EVENT_TABLES = ("status_events", "production_events")

CREATE_PLANNING_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS machines (
        id integer PRIMARY KEY,
        name varchar(100) NOT NULL,
        ideal_cycle_time_sec double precision NOT NULL,
        default_target_count integer NOT NULL DEFAULT 1000,
        default_planned_downtime_min integer NOT NULL DEFAULT 45
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shifts (
        id serial PRIMARY KEY,
        name varchar(100) NOT NULL UNIQUE,
        start_time time NOT NULL,
        end_time time NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS production_plan (
        plan_date date NOT NULL,
        machine_id integer REFERENCES machines (id),
        shift_id integer REFERENCES shifts (id),
        target_count integer NOT NULL,
        planned_downtime_min integer NOT NULL DEFAULT 60,
        UNIQUE (machine_id, shift_id, plan_date)
    )
    """,
]

# (id, name, ideal cycle time in seconds, target count, planned downtime in minutes)
DEFAULT_MACHINES = [
    (1, "CNC Machine 1", 3.0, 9000, 45),
    (2, "Stamping Press 2", 3.0, 9000, 60),
    (3, "Assembly Line 3", 3.0, 7500, 30),
]

DEFAULT_SHIFTS = [
    ("Day Shift", "07:00:00", "15:00:00"),
    ("Night Shift", "15:00:00", "23:00:00"),
    ("Graveyard Shift", "23:00:00", "07:00:00"),
]

PLAN_RETENTION_DAYS = 90


def _sql(statement: str) -> str:
    return " ".join(statement.split())


def _planning_statements(timescale: bool, plan_retention_days: int) -> List[str]:
    statements = [_sql(sql) for sql in CREATE_PLANNING_TABLES]

    machines = ", ".join(
        f"({machine_id}, '{name}', {cycle}, {target}, {downtime})"
        for machine_id, name, cycle, target, downtime in DEFAULT_MACHINES
    )
    statements.append(
        "INSERT INTO machines (id, name, ideal_cycle_time_sec, default_target_count, "
        f"default_planned_downtime_min) VALUES {machines} ON CONFLICT (id) DO NOTHING"
    )
    shifts = ", ".join(f"('{name}', '{start}', '{end}')" for name, start, end in DEFAULT_SHIFTS)
    statements.append(
        f"INSERT INTO shifts (name, start_time, end_time) VALUES {shifts} "
        "ON CONFLICT (name) DO NOTHING"
    )

    if timescale:
        statements.append(
            "SELECT create_hypertable('production_plan', 'plan_date', "
            "chunk_time_interval => INTERVAL '1 month', if_not_exists => TRUE)"
        )
        statements.append(
            "SELECT add_dimension('production_plan', 'machine_id', "
            "number_partitions => 4, if_not_exists => TRUE)"
        )
        statements.append(
            "SELECT add_dimension('production_plan', 'shift_id', "
            "number_partitions => 3, if_not_exists => TRUE)"
        )
        if plan_retention_days > 0:
            statements.append(
                f"SELECT add_retention_policy('production_plan', "
                f"INTERVAL '{int(plan_retention_days)} days', if_not_exists => TRUE)"
            )

    return statements


def schema_statements(
    timescale: bool = True,
    retention_days: int = 30,
    planning: bool = True,
    plan_retention_days: int = PLAN_RETENTION_DAYS,
) -> List[str]:
    """SQL statements that create the event tables and, optionally, the planning tables."""
    statements = [_sql(sql) for sql in CREATE_TABLES]

    if timescale:
        statements.append("CREATE EXTENSION IF NOT EXISTS timescaledb")
        for table in EVENT_TABLES:
            statements.append(
                f"SELECT create_hypertable('{table}', 'time', if_not_exists => TRUE)"
            )
        if retention_days > 0:
            for table in EVENT_TABLES:
                statements.append(
                    f"SELECT add_retention_policy('{table}', INTERVAL '{int(retention_days)} days', "
                    f"if_not_exists => TRUE)"
                )

    if planning:
        statements.extend(_planning_statements(timescale, plan_retention_days))

    return statements


def apply_schema(
    store: EventStore,
    timescale: bool = True,
    retention_days: int = 30,
    planning: bool = True,
) -> int:
    """Create the tables. Returns the number of statements run."""
    statements = schema_statements(
        timescale=timescale, retention_days=retention_days, planning=planning
    )
    for sql in statements:
        logger.debug(f"Executing: {sql}")
        store.execute(sql)

    logger.info(
        f"Schema applied ({len(statements)} statements, timescale={timescale}, "
        f"retention={retention_days}d, planning={planning})"
    )
    return len(statements)
