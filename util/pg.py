"""
Helpers for talking to the Postgres instance the pilot tunes. Both the replay engine and the settings
manager connect through these.
"""

from typing import Any

import psutil
import psycopg

DEFAULT_POSTGRES_USER = "pilot"
DEFAULT_POSTGRES_PASS = "pilot"
DEFAULT_POSTGRES_HOST = "localhost"
DEFAULT_POSTGRES_PORT = 5432
DEFAULT_POSTGRES_DBNAME = "postgres"


def get_connstr(
    pgport: int = DEFAULT_POSTGRES_PORT,
    dbname: str = DEFAULT_POSTGRES_DBNAME,
    user: str = DEFAULT_POSTGRES_USER,
    password: str = DEFAULT_POSTGRES_PASS,
    host: str = DEFAULT_POSTGRES_HOST,
) -> str:
    return f"postgresql://{user}:{password}@{host}:{pgport}/{dbname}"


def create_psycopg_conn(connstr: str, autocommit: bool = True) -> psycopg.Connection[Any]:
    """
    Replay connections are created with autocommit=False so every replayed query runs inside a
    transaction that we can roll back. ALTER SYSTEM cannot run inside a transaction block, so the
    settings manager uses autocommit=True.
    """
    # Statements are prepared explicitly during replay, so psycopg must not prepare any on its own.
    return psycopg.connect(connstr, autocommit=autocommit, prepare_threshold=None)


def get_is_postgres_running() -> bool:
    """
    Used as a sanity check before a planning cycle, since replay needs a live instance.
    """
    return len(get_running_postgres_ports()) > 0


def get_running_postgres_ports() -> list[int]:
    """
    Returns a list of all ports on which Postgres is currently running.
    """
    running_ports = []

    for conn in psutil.net_connections(kind="inet"):
        if conn.status == "LISTEN":
            try:
                proc = psutil.Process(conn.pid)
                if proc.name() == "postgres":
                    running_ports.append(conn.laddr.port)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    return running_ports
