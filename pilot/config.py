from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pilot.exceptions import InvalidConfigError
from util.pg import (
    DEFAULT_POSTGRES_DBNAME,
    DEFAULT_POSTGRES_HOST,
    DEFAULT_POSTGRES_PASS,
    DEFAULT_POSTGRES_PORT,
    DEFAULT_POSTGRES_USER,
    get_connstr,
)
from util.workspace import fully_resolve_path

DEFAULT_FORECAST_INTERVAL = 10000000
DEFAULT_NUM_SAMPLES = 5
DEFAULT_OPTIMIZER_TIMEOUT = 10000000
DEFAULT_ROLLOUT_BUDGET = 100
DEFAULT_EXPLORATION_WEIGHT = 1.41
DEFAULT_SEED = 15721


@dataclass
class ForecastConfig:
    # Same unit as the trace timestamps (microseconds).
    interval: int = DEFAULT_FORECAST_INTERVAL
    num_samples: int = DEFAULT_NUM_SAMPLES
    # Microseconds.
    optimizer_timeout: int = DEFAULT_OPTIMIZER_TIMEOUT

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise InvalidConfigError(f"forecast.interval must be positive, got {self.interval}")
        if self.num_samples < 1:
            raise InvalidConfigError(
                f"forecast.num_samples must be at least 1, got {self.num_samples}"
            )
        if self.optimizer_timeout <= 0:
            raise InvalidConfigError(
                f"forecast.optimizer_timeout must be positive, got {self.optimizer_timeout}"
            )


@dataclass
class SearchConfig:
    rollout_budget: int = DEFAULT_ROLLOUT_BUDGET
    time_limit_s: Optional[float] = None
    # Exclusive end of the planning window. None means every segment.
    end_segment: Optional[int] = None
    exploration_weight: float = DEFAULT_EXPLORATION_WEIGHT
    seed: int = DEFAULT_SEED

    def __post_init__(self) -> None:
        if self.rollout_budget < 0:
            raise InvalidConfigError(
                f"search.rollout_budget must not be negative, got {self.rollout_budget}"
            )
        if self.time_limit_s is not None and self.time_limit_s <= 0:
            raise InvalidConfigError(
                f"search.time_limit_s must be positive, got {self.time_limit_s}"
            )
        if self.end_segment is not None and self.end_segment < 1:
            raise InvalidConfigError(
                f"search.end_segment must be at least 1, got {self.end_segment}"
            )


@dataclass
class PostgresConfig:
    host: str = DEFAULT_POSTGRES_HOST
    port: int = DEFAULT_POSTGRES_PORT
    user: str = DEFAULT_POSTGRES_USER
    password: str = DEFAULT_POSTGRES_PASS
    # {db_oid: database name}
    databases: dict[int, str] = field(
        default_factory=lambda: {1: DEFAULT_POSTGRES_DBNAME}
    )

    def __post_init__(self) -> None:
        if len(self.databases) == 0:
            raise InvalidConfigError("postgres.databases must name at least one database")

    def get_connstr(self, dbname: str) -> str:
        return get_connstr(
            pgport=self.port,
            dbname=dbname,
            user=self.user,
            password=self.password,
            host=self.host,
        )

    def get_connstrs(self) -> dict[int, str]:
        return {db_oid: self.get_connstr(dbname) for db_oid, dbname in self.databases.items()}


@dataclass
class PilotConfig:
    pilot_workspace_path: Path
    trace_path: Path
    knob_actions_path: Path
    postgres: PostgresConfig
    forecast: ForecastConfig
    search: SearchConfig


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data:
        raise InvalidConfigError(f"missing required config key: {key}")
    return data[key]


def parse_pilot_config(data: dict[str, Any]) -> PilotConfig:
    if not isinstance(data, dict):
        raise InvalidConfigError("the pilot config must be a mapping")
    postgres_data = data.get("postgres", {}) or {}
    try:
        return PilotConfig(
            pilot_workspace_path=fully_resolve_path(
                Path(_require(data, "pilot_workspace_path"))
            ),
            trace_path=fully_resolve_path(Path(_require(data, "trace_path"))),
            knob_actions_path=fully_resolve_path(
                Path(_require(data, "knob_actions_path"))
            ),
            postgres=PostgresConfig(
                host=str(postgres_data.get("host", DEFAULT_POSTGRES_HOST)),
                port=int(postgres_data.get("port", DEFAULT_POSTGRES_PORT)),
                user=str(postgres_data.get("user", DEFAULT_POSTGRES_USER)),
                password=str(postgres_data.get("password", DEFAULT_POSTGRES_PASS)),
                databases={
                    int(db_oid): str(dbname)
                    for db_oid, dbname in postgres_data.get(
                        "databases", {1: DEFAULT_POSTGRES_DBNAME}
                    ).items()
                },
            ),
            forecast=ForecastConfig(**(data.get("forecast", {}) or {})),
            search=SearchConfig(**(data.get("search", {}) or {})),
        )
    except TypeError as e:
        # Unknown keys in the forecast/search sections.
        raise InvalidConfigError(str(e)) from e


def load_pilot_config(config_path: Path) -> PilotConfig:
    with open(config_path) as f:
        return parse_pilot_config(yaml.safe_load(f))
