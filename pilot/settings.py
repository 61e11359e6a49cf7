import copy
import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

import psycopg
from psycopg import sql

from pilot.exceptions import NotFoundError, SettingsPersistError
from util.log import PILOT_LOGGER_NAME

if TYPE_CHECKING:
    from pilot.action.abstract_action import AbstractAction

KnobValue = Union[bool, int]


@unique
class KnobType(Enum):
    BOOLEAN = 0
    INTEGER = 1


@dataclass(frozen=True)
class KnobSpec:
    name: str
    knob_type: KnobType
    # Only meaningful for integer knobs.
    min_value: Optional[int] = None
    max_value: Optional[int] = None

    def contains(self, value: Any) -> bool:
        if self.knob_type == KnobType.BOOLEAN:
            return isinstance(value, bool)
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def format_value(self, value: KnobValue) -> str:
        if self.knob_type == KnobType.BOOLEAN:
            return "'true'" if value else "'false'"
        return str(value)


class KnobSettings:
    """
    A configuration: one value per knob. The search clones these freely, so the specs are shared
    between clones and only the values are copied.
    """

    def __init__(self, specs: dict[str, KnobSpec], values: dict[str, KnobValue]) -> None:
        assert specs.keys() == values.keys(), "every knob needs exactly one value"
        self.specs = specs
        self._values: dict[str, KnobValue] = {}
        for name, value in values.items():
            self.set(name, value)

    def get_spec(self, name: str) -> KnobSpec:
        if name not in self.specs:
            raise NotFoundError(f"unknown knob {name}")
        return self.specs[name]

    def get(self, name: str) -> KnobValue:
        if name not in self._values:
            raise NotFoundError(f"unknown knob {name}")
        return self._values[name]

    def set(self, name: str, value: KnobValue) -> None:
        spec = self.get_spec(name)
        if not spec.contains(value):
            raise ValueError(f"{value!r} is not a valid value of knob {name}")
        self._values[name] = value

    def clone(self) -> "KnobSettings":
        return KnobSettings(self.specs, copy.copy(self._values))

    def items(self) -> Iterator[tuple[str, KnobValue]]:
        return iter(self._values.items())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KnobSettings):
            return False
        return self._values == other._values

    def __repr__(self) -> str:
        return f"KnobSettings({self._values})"


class SettingsManager:
    """
    Owns the live configuration. The search only ever sees snapshots; the one mutation per planning
    cycle goes through apply().
    """

    def __init__(self, settings: KnobSettings) -> None:
        self.settings = settings

    def get_settings_snapshot(self) -> KnobSettings:
        return self.settings.clone()

    def get_value(self, name: str) -> KnobValue:
        return self.settings.get(name)

    def get_knob_spec(self, name: str) -> KnobSpec:
        return self.settings.get_spec(name)

    def get_knob_names(self) -> list[str]:
        return list(self.settings.specs.keys())

    def apply(self, action: "AbstractAction") -> str:
        """
        Apply the action to the live configuration and return the command that did it. The new value
        only becomes visible once it has been persisted. If persisting fails, SettingsPersistError is
        raised and the live configuration keeps its old value.
        """
        command = action.to_sql_command(self.settings)
        new_settings = self.settings.clone()
        action.apply(new_settings)
        self._persist(action.knob_name, new_settings.get(action.knob_name))
        self.settings = new_settings
        logging.getLogger(PILOT_LOGGER_NAME).info(
            f"Applied action {action.action_id}: {command}"
        )
        return command

    def _persist(self, knob_name: str, value: KnobValue) -> None:
        # In-memory settings have nothing to persist.
        pass


class PostgresSettingsManager(SettingsManager):
    def __init__(self, settings: KnobSettings, conn: psycopg.Connection[Any]) -> None:
        super().__init__(settings)
        assert conn.autocommit, "ALTER SYSTEM cannot run inside a transaction block"
        self.conn = conn

    @staticmethod
    def from_pg_settings(
        conn: psycopg.Connection[Any], knob_names: list[str]
    ) -> "PostgresSettingsManager":
        """
        Read the current value, type and bounds of each knob from pg_settings. Only bool and integer
        knobs can be tuned by the pilot.
        """
        specs: dict[str, KnobSpec] = {}
        values: dict[str, KnobValue] = {}
        rows = conn.execute(
            "SELECT name, setting, vartype, min_val, max_val FROM pg_settings WHERE name = ANY(%s)",
            (knob_names,),
        ).fetchall()
        found = {row[0]: row for row in rows}
        for name in knob_names:
            if name not in found:
                raise NotFoundError(f"knob {name} does not exist in pg_settings")
            _, setting, vartype, min_val, max_val = found[name]
            if vartype == "bool":
                specs[name] = KnobSpec(name, KnobType.BOOLEAN)
                values[name] = setting == "on"
            elif vartype == "integer":
                specs[name] = KnobSpec(
                    name, KnobType.INTEGER, int(min_val), int(max_val)
                )
                values[name] = int(setting)
            else:
                raise ValueError(f"knob {name} has unsupported type {vartype}")
        return PostgresSettingsManager(KnobSettings(specs, values), conn)

    def _persist(self, knob_name: str, value: KnobValue) -> None:
        spec = self.get_knob_spec(knob_name)
        try:
            self.conn.execute(
                sql.SQL("ALTER SYSTEM SET {} = {}").format(
                    sql.Identifier(knob_name), sql.SQL(spec.format_value(value))
                )
            )
            self.conn.execute("SELECT pg_reload_conf()")
        except psycopg.Error as e:
            raise SettingsPersistError(
                f"could not set {knob_name} = {spec.format_value(value)}: {e}"
            ) from e
