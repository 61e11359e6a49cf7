import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from pilot.exceptions import InvalidTraceError, NotFoundError
from util.log import PILOT_LOGGER_NAME
from util.workspace import PilotWorkspace

QUERY_TEXT_FNAME = "query_text.csv"
QUERY_TRACE_FNAME = "query_trace.csv"


@dataclass(frozen=True)
class QueryInfo:
    query_id: int
    db_oid: int
    query_text: str
    # Postgres type names of $1, $2, ...
    param_types: tuple[str, ...]


@dataclass(frozen=True)
class TraceEvent:
    query_id: int
    timestamp: int
    params: tuple[Any, ...]


class QueryTrace:
    """
    The recorded arrivals of queries, kept in timestamp order. Events with equal timestamps keep the
    order in which they were added.
    """

    def __init__(self) -> None:
        self.query_infos: dict[int, QueryInfo] = {}
        self._events: list[TraceEvent] = []
        self._is_sorted = True

    def add_query(
        self,
        query_id: int,
        db_oid: int,
        query_text: str,
        param_types: Optional[list[str]] = None,
    ) -> None:
        if query_id in self.query_infos:
            raise InvalidTraceError(f"query {query_id} was added to the trace twice")
        self.query_infos[query_id] = QueryInfo(
            query_id, db_oid, query_text, tuple(param_types or [])
        )

    def add_event(
        self, query_id: int, timestamp: int, params: Optional[list[Any]] = None
    ) -> None:
        if query_id not in self.query_infos:
            raise NotFoundError(f"trace event references unknown query {query_id}")
        if len(self._events) > 0 and timestamp < self._events[-1].timestamp:
            self._is_sorted = False
        self._events.append(TraceEvent(query_id, int(timestamp), tuple(params or [])))

    def get_query_info(self, query_id: int) -> QueryInfo:
        if query_id not in self.query_infos:
            raise NotFoundError(f"query {query_id} is not in the trace")
        return self.query_infos[query_id]

    def get_events_in_order(self) -> list[TraceEvent]:
        if not self._is_sorted:
            # sort() is stable, which keeps the insertion order of ties.
            self._events.sort(key=lambda event: event.timestamp)
            self._is_sorted = True
        return self._events

    def get_num_events(self) -> int:
        return len(self._events)

    def is_empty(self) -> bool:
        return len(self._events) == 0


def _parse_json_list(raw: Any) -> list[Any]:
    if raw is None or (isinstance(raw, float) and pd.isna(raw)) or raw == "":
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        raise ValueError(f"expected a JSON list, got {raw}")
    return parsed


def _read_trace_csv(path: Path, columns: list[str]) -> pd.DataFrame:
    try:
        df = pd.read_csv(path, keep_default_na=False)
    except ValueError as e:
        # Includes pd.errors.ParserError and pd.errors.EmptyDataError.
        raise InvalidTraceError(f"could not parse {path}: {e}") from e
    missing = [column for column in columns if column not in df.columns]
    if len(missing) > 0:
        raise InvalidTraceError(f"{path} is missing the columns {missing}")
    return df


def load_query_trace(
    trace_path: Path, pilot_workspace: Optional[PilotWorkspace] = None
) -> QueryTrace:
    """
    Read query_text.csv (db_oid,query_id,query_text,parameter_type) and query_trace.csv
    (query_id,timestamp,parameters) from trace_path. Parameter lists are JSON arrays.

    Pass the workspace to keep a copy of the trace files in the current run's dir. Tests don't.
    """
    query_text_path = trace_path / QUERY_TEXT_FNAME
    query_trace_path = trace_path / QUERY_TRACE_FNAME
    for path in (query_text_path, query_trace_path):
        if not path.is_file():
            raise FileNotFoundError(f"trace file {path} does not exist")
    if pilot_workspace is not None:
        pilot_workspace.save_file(query_text_path)
        pilot_workspace.save_file(query_trace_path)

    trace = QueryTrace()
    query_text_df = _read_trace_csv(
        query_text_path, ["db_oid", "query_id", "query_text", "parameter_type"]
    )
    query_trace_df = _read_trace_csv(
        query_trace_path, ["query_id", "timestamp", "parameters"]
    )
    try:
        for row in query_text_df.itertuples(index=False):
            trace.add_query(
                int(row.query_id),
                int(row.db_oid),
                str(row.query_text),
                [str(t) for t in _parse_json_list(row.parameter_type)],
            )
        for row in query_trace_df.itertuples(index=False):
            trace.add_event(
                int(row.query_id), int(row.timestamp), _parse_json_list(row.parameters)
            )
    except ValueError as e:
        # int() of a non-integer cell, or a malformed JSON list.
        raise InvalidTraceError(f"could not parse the trace in {trace_path}: {e}") from e

    logging.getLogger(PILOT_LOGGER_NAME).info(
        f"Loaded {trace.get_num_events()} events of {len(trace.query_infos)} queries from {trace_path}"
    )
    return trace
