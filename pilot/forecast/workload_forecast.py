import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from pilot.config import DEFAULT_NUM_SAMPLES, DEFAULT_OPTIMIZER_TIMEOUT
from pilot.exceptions import NotFoundError
from pilot.forecast.query_trace import QueryInfo, QueryTrace
from util.log import PILOT_LOGGER_NAME

# A tuple of parameter values for one execution of a query.
ParamBinding = tuple[Any, ...]


@dataclass(frozen=True)
class PlanningWindow:
    """The segments [start, end) a cost evaluation covers."""

    start: int
    end: int

    def __post_init__(self) -> None:
        assert (
            0 <= self.start < self.end
        ), f"invalid planning window [{self.start}, {self.end})"

    def __len__(self) -> int:
        return self.end - self.start

    def segment_indices(self) -> range:
        return range(self.start, self.end)


@dataclass(frozen=True)
class WorkloadForecastSegment:
    """
    One interval of the forecast: how many times each query arrived in [start_ts, end_ts) and a
    bounded sample of the parameters it arrived with.
    """

    segment_index: int
    start_ts: int
    end_ts: int
    query_counts: Mapping[int, int]
    query_params: Mapping[int, tuple[ParamBinding, ...]]

    def get_query_ids(self) -> list[int]:
        return list(self.query_counts.keys())

    def get_count(self, query_id: int) -> int:
        return self.query_counts.get(query_id, 0)

    def get_params(self, query_id: int) -> tuple[ParamBinding, ...]:
        if query_id not in self.query_params:
            raise NotFoundError(
                f"query {query_id} did not arrive in segment {self.segment_index}"
            )
        return self.query_params[query_id]

    def contains(self, timestamp: int) -> bool:
        return self.start_ts <= timestamp < self.end_ts


@dataclass(frozen=True)
class WindowQuery:
    """Everything the cost oracle needs to replay one query over a planning window."""

    info: QueryInfo
    # Arrivals inside the window.
    count: int
    params: tuple[ParamBinding, ...]


class WorkloadForecast:
    """
    Breaks the queries of a trace into fixed-width segments by their timestamps.

    Timestamps are integers, so the horizon of a trace is the inclusive range [min_ts, max_ts],
    i.e. max_ts - min_ts + 1 units wide, and it is covered by ceil(horizon / interval) segments.
    Segment i is the half-open range [min_ts + i * interval, min_ts + (i + 1) * interval).
    """

    def __init__(
        self,
        trace: QueryTrace,
        forecast_interval: int,
        num_sample: int = DEFAULT_NUM_SAMPLES,
        optimizer_timeout: int = DEFAULT_OPTIMIZER_TIMEOUT,
    ) -> None:
        assert forecast_interval > 0
        assert num_sample > 0
        self.trace = trace
        self.forecast_interval = forecast_interval
        self.num_sample = num_sample
        self.optimizer_timeout = optimizer_timeout

        # The first num_sample parameter bindings of each query across the whole trace.
        self.query_id_to_params: dict[int, list[ParamBinding]] = {}
        self.forecast_segments: list[WorkloadForecastSegment] = []
        self._create_segments()
        logging.getLogger(PILOT_LOGGER_NAME).info(
            f"Forecast has {self.get_number_of_segments()} segments of width {forecast_interval}"
        )

    def _create_segments(self) -> None:
        events = self.trace.get_events_in_order()
        if len(events) == 0:
            self.min_ts = 0
            self.max_ts = -1
            return

        self.min_ts = events[0].timestamp
        self.max_ts = events[-1].timestamp
        horizon = self.max_ts - self.min_ts + 1
        num_segments = -(-horizon // self.forecast_interval)

        counts: list[dict[int, int]] = [{} for _ in range(num_segments)]
        params: list[dict[int, list[ParamBinding]]] = [{} for _ in range(num_segments)]
        for event in events:
            segment_index = (event.timestamp - self.min_ts) // self.forecast_interval
            qid = event.query_id
            counts[segment_index][qid] = counts[segment_index].get(qid, 0) + 1

            segment_params = params[segment_index].setdefault(qid, [])
            if len(segment_params) < self.num_sample:
                segment_params.append(event.params)
            all_params = self.query_id_to_params.setdefault(qid, [])
            if len(all_params) < self.num_sample:
                all_params.append(event.params)

        for i in range(num_segments):
            start_ts = self.min_ts + i * self.forecast_interval
            self.forecast_segments.append(
                WorkloadForecastSegment(
                    segment_index=i,
                    start_ts=start_ts,
                    end_ts=start_ts + self.forecast_interval,
                    query_counts=MappingProxyType(counts[i]),
                    query_params=MappingProxyType(
                        {qid: tuple(p) for qid, p in params[i].items()}
                    ),
                )
            )

    def get_number_of_segments(self) -> int:
        return len(self.forecast_segments)

    def get_segment(self, segment_index: int) -> WorkloadForecastSegment:
        return self.forecast_segments[segment_index]

    def get_query_ids(self) -> list[int]:
        return list(self.query_id_to_params.keys())

    def get_query_info(self, query_id: int) -> QueryInfo:
        if query_id not in self.query_id_to_params:
            raise NotFoundError(f"query {query_id} is not in the forecast")
        return self.trace.get_query_info(query_id)

    def get_query_params(self, query_id: int) -> list[ParamBinding]:
        if query_id not in self.query_id_to_params:
            raise NotFoundError(f"query {query_id} is not in the forecast")
        return self.query_id_to_params[query_id]

    def get_full_window(self) -> PlanningWindow:
        assert self.get_number_of_segments() > 0
        return PlanningWindow(0, self.get_number_of_segments())

    def get_window_queries(self, window: PlanningWindow) -> dict[int, WindowQuery]:
        """
        Group the queries that arrive in the window. Parameter samples are taken from the segments in
        order and capped at num_sample per query.
        """
        assert window.end <= self.get_number_of_segments()
        counts: dict[int, int] = {}
        params: dict[int, list[ParamBinding]] = {}
        for segment_index in window.segment_indices():
            segment = self.forecast_segments[segment_index]
            for qid, count in segment.query_counts.items():
                counts[qid] = counts.get(qid, 0) + count
                query_params = params.setdefault(qid, [])
                for binding in segment.query_params[qid]:
                    if len(query_params) >= self.num_sample:
                        break
                    query_params.append(binding)

        return {
            qid: WindowQuery(self.get_query_info(qid), counts[qid], tuple(params[qid]))
            for qid in counts
        }
