from pilot.forecast.query_trace import QueryInfo, QueryTrace, TraceEvent, load_query_trace
from pilot.forecast.workload_forecast import (
    PlanningWindow,
    WindowQuery,
    WorkloadForecast,
    WorkloadForecastSegment,
)
