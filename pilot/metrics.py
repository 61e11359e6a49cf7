import threading
from dataclasses import dataclass, field
from enum import Enum, unique

# The attribute vector of every operating unit has this layout.
OU_ATTRIBUTE_NAMES = (
    "plan_rows",
    "plan_width",
    "actual_rows",
    "actual_loops",
    "startup_cost",
    "total_cost",
    "shared_hit_blocks",
    "shared_read_blocks",
    "elapsed_us",
)
ELAPSED_US_ATTRIBUTE_INDEX = OU_ATTRIBUTE_NAMES.index("elapsed_us")


@unique
class ExecutionOperatingUnitType(Enum):
    SEQ_SCAN = 1
    IDX_SCAN = 2
    HASHJOIN_BUILD = 3
    HASHJOIN_PROBE = 4
    NLJOIN = 5
    MERGEJOIN = 6
    AGG_BUILD = 7
    AGG_ITERATE = 8
    SORT_BUILD = 9
    SORT_ITERATE = 10
    MATERIALIZE = 11
    LIMIT = 12
    INSERT = 13
    UPDATE = 14
    DELETE = 15
    OUTPUT = 16
    OTHER = 17


@unique
class MetricsComponent(Enum):
    EXECUTION_PIPELINE = 0


@dataclass(frozen=True)
class OperatingUnitFeature:
    ou_type: ExecutionOperatingUnitType
    attributes: tuple[float, ...]

    def get_all_attributes(self) -> list[float]:
        return list(self.attributes)


@dataclass
class PipelineData:
    query_id: int
    pipeline_id: int
    features: list[OperatingUnitFeature]


@dataclass
class PipelineMetricRawData:
    pipeline_data: list[PipelineData] = field(default_factory=list)


class PipelineMetricsContext:
    """
    Handed to the query engine for one replay. The query id is carried here explicitly so that
    concurrent replays can't mix up whose pipelines they are recording.
    """

    def __init__(self, query_id: int, metrics_manager: "MetricsManager") -> None:
        self.query_id = query_id
        self.metrics_manager = metrics_manager

    def record_pipeline(
        self, pipeline_id: int, features: list[OperatingUnitFeature]
    ) -> None:
        self.metrics_manager.record(PipelineData(self.query_id, pipeline_id, features))


class MetricsManager:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raw_pipeline_data: list[PipelineData] = []
        self._aggregated: dict[MetricsComponent, PipelineMetricRawData] = {
            MetricsComponent.EXECUTION_PIPELINE: PipelineMetricRawData()
        }

    def create_context(self, query_id: int) -> PipelineMetricsContext:
        return PipelineMetricsContext(query_id, self)

    def record(self, data: PipelineData) -> None:
        with self._lock:
            self._raw_pipeline_data.append(data)

    def aggregate(self) -> None:
        """
        Move everything recorded since the last call into the aggregated store.
        """
        with self._lock:
            self._aggregated[MetricsComponent.EXECUTION_PIPELINE].pipeline_data.extend(
                self._raw_pipeline_data
            )
            self._raw_pipeline_data = []

    def aggregated_metrics(self, component: MetricsComponent) -> PipelineMetricRawData:
        with self._lock:
            return self._aggregated[component]

    def reset_aggregated(self, component: MetricsComponent) -> None:
        with self._lock:
            self._aggregated[component] = PipelineMetricRawData()
