import unittest

from pilot.exceptions import ReplayExecutionFailureError, StaleTraceReferenceError
from pilot.forecast.workload_forecast import PlanningWindow, WorkloadForecast
from pilot.metrics import (
    ExecutionOperatingUnitType,
    MetricsComponent,
    MetricsManager,
    OperatingUnitFeature,
    PipelineData,
)
from pilot.pilot_util import collect_pipeline_features, group_features_by_ou
from pilot.tests.pilot_unittest_util import (
    FakeQueryEngine,
    make_knob_settings,
    make_trace,
)

OUType = ExecutionOperatingUnitType


def _feature(ou_type: OUType, value: float) -> OperatingUnitFeature:
    return OperatingUnitFeature(ou_type, (value,) * 9)


class GroupFeaturesByOUTests(unittest.TestCase):
    def test_positions(self) -> None:
        pipeline_data = [
            PipelineData(
                1, 0, [_feature(OUType.SEQ_SCAN, 1.0), _feature(OUType.HASHJOIN_BUILD, 2.0)]
            ),
            PipelineData(
                1, 1, [_feature(OUType.HASHJOIN_PROBE, 3.0), _feature(OUType.SEQ_SCAN, 4.0)]
            ),
            PipelineData(2, 0, [_feature(OUType.SEQ_SCAN, 5.0)]),
        ]
        positions, ou_to_features = group_features_by_ou(pipeline_data)

        self.assertEqual(
            [(p.query_id, p.pipeline_id, p.ou_type, p.position) for p in positions],
            [
                (1, 0, OUType.SEQ_SCAN, 0),
                (1, 0, OUType.HASHJOIN_BUILD, 0),
                (1, 1, OUType.HASHJOIN_PROBE, 0),
                (1, 1, OUType.SEQ_SCAN, 1),
                (2, 0, OUType.SEQ_SCAN, 2),
            ],
        )
        self.assertEqual(
            [row[0] for row in ou_to_features[OUType.SEQ_SCAN]], [1.0, 4.0, 5.0]
        )
        self.assertEqual(len(ou_to_features[OUType.HASHJOIN_BUILD]), 1)
        self.assertNotIn(OUType.SORT_BUILD, ou_to_features)
        # Every position points back at the attributes it came from.
        for position, (data_index, feature_index) in zip(
            positions, [(0, 0), (0, 1), (1, 0), (1, 1), (2, 0)]
        ):
            feature = pipeline_data[data_index].features[feature_index]
            self.assertEqual(
                ou_to_features[position.ou_type][position.position],
                feature.get_all_attributes(),
            )

    def test_empty(self) -> None:
        positions, ou_to_features = group_features_by_ou([])
        self.assertEqual(positions, [])
        self.assertEqual(ou_to_features, {})


class CollectPipelineFeaturesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = FakeQueryEngine(tables={"t1": 10, "t2": 5})
        self.metrics_manager = MetricsManager()
        trace = make_trace(
            [(1, 0), (2, 1), (1, 2), (1, 15)],
            query_texts={1: "INSERT INTO t1 VALUES ($1)", 2: "SELECT * FROM t2 WHERE a = $1"},
        )
        self.forecast = WorkloadForecast(trace, 10)
        self.settings = make_knob_settings()

    def _collect(self, window: PlanningWindow) -> list[PipelineData]:
        return collect_pipeline_features(
            self.engine, self.metrics_manager, self.forecast, window, self.settings
        )

    def test_replays_every_sample(self) -> None:
        pipeline_data = self._collect(self.forecast.get_full_window())

        self.assertEqual(
            sorted(self.engine.replayed), [(1, (0,)), (1, (2,)), (1, (3,)), (2, (1,))]
        )
        # Two pipelines per replay.
        self.assertEqual(len(pipeline_data), 8)
        self.assertEqual(
            sorted({(d.query_id, d.pipeline_id) for d in pipeline_data}),
            [(1, 0), (1, 1), (2, 0), (2, 1)],
        )
        # Nothing is left behind for the next collection.
        self.assertEqual(
            self.metrics_manager.aggregated_metrics(
                MetricsComponent.EXECUTION_PIPELINE
            ).pipeline_data,
            [],
        )

    def test_window_limits_replay(self) -> None:
        self._collect(PlanningWindow(1, 2))
        self.assertEqual(self.engine.replayed, [(1, (3,))])

    def test_replay_never_changes_the_database(self) -> None:
        before = dict(self.engine.tables)
        self._collect(self.forecast.get_full_window())
        self._collect(self.forecast.get_full_window())
        self.assertEqual(self.engine.tables, before)
        self.assertEqual(self.engine.num_begun, 8)
        self.assertEqual(self.engine.num_aborted, 8)
        self.assertEqual(self.engine.num_open, 0)

    def test_stale_query_fails_collection(self) -> None:
        self.engine.stale_query_ids.add(2)
        with self.assertRaises(StaleTraceReferenceError) as cm:
            self._collect(self.forecast.get_full_window())
        self.assertEqual(cm.exception.query_id, 2)
        self.assertEqual(self.engine.num_open, 0)

    def test_execution_failure_fails_collection(self) -> None:
        before = dict(self.engine.tables)
        self.engine.failing_query_ids.add(1)
        with self.assertRaises(ReplayExecutionFailureError) as cm:
            self._collect(self.forecast.get_full_window())
        self.assertEqual(cm.exception.query_id, 1)
        self.assertEqual(self.engine.num_open, 0)
        self.assertEqual(self.engine.tables, before)
        # The partial results of a failed collection are dropped.
        self.assertEqual(
            self.metrics_manager.aggregated_metrics(
                MetricsComponent.EXECUTION_PIPELINE
            ).pipeline_data,
            [],
        )
        self.engine.failing_query_ids.clear()
        self.assertEqual(len(self._collect(PlanningWindow(1, 2))), 2)

    def test_unreachable_database_fails_collection(self) -> None:
        self.engine.is_unreachable = True
        with self.assertRaises(ReplayExecutionFailureError) as cm:
            self._collect(self.forecast.get_full_window())
        self.assertIn("Connection refused", cm.exception.reason)
        self.assertEqual(self.engine.num_begun, 0)

    def test_failed_rollback_fails_collection(self) -> None:
        self.engine.is_abort_failing = True
        with self.assertRaises(ReplayExecutionFailureError) as cm:
            self._collect(self.forecast.get_full_window())
        self.assertIn("could not abort", cm.exception.reason)
        self.assertEqual(self.engine.num_open, 0)

    def test_failed_rollback_keeps_the_replay_error(self) -> None:
        # Query 1 is replayed first, so the stale bind happens before any clean abort.
        self.engine.stale_query_ids.add(1)
        self.engine.is_abort_failing = True
        with self.assertRaises(StaleTraceReferenceError) as cm:
            self._collect(self.forecast.get_full_window())
        self.assertEqual(cm.exception.query_id, 1)
        self.assertEqual(self.engine.num_open, 0)


if __name__ == "__main__":
    unittest.main()
