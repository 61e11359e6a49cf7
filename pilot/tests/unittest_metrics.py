import unittest

from pilot.metrics import (
    ExecutionOperatingUnitType,
    MetricsComponent,
    MetricsManager,
    OperatingUnitFeature,
)


class MetricsManagerTests(unittest.TestCase):
    def test_contexts_tag_their_query(self) -> None:
        metrics_manager = MetricsManager()
        feature = OperatingUnitFeature(ExecutionOperatingUnitType.SEQ_SCAN, (0.0,) * 9)
        metrics_manager.create_context(1).record_pipeline(0, [feature])
        metrics_manager.create_context(2).record_pipeline(0, [feature])
        metrics_manager.create_context(1).record_pipeline(1, [feature])

        component = MetricsComponent.EXECUTION_PIPELINE
        # Nothing is visible until aggregated.
        self.assertEqual(metrics_manager.aggregated_metrics(component).pipeline_data, [])
        metrics_manager.aggregate()
        self.assertEqual(
            [
                (d.query_id, d.pipeline_id)
                for d in metrics_manager.aggregated_metrics(component).pipeline_data
            ],
            [(1, 0), (2, 0), (1, 1)],
        )

        metrics_manager.reset_aggregated(component)
        self.assertEqual(metrics_manager.aggregated_metrics(component).pipeline_data, [])
        # Aggregating again doesn't bring old records back.
        metrics_manager.aggregate()
        self.assertEqual(metrics_manager.aggregated_metrics(component).pipeline_data, [])


if __name__ == "__main__":
    unittest.main()
