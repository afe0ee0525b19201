import json
import logging
import unittest

from desdobra import create_app
from desdobra.config import Config
from desdobra.db import close_db
from desdobra.finance.factor.state_machine import FactorOperationState
from desdobra.observability import (
    JsonLogFormatter,
    MetricsRegistry,
    reset_metrics_for_tests,
    set_log_request_id,
)
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = False


class ObservabilityLoggingTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_health_exposes_http_and_transition_metrics(self) -> None:
        self.client.get("/api/unknown")

        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("db"), "sqlite")

        metrics = payload["metrics"]["http"]
        self.assertGreaterEqual(metrics["requests_total"], 1)
        self.assertGreaterEqual(metrics["errors_total"], 1)
        self.assertEqual(
            metrics["factor_transitions"],
            {"accepted_total": 0, "rejected_total": 0, "by_edge": []},
        )

    def test_request_id_is_echoed(self) -> None:
        response = self.client.get("/health", headers={"X-Request-Id": "req-abc"})
        self.assertEqual(response.headers.get("X-Request-Id"), "req-abc")
        self.assertTrue(response.headers.get("X-Response-Time-Ms"))

        generated = self.client.get("/health")
        self.assertTrue((generated.headers.get("X-Request-Id") or "").strip())

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="desdobra.factor",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="factor_operation_transition",
            args=(),
            exc_info=None,
        )
        record.operation_id = 7
        record.from_status = "draft"
        record.to_status = "sent_to_factor"
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")
        self.assertEqual(parsed.get("logger"), "desdobra.factor")
        self.assertEqual(parsed.get("operation_id"), 7)
        self.assertEqual(parsed.get("to_status"), "sent_to_factor")

class FactorTransitionMetricsTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="transition_metrics")
        TempConfig = self._temp_db.make_config(Config, TESTING=True)
        self.app = create_app(TempConfig)
        self.client = self.app.test_client()
        self.headers = {"X-Tenant-Id": "tenant-metrics"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_unknown_targets_share_one_edge(self) -> None:
        api = "/api/finance/factor"
        seed = self.client.post(f"{api}/seed", headers=self.headers).get_json()
        created = self.client.post(
            f"{api}/operations",
            json={"factorId": seed["factor_id"]},
            headers=self.headers,
        ).get_json()
        transition_url = f"{api}/operations/{created['operation']['id']}/transition"

        for index in range(25):
            res = self.client.post(transition_url, json={"status": f"junk{index}"}, headers=self.headers)
            self.assertEqual(res.status_code, 409)
        self.client.post(transition_url, json={"status": "completed"}, headers=self.headers)

        transitions = self.client.get("/health").get_json()["metrics"]["http"]["factor_transitions"]
        self.assertEqual(transitions["rejected_total"], 26)
        self.assertEqual(
            transitions["by_edge"],
            [
                {"from": "draft", "to": "completed", "result": "rejected", "count": 1},
                {"from": "draft", "to": "unknown", "result": "rejected", "count": 25},
            ],
        )

    def test_registry_keys_stay_bounded(self) -> None:
        registry = MetricsRegistry()
        for index in range(100):
            registry.observe_factor_transition(f"bogus{index}", f" draft{index}", accepted=False)
        registry.observe_factor_transition(FactorOperationState.DRAFT, "sent_to_factor", accepted=True)

        edges = registry.snapshot()["factor_transitions"]["by_edge"]
        self.assertEqual(
            edges,
            [
                {"from": "draft", "to": "sent_to_factor", "result": "accepted", "count": 1},
                {"from": "unknown", "to": "unknown", "result": "rejected", "count": 100},
            ],
        )



if __name__ == "__main__":
    unittest.main()
