import unittest
from unittest.mock import patch

from desdobra import create_app
from desdobra.config import Config
from desdobra.db import close_db
from desdobra.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox


API = "/api/finance/factor"


def _build_temp_app(temp_db: TempDbSandbox, **overrides):
    attrs = {"PROPAGATE_EXCEPTIONS": False}
    attrs.update(overrides)
    return create_app(temp_db.make_config(Config, **attrs))


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = _build_temp_app(self._temp_db, TESTING=True)
        self.client = self.app.test_client()
        self.headers = {"X-Tenant-Id": "tenant-error-api"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_validation_error_reports_field(self) -> None:
        response = self.client.post(
            f"{API}/operations",
            json={"factorId": "abc"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "validation_error")
        self.assertEqual(payload.get("field"), "factor_id")
        self.assertEqual(payload.get("message"), error_message("validation_error"))
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_body_must_be_json_object(self) -> None:
        response = self.client.post(f"{API}/factors", json=["Factor"], headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json().get("field"), "body")

    def test_missing_factor_returns_not_found(self) -> None:
        response = self.client.post(f"{API}/operations", json={"factorId": 999}, headers=self.headers)
        self.assertEqual(response.status_code, 404)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "factor_not_found")
        self.assertEqual(payload.get("message"), error_message("factor_not_found"))
        self.assertEqual(payload.get("factor_id"), 999)

    def test_unknown_route_keeps_http_status(self) -> None:
        response = self.client.get(f"{API}/does-not-exist", headers=self.headers)
        self.assertEqual(response.status_code, 404)

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        with patch(
            "desdobra.routes.factor_routes.FactorService.list_factors",
            side_effect=RuntimeError("stack_secret_token"),
        ):
            response = self.client.get(f"{API}/factors", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)


if __name__ == "__main__":
    unittest.main()
