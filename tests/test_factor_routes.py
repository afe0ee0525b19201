import io
import unittest
import zipfile

from desdobra import create_app
from desdobra.config import Config
from desdobra.db import close_db
from desdobra.observability import reset_metrics_for_tests
from desdobra.ui_strings import error_message, success_message
from tests.helpers.temp_db import TempDbSandbox


API = "/api/finance/factor"


class FactorRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="factor_routes")
        TempConfig = self._temp_db.make_config(Config, TESTING=True)
        self.app = create_app(TempConfig)
        self.client = self.app.test_client()
        self.headers = {"X-Tenant-Id": "tenant-routes", "X-User-Id": "operador"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _seed(self) -> dict:
        res = self.client.post(f"{API}/seed", headers=self.headers)
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        payload = res.get_json()
        self.assertEqual(len(payload["installment_ids"]), 3)
        return payload

    def _operation_with_items(self):
        seed = self._seed()
        res = self.client.post(f"{API}/operations", json={"factorId": seed["factor_id"]}, headers=self.headers)
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        operation = res.get_json()["operation"]
        self.assertEqual(operation["status"], "draft")
        self.assertEqual(operation["created_by"], "operador")

        item_ids = []
        for installment_id in seed["installment_ids"][:2]:
            item_res = self.client.post(
                f"{API}/operations/{operation['id']}/items",
                json={"actionType": "discount", "installmentId": installment_id},
                headers=self.headers,
            )
            self.assertEqual(item_res.status_code, 201, item_res.get_data(as_text=True))
            item_ids.append(item_res.get_json()["item"]["id"])
        return seed, operation, item_ids

    def test_operation_lifecycle_over_http(self) -> None:
        _seed, operation, item_ids = self._operation_with_items()
        op_url = f"{API}/operations/{operation['id']}"

        check = self.client.get(f"{op_url}/transition-check?to=completed", headers=self.headers)
        self.assertEqual(check.status_code, 200)
        check_payload = check.get_json()
        self.assertFalse(check_payload["ok"])
        self.assertEqual(check_payload["reason"], "Invalid transition from draft to completed.")
        self.assertEqual(check_payload["allowed_next_states"], ["sent_to_factor"])
        self.assertTrue(check_payload["known_status"])

        sent_res = self.client.post(f"{op_url}/transition", json={"status": "sent_to_factor"}, headers=self.headers)
        self.assertEqual(sent_res.status_code, 200, sent_res.get_data(as_text=True))
        sent_payload = sent_res.get_json()
        self.assertEqual(sent_payload["operation"]["status"], "sent_to_factor")
        self.assertEqual(sent_payload["allowed_next_states"], ["completed", "in_adjustment"])

        detail = self.client.get(op_url, headers=self.headers).get_json()
        self.assertEqual(len(detail["versions"]), 1)
        self.assertEqual(detail["operation"]["status_label"], "Enviada ao factor")
        self.assertEqual(detail["items"][0]["action_label"], "Desconto")
        version_id = detail["versions"][0]["id"]

        responses_res = self.client.post(
            f"{op_url}/responses",
            json={
                "versionId": version_id,
                "responses": [
                    {"itemId": item_ids[0], "responseStatus": "accepted", "feeAmount": "10.50"},
                    {"itemId": item_ids[1], "responseStatus": "accepted"},
                ],
            },
            headers=self.headers,
        )
        self.assertEqual(responses_res.status_code, 200, responses_res.get_data(as_text=True))
        self.assertEqual(responses_res.get_json()["operation"]["status"], "sent_to_factor")

        conclude_res = self.client.post(f"{op_url}/conclude", json={}, headers=self.headers)
        self.assertEqual(conclude_res.status_code, 200, conclude_res.get_data(as_text=True))
        conclude_payload = conclude_res.get_json()
        self.assertEqual(conclude_payload["operation"]["status"], "completed")
        self.assertEqual(conclude_payload["postings_created"], 3)
        self.assertEqual(conclude_payload["message"], success_message("operation_completed"))

        again = self.client.post(f"{op_url}/conclude", json={}, headers=self.headers).get_json()
        self.assertTrue(again["idempotent"])
        self.assertEqual(again["message"], success_message("operation_already_completed"))

        with_factor = self.client.get(f"{API}/installments/with-factor", headers=self.headers).get_json()
        self.assertEqual(len(with_factor["items"]), 2)

        back_res = self.client.post(f"{op_url}/transition", json={"status": "draft"}, headers=self.headers)
        self.assertEqual(back_res.status_code, 409)
        back_payload = back_res.get_json()
        self.assertEqual(back_payload["error"], "invalid_transition")
        self.assertEqual(back_payload["message"], error_message("invalid_transition"))
        self.assertEqual(back_payload["from_status"], "completed")
        self.assertEqual(back_payload["to_status"], "draft")
        self.assertEqual(back_payload["reason"], "Invalid transition from completed to draft.")
        self.assertTrue((back_payload.get("request_id") or "").strip())

        health = self.client.get("/health").get_json()
        transitions = health["metrics"]["http"]["factor_transitions"]
        self.assertEqual(transitions["accepted_total"], 2)
        self.assertEqual(transitions["rejected_total"], 1)

    def test_transition_check_reports_unknown_state(self) -> None:
        _seed, operation, _item_ids = self._operation_with_items()
        res = self.client.get(
            f"{API}/operations/{operation['id']}/transition-check?to=cancelled",
            headers=self.headers,
        )
        payload = res.get_json()
        self.assertEqual(res.status_code, 200)
        self.assertFalse(payload["ok"])
        self.assertFalse(payload["known_status"])
        self.assertIn("(unknown state 'cancelled')", payload["reason"])

        ok_res = self.client.get(
            f"{API}/operations/{operation['id']}/transition-check?to=sent_to_factor",
            headers=self.headers,
        ).get_json()
        self.assertTrue(ok_res["ok"])
        self.assertEqual(ok_res["message"], success_message("transition_allowed"))

        missing = self.client.get(f"{API}/operations/{operation['id']}/transition-check", headers=self.headers)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["field"], "to")

    def test_item_not_eligible_and_removal(self) -> None:
        seed, operation, item_ids = self._operation_with_items()
        op_url = f"{API}/operations/{operation['id']}"

        buyback = self.client.post(
            f"{op_url}/items",
            json={"actionType": "buyback", "installmentId": seed["installment_ids"][2]},
            headers=self.headers,
        )
        self.assertEqual(buyback.status_code, 422)
        self.assertEqual(buyback.get_json()["error"], "item_not_eligible")

        removed = self.client.delete(f"{op_url}/items/{item_ids[0]}", headers=self.headers)
        self.assertEqual(removed.status_code, 200)
        self.assertTrue(removed.get_json()["removed"])

        missing = self.client.delete(f"{op_url}/items/{item_ids[0]}", headers=self.headers)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["error"], "item_not_found")

    def test_package_download(self) -> None:
        _seed, operation, _item_ids = self._operation_with_items()
        res = self.client.get(
            f"{API}/operations/{operation['id']}/downloads/package-zip",
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.mimetype, "application/zip")
        self.assertIn(
            f"factor_operacao_{operation['operation_number']}.zip",
            res.headers.get("Content-Disposition", ""),
        )
        with zipfile.ZipFile(io.BytesIO(res.get_data())) as archive:
            self.assertIn("README.txt", archive.namelist())

    def test_listing_and_tenant_isolation(self) -> None:
        _seed, operation, _item_ids = self._operation_with_items()

        listed = self.client.get(f"{API}/operations?status=draft", headers=self.headers).get_json()
        self.assertEqual([row["id"] for row in listed["items"]], [operation["id"]])
        self.assertEqual(listed["items"][0]["status_label"], "Rascunho")

        bad_status = self.client.get(f"{API}/operations?status=bogus", headers=self.headers)
        self.assertEqual(bad_status.status_code, 400)
        self.assertEqual(bad_status.get_json()["field"], "status")

        eligible = self.client.get(f"{API}/installments/eligible", headers=self.headers).get_json()
        self.assertEqual(len(eligible["items"]), 3)

        other_headers = {"X-Tenant-Id": "tenant-outro"}
        other = self.client.get(f"{API}/operations/{operation['id']}", headers=other_headers)
        self.assertEqual(other.status_code, 404)
        self.assertEqual(other.get_json()["error"], "operation_not_found")
        self.assertEqual(self.client.get(f"{API}/operations", headers=other_headers).get_json()["items"], [])

    def test_create_factor_validation(self) -> None:
        res = self.client.post(f"{API}/factors", json={"name": "X"}, headers=self.headers)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["field"], "name")

        created = self.client.post(
            f"{API}/factors",
            json={"name": "Factor Norte", "defaultInterestRate": 1.8},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201)
        names = [factor["name"] for factor in self.client.get(f"{API}/factors", headers=self.headers).get_json()["items"]]
        self.assertEqual(names, ["Factor Norte"])

    def test_seed_disabled_outside_testing(self) -> None:
        TempConfig = self._temp_db.make_config(Config, TESTING=False, SEED_ENABLED=False)
        app = create_app(TempConfig)
        res = app.test_client().post(f"{API}/seed", headers=self.headers)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "seed_disabled")


if __name__ == "__main__":
    unittest.main()
