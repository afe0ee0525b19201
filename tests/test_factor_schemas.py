import unittest
from decimal import Decimal

from desdobra.errors import ValidationError
from desdobra.finance.factor.schemas import (
    parse_add_item,
    parse_apply_responses,
    parse_create_factor,
    parse_create_operation,
    parse_transition_target,
    parse_update_operation,
)


class FactorPayloadParsingTest(unittest.TestCase):
    def test_create_factor_accepts_camel_case(self) -> None:
        parsed = parse_create_factor({"name": "Factor Sul", "defaultInterestRate": "2.5", "defaultGraceDays": 3})
        self.assertEqual(parsed.name, "Factor Sul")
        self.assertEqual(parsed.default_interest_rate, Decimal("2.5"))
        self.assertEqual(parsed.default_grace_days, 3)
        self.assertFalse(parsed.default_auto_settle_buyback)

    def test_create_factor_rejects_out_of_range_rates(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_create_factor({"name": "Factor", "default_fee_rate": 101})
        self.assertEqual(ctx.exception.payload["field"], "default_fee_rate")

        with self.assertRaises(ValidationError):
            parse_create_factor({"name": "Factor", "default_grace_days": 400})

        with self.assertRaises(ValidationError) as ctx:
            parse_create_factor({"name": "F"})
        self.assertEqual(ctx.exception.payload["field"], "name")

    def test_create_operation_requires_factor_and_valid_dates(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_create_operation({})
        self.assertEqual(ctx.exception.payload["field"], "factor_id")

        with self.assertRaises(ValidationError) as ctx:
            parse_create_operation({"factorId": 1, "issueDate": "2026-02-30"})
        self.assertEqual(ctx.exception.payload["field"], "issue_date")

        parsed = parse_create_operation({"factorId": "7", "issueDate": "2026-02-10"})
        self.assertEqual(parsed.factor_id, 7)
        self.assertEqual(parsed.issue_date, "2026-02-10")

    def test_update_operation_rejects_unknown_status(self) -> None:
        with self.assertRaises(ValidationError):
            parse_update_operation({"status": "cancelled"})
        self.assertEqual(parse_update_operation({"status": "in_adjustment"}).status, "in_adjustment")

    def test_transition_target_reads_status_or_to(self) -> None:
        self.assertEqual(parse_transition_target({"status": "completed"}), "completed")
        self.assertEqual(parse_transition_target({"to": "draft"}), "draft")
        with self.assertRaises(ValidationError):
            parse_transition_target({})

    def test_add_item_validates_action_type(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_add_item({"actionType": "sell", "installmentId": 1})
        self.assertEqual(ctx.exception.payload["field"], "action_type")

        parsed = parse_add_item({"action_type": "buyback", "installment_id": 4, "buyback_settle_now": True})
        self.assertEqual(parsed.installment_id, 4)
        self.assertTrue(parsed.buyback_settle_now)

    def test_body_must_be_an_object(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_add_item(["discount"])
        self.assertEqual(ctx.exception.payload["field"], "body")


class FactorResponsesParsingTest(unittest.TestCase):
    def test_requires_at_least_one_response(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_apply_responses({"versionId": 1, "responses": []})
        self.assertEqual(ctx.exception.payload["field"], "responses")

    def test_field_path_points_to_failing_response(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_apply_responses(
                {
                    "versionId": 1,
                    "responses": [
                        {"itemId": 1, "responseStatus": "accepted"},
                        {"itemId": 2, "responseStatus": "maybe"},
                    ],
                }
            )
        self.assertEqual(ctx.exception.payload["field"], "responses.1.response_status")

    def test_adjusted_requires_amount_or_due_date(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_apply_responses({"versionId": 1, "responses": [{"itemId": 1, "responseStatus": "adjusted"}]})
        self.assertEqual(ctx.exception.message_key, "adjusted_response_requires_value")

        parsed = parse_apply_responses(
            {
                "versionId": 3,
                "responses": [
                    {"itemId": 1, "responseStatus": "adjusted", "adjustedAmount": "950.10", "feeAmount": 4},
                ],
            }
        )
        self.assertEqual(parsed.version_id, 3)
        self.assertEqual(parsed.responses[0].adjusted_amount, Decimal("950.10"))
        self.assertEqual(parsed.responses[0].fee_amount, Decimal("4"))
        self.assertEqual(parsed.responses[0].iof_amount, Decimal("0"))


if __name__ == "__main__":
    unittest.main()
