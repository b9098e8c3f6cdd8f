import re
from unittest.mock import patch

import requests

from kendofund.extensions import db
from kendofund.models import Donation
from tests.base import AppTestCase, gateway_response

INIT_URL = "/api/donations/initialize"


def _init_ok(reference="GKF_1_X"):
    return gateway_response(
        200,
        {
            "status": True,
            "message": "Authorization URL created",
            "data": {
                "authorization_url": "https://checkout.paystack.com/abc123",
                "access_code": "abc123",
                "reference": reference,
            },
        },
    )


@patch("kendofund.services.paystack.requests.post")
class InitializeTests(AppTestCase):
    def test_success_returns_checkout_details(self, post):
        post.return_value = _init_ok()

        r = self.post_json(
            INIT_URL,
            {
                "amount": 50,
                "email": "ama@example.com",
                "name": "Ama Mensah",
                "metadata": {"donationType": "SPONSORSHIP", "campaign": "2nd Tunis International Open Championships"},
            },
        )

        self.assertEqual(r.status_code, 200)
        body = r.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["authorization_url"], "https://checkout.paystack.com/abc123")
        self.assertEqual(body["data"]["access_code"], "abc123")
        self.assertEqual(r.headers["Cache-Control"].split(",")[0], "no-store")

        post.assert_called_once()
        url = post.call_args.args[0]
        kwargs = post.call_args.kwargs
        self.assertEqual(url, "https://api.paystack.test/transaction/initialize")
        self.assertEqual(kwargs["timeout"], 10.0)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk_test_kendofund")

        sent = kwargs["json"]
        self.assertEqual(sent["amount"], 5000)
        self.assertEqual(sent["currency"], "GHS")
        self.assertRegex(sent["reference"], r"^GKF_\d+_[0-9A-Z]{7}$")
        self.assertEqual(sent["callback_url"], f"https://kendoghana.test/donate/success?ref={sent['reference']}")

        meta = sent["metadata"]
        self.assertEqual(meta["donation_type"], "SPONSORSHIP")
        self.assertEqual(meta["donor_name"], "Ama Mensah")
        self.assertFalse(meta["anonymous"])
        fields = {f["display_name"]: f["value"] for f in meta["custom_fields"]}
        self.assertEqual(
            fields,
            {
                "Donation Type": "SPONSORSHIP",
                "Campaign": "2nd Tunis International Open Championships",
                "Donor Name": "Ama Mensah",
                "Anonymous": "No",
            },
        )

    def test_defaults_for_metadata(self, post):
        post.return_value = _init_ok()
        self.post_json(INIT_URL, {"amount": "1100", "email": "kofi@example.com", "anonymous": True})

        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["amount"], 110000)
        self.assertEqual(sent["metadata"]["donation_type"], "General Donation")
        self.assertEqual(sent["metadata"]["campaign"], "General")
        names = [f["display_name"] for f in sent["metadata"]["custom_fields"]]
        self.assertNotIn("Donor Name", names)
        self.assertEqual(sent["metadata"]["custom_fields"][-1]["value"], "Yes")

    def test_nothing_is_persisted(self, post):
        post.return_value = _init_ok()
        self.post_json(INIT_URL, {"amount": 50, "email": "ama@example.com"})
        self.assertEqual(db.session.query(Donation).count(), 0)

    def test_zero_amount_is_rejected_without_gateway_call(self, post):
        r = self.post_json(INIT_URL, {"amount": 0, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.get_json(), {"success": False, "message": "Minimum donation amount is ₵1"})
        post.assert_not_called()

    def test_above_maximum(self, post):
        r = self.post_json(INIT_URL, {"amount": 1000001, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 400)
        self.assertIn("₵1,000,000", r.get_json()["message"])
        post.assert_not_called()

    def test_missing_fields(self, post):
        for payload in ({"email": "ama@example.com"}, {"amount": 10}, {}):
            with self.subTest(payload=payload):
                r = self.post_json(INIT_URL, payload)
                self.assertEqual(r.status_code, 400)
                self.assertEqual(r.get_json()["message"], "Amount and email are required")
        post.assert_not_called()

    def test_invalid_email(self, post):
        r = self.post_json(INIT_URL, {"amount": 10, "email": "not an email"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.get_json()["message"], "Invalid email address")

    def test_non_numeric_amount(self, post):
        r = self.post_json(INIT_URL, {"amount": "ten", "email": "ama@example.com"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.get_json()["message"], "Invalid donation amount")

    def test_gateway_timeout(self, post):
        post.side_effect = requests.Timeout("slow")
        r = self.post_json(INIT_URL, {"amount": 10, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 504)
        self.assertEqual(r.get_json()["message"], "Payment gateway timeout. Please try again.")

    def test_gateway_error_status_is_forwarded(self, post):
        post.return_value = gateway_response(401, {"status": False, "message": "Invalid key"})
        r = self.post_json(INIT_URL, {"amount": 10, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.get_json()["message"], "Invalid key")

    def test_malformed_gateway_answer(self, post):
        post.return_value = gateway_response(200, {"message": "ok"})
        r = self.post_json(INIT_URL, {"amount": 10, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.get_json()["message"], "Invalid response from payment gateway")

    def test_missing_secret_key(self, post):
        self.app.config["PAYSTACK_SECRET_KEY"] = ""
        r = self.post_json(INIT_URL, {"amount": 10, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.get_json()["message"], "Payment gateway not configured")
        post.assert_not_called()

    def test_production_requires_live_key(self, post):
        self.app.config["ENV"] = "production"
        r = self.post_json(INIT_URL, {"amount": 10, "email": "ama@example.com"})
        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.get_json()["message"], "Invalid payment configuration")
        post.assert_not_called()


class ReferenceTests(AppTestCase):
    def test_reference_shape(self):
        from kendofund.services.donations import generate_reference

        ref = generate_reference(now_ms=1760781600000)
        self.assertTrue(re.match(r"^GKF_1760781600000_[0-9A-Z]{7}$", ref))
        self.assertNotEqual(generate_reference(), generate_reference())
