import os
from unittest.mock import patch

from kendofund import create_app
from kendofund.config import TestingConfig
from kendofund.extensions import db
from kendofund.models import Donation
from tests.base import REF, AppTestCase


class HealthTests(AppTestCase):
    def test_healthz_and_version(self):
        r = self.client.get("/healthz")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["status"], "ok")
        self.assertIn("X-Request-ID", r.headers)

        r = self.client.get("/version", headers={"X-Request-ID": "abc"})
        self.assertEqual(r.get_json()["env"], "testing")
        self.assertEqual(r.headers["X-Request-ID"], "abc")

    def test_payments_health(self):
        r = self.client.get("/payments/health?strict=1")
        self.assertEqual(r.status_code, 200)
        body = r.get_json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["components"]["db"]["ok"])
        self.assertEqual(body["components"]["paystack"]["mode"], "test")
        self.assertEqual(body["components"]["outbox"]["pending"], 0)

    def test_strict_health_fails_without_gateway(self):
        self.app.config["PAYSTACK_SECRET_KEY"] = ""
        self.app.config["PAYSTACK_PUBLIC_KEY"] = ""
        self.assertEqual(self.client.get("/payments/health").status_code, 200)
        r = self.client.get("/payments/health?strict=1")
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.get_json()["status"], "degraded")

    def test_payments_config_exposes_public_key_only(self):
        body = self.client.get("/payments/config").get_json()
        self.assertEqual(body["publicKey"], "pk_test_kendofund")
        self.assertEqual(body["currency"], "GHS")
        self.assertNotIn("sk_test_kendofund", str(body))


class AppFactoryTests(AppTestCase):
    def test_both_blueprints_always_register(self):
        with patch.dict(os.environ, {"DISABLE_BPS": "payments,api"}):
            app = create_app(TestingConfig)
        self.assertIn("api", app.blueprints)
        self.assertIn("payments", app.blueprints)


class DonationLookupTests(AppTestCase):
    def test_not_found(self):
        r = self.client.get(f"/api/donations/{REF}")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.get_json(), {"success": False, "message": "Donation not found"})

    def _add_anonymous(self):
        db.session.add(Donation(reference=REF, email="Ama@Example.com", amount_minor=5000, status="PAID", anonymous=True,
                                donor_name="Ama", meta={"note": "in memory of sensei"}))
        db.session.commit()

    def test_found_without_token_is_masked(self):
        self._add_anonymous()

        body = self.client.get(f"/api/donations/{REF}").get_json()
        self.assertEqual(body["donation"]["amount"], 50.0)
        self.assertEqual(body["donation"]["email"], "am***@example.com")
        self.assertEqual(body["donation"]["donor_name"], "Anonymous")
        self.assertNotIn("metadata", body["donation"])

    def test_wrong_token_is_masked(self):
        self.app.config["CAMPAIGN_ADMIN_TOKENS"] = "s3cret"
        self._add_anonymous()

        body = self.client.get(f"/api/donations/{REF}", headers={"Authorization": "Bearer nope"}).get_json()
        self.assertEqual(body["donation"]["email"], "am***@example.com")
        self.assertNotIn("metadata", body["donation"])

    def test_admin_token_sees_full_record(self):
        self.app.config["CAMPAIGN_ADMIN_TOKENS"] = "s3cret"
        self._add_anonymous()

        body = self.client.get(f"/api/donations/{REF}", headers={"Authorization": "Bearer s3cret"}).get_json()
        self.assertEqual(body["donation"]["email"], "ama@example.com")
        self.assertEqual(body["donation"]["metadata"], {"note": "in memory of sensei"})


class AnalyticsTests(AppTestCase):
    def test_requires_event_and_timestamp(self):
        for payload in ({"event": "donate_click"}, {"timestamp": "2026-10-18T10:00:00Z"}):
            with self.subTest(payload=payload):
                r = self.post_json("/api/analytics/track", payload)
                self.assertEqual(r.status_code, 400)
                self.assertEqual(r.get_json()["message"], "Invalid event data")

    def test_event_is_logged(self):
        with self.assertLogs("kendofund.analytics", level="INFO") as logs:
            r = self.post_json(
                "/api/analytics/track",
                {"event": "donate_click", "timestamp": "2026-10-18T10:00:00Z", "amount": 50},
            )
        self.assertEqual(r.get_json(), {"success": True})
        self.assertIn('"event": "donate_click"', logs.output[0])
        self.assertIn('"source": "client"', logs.output[0])


class ErrorEnvelopeTests(AppTestCase):
    def test_unknown_api_route_is_json(self):
        r = self.client.get("/api/nope")
        self.assertEqual(r.status_code, 404)
        self.assertFalse(r.get_json()["success"])
