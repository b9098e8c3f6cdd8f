from datetime import timedelta
from unittest.mock import patch

from kendofund.extensions import db, mail
from kendofund.models import Donation, OutboxMessage, WebhookEvent, utcnow
from kendofund.services import donations, outbox
from tests.base import REF, AppTestCase, gateway_response, paystack_tx


def _events():
    db.session.expire_all()
    return db.session.execute(db.select(WebhookEvent)).scalars().all()


class SignatureTests(AppTestCase):
    def test_missing_signature(self):
        r = self.post_webhook("charge.success", paystack_tx(), signature="")
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.get_json()["message"], "Missing signature")
        self.assertEqual(_events(), [])

    def test_invalid_signature_has_no_side_effects(self):
        with self.assertLogs("kendofund.services.paystack", level="WARNING") as logs:
            r = self.post_webhook("charge.success", paystack_tx(), signature="0" * 128)

        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.get_json()["message"], "Invalid signature")
        self.assertIn("SECURITY", logs.output[0])
        self.assertEqual(_events(), [])
        self.assertIsNone(self.donation())

    def test_secret_not_configured(self):
        self.app.config["PAYSTACK_SECRET_KEY"] = ""
        r = self.post_webhook("charge.success", paystack_tx(), signature="abc")
        self.assertEqual(r.status_code, 500)


class ChargeSuccessTests(AppTestCase):
    def test_records_donation_and_sends_receipt(self):
        with mail.record_messages() as sent:
            r = self.post_webhook("charge.success", paystack_tx())

        self.assertEqual(r.status_code, 200)
        body = r.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["message"], "Webhook processed")
        self.assertEqual(body["event_id"], f"charge.success:{REF}")
        self.assertIn("processing_time_ms", body)

        d = self.donation()
        self.assertEqual(d.status, "PAID")
        self.assertEqual(d.event_id, f"charge.success:{REF}")
        self.assertEqual(d.donor_name, "Ama Mensah")

        self.assertEqual(len(sent), 1)
        msg = sent[0]
        self.assertEqual(msg.subject, "Thank you for your donation to Ghana Kendo Federation")
        self.assertEqual(msg.recipients, ["ama@example.com"])
        self.assertIn("GHS 50.00", msg.body)
        self.assertIn(REF, msg.html)
        self.assertIn("Dear Ama Mensah", msg.body)

        (event,) = _events()
        self.assertEqual(event.status, "processed")
        self.assertIsNotNone(event.processed_at)

    def test_duplicate_delivery_is_acknowledged_once(self):
        with mail.record_messages() as sent:
            self.post_webhook("charge.success", paystack_tx())
            r = self.post_webhook("charge.success", paystack_tx())

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["message"], "Event already processed")
        self.assertEqual(len(sent), 1)
        self.assertEqual(db.session.query(Donation).count(), 1)
        self.assertEqual(len(_events()), 1)

    def test_emits_donation_completed(self):
        with self.assertLogs("kendofund.analytics", level="INFO") as logs:
            self.post_webhook("charge.success", paystack_tx())
        self.assertTrue(any('"event": "donation_completed"' in line for line in logs.output))

    def test_anonymous_donor_gets_generic_greeting(self):
        tx = paystack_tx()
        tx["metadata"]["anonymous"] = True
        with mail.record_messages() as sent:
            self.post_webhook("charge.success", tx)
        self.assertIn("Dear Valued Supporter", sent[0].body)

    def test_webhook_and_verification_credit_campaign_once(self):
        tx = paystack_tx(donation_type="SPONSORSHIP")
        with patch("kendofund.services.paystack.requests.get") as get:
            get.return_value = gateway_response(200, {"status": True, "data": tx})
            self.post_json("/api/paystack/verify", {"reference": REF})

        self.post_webhook("charge.success", tx)

        self.assertEqual(self.campaign_total_minor(), 110198 + 5000)
        self.assertTrue(self.donation().campaign_counted)

    def test_receipt_failure_is_parked_in_outbox(self):
        with patch("kendofund.services.receipts.send_email", side_effect=ConnectionError("smtp down")):
            r = self.post_webhook("charge.success", paystack_tx())

        self.assertEqual(r.get_json()["message"], "Webhook processed")
        self.assertEqual(self.donation().status, "PAID")

        db.session.expire_all()
        msg = db.session.execute(db.select(OutboxMessage)).scalar_one()
        self.assertEqual(msg.status, "pending")
        self.assertEqual(msg.attempts, 1)
        self.assertIn("smtp down", msg.last_error)

        with mail.record_messages() as sent:
            counts = outbox.drain()
        self.assertEqual(counts, {"seen": 1, "sent": 1, "failed": 0})
        self.assertEqual(len(sent), 1)


class ChargeFailureTests(AppTestCase):
    def test_failure_marks_donation_failed(self):
        with self.assertLogs("kendofund.services.donations", level="WARNING"):
            r = self.post_webhook("charge.failure", paystack_tx(status="failed"))
        self.assertEqual(r.get_json()["message"], "Webhook processed")
        self.assertEqual(self.donation().status, "FAILED")

    def test_paid_is_never_downgraded(self):
        self.post_webhook("charge.success", paystack_tx())
        self.post_webhook("charge.failure", paystack_tx(status="failed"))

        d = self.donation()
        self.assertEqual(d.status, "PAID")
        self.assertEqual(d.event_id, f"charge.failure:{REF}")
        self.assertEqual(len(_events()), 2)


class OtherEventTests(AppTestCase):
    def test_transfer_and_unknown_events_are_acknowledged(self):
        for event in ("transfer.success", "subscription.create"):
            with self.subTest(event=event):
                r = self.post_webhook(event, {"reference": f"TRF_{event}"})
                self.assertTrue(r.get_json()["success"])
        self.assertEqual(db.session.query(Donation).count(), 0)

    def test_malformed_body_is_acknowledged(self):
        from kendofund.services.paystack import compute_signature

        body = b"not json"
        sig = compute_signature(self.app.config["PAYSTACK_SECRET_KEY"], body)
        r = self.client.post("/api/paystack/webhook", data=body, headers={"x-paystack-signature": sig})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["message"], "Webhook processing error (logged)")


class HandlerFailureTests(AppTestCase):
    def test_failure_is_recorded_and_replayable(self):
        with patch("kendofund.services.donations.upsert_donation", side_effect=RuntimeError("boom")):
            r = self.post_webhook("charge.success", paystack_tx())

        self.assertEqual(r.status_code, 200)
        body = r.get_json()
        self.assertFalse(body["success"])
        self.assertEqual(body["message"], "Webhook processing error (logged)")
        self.assertEqual(body["event_id"], f"charge.success:{REF}")

        (event,) = _events()
        self.assertEqual(event.status, "failed")
        self.assertIn("boom", event.error)
        self.assertIsNone(self.donation())

        counts = donations.replay_failed()
        self.assertEqual(counts, {"seen": 1, "processed": 1, "failed": 0})
        self.assertEqual(self.donation().status, "PAID")
        self.assertEqual(_events()[0].status, "processed")

    def test_replay_cli(self):
        with patch("kendofund.services.donations.upsert_donation", side_effect=RuntimeError("boom")):
            self.post_webhook("charge.success", paystack_tx())

        result = self.app.test_cli_runner().invoke(args=["webhooks", "replay"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("processed=1", result.output)


class RetentionTests(AppTestCase):
    def _old_event(self, days: int) -> None:
        db.session.add(
            WebhookEvent(
                event_id=f"charge.success:{REF}",
                event_type="charge.success",
                reference=REF,
                status="processed",
                created_at=utcnow() - timedelta(days=days),
            )
        )
        db.session.commit()

    def test_event_inside_window_is_a_duplicate(self):
        self._old_event(days=6)
        r = self.post_webhook("charge.success", paystack_tx())
        self.assertEqual(r.get_json()["message"], "Event already processed")
        self.assertIsNone(self.donation())

    def test_expired_event_is_processed_again(self):
        self._old_event(days=8)
        r = self.post_webhook("charge.success", paystack_tx())
        self.assertEqual(r.get_json()["message"], "Webhook processed")
        self.assertEqual(self.donation().status, "PAID")

        (event,) = _events()
        self.assertGreater(event.created_at, utcnow() - timedelta(minutes=5))

    def test_purge(self):
        self._old_event(days=8)
        self.assertEqual(donations.purge_expired(), 1)
        self.assertEqual(_events(), [])

        result = self.app.test_cli_runner().invoke(args=["webhooks", "purge", "--days", "7"])
        self.assertIn("removed 0", result.output)


class EventIdTests(AppTestCase):
    def test_reference_and_type(self):
        self.assertEqual(
            donations.derive_event_id({"event": "charge.success", "data": {"reference": REF}}),
            f"charge.success:{REF}",
        )

    def test_success_and_failure_are_distinct(self):
        a = donations.derive_event_id({"event": "charge.success", "data": {"reference": REF}})
        b = donations.derive_event_id({"event": "charge.failure", "data": {"reference": REF}})
        self.assertNotEqual(a, b)

    def test_envelope_id_then_synthesized(self):
        self.assertEqual(donations.derive_event_id({"event": "x", "id": 42, "data": {}}), "42")
        self.assertRegex(donations.derive_event_id({"event": "x"}), r"^event_\d+$")


class UnconfiguredMailTests(AppTestCase):
    def test_receipt_is_skipped_without_mail_provider(self):
        self.app.config["MAIL_ENABLED"] = False
        with mail.record_messages() as sent, self.assertLogs("kendofund.services.donations", level="WARNING") as logs:
            r = self.post_webhook("charge.success", paystack_tx())

        self.assertEqual(r.get_json()["message"], "Webhook processed")
        self.assertEqual(self.donation().status, "PAID")
        self.assertEqual(sent, [])
        self.assertEqual(db.session.query(OutboxMessage).count(), 0)
        self.assertTrue(any("no email service configured" in line for line in logs.output))


class InvalidChargeDataTests(AppTestCase):
    def test_missing_reference_is_acknowledged_not_failed(self):
        tx = paystack_tx()
        tx.pop("reference")
        with self.assertLogs("kendofund.services.donations", level="ERROR"):
            r = self.post_webhook("charge.success", tx, id=777)

        body = r.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["event_id"], "777")
        self.assertEqual(_events()[0].status, "processed")
        self.assertEqual(db.session.query(Donation).count(), 0)
        self.assertEqual(donations.replay_failed(), {"seen": 0, "processed": 0, "failed": 0})

    def test_zero_amount_is_ignored(self):
        r = self.post_webhook("charge.success", paystack_tx(amount_minor=0))
        self.assertEqual(r.get_json()["message"], "Webhook processed")
        self.assertIsNone(self.donation())


class StaleProcessingTests(AppTestCase):
    def _stuck_event(self, minutes: int) -> None:
        db.session.add(
            WebhookEvent(
                event_id=f"charge.success:{REF}",
                event_type="charge.success",
                reference=REF,
                status="processing",
                payload={"event": "charge.success", "data": paystack_tx()},
                created_at=utcnow() - timedelta(minutes=minutes),
            )
        )
        db.session.commit()

    def test_stuck_event_is_replayed(self):
        self._stuck_event(minutes=30)

        self.assertEqual(donations.replay_failed(), {"seen": 1, "processed": 1, "failed": 0})
        self.assertEqual(self.donation().status, "PAID")
        self.assertEqual(_events()[0].status, "processed")

    def test_in_flight_event_is_left_alone(self):
        self._stuck_event(minutes=1)

        self.assertEqual(donations.replay_failed(), {"seen": 0, "processed": 0, "failed": 0})
        self.assertEqual(_events()[0].status, "processing")
