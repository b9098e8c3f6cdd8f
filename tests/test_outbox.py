from unittest.mock import patch

from kendofund.extensions import db
from kendofund.models import OutboxMessage
from kendofund.services import outbox
from tests.base import AppTestCase

PAYLOAD = {
    "email": "ama@example.com",
    "amount": "50.00",
    "currency": "GHS",
    "reference": "GKF_1_AAAAAAA",
    "donation_type": "General Donation",
    "paid_at": "2026-10-18T10:00:00",
    "donor_name": None,
}


class OutboxTests(AppTestCase):
    def test_dedupe_key_is_unique(self):
        self.assertIsNotNone(outbox.enqueue("receipt_email", "receipt_email:GKF_1_AAAAAAA", PAYLOAD))
        self.assertIsNone(outbox.enqueue("receipt_email", "receipt_email:GKF_1_AAAAAAA", PAYLOAD))
        self.assertEqual(db.session.query(OutboxMessage).count(), 1)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            outbox.enqueue("sms", "sms:1", {})

    def test_gives_up_after_max_attempts(self):
        self.app.config["OUTBOX_MAX_ATTEMPTS"] = 2
        outbox.enqueue("receipt_email", "receipt_email:GKF_1_AAAAAAA", PAYLOAD)

        with patch("kendofund.services.receipts.send_email", side_effect=OSError("smtp down")):
            first = outbox.drain()
            second = outbox.drain()
            third = outbox.drain()

        self.assertEqual(first, {"seen": 1, "sent": 0, "failed": 1})
        self.assertEqual(second, {"seen": 1, "sent": 0, "failed": 1})
        self.assertEqual(third, {"seen": 0, "sent": 0, "failed": 0})

        db.session.expire_all()
        msg = db.session.execute(db.select(OutboxMessage)).scalar_one()
        self.assertEqual(msg.status, "failed")
        self.assertEqual(msg.attempts, 2)

    def test_missing_donation_for_campaign_credit(self):
        outbox.enqueue("campaign_credit", "campaign_credit:GKF_1_MISSING", {"reference": "GKF_1_MISSING"})
        counts = outbox.drain()
        self.assertEqual(counts["failed"], 1)

        db.session.expire_all()
        msg = db.session.execute(db.select(OutboxMessage)).scalar_one()
        self.assertIn("LookupError", msg.last_error)

    def test_drain_cli(self):
        outbox.enqueue("receipt_email", "receipt_email:GKF_1_AAAAAAA", PAYLOAD)
        result = self.app.test_cli_runner().invoke(args=["outbox", "drain", "--limit", "10"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("sent=1", result.output)
