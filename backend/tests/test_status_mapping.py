import unittest

from storefront.services.reconciliation_service import (
    SIGNAL_FAILED,
    SIGNAL_PENDING,
    SIGNAL_SUCCESS,
    map_status,
    signal_for,
)


class MapStatusTests(unittest.TestCase):
    def test_success_variants_map_to_paid(self):
        for raw in ("COMPLETED", "Completed", "success", "Payment Successful"):
            self.assertEqual(map_status(raw), "paid", raw)

    def test_pending_variants(self):
        self.assertEqual(map_status("PENDING"), "pending")
        self.assertEqual(map_status("Processing"), "pending")

    def test_failure_variants(self):
        for raw in ("FAILED", "Cancelled", "cancel", "INVALID", "Error"):
            self.assertEqual(map_status(raw), "failed", raw)

    def test_gateway_descriptions(self):
        self.assertEqual(map_status("Completed Successfully"), "paid")
        self.assertEqual(map_status("Transaction Pending"), "pending")
        self.assertEqual(map_status("Payment Cancelled by user"), "failed")
        self.assertIsNone(map_status("garbage-xyz"))

    def test_first_rule_wins(self):
        # "completed" is checked before "cancelled"
        self.assertEqual(map_status("cancelled_after_completed"), "paid")
        self.assertEqual(map_status("pending_error"), "pending")

    def test_unrecognised_status_leaves_payment_alone(self):
        self.assertIsNone(map_status("REVERSED"))
        self.assertIsNone(map_status(""))
        self.assertIsNone(map_status(None))


class SignalTests(unittest.TestCase):
    def test_signal_follows_payment_status(self):
        self.assertEqual(signal_for("paid"), SIGNAL_SUCCESS)
        self.assertEqual(signal_for("failed"), SIGNAL_FAILED)
        self.assertEqual(signal_for("pending"), SIGNAL_PENDING)
        self.assertEqual(signal_for("processing"), SIGNAL_PENDING)

    def test_signal_strings(self):
        self.assertEqual(SIGNAL_SUCCESS, "pesapal-payment-success")
        self.assertEqual(SIGNAL_PENDING, "pesapal-payment-pending")
        self.assertEqual(SIGNAL_FAILED, "pesapal-payment-failed")


if __name__ == "__main__":
    unittest.main()
