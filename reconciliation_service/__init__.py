"""Order creation and payment reconciliation service."""
