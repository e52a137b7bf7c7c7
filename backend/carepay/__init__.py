"""CarePay payment reconciliation backend."""
