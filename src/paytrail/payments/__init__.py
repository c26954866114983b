"""Payment write paths."""

from paytrail.payments.settlement import SettlementRecorder, settlement_payment_id

__all__ = ["SettlementRecorder", "settlement_payment_id"]
