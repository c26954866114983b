"""Escrow sessions: pre-funded, budget-capped spending allowances."""

from paytrail.escrow.manager import RefundResult, RefundSender, SessionCreation, SessionManager

__all__ = ["SessionManager", "SessionCreation", "RefundResult", "RefundSender"]
