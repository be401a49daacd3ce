"""
Payment settlement: applies payment-gateway events to invoices.
"""

from dotmac.billing_engine.settlement.processor import SettlementProcessor, SettlementResult

__all__ = ["SettlementProcessor", "SettlementResult"]
