"""
Invoice generation.
"""

from dotmac.billing_engine.invoicing.builder import InvoiceBuilder, InvoiceResult
from dotmac.billing_engine.invoicing.numbering import generate_invoice_number

__all__ = ["InvoiceBuilder", "InvoiceResult", "generate_invoice_number"]
