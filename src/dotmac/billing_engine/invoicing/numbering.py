"""
Invoice number generation.
"""

import secrets
from datetime import datetime

from dotmac.billing_engine.core.models import ensure_utc


def generate_invoice_number(issued_at: datetime, prefix: str = "INV") -> str:
    """``<prefix>-<YYYYMMDD>-<6 uppercase hex>``, dated by the UTC issue day."""
    return f"{prefix}-{ensure_utc(issued_at):%Y%m%d}-{secrets.token_hex(3).upper()}"


__all__ = ["generate_invoice_number"]
