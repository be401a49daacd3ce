"""
DotMac billing engine.

Usage metering, invoice generation and payment settlement workers.
"""

__version__ = "1.0.0"
