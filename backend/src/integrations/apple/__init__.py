"""
Apple App Store receipt verification module.
"""

from src.integrations.apple.receipt_client import AppleReceiptClient, ReceiptVerificationResult

__all__ = ["AppleReceiptClient", "ReceiptVerificationResult"]
