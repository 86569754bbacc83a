"""
Custom exception classes for the indexer.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class PaygateException(Exception):
    """Base exception class for the paygate indexer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(PaygateException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class IndexerError(PaygateException):
    """Raised when a chain watcher fails a lifecycle operation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class ValidationError(PaygateException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(PaygateException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class DecodeError(ValidationError):
    """Raised when a raw log is unrecognized or its arguments are malformed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        PaygateException.__init__(self, message, "DECODE_ERROR", details)


class ChainClientError(PaygateException):
    """Raised when a chain RPC call fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHAIN_CLIENT_ERROR", details)


class SubscriptionLostError(ChainClientError):
    """Raised when a live log subscription drops."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        PaygateException.__init__(self, message, "SUBSCRIPTION_LOST", details)


class ConflictError(PaygateException):
    """Raised when an insert collides with an existing (chain, tx hash) record."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class UnknownChainError(NotFoundError):
    """Raised when an operation targets a chain with no configured watcher."""

    def __init__(self, chain_id: int):
        PaygateException.__init__(
            self,
            f"No indexer configured for chain {chain_id}",
            "UNKNOWN_CHAIN",
            {"chain_id": chain_id}
        )


class InvoiceNotFoundError(NotFoundError):
    """Raised when a payment references an invoice that does not exist."""

    def __init__(self, invoice_id: str):
        PaygateException.__init__(
            self,
            f"Invoice not found: {invoice_id}",
            "INVOICE_NOT_FOUND",
            {"invoice_id": invoice_id}
        )


class CrossChainMismatchError(ValidationError):
    """Raised when a cross-chain settlement and its initiation name different invoices."""

    def __init__(self, source_tx_hash: str, expected_invoice_id: str, actual_invoice_id: str):
        PaygateException.__init__(
            self,
            f"Cross-chain initiation {source_tx_hash} is for invoice {actual_invoice_id}, "
            f"not {expected_invoice_id}",
            "CROSS_CHAIN_MISMATCH",
            {
                "source_tx_hash": source_tx_hash,
                "expected_invoice_id": expected_invoice_id,
                "actual_invoice_id": actual_invoice_id,
            }
        )
