"""
Exception hierarchy for the receipt proof core.

Only two families are ever raised across module boundaries:
- InvalidInputError: the caller sent something malformed (bad hash shape,
  missing tx signature, no receipt data). Never retried.
- LedgerError: certification could not be anchored. Verification faults are
  NOT raised, they come back as a labelled VerifyOutcome instead.

AI faults never appear here: the ResponseNormalizer absorbs them into an
UNREADABLE analysis.
"""


class ReceiptProofError(Exception):
    """Base class for all errors raised by the core."""


class InvalidInputError(ReceiptProofError, ValueError):
    """Raised when a request fails shape validation."""


class LedgerError(ReceiptProofError):
    """Raised when the ledger collaborator fails during certification."""


class InsufficientFundsError(LedgerError):
    """The certifying wallet cannot pay the transaction fee."""


class CertificationError(LedgerError):
    """Submission or confirmation failed for any other reason."""
