"""
Ledger Anchor — certify a fingerprint on-chain and verify it later.

WHAT THIS DOES:
- certify(fingerprint): writes "<PROTOCOL>:<VERSION>:HASH:<fingerprint>" into a
  single memo instruction, waits for confirmation, returns the tx signature.
  The signature IS the proof handle the user keeps.
- verify(tx, fingerprint): fetches the transaction, decodes the memo
  (whatever encoding the RPC used), and compares the embedded fingerprint.

FAILURE TAXONOMY (verify, returned not raised):
- TRANSACTION_NOT_FOUND: ledger doesn't know the signature
- NO_MEMO_FOUND: transaction has no memo instruction
- INVALID_MEMO_FORMAT: memo exists but isn't one of ours
- VERIFICATION_ERROR: transport / parsing fault while fetching

Certify raises instead (the caller has nothing to show without a tx):
InsufficientFundsError for an empty wallet, CertificationError otherwise.
Submit is never retried; each attempt mints a new transaction id.

USAGE:
    anchor = LedgerAnchor(client, signer, account="8xY...", network="devnet")
    proof = await anchor.certify(fingerprint)
    outcome = await anchor.verify(proof.tx_signature, fingerprint)
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from receiptproof.config import get_settings
from receiptproof.errors import CertificationError, InsufficientFundsError, InvalidInputError
from receiptproof.services.canonical import is_fingerprint
from receiptproof.services.ledger.memo import build_memo_payload, extract_memo, memo_pattern
from receiptproof.services.ledger.protocols import (
    CertifyResult,
    LedgerClient,
    VerifyOutcome,
)

logger = logging.getLogger(__name__)

# Base58 transaction signature (64-byte ed25519 signature → 64..88 chars)
TX_SIGNATURE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,90}$")

EXPLORER_BASE = "https://explorer.solana.com/tx"

# Substrings the ledger uses when the fee payer can't pay
_INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient lamports",
    "found no record of a prior credit",
)


def is_tx_signature(value) -> bool:
    """True if value has the shape of a base58 transaction signature."""
    return isinstance(value, str) and bool(TX_SIGNATURE_PATTERN.match(value.strip()))


def _block_time_to_datetime(block_time: int | None) -> datetime | None:
    if block_time is None:
        return None
    return datetime.fromtimestamp(block_time, tz=timezone.utc)


class LedgerAnchor:
    """
    Anchors receipt fingerprints on a public ledger.

    Collaborators are injected: any LedgerClient plus the signer object
    that client understands, and the signer's account address.
    """

    def __init__(
        self,
        client: LedgerClient,
        signer: Any,
        account: str,
        network: str | None = None,
        protocol: str | None = None,
        version: str | None = None,
        min_fee_balance: float | None = None,
        top_up_amount: float | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.signer = signer
        self.account = account
        self.network = network or settings.ledger_network
        self.protocol = protocol or settings.memo_protocol
        self.version = version or settings.memo_version
        self.min_fee_balance = (
            min_fee_balance if min_fee_balance is not None else settings.min_fee_balance
        )
        self.top_up_amount = top_up_amount if top_up_amount is not None else settings.top_up_amount
        self.pattern = memo_pattern(self.protocol, self.version)

    @property
    def allows_top_up(self) -> bool:
        return self.network.lower() not in ("mainnet", "mainnet-beta")

    def explorer_url(self, tx_signature: str) -> str:
        return f"{EXPLORER_BASE}/{tx_signature}?cluster={self.network}"

    # =========================================================================
    # CERTIFY
    # =========================================================================

    async def certify(self, fingerprint: str) -> CertifyResult:
        """
        Anchor fingerprint on the ledger.

        Steps:
        1. Validate the fingerprint shape
        2. Check the balance; on a test network, request ONE top-up if low
           (a failed top-up is logged, certification still goes ahead)
        3. Submit the memo and block until confirmed
        4. Read back the block time for the certificate timestamp

        Raises:
            InvalidInputError: fingerprint is not 64 hex chars
            InsufficientFundsError: the wallet can't pay the fee
            CertificationError: any other submission failure
        """
        if not is_fingerprint(fingerprint):
            raise InvalidInputError("Invalid hash format - must be 64-character hex string")
        fingerprint = fingerprint.strip().lower()

        await self._ensure_funded()

        payload = build_memo_payload(fingerprint, self.protocol, self.version)
        logger.info(f"Submitting certification memo for {fingerprint[:16]}...")

        try:
            signature = await self.client.submit(payload, self.signer)
        except Exception as e:
            message = str(e)
            logger.error(f"Certification failed: {message}")
            if any(marker in message.lower() for marker in _INSUFFICIENT_FUNDS_MARKERS):
                raise InsufficientFundsError(
                    "Insufficient balance for transaction. Fund the wallet or use a devnet top-up."
                ) from e
            raise CertificationError(f"Failed to certify receipt: {message}") from e

        logger.info(f"Receipt certified: {signature}")

        return CertifyResult(
            tx_signature=signature,
            fingerprint=fingerprint,
            timestamp=await self._confirmed_at(signature),
            explorer_url=self.explorer_url(signature),
            wallet_address=self.account,
        )

    async def _ensure_funded(self) -> None:
        try:
            balance = await self.client.get_balance(self.account)
        except Exception as e:
            logger.warning(f"Could not read wallet balance, assuming empty: {e}")
            balance = 0.0

        if balance >= self.min_fee_balance or not self.allows_top_up:
            return

        logger.warning(f"Low balance ({balance:.4f}), requesting a {self.top_up_amount} top-up")
        try:
            signature = await self.client.request_top_up(self.account, self.top_up_amount)
            logger.info(f"Top-up confirmed: {signature}")
        except Exception as e:
            # Submission may still succeed (e.g. balance is low but not zero)
            logger.error(f"Top-up failed: {e}")

    async def _confirmed_at(self, signature: str) -> datetime:
        # The proof already exists at this point; a failed read-back must not undo it
        try:
            tx = await self.client.fetch_transaction(signature)
        except Exception as e:
            logger.warning(f"Could not read back block time for {signature}: {e}")
            tx = None
        confirmed = _block_time_to_datetime(tx.block_time) if tx else None
        return confirmed or datetime.now(timezone.utc)

    # =========================================================================
    # VERIFY
    # =========================================================================

    async def verify(self, tx_signature: str, expected_fingerprint: str) -> VerifyOutcome:
        """
        Check that tx_signature carries expected_fingerprint.

        Returns a VerifyOutcome in every case except malformed input. Both
        fingerprints are returned on a mismatch so the caller can diff.

        Raises:
            InvalidInputError: tx signature or fingerprint has the wrong shape
        """
        if not is_tx_signature(tx_signature):
            raise InvalidInputError("Invalid transaction signature")
        if not is_fingerprint(expected_fingerprint):
            raise InvalidInputError("Invalid hash format - must be 64-character hex string")

        tx_signature = tx_signature.strip()
        local = expected_fingerprint.strip().lower()
        explorer_url = self.explorer_url(tx_signature)

        logger.info(f"Fetching transaction {tx_signature}")
        try:
            tx = await self.client.fetch_transaction(tx_signature)
        except Exception as e:
            logger.error(f"Verification error for {tx_signature}: {e}")
            return VerifyOutcome(
                verified=False,
                message=f"Verification failed: {e}",
                local_fingerprint=local,
                error="VERIFICATION_ERROR",
                explorer_url=explorer_url,
                details=str(e),
            )

        if tx is None:
            return VerifyOutcome(
                verified=False,
                message="Transaction not found on blockchain",
                local_fingerprint=local,
                error="TRANSACTION_NOT_FOUND",
                explorer_url=explorer_url,
            )

        lookup = extract_memo(tx, self.pattern)
        timestamp = _block_time_to_datetime(tx.block_time)

        if not lookup.memo_seen:
            return VerifyOutcome(
                verified=False,
                message="No memo found in transaction",
                local_fingerprint=local,
                error="NO_MEMO_FOUND",
                timestamp=timestamp,
                explorer_url=explorer_url,
            )

        match = self.pattern.search(lookup.payload) if lookup.payload else None
        if match is None:
            return VerifyOutcome(
                verified=False,
                message="Invalid memo format - not a receipt certification transaction",
                local_fingerprint=local,
                error="INVALID_MEMO_FORMAT",
                timestamp=timestamp,
                explorer_url=explorer_url,
                memo_found=lookup.undecoded,
            )

        chain = match.group(1).lower()
        logger.info(f"Memo found ({lookup.slot}): {lookup.payload}")

        if chain == local:
            return VerifyOutcome(
                verified=True,
                message="VERIFIED: Receipt matches the certified fingerprint.",
                local_fingerprint=local,
                chain_fingerprint=chain,
                timestamp=timestamp,
                explorer_url=explorer_url,
            )

        return VerifyOutcome(
            verified=False,
            message=(
                "VERIFICATION FAILED: Receipt has been altered or does not match "
                "the certified version."
            ),
            local_fingerprint=local,
            chain_fingerprint=chain,
            timestamp=timestamp,
            explorer_url=explorer_url,
            details="Fingerprints do not match",
        )

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    async def transaction_details(self, tx_signature: str) -> dict | None:
        """Block time, fee and success flag of a transaction, or None."""
        try:
            tx = await self.client.fetch_transaction(tx_signature)
        except Exception as e:
            logger.error(f"Failed to get transaction details: {e}")
            return None
        if tx is None:
            return None

        timestamp = _block_time_to_datetime(tx.block_time)
        return {
            "signature": tx_signature,
            "block_time": tx.block_time,
            "timestamp": timestamp.isoformat() if timestamp else None,
            "slot": tx.meta.get("slot"),
            "success": tx.meta.get("err") is None,
            "fee": tx.meta.get("fee"),
            "explorer_url": self.explorer_url(tx_signature),
        }

    async def health_check(self) -> dict:
        """Wallet address and balance; connected=False if the RPC is unreachable."""
        try:
            balance = await self.client.get_balance(self.account)
        except Exception as e:
            return {"connected": False, "error": str(e)}
        return {
            "connected": True,
            "network": self.network,
            "wallet_address": self.account,
            "balance": f"{balance:.4f} SOL",
        }
