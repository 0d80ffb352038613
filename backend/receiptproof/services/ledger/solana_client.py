"""
Solana JSON-RPC client.

WHAT THIS DOES:
Implements LedgerClient over Solana's HTTP JSON-RPC:
- getLatestBlockhash + sendTransaction  → submit a signed memo transaction
- getSignatureStatuses                  → poll until "confirmed"
- getTransaction                        → fetch for verification
- getBalance / requestAirdrop           → fee balance and devnet top-ups

Transactions are built and signed locally with solders; the RPC node only
ever sees the serialized, signed bytes.

USAGE:
    signer = load_signer(settings.ledger_private_key)
    client = SolanaRpcClient("https://api.devnet.solana.com")
    sig = await client.submit(b"RECEIPTPROOF:v1:HASH:...", signer)
"""

import asyncio
import base64
import itertools
import logging
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from receiptproof.config import get_settings
from receiptproof.services.ledger.memo import MEMO_PROGRAM_ID
from receiptproof.services.ledger.protocols import (
    LedgerClient,
    LedgerInstruction,
    LedgerRpcError,
    LedgerTransaction,
)

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# Commitment levels that count as "done" for submit()
_CONFIRMED = ("confirmed", "finalized")


def load_signer(secret: str) -> Keypair:
    """
    Keypair from a base58 secret key.

    An empty secret yields a fresh keypair. Proofs it signs stay valid,
    but the wallet (and its balance) is gone when the process exits.
    """
    if not secret:
        keypair = Keypair()
        logger.warning(
            f"No ledger private key configured, using ephemeral wallet {keypair.pubkey()}"
        )
        return keypair
    return Keypair.from_base58_string(secret.strip())


def to_lamports(amount: float) -> int:
    return int(round(amount * LAMPORTS_PER_SOL))


class SolanaRpcClient(LedgerClient):
    """
    Async Solana JSON-RPC client.

    Pass http_client to share a connection pool or to inject a mock
    transport; otherwise one is created lazily and closed by close().
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        confirm_timeout: Optional[float] = None,
        poll_interval: float = 0.5,
    ):
        settings = get_settings()
        self.rpc_url = rpc_url or settings.ledger_rpc_url
        self.confirm_timeout = (
            confirm_timeout if confirm_timeout is not None else settings.confirm_timeout_seconds
        )
        self.poll_interval = poll_interval
        self._client = http_client
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self):
        """Close the HTTP client if we created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: list) -> Any:
        """
        One JSON-RPC call. Returns the "result" member.

        Raises:
            LedgerRpcError: on HTTP failure or a JSON-RPC error object
        """
        client = await self._get_client()
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        try:
            response = await client.post(self.rpc_url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise LedgerRpcError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise LedgerRpcError(f"{method} returned invalid JSON") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise LedgerRpcError(f"{method} error: {message}")

        return data.get("result")

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(self, payload: bytes, signer: Keypair) -> str:
        """Sign a single memo instruction carrying payload and wait for confirmation."""
        blockhash = await self._latest_blockhash()
        payer = signer.pubkey()

        instruction = Instruction(
            Pubkey.from_string(MEMO_PROGRAM_ID),
            payload,
            [AccountMeta(payer, True, True)],
        )
        recent = Hash.from_string(blockhash)
        message = Message.new_with_blockhash([instruction], payer, recent)
        tx = Transaction([signer], message, recent)

        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        signature = await self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )
        logger.info(f"Transaction sent: {signature}")

        await self._wait_for_confirmation(signature)
        return signature

    async def _latest_blockhash(self) -> str:
        result = await self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as e:
            raise LedgerRpcError("getLatestBlockhash returned no blockhash") from e

    async def _wait_for_confirmation(self, signature: str) -> None:
        """Poll getSignatureStatuses until confirmed, failed, or timed out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout

        while True:
            result = await self._rpc("getSignatureStatuses", [[signature]])
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]

            if status:
                if status.get("err") is not None:
                    raise LedgerRpcError(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in _CONFIRMED:
                    return

            if loop.time() >= deadline:
                raise LedgerRpcError(
                    f"Transaction {signature} not confirmed after {self.confirm_timeout:.0f}s"
                )
            await asyncio.sleep(self.poll_interval)

    # =========================================================================
    # FETCH
    # =========================================================================

    async def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        result = await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        return self._parse_transaction(signature, result)

    @staticmethod
    def _parse_transaction(signature: str, result: dict) -> LedgerTransaction:
        """
        Reduce a getTransaction result to a LedgerTransaction.

        Program ids are resolved through the account key table (static keys
        first, then any addresses loaded from lookup tables).
        """
        message = result.get("transaction", {}).get("message", {})
        meta = result.get("meta") or {}

        keys = [
            key if isinstance(key, str) else key.get("pubkey", "")
            for key in message.get("accountKeys", [])
        ]
        loaded = meta.get("loadedAddresses") or {}
        keys += loaded.get("writable", []) + loaded.get("readonly", [])

        instructions = []
        for raw in message.get("instructions", []):
            index = raw.get("programIdIndex")
            program_id = keys[index] if isinstance(index, int) and index < len(keys) else ""
            instructions.append(LedgerInstruction(program_id=program_id, data=raw.get("data")))

        tx = LedgerTransaction(
            signature=signature,
            block_time=result.get("blockTime"),
            meta={"slot": result.get("slot"), "fee": meta.get("fee"), "err": meta.get("err")},
        )
        if result.get("version") == 0:
            tx.compiled_instructions = instructions
        else:
            tx.instructions = instructions
        return tx

    # =========================================================================
    # BALANCE
    # =========================================================================

    async def get_balance(self, account: str) -> float:
        result = await self._rpc("getBalance", [account, {"commitment": "confirmed"}])
        lamports = result.get("value", 0) if isinstance(result, dict) else result
        return (lamports or 0) / LAMPORTS_PER_SOL

    async def request_top_up(self, account: str, amount: float) -> str:
        signature = await self._rpc("requestAirdrop", [account, to_lamports(amount)])
        await self._wait_for_confirmation(signature)
        return signature
