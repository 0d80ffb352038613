from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI collaborator (receipt field extraction + fraud verdict)
    # Default empty string allows tests to run without .env, but the app refuses to start without it
    openai_api_key: str = ""
    analysis_model: str = "gpt-4o-mini"

    # Ledger (Solana JSON-RPC)
    ledger_rpc_url: str = "https://api.devnet.solana.com"
    # devnet / testnet allow funding top-ups; mainnet-beta never does
    ledger_network: str = "devnet"
    # Base58 secret key of the certifying wallet
    # Empty = ephemeral keypair (fine for devnet demos, proofs stay valid but the wallet is lost)
    ledger_private_key: str = ""

    # Memo payload prefix: "<PROTOCOL>:<VERSION>:HASH:<fingerprint>"
    memo_protocol: str = "RECEIPTPROOF"
    memo_version: str = "v1"

    # Balance (SOL) below which certify asks for a one-time top-up first
    min_fee_balance: float = 0.001
    top_up_amount: float = 1.0

    # How long submission blocks waiting for "confirmed" commitment
    confirm_timeout_seconds: float = 60.0

    # Proof store
    # "json" = single JSON document on disk, "sql" = SQLAlchemy table (see database.py)
    proof_store_backend: str = "json"
    proof_store_path: str = "data/proofs.json"
    database_url: str = "sqlite:///data/proofs.db"

    # Risk scoring
    # Tax band is tighter for this currency (Canadian GST/HST rates by default)
    primary_currency: str = "CAD"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env")


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
