"""
SQLAlchemy model for the proof_entries table.

One row per entry of the two proof indices:
- index_name="byHash", key=fingerprint   → ProofRecord JSON
- index_name="byTx",   key=tx_signature  → TxIndexEntry JSON

Values are stored as JSON text so both backends persist exactly the same
documents.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from receiptproof.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProofEntry(Base):
    """A single key → value entry of a proof index."""

    __tablename__ = "proof_entries"

    # Composite primary key: which index, and the key inside it
    index_name: Mapped[str] = mapped_column(String(16), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Serialized ProofRecord / TxIndexEntry
    value: Mapped[str] = mapped_column(Text)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<ProofEntry {self.index_name}[{self.key[:16]}...]>"
