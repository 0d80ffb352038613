"""
Proof Store — local memory of every certified fingerprint.

WHAT THIS DOES:
Keeps two indices, durable across restarts:
    byHash[fingerprint]  → ProofRecord   (seen_count, first/last seen, canonical text)
    byTx[tx_signature]   → TxIndexEntry  (first fingerprint ever tied to that tx)

and answers the question certification cares about:
"has this exact receipt been certified before?" (a duplicate claim).

RULES:
- upsert is read-modify-write under one store-scoped lock, so two
  concurrent certifications of the same fingerprint can't both be "first"
  and can't lose an increment
- canonical_text / analysis_summary are only filled if absent; the
  originally certified payload is never overwritten
- a byTx entry is only written if absent; the first association wins
- both indices are written together in one backend write
- an entry that no longer validates is logged and treated as absent, so
  a damaged record never fails a request (it is replaced on next upsert)

BACKENDS:
- JsonFileBackend: one JSON document, rewritten atomically (temp file + rename)
- SqlBackend: SQLAlchemy table proof_entries (see models/proof_entry.py)

USAGE:
    store = ProofStore(JsonFileBackend("data/proofs.json"))
    result = store.upsert(fingerprint, tx_signature, canonical_text, summary)
    if result.duplicate:
        ...
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import Engine, select

from receiptproof.config import Settings, get_settings
from receiptproof.database import create_db_engine, create_session_factory, init_db
from receiptproof.errors import InvalidInputError
from receiptproof.models.proof_entry import ProofEntry
from receiptproof.models.schemas import ProofBundle, ProofRecord, TxIndexEntry, UpsertResult

logger = logging.getLogger(__name__)

BY_HASH = "byHash"
BY_TX = "byTx"
INDICES = (BY_HASH, BY_TX)


# =============================================================================
# BACKENDS
# =============================================================================

class ProofBackend(ABC):
    """
    Minimal key-value interface the store needs.

    Values are plain JSON-compatible dicts. Backends don't lock; ProofStore
    does that around every operation.
    """

    @abstractmethod
    def get(self, index: str, key: str) -> Optional[dict]:
        pass

    @abstractmethod
    def put_many(self, entries: list[tuple[str, str, dict]]) -> None:
        """Write (index, key, value) entries all at once: all land or none do."""
        pass

    @abstractmethod
    def list_values(self, index: str) -> list[dict]:
        pass


class JsonFileBackend(ProofBackend):
    """
    Both indices in a single JSON file.

    A missing, unreadable or structurally wrong file is treated as an empty
    store and rewritten; certification must keep working even if the file
    was damaged.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _empty(self) -> dict:
        return {index: {} for index in INDICES}

    def _load(self) -> dict:
        if not self.path.exists():
            return self._empty()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Proof store {self.path} unreadable, reinitializing: {e}")
            data = None

        if not isinstance(data, dict) or not all(isinstance(data.get(i), dict) for i in INDICES):
            if data is not None:
                logger.warning(f"Proof store {self.path} has unexpected shape, reinitializing")
            empty = self._empty()
            self._write(empty)
            return empty

        return data

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".proofs-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, index: str, key: str) -> Optional[dict]:
        return self._load()[index].get(key)

    def put_many(self, entries: list[tuple[str, str, dict]]) -> None:
        data = self._load()
        for index, key, value in entries:
            data[index][key] = value
        self._write(data)

    def list_values(self, index: str) -> list[dict]:
        return list(self._load()[index].values())


class SqlBackend(ProofBackend):
    """Both indices in the proof_entries table, values as JSON text."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = create_session_factory(engine)
        init_db(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlBackend":
        return cls(create_db_engine(database_url))

    @staticmethod
    def _decode(row: ProofEntry) -> Optional[dict]:
        try:
            return json.loads(row.value)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning(f"Proof entry {row.index_name}/{row.key} is not valid JSON, ignoring: {e}")
            return None

    def get(self, index: str, key: str) -> Optional[dict]:
        with self._sessions() as session:
            row = session.get(ProofEntry, (index, key))
            return self._decode(row) if row else None

    def put_many(self, entries: list[tuple[str, str, dict]]) -> None:
        with self._sessions.begin() as session:
            for index, key, value in entries:
                session.merge(ProofEntry(index_name=index, key=key, value=json.dumps(value)))

    def list_values(self, index: str) -> list[dict]:
        with self._sessions() as session:
            rows = session.scalars(select(ProofEntry).where(ProofEntry.index_name == index))
            values = [self._decode(row) for row in rows]
        return [v for v in values if v is not None]


# =============================================================================
# STORE
# =============================================================================

def _normalize_fingerprint(fingerprint: str | None) -> str:
    fingerprint = (fingerprint or "").strip().lower()
    if not fingerprint:
        raise InvalidInputError("Fingerprint is required")
    return fingerprint


def _normalize_tx(tx_signature: str | None) -> str:
    tx_signature = (tx_signature or "").strip()
    if not tx_signature:
        raise InvalidInputError("Transaction signature is required")
    return tx_signature


def _validate(model: type[BaseModel], data, where: str):
    """Parsed model, or None (with a warning) for a missing or damaged entry."""
    if not data:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Ignoring damaged proof entry {where}: {e.error_count()} validation error(s)")
        return None


class ProofStore:
    """Duplicate-claim detector and forensic lookup over a ProofBackend."""

    def __init__(self, backend: ProofBackend):
        self.backend = backend
        self._lock = threading.Lock()

    def upsert(
        self,
        fingerprint: str,
        tx_signature: str,
        canonical_text: Optional[str] = None,
        analysis_summary: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> UpsertResult:
        """
        Record that tx_signature certified fingerprint.

        Returns duplicate=True if the fingerprint was already known, along
        with the first transaction and time it was ever seen.
        """
        fingerprint = _normalize_fingerprint(fingerprint)
        tx_signature = _normalize_tx(tx_signature)
        now = now or datetime.now(timezone.utc)

        with self._lock:
            existing = _validate(
                ProofRecord, self.backend.get(BY_HASH, fingerprint), f"{BY_HASH}/{fingerprint}"
            )

            if existing is not None:
                record = existing
                record.seen_count += 1
                record.last_seen_at = now
                record.tx_signature = tx_signature
                if not record.canonical_text and canonical_text:
                    record.canonical_text = canonical_text
                if not record.analysis_summary and analysis_summary:
                    record.analysis_summary = analysis_summary
            else:
                record = ProofRecord(
                    fingerprint=fingerprint,
                    canonical_text=canonical_text,
                    analysis_summary=analysis_summary or {},
                    created_at=now,
                    last_seen_at=now,
                    tx_signature=tx_signature,
                    first_seen_tx=tx_signature,
                    first_seen_at=now,
                    seen_count=1,
                )

            writes = [(BY_HASH, fingerprint, record.model_dump(mode="json"))]

            known_tx = _validate(
                TxIndexEntry, self.backend.get(BY_TX, tx_signature), f"{BY_TX}/{tx_signature}"
            )
            if known_tx is None:
                entry = TxIndexEntry(
                    tx_signature=tx_signature,
                    fingerprint=fingerprint,
                    canonical_text=canonical_text or record.canonical_text,
                    created_at=now,
                )
                writes.append((BY_TX, tx_signature, entry.model_dump(mode="json")))

            self.backend.put_many(writes)

        if existing is not None:
            logger.info(
                f"Duplicate claim: {fingerprint[:16]}... seen {record.seen_count} times, "
                f"first in {record.first_seen_tx}"
            )

        return UpsertResult(
            duplicate=existing is not None,
            first_seen_tx=record.first_seen_tx,
            first_seen_at=record.first_seen_at,
            seen_count=record.seen_count,
        )

    def get_by_tx(self, tx_signature: str) -> Optional[TxIndexEntry]:
        tx_signature = _normalize_tx(tx_signature)
        with self._lock:
            data = self.backend.get(BY_TX, tx_signature)
        return _validate(TxIndexEntry, data, f"{BY_TX}/{tx_signature}")

    def get_by_hash(self, fingerprint: str) -> Optional[ProofRecord]:
        fingerprint = _normalize_fingerprint(fingerprint)
        with self._lock:
            data = self.backend.get(BY_HASH, fingerprint)
        return _validate(ProofRecord, data, f"{BY_HASH}/{fingerprint}")

    def get_bundle(self, tx_signature: str) -> Optional[ProofBundle]:
        """
        Forensic view of a transaction: its tx index entry joined with the
        hash record of the fingerprint it carried.
        """
        entry = self.get_by_tx(tx_signature)
        if entry is None:
            return None

        record = self.get_by_hash(entry.fingerprint)
        if record is None:
            return ProofBundle(
                tx_signature=entry.tx_signature,
                fingerprint=entry.fingerprint,
                canonical_text=entry.canonical_text,
                created_at=entry.created_at,
                duplicate=False,
                first_seen_tx=entry.tx_signature,
                first_seen_at=entry.created_at,
                seen_count=1,
            )

        return ProofBundle(
            tx_signature=entry.tx_signature,
            fingerprint=entry.fingerprint,
            canonical_text=entry.canonical_text or record.canonical_text,
            created_at=entry.created_at,
            duplicate=record.seen_count > 1,
            first_seen_tx=record.first_seen_tx,
            first_seen_at=record.first_seen_at,
            seen_count=record.seen_count,
            last_seen_at=record.last_seen_at,
            analysis_summary=record.analysis_summary,
        )

    def list_all(self) -> list[ProofRecord]:
        """Every known fingerprint, most recently seen first."""
        with self._lock:
            values = self.backend.list_values(BY_HASH)
        records = [_validate(ProofRecord, v, BY_HASH) for v in values]
        records = [r for r in records if r is not None]
        return sorted(records, key=lambda r: r.last_seen_at, reverse=True)


def create_proof_store(settings: Optional[Settings] = None) -> ProofStore:
    """ProofStore on the backend selected by PROOF_STORE_BACKEND ("json" or "sql")."""
    settings = settings or get_settings()
    backend_name = settings.proof_store_backend.lower()

    if backend_name == "json":
        backend = JsonFileBackend(settings.proof_store_path)
    elif backend_name == "sql":
        backend = SqlBackend.from_url(settings.database_url)
    else:
        raise ValueError(f"Unknown proof store backend: {settings.proof_store_backend}")

    logger.info(f"Proof store backend: {backend_name}")
    return ProofStore(backend)
