"""
Transaction Journal Module

Append-only log of every submitted instruction and its outcome. Entries
are keyed by sequence number and never rewritten; per-participant index
keys are extended on append so participant queries do not scan the log.
"""

import json
import threading
from typing import Dict, List, Optional

from .exceptions import ConcurrentModification
from .institutions import LEGACY_JOURNAL_KEY
from .logging_config import get_logger, log_action
from .storage import KeyValueStore
from .transactions import Transaction


JOURNAL_PREFIX = "__journal__/"
HEAD_KEY = JOURNAL_PREFIX + "head"
ENTRY_PREFIX = JOURNAL_PREFIX + "entry/"
INDEX_PREFIX = JOURNAL_PREFIX + "index/"


def entry_key(seq: int) -> str:
    return f"{ENTRY_PREFIX}{seq:012d}"


def index_key(institution_id: str) -> str:
    return f"{INDEX_PREFIX}{institution_id}"


class TransactionJournal:
    """Append-only transaction log with participant queries"""

    def __init__(self, store: KeyValueStore, auditor_id: str = "AUDITOR", max_retries: int = 3):
        self.store = store
        self.auditor_id = auditor_id
        self.max_retries = max_retries
        self._lock = threading.Lock()
        self.logger = get_logger("nostrovostro.journal")

    def initialize(self) -> None:
        """Create the empty journal if it does not exist yet"""
        self.store.compare_and_set(HEAD_KEY, None, b"0")

    def count(self) -> int:
        raw = self.store.get(HEAD_KEY)
        return int(raw) if raw else 0

    def __len__(self) -> int:
        return self.count()

    def append(self, transaction: Transaction) -> int:
        """
        Append a transaction; returns its sequence number.
        """
        encoded = json.dumps(transaction.to_dict()).encode("utf-8")
        participants = list(dict.fromkeys([transaction.sender, transaction.receiver]))

        with self._lock:
            if self.store.supports_multi_key:
                seq = self._append_atomic(transaction.ref_number, encoded, participants)
            else:
                seq = self._append_sequential(transaction.ref_number, encoded, participants)

        log_action(
            self.logger, "info", f"Journal entry {seq} appended: {transaction.ref_number}",
            action="journal_append", resource=f"journal:{seq}",
            correlation_id=transaction.ref_number,
            extra={"statusCode": transaction.status_code, "statusMsg": transaction.status_message}
        )
        return seq

    def _attempts(self):
        return range(self.max_retries + 1)

    def _conflict(self, ref_number: str) -> ConcurrentModification:
        log_action(
            self.logger, "error", f"Journal append abandoned: {ref_number}",
            action="journal_append", correlation_id=ref_number
        )
        return ConcurrentModification(
            ref_number, self.max_retries + 1, operation="Journal append for"
        )

    def _append_atomic(self, ref_number: str, encoded: bytes, participants: List[str]) -> int:
        for _ in self._attempts():
            head_raw = self.store.get(HEAD_KEY)
            seq = int(head_raw) if head_raw else 0
            expected: Dict[str, Optional[bytes]] = {HEAD_KEY: head_raw}
            updates = {HEAD_KEY: str(seq + 1).encode("utf-8"), entry_key(seq): encoded}
            for participant in participants:
                key = index_key(participant)
                raw = self.store.get(key)
                expected[key] = raw
                updates[key] = self._extend_index(raw, seq)
            if self.store.commit_many(expected, updates):
                return seq
        raise self._conflict(ref_number)

    def _append_sequential(self, ref_number: str, encoded: bytes, participants: List[str]) -> int:
        # Claim the sequence number first so concurrent writers never share one
        for _ in self._attempts():
            head_raw = self.store.get(HEAD_KEY)
            seq = int(head_raw) if head_raw else 0
            if self.store.compare_and_set(HEAD_KEY, head_raw, str(seq + 1).encode("utf-8")):
                break
        else:
            raise self._conflict(ref_number)
        self.store.put(entry_key(seq), encoded)
        for participant in participants:
            key = index_key(participant)
            for _ in self._attempts():
                raw = self.store.get(key)
                if self.store.compare_and_set(key, raw, self._extend_index(raw, seq)):
                    break
            else:
                raise self._conflict(ref_number)
        return seq

    @staticmethod
    def _extend_index(raw: Optional[bytes], seq: int) -> bytes:
        seqs = json.loads(raw.decode("utf-8")) if raw else []
        seqs.append(seq)
        return json.dumps(seqs).encode("utf-8")

    def get(self, seq: int) -> Optional[Transaction]:
        raw = self.store.get(entry_key(seq))
        if raw is None:
            return None
        return Transaction.from_dict(json.loads(raw.decode("utf-8")))

    def _load_many(self, seqs) -> List[Transaction]:
        transactions = []
        for seq in seqs:
            transaction = self.get(seq)
            if transaction is None:
                # Sequence claimed by a writer that never stored the entry
                self.logger.warning(f"Journal entry {seq} missing, skipped")
                continue
            transactions.append(transaction)
        return transactions

    def entries(self) -> List[Transaction]:
        """Every journaled transaction in append order"""
        return self._load_many(range(self.count()))

    def query_by_participant(self, institution_id: str) -> List[Transaction]:
        """
        Transactions where the institution is sender or receiver, in journal
        order. The auditor id sees the whole journal.
        """
        if institution_id == self.auditor_id:
            return self.entries()
        raw = self.store.get(index_key(institution_id))
        if raw is None:
            return []
        return self._load_many(json.loads(raw.decode("utf-8")))

    # Aggregate interop

    def export_aggregate(self) -> bytes:
        """Whole journal as a single {"transactions": [...]} blob"""
        payload = {"transactions": [t.to_dict() for t in self.entries()]}
        return json.dumps(payload).encode("utf-8")

    def import_aggregate(self, key: str = LEGACY_JOURNAL_KEY) -> int:
        """
        Load a {"transactions": [...]} aggregate into an empty journal.

        Returns the number of imported transactions.

        Raises:
            ValueError: If the journal already has entries
        """
        raw = self.store.get(key)
        if raw is None:
            return 0
        if self.count() > 0:
            raise ValueError("Journal already has entries; refusing to import aggregate")

        payload = json.loads(raw.decode("utf-8")) or {}
        imported = 0
        for data in payload.get("transactions") or []:
            self.append(Transaction.from_dict(data))
            imported += 1

        log_action(
            self.logger, "info", f"Imported {imported} transactions from {key}",
            action="journal_import", resource=f"journal:{key}"
        )
        return imported
