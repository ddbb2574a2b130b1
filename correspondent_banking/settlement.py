"""
Settlement Engine Module

Posts validated payment instructions to both sides of a correspondent
relationship:

    credit  vostro  (sender's record, account held for receiver)  + amount
    debit   nostro  (receiver's record, account held for sender)  - amount * rate

Both records are read, validated and rewritten under per-institution locks
and optimistic compare-and-set. Stores with multi-key commits write both
records in one commit. Single-key stores get a write-ahead intent record
holding before/after images of both records so a crash between the two
writes can be replayed on restart, and a failed debit is compensated by
reverting the credit.
"""

import json
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .currency import exact_arithmetic
from .exceptions import (
    ConcurrentModification, PartialCommitFailure, SettlementTimeout
)
from .institutions import FinancialInstitution, InstitutionDirectory
from .logging_config import get_logger, log_action
from .transactions import (
    PaymentInstruction, Transaction, TransactionValidator, ValidationResult
)


PENDING_PREFIX = "__pending__/"

INTENT_PENDING = "pending"        # Writes in flight; replay forward
INTENT_COMPENSATE = "compensate"  # Debit failed and reversal did not land; replay backward


class InstitutionLocks:
    """Process-local mutual exclusion per institution id"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, institution_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(institution_id)
            if lock is None:
                lock = self._locks[institution_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, institution_ids: Iterable[str], timeout: float):
        """
        Acquire every lock in sorted id order.

        Raises:
            TimeoutError: If a lock is not acquired within timeout
        """
        deadline = time.monotonic() + timeout
        acquired: List[threading.Lock] = []
        try:
            for institution_id in sorted(set(institution_ids)):
                lock = self._lock_for(institution_id)
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not lock.acquire(timeout=remaining):
                    raise TimeoutError(f"Lock on {institution_id} not acquired in {timeout}s")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass
class RecoveryReport:
    """What recover_pending() did with leftover intent records"""
    replayed: List[Transaction] = field(default_factory=list)
    reverted: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)


class SettlementEngine:
    """Validates and posts instructions to the nostro and vostro accounts"""

    def __init__(
        self,
        directory: InstitutionDirectory,
        validator: TransactionValidator,
        max_retries: int = 3,
        timeout: float = 5.0,
        lock_timeout: float = 2.0,
        locks: Optional[InstitutionLocks] = None
    ):
        self.directory = directory
        self.store = directory.store
        self.validator = validator
        self.max_retries = max_retries
        self.timeout = timeout
        self.lock_timeout = lock_timeout
        self.locks = locks or InstitutionLocks()
        self.logger = get_logger("nostrovostro.settlement")

    def settle(self, instruction: PaymentInstruction) -> Transaction:
        """
        Validate the instruction and, if it passes, post both sides.

        Returns the resulting Transaction whether it completed or not.

        Raises:
            InstitutionNotFound: Sender or receiver record missing
            ConcurrentModification: Every optimistic attempt conflicted
            SettlementTimeout: Time budget spent before commit
            PartialCommitFailure: Credit written but debit not
        """
        ref = instruction.ref_number
        deadline = time.monotonic() + self.timeout
        parties = [instruction.sender, instruction.receiver]

        try:
            with self.locks.hold(parties, min(self.lock_timeout, self.timeout)):
                return self._settle_locked(instruction, deadline)
        except TimeoutError:
            log_action(
                self.logger, "error", f"Settlement lock timeout: {ref}",
                action="settle", correlation_id=ref,
                extra={"sender": instruction.sender, "receiver": instruction.receiver}
            )
            raise SettlementTimeout(ref, self.timeout)

    def _settle_locked(self, instruction: PaymentInstruction, deadline: float) -> Transaction:
        ref = instruction.ref_number
        attempts = 0

        while attempts <= self.max_retries:
            attempts += 1
            if time.monotonic() > deadline:
                raise SettlementTimeout(ref, self.timeout)

            receiver_raw = self.directory.load_raw(instruction.receiver)
            sender_raw = self.directory.load_raw(instruction.sender)
            records = {instruction.receiver: FinancialInstitution.decode(receiver_raw)}
            if instruction.sender not in records:
                records[instruction.sender] = FinancialInstitution.decode(sender_raw)

            result = self.validator.check(
                instruction, records[instruction.sender], records[instruction.receiver]
            )
            transaction = result.transaction
            if not result.completed:
                log_action(
                    self.logger, "warning",
                    f"Settlement rejected: {transaction.status_message}",
                    action="settle", correlation_id=ref,
                    extra={"sender": transaction.sender, "receiver": transaction.receiver,
                           "amount": str(transaction.amount), "currency": transaction.currency}
                )
                return transaction

            updates = self._post(result, records)
            expected = {instruction.receiver: receiver_raw, instruction.sender: sender_raw}

            if self.store.supports_multi_key:
                committed = self.store.commit_many(expected, updates)
            else:
                committed = self._commit_with_intent(transaction, expected, updates)

            if committed:
                log_action(
                    self.logger, "info", f"Settlement completed: {ref}",
                    action="settle", correlation_id=ref,
                    extra={
                        "sender": transaction.sender,
                        "receiver": transaction.receiver,
                        "credited": f"{transaction.amount} {transaction.currency}",
                        "debited": str(result.converted_amount),
                        "rate": str(result.rate),
                        "attempts": attempts,
                    }
                )
                return transaction

            self.logger.debug(f"Settlement {ref} lost a write race (attempt {attempts}), retrying")

        log_action(
            self.logger, "error", f"Settlement abandoned after {attempts} conflicts: {ref}",
            action="settle", correlation_id=ref
        )
        raise ConcurrentModification(ref, attempts)

    def _post(
        self,
        result: ValidationResult,
        records: Dict[str, FinancialInstitution]
    ) -> Dict[str, bytes]:
        """Apply credit and debit to the in-memory records and encode them"""
        transaction = result.transaction

        vostro = records[transaction.sender].find_account(transaction.receiver)
        nostro = records[transaction.receiver].find_account(transaction.sender)
        with exact_arithmetic():
            vostro.cash_balance = vostro.cash_balance + transaction.amount
            nostro.cash_balance = nostro.cash_balance - result.converted_amount

        return {
            institution_id: self.directory.check_writable(record)
            for institution_id, record in records.items()
        }

    # Single-key stores

    def _commit_with_intent(
        self,
        transaction: Transaction,
        expected: Dict[str, bytes],
        updates: Dict[str, bytes]
    ) -> bool:
        """
        Credit then debit with an intent record covering the gap.

        Returns False if the first write lost a race (nothing changed).
        """
        sender, receiver = transaction.sender, transaction.receiver
        if sender == receiver:
            return self.store.compare_and_set(sender, expected[sender], updates[sender])

        intent_key = f"{PENDING_PREFIX}{uuid.uuid4().hex}"
        intent = {
            "state": INTENT_PENDING,
            "transaction": transaction.to_dict(),
            "steps": [
                {"key": key, "before": expected[key].decode("utf-8"),
                 "after": updates[key].decode("utf-8")}
                for key in (sender, receiver)
            ],
        }
        self.store.put(intent_key, json.dumps(intent).encode("utf-8"))

        # Credit vostro
        if not self.store.compare_and_set(sender, expected[sender], updates[sender]):
            self.store.delete(intent_key)
            return False

        # Debit nostro
        cause = None
        try:
            debited = self.store.compare_and_set(receiver, expected[receiver], updates[receiver])
        except Exception as e:
            debited = False
            cause = e

        if debited:
            self.store.delete(intent_key)
            return True

        compensated = self._compensate(sender, updates[sender], expected[sender])
        if compensated:
            self.store.delete(intent_key)
        else:
            intent["state"] = INTENT_COMPENSATE
            self.store.put(intent_key, json.dumps(intent).encode("utf-8"))

        log_action(
            self.logger, "critical",
            f"Partial commit: vostro credited but nostro debit failed for {transaction.ref_number}",
            action="settle", correlation_id=transaction.ref_number,
            extra={"sender": sender, "receiver": receiver, "compensated": compensated,
                   "intent_key": None if compensated else intent_key,
                   "cause": repr(cause) if cause else "nostro record changed"}
        )
        raise PartialCommitFailure(
            transaction.ref_number, compensated,
            intent_key=None if compensated else intent_key, cause=cause,
            transaction=transaction
        )

    def _compensate(self, key: str, written: bytes, original: bytes) -> bool:
        """Revert the credit if nobody touched the record since"""
        try:
            return self.store.compare_and_set(key, written, original)
        except Exception:
            self.logger.exception(f"Compensating reversal on {key} failed")
            return False

    def pending_intents(self) -> List[str]:
        return self.store.keys(PENDING_PREFIX)

    def recover_pending(self) -> RecoveryReport:
        """
        Replay intent records left by an interrupted settlement.

        Pending intents are rolled forward, compensate intents rolled back.
        A step is skipped when its target image is already in place and
        reported as a conflict when neither image matches. Replaying twice
        is harmless.
        """
        report = RecoveryReport()

        for intent_key in self.pending_intents():
            raw = self.store.get(intent_key)
            if raw is None:
                continue
            intent = json.loads(raw.decode("utf-8"))
            forward = intent.get("state", INTENT_PENDING) == INTENT_PENDING
            ref = intent["transaction"].get("refNumber", "")

            steps = []
            conflict = False
            for step in intent["steps"]:
                before = step["before"].encode("utf-8")
                after = step["after"].encode("utf-8")
                source, target = (before, after) if forward else (after, before)
                current = self.store.get(step["key"])
                if current == target:
                    continue
                if current != source:
                    conflict = True
                    break
                steps.append((step["key"], source, target))

            if not conflict:
                for key, source, target in steps:
                    if not self.store.compare_and_set(key, source, target):
                        conflict = True
                        break

            if conflict:
                report.conflicts.append(intent_key)
                log_action(
                    self.logger, "critical",
                    f"Intent {intent_key} cannot be replayed; manual reconciliation required",
                    action="recover", correlation_id=ref
                )
                continue

            self.store.delete(intent_key)
            if forward:
                report.replayed.append(Transaction.from_dict(intent["transaction"]))
            else:
                report.reverted.append(ref)
            log_action(
                self.logger, "warning",
                f"Intent {intent_key} {'replayed' if forward else 'reverted'}",
                action="recover", correlation_id=ref
            )

        return report
