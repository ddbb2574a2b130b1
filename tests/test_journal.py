"""
Test suite for the transaction journal

Tests append ordering, participant queries, the auditor view and
interop with the single-aggregate journal format.
"""

import json
import pytest
from decimal import Decimal

from correspondent_banking.exceptions import ConcurrentModification
from correspondent_banking.storage import InMemoryStore
from correspondent_banking.journal import (
    TransactionJournal, HEAD_KEY, entry_key, index_key
)
from correspondent_banking.transactions import Transaction, MSG_COMPLETED


def make_transaction(ref, sender, receiver, status_code=1, message=MSG_COMPLETED, amount="100"):
    return Transaction(
        ref_number=ref, op_code="CRED", value_date="2016-10-01", currency="USD",
        amount=Decimal(amount), sender=sender, receiver=receiver,
        ordering_customer="", beneficiary_customer="", charges_detail="",
        status_code=status_code, status_message=message
    )


class ContendedStore(InMemoryStore):
    """Store where every write to one key loses a race"""

    def __init__(self, contended_key, multi_key=True):
        super().__init__(multi_key=multi_key)
        self.contended_key = contended_key
        self.attempts = 0

    def compare_and_set(self, key, expected, value):
        if key == self.contended_key:
            self.attempts += 1
            return False
        return super().compare_and_set(key, expected, value)

    def commit_many(self, expected, updates):
        if self.contended_key in updates:
            self.attempts += 1
            return False
        return super().commit_many(expected, updates)


@pytest.fixture(params=[True, False], ids=["multi-key", "single-key"])
def journal(request):
    return TransactionJournal(InMemoryStore(multi_key=request.param), auditor_id="AUDITOR")


class TestTransactionJournal:
    """Append and query behaviour on both store kinds"""

    def test_empty_journal(self, journal):
        assert journal.count() == 0
        assert journal.entries() == []
        assert journal.query_by_participant("BANKA") == []
        assert journal.query_by_participant("AUDITOR") == []

    def test_initialize_is_idempotent(self, journal):
        journal.initialize()
        journal.append(make_transaction("R1", "BANKA", "BANKB"))
        journal.initialize()
        assert journal.count() == 1

    def test_append_assigns_sequence_numbers(self, journal):
        """Test appends get consecutive sequence numbers and keep order"""
        seqs = [
            journal.append(make_transaction(f"R{i}", "BANKA", "BANKB"))
            for i in range(3)
        ]
        assert seqs == [0, 1, 2]
        assert len(journal) == 3
        assert [t.ref_number for t in journal.entries()] == ["R0", "R1", "R2"]
        assert journal.get(1).ref_number == "R1"
        assert journal.get(99) is None

    def test_failed_transactions_are_journaled(self, journal):
        journal.append(make_transaction("R1", "BANKA", "BANKB", 0, "Invalid Amount"))
        entry = journal.get(0)
        assert entry.status_code == 0
        assert entry.status_message == "Invalid Amount"

    def test_query_by_participant(self, journal):
        """Test sender/receiver filtering is an ordered subsequence"""
        journal.append(make_transaction("R0", "BANKA", "BANKB"))
        journal.append(make_transaction("R1", "BANKB", "BANKC"))
        journal.append(make_transaction("R2", "BANKC", "BANKA"))
        journal.append(make_transaction("R3", "BANKA", "BANKB", 0, "Invalid Currency"))

        def refs(institution_id):
            return [t.ref_number for t in journal.query_by_participant(institution_id)]

        assert refs("BANKA") == ["R0", "R2", "R3"]
        assert refs("BANKB") == ["R0", "R1", "R3"]
        assert refs("BANKC") == ["R1", "R2"]
        assert refs("BANKZ") == []

    def test_query_matches_linear_scan(self, journal):
        """Test the participant index agrees with scanning every entry"""
        pairs = [("BANKA", "BANKB"), ("BANKC", "BANKB"), ("BANKB", "BANKA"),
                 ("BANKC", "BANKA"), ("BANKA", "BANKC")]
        for i, (sender, receiver) in enumerate(pairs * 3):
            journal.append(make_transaction(f"R{i}", sender, receiver))

        for institution_id in ["BANKA", "BANKB", "BANKC"]:
            scanned = [t for t in journal.entries() if t.involves(institution_id)]
            assert journal.query_by_participant(institution_id) == scanned

    def test_self_transfer_listed_once(self, journal):
        journal.append(make_transaction("R0", "BANKA", "BANKA", 0, "Invalid Currency"))
        assert len(journal.query_by_participant("BANKA")) == 1

    def test_auditor_sees_everything(self, journal):
        """Test the audit id returns the whole journal unfiltered"""
        journal.append(make_transaction("R0", "BANKA", "BANKB"))
        journal.append(make_transaction("R1", "BANKB", "BANKC"))
        audited = journal.query_by_participant("AUDITOR")
        assert [t.ref_number for t in audited] == ["R0", "R1"]
        assert audited == journal.entries()

    def test_storage_layout(self, journal):
        """Test entries and indices live under their own keys"""
        journal.append(make_transaction("R0", "BANKA", "BANKB"))
        store = journal.store
        assert store.get(HEAD_KEY) == b"1"
        assert json.loads(store.get(entry_key(0)))["refNumber"] == "R0"
        assert json.loads(store.get(index_key("BANKA"))) == [0]
        assert json.loads(store.get(index_key("BANKB"))) == [0]

    def test_missing_entry_is_skipped(self, journal):
        journal.append(make_transaction("R0", "BANKA", "BANKB"))
        journal.append(make_transaction("R1", "BANKA", "BANKB"))
        journal.store.delete(entry_key(0))
        assert [t.ref_number for t in journal.entries()] == ["R1"]
        assert [t.ref_number for t in journal.query_by_participant("BANKA")] == ["R1"]


class TestAggregateInterop:
    """Test the {"transactions": [...]} single-key format"""

    def test_import_legacy_aggregate(self):
        """Test importing an aggregate written with float amounts"""
        store = InMemoryStore()
        store.put("allTx", json.dumps({"transactions": [
            {"refNumber": "T1", "opCode": "CRED", "vDate": "2016-10-01", "currency": "USD",
             "amount": 1000, "sender": "BANKA", "receiver": "BANKB", "ordcust": "A",
             "benefcust": "B", "detcharges": "SHA", "statusCode": 1,
             "statusMsg": "Transaction Completed"},
            {"refNumber": "T2", "opCode": "CRED", "vDate": "2016-10-02", "currency": "GBP",
             "amount": 5.5, "sender": "BANKB", "receiver": "BANKC", "ordcust": "",
             "benefcust": "", "detcharges": "", "statusCode": 0,
             "statusMsg": "Invalid Currency"},
        ]}).encode())
        journal = TransactionJournal(store)

        assert journal.import_aggregate() == 2
        assert journal.count() == 2
        assert journal.get(0).amount == Decimal("1000")
        assert journal.get(1).amount == Decimal("5.5")
        assert [t.ref_number for t in journal.query_by_participant("BANKB")] == ["T1", "T2"]

    def test_import_null_transactions(self):
        store = InMemoryStore()
        store.put("allTx", b'{"transactions":null}')
        assert TransactionJournal(store).import_aggregate() == 0

    def test_import_missing_key(self):
        assert TransactionJournal(InMemoryStore()).import_aggregate() == 0

    def test_import_refuses_non_empty_journal(self):
        store = InMemoryStore()
        store.put("allTx", b'{"transactions":[]}')
        journal = TransactionJournal(store)
        journal.append(make_transaction("R0", "BANKA", "BANKB"))
        with pytest.raises(ValueError):
            journal.import_aggregate()

    def test_export_aggregate(self):
        journal = TransactionJournal(InMemoryStore())
        journal.append(make_transaction("R0", "BANKA", "BANKB", amount="12.34"))
        payload = json.loads(journal.export_aggregate())
        assert list(payload.keys()) == ["transactions"]
        assert payload["transactions"][0]["refNumber"] == "R0"
        assert payload["transactions"][0]["amount"] == "12.34"


class TestJournalContention:
    """Appends against a store that never lets the write through"""

    @pytest.mark.parametrize("multi_key", [True, False], ids=["multi-key", "single-key"])
    def test_contended_head_gives_up(self, multi_key):
        """Test append raises ConcurrentModification after max retries"""
        store = ContendedStore(HEAD_KEY, multi_key=multi_key)
        journal = TransactionJournal(store, max_retries=2)

        with pytest.raises(ConcurrentModification) as exc_info:
            journal.append(make_transaction("R1", "BANKA", "BANKB"))

        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable
        assert store.attempts == 3
        assert journal.count() == 0

    def test_contended_index_gives_up(self):
        store = ContendedStore(index_key("BANKB"), multi_key=False)
        journal = TransactionJournal(store, max_retries=1)

        with pytest.raises(ConcurrentModification):
            journal.append(make_transaction("R1", "BANKA", "BANKB"))
        assert store.attempts == 2
