"""
Institution Directory Module

Typed access to each financial institution's account record in the
key-value store, plus the registry of known institution ids. The
institution id is both the business key and the storage key.

An institution record lists the accounts it holds for its counterparties:
seen from the owner these are vostro accounts, seen from the holder they
are nostro accounts.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .currency import decimal_from_json
from .exceptions import (
    ConcurrentModification, DuplicateRelationship, InstitutionExists, InstitutionNotFound,
    InvalidBalance, ReservedKeyError
)
from .logging_config import get_logger, log_action
from .storage import KeyValueStore


REGISTRY_KEY = "__registry__"
LEGACY_JOURNAL_KEY = "allTx"
RESERVED_PREFIX = "__"


def is_reserved_key(key: str) -> bool:
    """Keys the store uses internally and that can never name an institution"""
    return key.startswith(RESERVED_PREFIX) or key == LEGACY_JOURNAL_KEY


@dataclass
class Account:
    """One counterparty relationship held by an institution"""
    holder: str
    currency: str
    cash_balance: Decimal = Decimal('0')

    def __post_init__(self):
        if not isinstance(self.cash_balance, Decimal):
            self.cash_balance = decimal_from_json(self.cash_balance)
        if not self.cash_balance.is_finite():
            raise InvalidBalance(self.holder, self.cash_balance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "currency": self.currency,
            "cashBalance": str(self.cash_balance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            holder=data["holder"],
            currency=data["currency"],
            cash_balance=decimal_from_json(data.get("cashBalance")),
        )


@dataclass
class FinancialInstitution:
    """Institution record: the owner and the accounts it holds for others"""
    owner: str
    accounts: List[Account] = field(default_factory=list)

    def find_account(self, holder: str) -> Optional[Account]:
        """Account held for the given counterparty, if any"""
        for account in self.accounts:
            if account.holder == holder:
                return account
        return None

    def validate_relationships(self) -> None:
        """
        Each (owner, holder) pair may appear once.

        Raises:
            DuplicateRelationship: On the first repeated holder
        """
        seen = set()
        for account in self.accounts:
            if account.holder in seen:
                raise DuplicateRelationship(self.owner, account.holder)
            seen.add(account.holder)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "accounts": [account.to_dict() for account in self.accounts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FinancialInstitution':
        return cls(
            owner=data["owner"],
            accounts=[Account.from_dict(a) for a in data.get("accounts") or []],
        )

    def encode(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> 'FinancialInstitution':
        return cls.from_dict(json.loads(raw.decode("utf-8")))


class InstitutionDirectory:
    """
    Read/write access to institution records.

    No locking happens here; the settlement engine owns read-modify-write
    correctness through compare-and-set on the raw bytes.
    """

    def __init__(self, store: KeyValueStore, max_retries: int = 3):
        self.store = store
        self.max_retries = max_retries
        self.logger = get_logger("nostrovostro.institutions")

    def get(self, institution_id: str) -> Optional[FinancialInstitution]:
        """Load a record, or None if the id is unknown"""
        if is_reserved_key(institution_id):
            return None
        raw = self.store.get(institution_id)
        if raw is None:
            return None
        return FinancialInstitution.decode(raw)

    def load(self, institution_id: str) -> FinancialInstitution:
        """
        Load a record

        Raises:
            InstitutionNotFound: If no record exists under the id
        """
        record = self.get(institution_id)
        if record is None:
            raise InstitutionNotFound(institution_id)
        return record

    def load_raw(self, institution_id: str) -> bytes:
        """Raw stored bytes, used as the compare-and-set expectation"""
        raw = None if is_reserved_key(institution_id) else self.store.get(institution_id)
        if raw is None:
            raise InstitutionNotFound(institution_id)
        return raw

    def check_writable(self, record: FinancialInstitution) -> bytes:
        """Validate a record for writing and return its encoding"""
        if is_reserved_key(record.owner):
            raise ReservedKeyError(record.owner)
        record.validate_relationships()
        return record.encode()

    def save(self, record: FinancialInstitution) -> None:
        """Persist a record under its owner id"""
        self.store.put(record.owner, self.check_writable(record))

    def create_institution(self, owner: str, accounts: Sequence[Account]) -> FinancialInstitution:
        """
        Create and register a new institution

        Raises:
            InstitutionExists: If a record already exists for owner
            DuplicateRelationship: If two accounts share a holder
        """
        record = FinancialInstitution(owner=owner, accounts=list(accounts))
        encoded = self.check_writable(record)

        if not self.store.compare_and_set(owner, None, encoded):
            raise InstitutionExists(owner)
        self.register(owner)

        log_action(
            self.logger, "info", f"Financial institution created: {owner}",
            institution=owner, action="create_institution",
            resource=f"institution:{owner}",
            extra={"accounts": [a.to_dict() for a in record.accounts]}
        )
        return record

    # Registry

    def list_ids(self) -> List[str]:
        """Registered institution ids in registration order"""
        raw = self.store.get(REGISTRY_KEY)
        if raw is None:
            return []
        return json.loads(raw.decode("utf-8"))

    def register(self, institution_id: str) -> bool:
        """Add an id to the registry; returns False if already present"""
        if is_reserved_key(institution_id):
            raise ReservedKeyError(institution_id)
        attempts = self.max_retries + 1
        for _ in range(attempts):
            raw = self.store.get(REGISTRY_KEY)
            ids = json.loads(raw.decode("utf-8")) if raw else []
            if institution_id in ids:
                return False
            ids.append(institution_id)
            updated = json.dumps(ids).encode("utf-8")
            if self.store.compare_and_set(REGISTRY_KEY, raw, updated):
                return True
        raise ConcurrentModification(institution_id, attempts, operation="Registration of")
