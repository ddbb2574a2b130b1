"""
Typed exceptions for the settlement service.

Every error carries a stable ``code`` so the API layer can map it without
parsing messages. Business-level rejections (missing nostro account,
insufficient funds, ...) are NOT exceptions: they are recorded on the
Transaction as ``statusCode = 0``.

    SettlementError
    +-- MalformedInstruction
    +-- LookupFailure
    |   +-- InstitutionNotFound
    +-- InstitutionExists
    +-- DuplicateRelationship
    +-- InvalidBalance
    +-- ReservedKeyError
    +-- UnknownCurrencyPair
    +-- ConcurrentModification
    +-- SettlementTimeout
    +-- PartialCommitFailure
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement service errors"""

    code: str = "SETTLEMENT_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MalformedInstruction(SettlementError, ValueError):
    """Instruction does not have the ten-field payment message shape"""

    code = "MALFORMED_INSTRUCTION"

    def __init__(self, field_count: int, expected: int = 10):
        self.field_count = field_count
        self.expected = expected
        super().__init__(
            f"Incorrect number of arguments. Expecting {expected} - MT103 format, got {field_count}"
        )


class LookupFailure(SettlementError):
    """A record required by the operation is not in the store"""

    code = "LOOKUP_FAILURE"


class InstitutionNotFound(LookupFailure):

    code = "INSTITUTION_NOT_FOUND"

    def __init__(self, institution_id: str):
        self.institution_id = institution_id
        super().__init__(f"Financial institution {institution_id} not found")


class InstitutionExists(SettlementError):

    code = "INSTITUTION_EXISTS"

    def __init__(self, institution_id: str):
        self.institution_id = institution_id
        super().__init__(f"Financial institution {institution_id} already exists")


class DuplicateRelationship(SettlementError, ValueError):
    """An institution record holds more than one account for the same holder"""

    code = "DUPLICATE_RELATIONSHIP"

    def __init__(self, owner: str, holder: str):
        self.owner = owner
        self.holder = holder
        super().__init__(f"{owner} already holds an account for {holder}")


class InvalidBalance(SettlementError, ValueError):
    """Account balance is not a finite decimal"""

    code = "INVALID_BALANCE"

    def __init__(self, holder: str, balance):
        self.holder = holder
        self.balance = balance
        super().__init__(f"Cash balance of account for {holder} must be finite, got {balance}")


class ReservedKeyError(SettlementError, ValueError):
    """Institution id collides with an internal store key"""

    code = "RESERVED_KEY"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"'{key}' is reserved and cannot be used as an institution id")


class UnknownCurrencyPair(SettlementError, LookupError):

    code = "UNKNOWN_CURRENCY_PAIR"

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"No FX rate configured for {source} -> {target}")


class ConcurrentModification(SettlementError):
    """Optimistic commit kept losing to concurrent writers"""

    code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, ref_number: str, attempts: int, operation: str = "Settlement"):
        self.ref_number = ref_number
        self.attempts = attempts
        self.operation = operation
        super().__init__(
            f"{operation} {ref_number} abandoned after {attempts} conflicting attempts"
        )


class SettlementTimeout(SettlementError):
    """Settlement did not reach commit within its time budget; nothing was written"""

    code = "SETTLEMENT_TIMEOUT"
    retryable = True

    def __init__(self, ref_number: str, timeout: float):
        self.ref_number = ref_number
        self.timeout = timeout
        super().__init__(f"Settlement {ref_number} exceeded {timeout}s before commit")


class PartialCommitFailure(SettlementError):
    """Vostro credit was written but the nostro debit was not"""

    code = "PARTIAL_COMMIT"

    def __init__(self, ref_number: str, compensated: bool,
                 intent_key: Optional[str] = None, cause: Optional[BaseException] = None,
                 transaction=None):
        self.ref_number = ref_number
        self.transaction = transaction
        self.compensated = compensated
        self.intent_key = intent_key
        self.cause = cause
        state = "credit reversed" if compensated else "ledger left unbalanced"
        super().__init__(f"Settlement {ref_number} partially committed ({state})")
