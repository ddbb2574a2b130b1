"""
Transaction Validation Module

Parses ten-field payment instructions (MT103-style) and validates them
against the sender's and receiver's institution records. Business-level
rejections are not exceptions: they produce a Transaction with
statusCode 0 and a descriptive statusMsg, which is still journaled.

Checks run in a fixed order and do not short-circuit. Each failing check
overwrites the status message, so when several conditions fail the LAST
one reported wins:

    1. amount parses, is positive and has at most amount_precision
       decimal places         -> "Invalid Amount"
    2. nostro account exists   -> "Nostro Account for <S> doesn't exist in <R>"
       2a. FX pair resolves    -> "Invalid Currency"
       2b. funds suffice       -> "Insufficient funds on Nostro Account"
    3. vostro account exists   -> "Vostro Account for <R> doesn't exist in <S>"
       3a. currency matches    -> "<R> doesn't have an account in <CUR> with <S>"

A check whose arithmetic does not fit the Decimal context exactly also
reports "Invalid Amount"; balances never absorb a rounded value.
"""

from dataclasses import dataclass, asdict, fields as dataclass_fields
from decimal import Decimal, DecimalException
from typing import Any, Dict, Optional, Sequence

from .currency import (
    FXRateTable, decimal_from_json, decimal_places, exact_arithmetic, parse_amount
)
from .exceptions import MalformedInstruction, UnknownCurrencyPair
from .institutions import FinancialInstitution, InstitutionDirectory
from .logging_config import get_logger


STATUS_COMPLETED = 1
STATUS_FAILED = 0

MSG_COMPLETED = "Transaction Completed"
MSG_INVALID_AMOUNT = "Invalid Amount"
MSG_INVALID_CURRENCY = "Invalid Currency"
MSG_INSUFFICIENT_FUNDS = "Insufficient funds on Nostro Account"
MSG_SETTLEMENT_FAILED = "Settlement Failed"

INSTRUCTION_FIELD_COUNT = 10


def nostro_missing_message(sender: str, receiver: str) -> str:
    return f"Nostro Account for {sender} doesn't exist in {receiver}"


def vostro_missing_message(sender: str, receiver: str) -> str:
    return f"Vostro Account for {receiver} doesn't exist in {sender}"


def vostro_currency_message(sender: str, receiver: str, currency: str) -> str:
    return f"{receiver} doesn't have an account in {currency} with {sender}"


@dataclass(frozen=True)
class PaymentInstruction:
    """Raw instruction as submitted; every field is still a string"""
    ref_number: str
    op_code: str
    value_date: str
    currency: str
    amount: str
    sender: str
    receiver: str
    ordering_customer: str
    beneficiary_customer: str
    charges_detail: str

    @classmethod
    def from_fields(cls, fields: Sequence[str]) -> 'PaymentInstruction':
        """
        Build from the ordered ten-field wire format

        Raises:
            MalformedInstruction: If the field count is not ten
        """
        if len(fields) != INSTRUCTION_FIELD_COUNT:
            raise MalformedInstruction(len(fields), INSTRUCTION_FIELD_COUNT)
        return cls(*(str(value) for value in fields))

    def to_fields(self) -> list:
        return [getattr(self, f.name) for f in dataclass_fields(self)]


@dataclass(frozen=True)
class Transaction:
    """A settlement instruction with its final status. Immutable."""
    ref_number: str
    op_code: str
    value_date: str
    currency: str
    amount: Decimal
    sender: str
    receiver: str
    ordering_customer: str
    beneficiary_customer: str
    charges_detail: str
    status_code: int
    status_message: str

    @property
    def is_completed(self) -> bool:
        return self.status_code == STATUS_COMPLETED

    def involves(self, institution_id: str) -> bool:
        return institution_id in (self.sender, self.receiver)

    def with_status(self, status_code: int, status_message: str) -> 'Transaction':
        data = asdict(self)
        data.update(status_code=status_code, status_message=status_message)
        return Transaction(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Persisted shape, field names shared with existing ledger data"""
        return {
            "refNumber": self.ref_number,
            "opCode": self.op_code,
            "vDate": self.value_date,
            "currency": self.currency,
            "amount": str(self.amount),
            "sender": self.sender,
            "receiver": self.receiver,
            "ordcust": self.ordering_customer,
            "benefcust": self.beneficiary_customer,
            "detcharges": self.charges_detail,
            "statusCode": self.status_code,
            "statusMsg": self.status_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            ref_number=data.get("refNumber", ""),
            op_code=data.get("opCode", ""),
            value_date=data.get("vDate", ""),
            currency=data.get("currency", ""),
            amount=decimal_from_json(data.get("amount")),
            sender=data.get("sender", ""),
            receiver=data.get("receiver", ""),
            ordering_customer=data.get("ordcust", ""),
            beneficiary_customer=data.get("benefcust", ""),
            charges_detail=data.get("detcharges", ""),
            status_code=int(data.get("statusCode", STATUS_FAILED)),
            status_message=data.get("statusMsg", ""),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validation plus what settlement needs to post it"""
    transaction: Transaction
    converted_amount: Optional[Decimal] = None  # Nostro-currency units
    rate: Optional[Decimal] = None

    @property
    def completed(self) -> bool:
        return self.transaction.is_completed


class TransactionValidator:
    """Checks instructions against the nostro and vostro sides"""

    def __init__(self, directory: InstitutionDirectory, fx_table: FXRateTable,
                 amount_precision: int = 2):
        self.directory = directory
        self.fx_table = fx_table
        self.amount_precision = amount_precision
        self.logger = get_logger("nostrovostro.validation")

    def validate(self, instruction: PaymentInstruction) -> ValidationResult:
        """
        Validate against the records currently in the directory

        Raises:
            InstitutionNotFound: If the sender or receiver record is missing
        """
        receiver = self.directory.load(instruction.receiver)
        sender = self.directory.load(instruction.sender)
        return self.check(instruction, sender, receiver)

    def check(
        self,
        instruction: PaymentInstruction,
        sender: FinancialInstitution,
        receiver: FinancialInstitution
    ) -> ValidationResult:
        """Run every check against the given records (no store access)"""
        status_code = STATUS_COMPLETED
        status_message = MSG_COMPLETED

        try:
            amount = parse_amount(instruction.amount)
            if amount <= Decimal('0') or decimal_places(amount) > self.amount_precision:
                status_code, status_message = STATUS_FAILED, MSG_INVALID_AMOUNT
        except ValueError:
            amount = Decimal('0')
            status_code, status_message = STATUS_FAILED, MSG_INVALID_AMOUNT

        converted_amount = None
        rate = None

        # Nostro: the receiver holds money for the sender
        nostro = receiver.find_account(instruction.sender)
        if nostro is None:
            status_code = STATUS_FAILED
            status_message = nostro_missing_message(instruction.sender, instruction.receiver)
        else:
            try:
                rate = self.fx_table.rate(instruction.currency, nostro.currency)
                converted_amount = self.fx_table.convert(
                    amount, instruction.currency, nostro.currency
                )
                self.logger.debug(
                    f"{instruction.ref_number}: {amount} {instruction.currency} -> "
                    f"{converted_amount} {nostro.currency} at {rate}"
                )
                if nostro.cash_balance < converted_amount:
                    status_code, status_message = STATUS_FAILED, MSG_INSUFFICIENT_FUNDS
            except UnknownCurrencyPair:
                status_code, status_message = STATUS_FAILED, MSG_INVALID_CURRENCY
            except DecimalException:
                converted_amount = None
                status_code, status_message = STATUS_FAILED, MSG_INVALID_AMOUNT

        # Vostro: the sender holds money for the receiver, in instruction currency
        vostro = sender.find_account(instruction.receiver)
        if vostro is None:
            status_code = STATUS_FAILED
            status_message = vostro_missing_message(instruction.sender, instruction.receiver)
        elif vostro.currency != instruction.currency:
            status_code = STATUS_FAILED
            status_message = vostro_currency_message(
                instruction.sender, instruction.receiver, instruction.currency
            )

        # Both postings must be representable without rounding
        if status_code == STATUS_COMPLETED:
            try:
                with exact_arithmetic():
                    _ = nostro.cash_balance - converted_amount
                    _ = vostro.cash_balance + amount
            except DecimalException:
                status_code, status_message = STATUS_FAILED, MSG_INVALID_AMOUNT

        transaction = Transaction(
            ref_number=instruction.ref_number,
            op_code=instruction.op_code,
            value_date=instruction.value_date,
            currency=instruction.currency,
            amount=amount,
            sender=instruction.sender,
            receiver=instruction.receiver,
            ordering_customer=instruction.ordering_customer,
            beneficiary_customer=instruction.beneficiary_customer,
            charges_detail=instruction.charges_detail,
            status_code=status_code,
            status_message=status_message,
        )
        return ValidationResult(
            transaction=transaction,
            converted_amount=converted_amount,
            rate=rate,
        )
