"""
Settlement system facade

Wires store, FX table, directory, validator, engine, journal and view
builder together, and exposes the operations callers invoke: submit a
transaction, create an institution, and the three queries.
"""

from typing import List, Optional, Sequence

from .bootstrap import bootstrap
from .config import SettlementConfig, get_config
from .currency import FXRateTable
from .exceptions import PartialCommitFailure
from .institutions import Account, FinancialInstitution, InstitutionDirectory
from .journal import TransactionJournal
from .logging_config import get_logger, log_action
from .settlement import RecoveryReport, SettlementEngine
from .storage import KeyValueStore, create_store
from .transactions import (
    MSG_SETTLEMENT_FAILED, STATUS_FAILED, PaymentInstruction, Transaction,
    TransactionValidator
)
from .views import BilateralView, BilateralViewBuilder


class SettlementSystem:
    """Correspondent settlement service with all components initialized"""

    def __init__(self, store: Optional[KeyValueStore] = None,
                 config: Optional[SettlementConfig] = None,
                 seed: Optional[bool] = None):
        self.config = config or get_config()
        self.store = store or create_store(self.config.store_backend, self.config.database_path)
        self.logger = get_logger("nostrovostro.system")

        self.fx_table = FXRateTable(self.config.fx_rates)
        self.directory = InstitutionDirectory(
            self.store, max_retries=self.config.settlement_max_retries
        )
        self.validator = TransactionValidator(
            self.directory, self.fx_table, amount_precision=self.config.amount_precision
        )
        self.engine = SettlementEngine(
            self.directory, self.validator,
            max_retries=self.config.settlement_max_retries,
            timeout=self.config.settlement_timeout_seconds,
            lock_timeout=self.config.lock_timeout_seconds,
        )
        self.journal = TransactionJournal(
            self.store, auditor_id=self.config.auditor_id,
            max_retries=self.config.settlement_max_retries
        )
        self.view_builder = BilateralViewBuilder(self.directory)

        if self.config.seed_on_startup if seed is None else seed:
            bootstrap(self.directory, self.journal)
        else:
            self.journal.initialize()

        # Settlements interrupted by a previous process finish before new ones start
        self.recovery_report = self.recover()

    def recover(self) -> RecoveryReport:
        """Replay interrupted settlements and journal the ones completed"""
        report = self.engine.recover_pending()
        for transaction in report.replayed:
            self.journal.append(transaction)
        if report.replayed or report.reverted or report.conflicts:
            log_action(
                self.logger, "critical" if report.conflicts else "warning",
                f"Recovery: {len(report.replayed)} replayed, {len(report.reverted)} reverted, "
                f"{len(report.conflicts)} conflicts",
                action="recover",
                extra={"conflicts": report.conflicts} if report.conflicts else None
            )
        return report

    def submit_transaction(self, fields: Sequence[str]) -> Transaction:
        """
        Parse, settle and journal a ten-field instruction.

        Raises:
            MalformedInstruction: Wrong field count; nothing is journaled
            InstitutionNotFound: Sender or receiver unknown; nothing is journaled
            ConcurrentModification, SettlementTimeout: Retryable; nothing is journaled
            PartialCommitFailure: Journaled as failed, then re-raised
        """
        instruction = PaymentInstruction.from_fields(fields)
        return self.submit_instruction(instruction)

    def submit_instruction(self, instruction: PaymentInstruction) -> Transaction:
        try:
            transaction = self.engine.settle(instruction)
        except PartialCommitFailure as e:
            self.journal.append(e.transaction.with_status(STATUS_FAILED, MSG_SETTLEMENT_FAILED))
            raise

        self.journal.append(transaction)
        return transaction

    def create_financial_institution(self, owner: str,
                                     accounts: Sequence[Account]) -> FinancialInstitution:
        return self.directory.create_institution(owner, accounts)

    def get_financial_institution_details(self, institution_id: str) -> FinancialInstitution:
        return self.directory.load(institution_id)

    def get_nostro_vostro_accounts(self, institution_id: str) -> BilateralView:
        return self.view_builder.build_view(institution_id)

    def get_transactions(self, institution_id: str) -> List[Transaction]:
        return self.journal.query_by_participant(institution_id)

    def close(self) -> None:
        log_action(self.logger, "info", "Settlement system shutting down", action="shutdown")
        self.store.close()
