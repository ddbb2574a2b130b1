"""
Network bootstrap: the three-bank correspondent roster and an empty journal.
"""

from decimal import Decimal
from typing import List, Tuple

from .institutions import Account, InstitutionDirectory
from .journal import TransactionJournal
from .logging_config import get_logger


BANKA = "BANKA"
BANKB = "BANKB"
BANKC = "BANKC"

# (owner, accounts). Mirrored balances are the counterparty's balance at the
# static FX rate, e.g. BANKB holds 250000 USD * 1.34 = 335000 AUD for BANKA.
DEFAULT_ROSTER: List[Tuple[str, List[Account]]] = [
    (BANKA, [
        Account(holder=BANKB, currency="USD", cash_balance=Decimal("250000.00")),
        Account(holder=BANKC, currency="USD", cash_balance=Decimal("360000.00")),
    ]),
    (BANKB, [
        Account(holder=BANKA, currency="AUD", cash_balance=Decimal("335000.00")),
        Account(holder=BANKC, currency="AUD", cash_balance=Decimal("120000.00")),
    ]),
    (BANKC, [
        Account(holder=BANKA, currency="EUR", cash_balance=Decimal("324000.00")),
        Account(holder=BANKB, currency="EUR", cash_balance=Decimal("80400.00")),
    ]),
]


def bootstrap(directory: InstitutionDirectory, journal: TransactionJournal,
              roster=None) -> List[str]:
    """
    Seed institutions and the empty journal.

    Institutions that already exist are left as they are, so running this
    against a populated store is safe. Returns the ids created.
    """
    logger = get_logger("nostrovostro.bootstrap")
    created = []

    for owner, accounts in (roster if roster is not None else DEFAULT_ROSTER):
        if directory.get(owner) is not None:
            directory.register(owner)
            continue
        directory.create_institution(owner, [
            Account(a.holder, a.currency, a.cash_balance) for a in accounts
        ])
        created.append(owner)

    journal.initialize()
    logger.info(f"Bootstrap complete, created: {created or 'none'}")
    return created
