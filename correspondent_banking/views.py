"""
Bilateral View Module

Derives the nostro/vostro picture for one institution. Views are rebuilt
from the directory on every query and never persisted.

A nostro is our account of our money, held by the other bank.
A vostro is our account of other bank money, held by us.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .institutions import FinancialInstitution, InstitutionDirectory
from .logging_config import get_logger


@dataclass
class BilateralView:
    owner: str
    nostro: List[FinancialInstitution] = field(default_factory=list)
    vostro: List[FinancialInstitution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "nostro": [record.to_dict() for record in self.nostro],
            "vostro": [record.to_dict() for record in self.vostro],
        }


class BilateralViewBuilder:

    def __init__(self, directory: InstitutionDirectory):
        self.directory = directory
        self.logger = get_logger("nostrovostro.views")

    def build_view(self, institution_id: str) -> BilateralView:
        """
        Own record as vostro, plus one partial record per registered
        counterparty that holds an account for the institution.

        Raises:
            InstitutionNotFound: If the institution has no record
        """
        own = self.directory.load(institution_id)
        view = BilateralView(owner=own.owner, vostro=[own])

        for other_id in self.directory.list_ids():
            if other_id == institution_id:
                continue
            other = self.directory.get(other_id)
            if other is None:
                self.logger.warning(f"Registered institution {other_id} has no record")
                continue
            account = other.find_account(institution_id)
            if account is not None:
                view.nostro.append(FinancialInstitution(owner=other.owner, accounts=[account]))

        return view
