"""
Test suite for the bilateral nostro/vostro view
"""

import pytest
from decimal import Decimal

from correspondent_banking.storage import InMemoryStore
from correspondent_banking.system import SettlementSystem
from correspondent_banking.institutions import Account
from correspondent_banking.exceptions import InstitutionNotFound


class TestBilateralView:

    def setup_method(self):
        self.system = SettlementSystem(store=InMemoryStore(), seed=True)

    def test_view_of_banka(self):
        """Test own record as vostro and counterparties' accounts as nostro"""
        view = self.system.get_nostro_vostro_accounts("BANKA")

        assert view.to_dict() == {
            "owner": "BANKA",
            "vostro": [{
                "owner": "BANKA",
                "accounts": [
                    {"holder": "BANKB", "currency": "USD", "cashBalance": "250000.00"},
                    {"holder": "BANKC", "currency": "USD", "cashBalance": "360000.00"},
                ],
            }],
            "nostro": [
                {"owner": "BANKB",
                 "accounts": [{"holder": "BANKA", "currency": "AUD", "cashBalance": "335000.00"}]},
                {"owner": "BANKC",
                 "accounts": [{"holder": "BANKA", "currency": "EUR", "cashBalance": "324000.00"}]},
            ],
        }

    def test_repeated_queries_identical(self):
        """Test two queries without settlement in between agree"""
        first = self.system.get_nostro_vostro_accounts("BANKB").to_dict()
        second = self.system.get_nostro_vostro_accounts("BANKB").to_dict()
        assert first == second

    def test_view_reflects_settlement(self):
        """Test views are rebuilt from current balances"""
        self.system.submit_transaction([
            "REF001", "CRED", "2016-10-01", "USD", "1000", "BANKA", "BANKB", "", "", ""
        ])
        view = self.system.get_nostro_vostro_accounts("BANKA")
        assert view.vostro[0].find_account("BANKB").cash_balance == Decimal("251000.00")
        nostro_at_b = [record for record in view.nostro if record.owner == "BANKB"][0]
        assert nostro_at_b.accounts[0].cash_balance == Decimal("333660.00")

    def test_counterparty_without_relationship(self):
        """Test registered institutions holding nothing for us are omitted"""
        self.system.create_financial_institution("BANKD", [
            Account("BANKB", "USD", Decimal("10"))
        ])
        view = self.system.get_nostro_vostro_accounts("BANKA")
        assert [record.owner for record in view.nostro] == ["BANKB", "BANKC"]

        view = self.system.get_nostro_vostro_accounts("BANKB")
        assert [record.owner for record in view.nostro] == ["BANKA", "BANKC", "BANKD"]

    def test_new_institution_has_empty_nostro(self):
        self.system.create_financial_institution("BANKD", [])
        view = self.system.get_nostro_vostro_accounts("BANKD")
        assert view.nostro == []
        assert view.vostro[0].owner == "BANKD"

    def test_unknown_institution(self):
        with pytest.raises(InstitutionNotFound):
            self.system.get_nostro_vostro_accounts("BANKZ")
