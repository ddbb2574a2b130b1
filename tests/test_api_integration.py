"""
Integration tests for the settlement API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from correspondent_banking.api import create_app
from correspondent_banking.storage import InMemoryStore
from correspondent_banking.system import SettlementSystem


FIELDS = ["REF001", "CRED", "2016-10-01", "USD", "1000", "BANKA", "BANKB",
          "Ordering Customer", "Beneficiary Customer", "SHA"]


@pytest.fixture
def system():
    return SettlementSystem(store=InMemoryStore(), seed=True)


@pytest.fixture
def client(system):
    """Test client over a freshly seeded in-memory system"""
    return TestClient(create_app(system))


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()

    def test_fx_rates(self, client):
        r = client.get("/fx-rates")
        assert r.status_code == 200
        assert r.json()["rates"]["USD/AUD"] == "1.34"


class TestTransactionFlow:
    """Submit instructions and query the results"""

    def test_submit_fields(self, client):
        """Test a valid ten-field submission settles"""
        r = client.post("/transactions", json={"fields": FIELDS})
        assert r.status_code == 200
        data = r.json()
        assert data["statusCode"] == 1
        assert data["statusMsg"] == "Transaction Completed"
        assert data["amount"] == "1000"

        r = client.get("/institutions/BANKB")
        accounts = {a["holder"]: a for a in r.json()["accounts"]}
        assert accounts["BANKA"]["cashBalance"] == "333660.00"

    def test_submit_named_instruction(self, client):
        r = client.post("/transactions", json={"instruction": {
            "ref_number": "REF002", "op_code": "CRED", "value_date": "2016-10-01",
            "currency": "USD", "amount": "50", "sender": "BANKA", "receiver": "BANKC"
        }})
        assert r.status_code == 200
        assert r.json()["statusCode"] == 1

    def test_validation_failure_is_successful_call(self, client):
        """Test business rejections return 200 with statusCode 0"""
        fields = list(FIELDS)
        fields[4] = "1000000"
        r = client.post("/transactions", json={"fields": fields})
        assert r.status_code == 200
        assert r.json()["statusCode"] == 0
        assert r.json()["statusMsg"] == "Insufficient funds on Nostro Account"

    def test_out_of_range_amounts(self, client, system):
        """Test oversized and sub-cent amounts are journaled rejections"""
        for i, amount in enumerate(["1e30", "0.001"]):
            fields = list(FIELDS)
            fields[0], fields[4] = f"REF{i}", amount
            r = client.post("/transactions", json={"fields": fields})
            assert r.status_code == 200
            assert r.json()["statusCode"] == 0
        assert system.journal.count() == 2

    def test_malformed_instruction(self, client, system):
        """Test wrong field count is a 400 and is not journaled"""
        r = client.post("/transactions", json={"fields": FIELDS[:9]})
        assert r.status_code == 400
        assert r.json()["code"] == "MALFORMED_INSTRUCTION"

        r = client.post("/transactions", json={})
        assert r.status_code == 400
        assert system.journal.count() == 0

    def test_unknown_institution(self, client):
        fields = list(FIELDS)
        fields[6] = "BANKZ"
        r = client.post("/transactions", json={"fields": fields})
        assert r.status_code == 404
        assert r.json()["code"] == "INSTITUTION_NOT_FOUND"

    def test_transaction_history(self, client):
        """Test participant filtering and the auditor view"""
        client.post("/transactions", json={"fields": FIELDS})
        fields = list(FIELDS)
        fields[0], fields[5], fields[6] = "REF002", "BANKB", "BANKC"
        fields[3] = "AUD"
        client.post("/transactions", json={"fields": fields})

        banka = client.get("/institutions/BANKA/transactions").json()["transactions"]
        bankc = client.get("/institutions/BANKC/transactions").json()["transactions"]
        auditor = client.get("/institutions/AUDITOR/transactions").json()["transactions"]

        assert [t["refNumber"] for t in banka] == ["REF001"]
        assert [t["refNumber"] for t in bankc] == ["REF002"]
        assert [t["refNumber"] for t in auditor] == ["REF001", "REF002"]


class TestInstitutionEndpoints:

    def test_get_institution(self, client):
        r = client.get("/institutions/BANKA")
        assert r.status_code == 200
        assert r.json()["owner"] == "BANKA"
        assert len(r.json()["accounts"]) == 2

    def test_get_missing_institution(self, client):
        r = client.get("/institutions/BANKZ")
        assert r.status_code == 404

    def test_list_institutions(self, client):
        r = client.get("/institutions")
        assert r.json()["institutions"] == ["BANKA", "BANKB", "BANKC"]

    def test_nostro_vostro(self, client):
        r = client.get("/institutions/BANKC/nostro-vostro")
        assert r.status_code == 200
        data = r.json()
        assert data["owner"] == "BANKC"
        assert [n["owner"] for n in data["nostro"]] == ["BANKA", "BANKB"]
        assert data["vostro"][0]["owner"] == "BANKC"

    def test_create_institution(self, client):
        """Test creation, duplicate owner and duplicate holder errors"""
        body = {"owner": "BANKD", "accounts": [
            {"holder": "BANKA", "currency": "USD", "cashBalance": "1000.00"}
        ]}
        r = client.post("/institutions", json=body)
        assert r.status_code == 201
        assert r.json()["accounts"][0]["cashBalance"] == "1000.00"

        r = client.post("/institutions", json=body)
        assert r.status_code == 409
        assert r.json()["code"] == "INSTITUTION_EXISTS"

        r = client.post("/institutions", json={"owner": "BANKE", "accounts": [
            {"holder": "BANKA", "currency": "USD"},
            {"holder": "BANKA", "currency": "EUR"},
        ]})
        assert r.status_code == 400
        assert r.json()["code"] == "DUPLICATE_RELATIONSHIP"

    def test_create_institution_bad_balance(self, client):
        r = client.post("/institutions", json={"owner": "BANKD", "accounts": [
            {"holder": "BANKA", "currency": "USD", "cashBalance": "lots"}
        ]})
        assert r.status_code == 400

    def test_create_institution_non_finite_balance(self, client):
        """Test NaN and infinite balances are refused and nothing is stored"""
        for balance in ["NaN", "Infinity"]:
            r = client.post("/institutions", json={"owner": "BANKD", "accounts": [
                {"holder": "BANKA", "currency": "USD", "cashBalance": balance}
            ]})
            assert r.status_code == 400
            assert r.json()["code"] == "INVALID_BALANCE"

        assert client.get("/institutions/BANKD").status_code == 404

    def test_create_reserved_id(self, client):
        r = client.post("/institutions", json={"owner": "allTx", "accounts": []})
        assert r.status_code == 400
        assert r.json()["code"] == "RESERVED_KEY"
