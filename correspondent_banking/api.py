"""
FastAPI REST API Module

Exposes instruction submission, institution management and the
nostro/vostro and transaction-history queries. Validation failures are
successful calls whose transaction carries statusCode 0; only structural,
lookup and commit errors become HTTP errors.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import get_config
from .exceptions import (
    ConcurrentModification, DuplicateRelationship, InstitutionExists, InvalidBalance,
    LookupFailure, MalformedInstruction, PartialCommitFailure, ReservedKeyError,
    SettlementError, SettlementTimeout, UnknownCurrencyPair
)
from .institutions import Account
from .logging_config import get_logger
from .system import SettlementSystem
from .transactions import PaymentInstruction


ERROR_STATUS = {
    MalformedInstruction: status.HTTP_400_BAD_REQUEST,
    DuplicateRelationship: status.HTTP_400_BAD_REQUEST,
    InvalidBalance: status.HTTP_400_BAD_REQUEST,
    ReservedKeyError: status.HTTP_400_BAD_REQUEST,
    UnknownCurrencyPair: status.HTTP_400_BAD_REQUEST,
    LookupFailure: status.HTTP_404_NOT_FOUND,
    InstitutionExists: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    SettlementTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    PartialCommitFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Pydantic models for API requests
class InstructionModel(BaseModel):
    ref_number: str
    op_code: str
    value_date: str
    currency: str
    amount: str = Field(..., description="Decimal amount as string")
    sender: str
    receiver: str
    ordering_customer: str = ""
    beneficiary_customer: str = ""
    charges_detail: str = ""


class SubmitTransactionRequest(BaseModel):
    fields: Optional[List[str]] = Field(
        None, description="Ten ordered MT103 fields: refNumber, opCode, vDate, currency, "
                          "amount, sender, receiver, ordcust, benefcust, detcharges"
    )
    instruction: Optional[InstructionModel] = None


class AccountModel(BaseModel):
    holder: str
    currency: str
    cashBalance: str = Field("0", description="Decimal balance as string")


class CreateInstitutionRequest(BaseModel):
    owner: str
    accounts: List[AccountModel] = []


def get_settlement_system(request: Request) -> SettlementSystem:
    """Dependency returning the app's settlement system, built on first use"""
    system = getattr(request.app.state, "system", None)
    if system is None:
        system = request.app.state.system = SettlementSystem()
    return system


def error_status(exc: SettlementError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(system: Optional[SettlementSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Nostro/Vostro Settlement API",
        description="Correspondent banking settlement with FX conversion",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system
    logger = get_logger("nostrovostro.api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        code = error_status(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=code,
            content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable}
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "nostrovostro",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Nostro/Vostro Settlement API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "transactions": "/transactions",
                "institutions": "/institutions",
                "fx-rates": "/fx-rates",
            }
        }

    @app.post("/transactions")
    def submit_transaction(
        request: SubmitTransactionRequest,
        system: SettlementSystem = Depends(get_settlement_system)
    ) -> Dict[str, Any]:
        """Submit a payment instruction for settlement"""
        if request.fields is not None:
            transaction = system.submit_transaction(request.fields)
        elif request.instruction is not None:
            instruction = PaymentInstruction(**request.instruction.model_dump())
            transaction = system.submit_instruction(instruction)
        else:
            raise MalformedInstruction(0)
        return transaction.to_dict()

    @app.post("/institutions", status_code=status.HTTP_201_CREATED)
    def create_institution(
        request: CreateInstitutionRequest,
        system: SettlementSystem = Depends(get_settlement_system)
    ) -> Dict[str, Any]:
        """Create a financial institution with its counterparty accounts"""
        try:
            accounts = [
                Account(holder=a.holder, currency=a.currency, cash_balance=Decimal(a.cashBalance))
                for a in request.accounts
            ]
        except InvalidOperation:
            raise HTTPException(status_code=400, detail="cashBalance must be a decimal string")
        record = system.create_financial_institution(request.owner, accounts)
        return record.to_dict()

    @app.get("/institutions")
    def list_institutions(system: SettlementSystem = Depends(get_settlement_system)):
        """List registered institution ids"""
        return {"institutions": system.directory.list_ids()}

    @app.get("/institutions/{institution_id}")
    def get_institution(
        institution_id: str,
        system: SettlementSystem = Depends(get_settlement_system)
    ) -> Dict[str, Any]:
        """Institution record with all accounts and balances"""
        return system.get_financial_institution_details(institution_id).to_dict()

    @app.get("/institutions/{institution_id}/nostro-vostro")
    def get_nostro_vostro(
        institution_id: str,
        system: SettlementSystem = Depends(get_settlement_system)
    ) -> Dict[str, Any]:
        """Nostro and vostro accounts of an institution"""
        return system.get_nostro_vostro_accounts(institution_id).to_dict()

    @app.get("/institutions/{institution_id}/transactions")
    def get_transactions(
        institution_id: str,
        system: SettlementSystem = Depends(get_settlement_system)
    ) -> Dict[str, Any]:
        """Inbound and outbound transactions; the auditor id sees all"""
        transactions = system.get_transactions(institution_id)
        return {"transactions": [t.to_dict() for t in transactions]}

    @app.get("/fx-rates")
    def get_fx_rates(system: SettlementSystem = Depends(get_settlement_system)):
        """Configured FX factors"""
        return {"rates": system.fx_table.to_dict()}

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "correspondent_banking.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
