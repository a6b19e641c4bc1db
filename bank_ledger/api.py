"""
FastAPI REST API Module

Thin HTTP adapter over the account ledger: request validation, response
shaping and the mapping of ledger errors onto HTTP status codes.
"""

from contextlib import asynccontextmanager, contextmanager
from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
import uvicorn

from . import __version__
from .currency import AMOUNT_SCALE, Money, Currency
from .accounts import Account
from .operations import Operation
from .ledger import AccountLedger
from .exceptions import (
    AccountNotFoundError, InsufficientFundsError, ConversionUnavailableError, InvalidAmountError
)
from .logging_config import setup_logging
from .system import LedgerSystem


class _AmountRequest(BaseModel):
    currency: str = Field(..., description="ISO 4217 currency code (EUR, USD, etc.)")

    @field_validator("currency")
    @classmethod
    def known_currency(cls, value: str) -> str:
        return Currency.from_code(value).code

    def to_money(self, amount: Decimal) -> Money:
        return Money(amount, Currency[self.currency])


class CreateAccountRequest(BaseModel):
    initial_amount: Decimal = Field(Decimal("0"), ge=0, decimal_places=AMOUNT_SCALE)
    currency: Optional[str] = Field(None, description="Defaults to the ledger's default currency")

    @field_validator("currency")
    @classmethod
    def known_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return Currency.from_code(value).code

    def to_money(self, default_currency: Currency) -> Money:
        currency = Currency[self.currency] if self.currency else default_currency
        return Money(self.initial_amount, currency)


class UpdateAccountRequest(_AmountRequest):
    target_amount: Decimal = Field(..., ge=0, decimal_places=AMOUNT_SCALE)


class AmountRequest(_AmountRequest):
    amount: Decimal = Field(..., gt=0, decimal_places=AMOUNT_SCALE)


class AccountResponse(BaseModel):
    id: str
    balance: str
    currency: str
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            balance=str(account.balance.amount),
            currency=account.currency.code,
            created_at=account.created_at
        )


class StatementResponse(BaseModel):
    date: datetime
    type: str
    amount: str
    currency: str
    balance: str

    @classmethod
    def from_operation(cls, operation: Operation) -> 'StatementResponse':
        return cls(
            date=operation.occurred_at,
            type=operation.operation_type.value,
            amount=str(operation.funds.amount),
            currency=operation.funds.currency.code,
            balance=str(operation.balance_after.amount)
        )


@contextmanager
def ledger_errors():
    """Translate ledger errors into HTTP responses"""
    try:
        yield
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InsufficientFundsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (ConversionUnavailableError, InvalidAmountError) as e:
        raise HTTPException(status_code=422, detail=str(e))


def get_ledger(request: Request) -> AccountLedger:
    return request.app.state.system.ledger


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    owns_system = system is None
    system = system or LedgerSystem()
    setup_logging(system.config.log_level, "bank_ledger", system.config.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_system:
            system.close()

    app = FastAPI(
        title="Bank Account Ledger API",
        description="Multi-currency bank accounts with an append-only operation ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/accounts", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
    def create_account(
        request: CreateAccountRequest,
        response: Response,
        ledger: AccountLedger = Depends(get_ledger)
    ):
        """Create an account, depositing the initial amount when positive"""
        with ledger_errors():
            account = ledger.create_account(request.to_money(ledger.default_currency))
        response.headers["Location"] = f"/api/accounts/{account.id}"
        return AccountResponse.from_account(account)

    @app.get("/api/accounts", response_model=List[AccountResponse])
    def list_accounts(ledger: AccountLedger = Depends(get_ledger)):
        """List all accounts"""
        return [AccountResponse.from_account(account) for account in ledger.get_all_accounts()]

    @app.get("/api/accounts/{account_id}", response_model=AccountResponse)
    def get_account(account_id: str, ledger: AccountLedger = Depends(get_ledger)):
        """Get account by ID"""
        with ledger_errors():
            return AccountResponse.from_account(ledger.get_account(account_id))

    @app.put("/api/accounts/{account_id}", response_model=AccountResponse)
    def update_account(
        account_id: str,
        request: UpdateAccountRequest,
        ledger: AccountLedger = Depends(get_ledger)
    ):
        """Set the balance to an exact amount via a recorded deposit or withdrawal"""
        with ledger_errors():
            account = ledger.update_account_balance(account_id, request.to_money(request.target_amount))
        return AccountResponse.from_account(account)

    @app.delete("/api/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_account(account_id: str, ledger: AccountLedger = Depends(get_ledger)):
        """Delete an account and its operations; unknown ids are a no-op"""
        ledger.delete_account(account_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/accounts/{account_id}/deposit", response_model=AccountResponse)
    def deposit(
        account_id: str,
        request: AmountRequest,
        ledger: AccountLedger = Depends(get_ledger)
    ):
        """Deposit funds in any supported currency"""
        with ledger_errors():
            ledger.deposit(account_id, request.to_money(request.amount))
            return AccountResponse.from_account(ledger.get_account(account_id))

    @app.post("/api/accounts/{account_id}/withdraw", response_model=AccountResponse)
    def withdraw(
        account_id: str,
        request: AmountRequest,
        ledger: AccountLedger = Depends(get_ledger)
    ):
        """Withdraw funds in any supported currency"""
        with ledger_errors():
            ledger.withdraw(account_id, request.to_money(request.amount))
            return AccountResponse.from_account(ledger.get_account(account_id))

    @app.get("/api/accounts/{account_id}/statement", response_model=List[StatementResponse])
    def statement(account_id: str, ledger: AccountLedger = Depends(get_ledger)):
        """Operation history, oldest first"""
        return [StatementResponse.from_operation(op) for op in ledger.get_statement(account_id)]

    return app


def run_server(host: str = "0.0.0.0", port: int = 8080, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "bank_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
