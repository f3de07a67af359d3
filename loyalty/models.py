from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field


class EntryType(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"


class LedgerEntry(BaseModel):
    id: UUID
    account_id: str
    entry_type: EntryType
    amount: int
    description: str
    related_order_id: Optional[str] = None
    reason_code: Optional[str] = None
    idempotency_key: Optional[str] = None
    balance_after: int
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.entry_type == EntryType.EARN else -self.amount


class AccountBalance(BaseModel):
    account_id: str
    balance: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    total_entries: int = 0
    last_transaction_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int
    limit: int
    offset: int


class AccrualResult(BaseModel):
    account_id: str
    points: int
    balance: int
    applied: bool = True
    entry: Optional[LedgerEntry] = None
    message: str


class RedemptionResult(BaseModel):
    account_id: str
    points: int
    currency: str
    discount_amount: Decimal
    balance: int
    applied: bool = True
    entry: Optional[LedgerEntry] = None
    message: str


class RedemptionQuote(BaseModel):
    points: int
    currency: str
    point_value: Decimal
    discount_amount: Decimal


class ReconciliationReport(BaseModel):
    account_id: str
    balance: int
    ledger_sum: int
    entry_count: int

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum and self.balance >= 0


class AwardPointsRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Points to grant")
    description: str = Field(..., min_length=1)
    related_order_id: Optional[str] = None
    reason_code: Optional[str] = Field(default=None, description="Business reason, part of the idempotency key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 10,
            "description": "Sale bonus",
            "related_order_id": "order-1001",
            "reason_code": "sale",
        }
    })


class RedeemPointsRequest(BaseModel):
    points: int = Field(..., gt=0)
    currency: str = Field(default="USD")
    description: str = Field(default="Points redeemed at checkout")
    idempotency_key: Optional[str] = Field(default=None, description="Makes a retried redemption safe")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "points": 200,
            "currency": "USD",
            "description": "Checkout discount",
            "idempotency_key": "checkout-7f3a",
        }
    })


class PointsEventRequest(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)
