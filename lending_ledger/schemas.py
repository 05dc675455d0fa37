"""
Pydantic schemas for mutation requests
"""

from decimal import Decimal
import datetime as dt
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, Field

from .accounts import PaymentType, VoucherType
from .exceptions import ValidationError
from .invoices import InvoiceDirection, InvoiceType


RequestT = TypeVar('RequestT', bound=BaseModel)


def parse_request(model: Type[RequestT], data: Union[RequestT, Dict[str, Any]]) -> RequestT:
    """Validate a request, reporting failures as the ledger's ValidationError"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get('loc', ())) or None
        raise ValidationError(f"Invalid {model.__name__}: {first.get('msg')}", field=field) from e


# Payment schemas
class PaymentRequest(BaseModel):
    type: PaymentType
    voucher_type: VoucherType
    mode: str = Field(..., description="CASH, JOURNAL or a bank account id")
    amount: Decimal = Field(..., ge=0, description="Voucher amount")
    category: str = Field(..., description="Known category, INVESTMENT_<type> or CUSTOM:<label>")
    date: dt.date
    source_id: str = ""
    source_name: str = ""
    target_mode: Optional[str] = Field(None, description="Destination account for CONTRA vouchers")
    invoice_id: Optional[str] = None
    related_auction_id: Optional[str] = None
    notes: Optional[str] = None
    business_unit: Optional[str] = None


# Invoice schemas
class InvoiceRequest(BaseModel):
    customer_name: str
    type: InvoiceType
    amount: Decimal = Field(..., ge=0, description="Original invoice amount")
    date: dt.date
    direction: InvoiceDirection = InvoiceDirection.IN
    customer_id: Optional[str] = None
    lender_id: Optional[str] = None
    due_date: Optional[dt.date] = None
    category: Optional[str] = None
    notes: Optional[str] = None


class BulkInvoiceRequest(BaseModel):
    invoices: List[InvoiceRequest] = Field(..., min_length=1)


class BulkDeleteRequest(BaseModel):
    invoice_ids: List[str] = Field(..., min_length=1)


# Chit schemas
class AuctionRequest(BaseModel):
    month: int = Field(..., ge=1)
    winner_id: str
    bid_amount: Decimal = Field(..., ge=0)
    winner_name: str = ""
    dividend_per_member: Decimal = Field(Decimal('0'), ge=0, description="Business policy value, not derived")
    date: Optional[dt.date] = None
    invoices: List[InvoiceRequest] = Field(
        default_factory=list,
        description="Invoices generated by the auction, e.g. commission or the winner's advance"
    )


class SavingsRequest(BaseModel):
    date: Optional[dt.date] = Field(None, description="Start date; defaults to the auction date")
    maturity_date: Optional[dt.date] = Field(None, description="Defaults to one year after the start")
    notes: Optional[str] = None


# Investment schemas
class ContributionRequest(BaseModel):
    amount_paid: Decimal = Field(..., ge=0)
    mode: str = Field(..., description="Account the contribution is paid from")
    date: dt.date
    dividend: Decimal = Field(Decimal('0'), ge=0)
    month: Optional[int] = Field(None, ge=1, description="Defaults to the next month")
    notes: Optional[str] = None


class PrizeRequest(BaseModel):
    prize_amount: Decimal = Field(..., ge=0)
    prize_month: int = Field(..., ge=1)
    date: dt.date
    mode: Optional[str] = Field(None, description="Account receiving the prize; None records no voucher")
    notes: Optional[str] = None
