"""
Liability Module

Loans the business has taken from banks or private lenders.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum

from .currency import ZERO, to_decimal
from .exceptions import ValidationError
from .storage import StorageRecord, parse_date, parse_datetime


class LiabilityType(Enum):
    BANK = "BANK"
    PRIVATE = "PRIVATE"


class LiabilityStatus(Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


@dataclass
class Liability(StorageRecord):
    provider_name: str
    type: LiabilityType
    principal: Decimal
    interest_rate: Decimal
    tenure_months: int
    start_date: date
    remaining_balance: Optional[Decimal] = None
    emi_amount: Optional[Decimal] = None
    bank_branch: Optional[str] = None
    account_number: Optional[str] = None
    end_date: Optional[date] = None
    remarks: Optional[str] = None
    status: LiabilityStatus = LiabilityStatus.ACTIVE
    version: int = 1

    def __post_init__(self):
        self.principal = to_decimal(self.principal)
        self.interest_rate = to_decimal(self.interest_rate)
        if self.principal < ZERO:
            raise ValidationError("Principal cannot be negative", field="principal")
        if self.interest_rate < ZERO:
            raise ValidationError("Interest rate cannot be negative", field="interest_rate")
        if self.tenure_months < 0:
            raise ValidationError("Tenure cannot be negative", field="tenure_months")
        self.remaining_balance = (
            self.principal if self.remaining_balance is None else to_decimal(self.remaining_balance)
        )
        if self.emi_amount is not None:
            self.emi_amount = to_decimal(self.emi_amount)

    @property
    def is_active(self) -> bool:
        return self.status == LiabilityStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Liability':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            provider_name=data['provider_name'],
            type=LiabilityType(data['type']),
            principal=to_decimal(data['principal']),
            interest_rate=to_decimal(data.get('interest_rate', '0')),
            tenure_months=int(data.get('tenure_months', 0)),
            start_date=parse_date(data['start_date']),
            remaining_balance=(
                to_decimal(data['remaining_balance']) if data.get('remaining_balance') is not None else None
            ),
            emi_amount=to_decimal(data['emi_amount']) if data.get('emi_amount') is not None else None,
            bank_branch=data.get('bank_branch'),
            account_number=data.get('account_number'),
            end_date=parse_date(data.get('end_date')),
            remarks=data.get('remarks'),
            status=LiabilityStatus(data.get('status', 'ACTIVE')),
            version=data.get('version', 1)
        )
