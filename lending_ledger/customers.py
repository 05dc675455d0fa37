"""
Customer Module

Customers are created and edited by staff only. A single customer can sit
in several portfolios at once (royalty payer, interest borrower, chit
member, general trader, lender to the business).
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum

from .currency import ZERO, to_decimal
from .exceptions import ValidationError
from .storage import StorageRecord, parse_datetime


class CustomerStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class Customer(StorageRecord):
    name: str
    phone: str = ""
    address: Optional[str] = None

    # Portfolio flags
    is_royalty: bool = False
    is_interest: bool = False   # We lent to them
    is_chit: bool = False
    is_general: bool = False
    is_lender: bool = False     # They lent to us

    royalty_amount: Decimal = ZERO
    interest_principal: Decimal = ZERO
    credit_principal: Decimal = ZERO
    opening_balance: Decimal = ZERO  # + receivable, - payable
    interest_rate: Decimal = ZERO    # Percent per month
    status: CustomerStatus = CustomerStatus.ACTIVE
    version: int = 1

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Customer name is required", field="name")
        self.royalty_amount = to_decimal(self.royalty_amount)
        self.interest_principal = to_decimal(self.interest_principal)
        self.credit_principal = to_decimal(self.credit_principal)
        self.opening_balance = to_decimal(self.opening_balance)
        self.interest_rate = to_decimal(self.interest_rate)
        for name in ('royalty_amount', 'interest_principal', 'credit_principal', 'interest_rate'):
            if getattr(self, name) < ZERO:
                raise ValidationError(f"{name} cannot be negative", field=name)

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE

    @property
    def monthly_interest_due(self) -> Decimal:
        """Interest the customer owes each month on money we lent"""
        if not self.is_interest:
            return ZERO
        return self.interest_principal * self.interest_rate / Decimal('100')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            phone=data.get('phone', ''),
            address=data.get('address'),
            is_royalty=data.get('is_royalty', False),
            is_interest=data.get('is_interest', False),
            is_chit=data.get('is_chit', False),
            is_general=data.get('is_general', False),
            is_lender=data.get('is_lender', False),
            royalty_amount=to_decimal(data.get('royalty_amount', '0')),
            interest_principal=to_decimal(data.get('interest_principal', '0')),
            credit_principal=to_decimal(data.get('credit_principal', '0')),
            opening_balance=to_decimal(data.get('opening_balance', '0')),
            interest_rate=to_decimal(data.get('interest_rate', '0')),
            status=CustomerStatus(data.get('status', 'ACTIVE')),
            version=data.get('version', 1)
        )
