"""
Chit Group Module

Rotating-credit groups run by the business. Each month one member wins the
pot at auction; the engine records the outcome and advances the group by
exactly one month. Only the most recent auction can be undone, so auction
months are always exactly 1..current_month.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import ZERO, to_decimal
from .exceptions import DependencyNotFound, IntegrityViolation, ValidationError
from .storage import StorageRecord, parse_date, parse_datetime


HUNDRED = Decimal('100')


class ChitStatus(Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


@dataclass
class ChitAuction:
    """Outcome of one month's auction"""
    id: str
    month: int
    winner_id: str
    winner_name: str
    bid_amount: Decimal
    winner_hand: Decimal
    commission_amount: Decimal
    dividend_per_member: Decimal
    date: date

    @property
    def surplus(self) -> Decimal:
        """Bid left over after commission, available for dividends"""
        return self.bid_amount - self.commission_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChitAuction':
        return cls(
            id=data['id'],
            month=int(data['month']),
            winner_id=data['winner_id'],
            winner_name=data.get('winner_name', ''),
            bid_amount=to_decimal(data['bid_amount']),
            winner_hand=to_decimal(data['winner_hand']),
            commission_amount=to_decimal(data['commission_amount']),
            dividend_per_member=to_decimal(data.get('dividend_per_member', '0')),
            date=parse_date(data['date'])
        )


@dataclass
class ChitGroup(StorageRecord):
    """A chit group; members may hold several seats, so IDs can repeat"""
    name: str
    total_value: Decimal
    duration_months: int
    monthly_installment: Decimal
    commission_percentage: Decimal
    start_date: date
    current_month: int = 0
    members: List[str] = field(default_factory=list)
    auctions: List[ChitAuction] = field(default_factory=list)
    status: ChitStatus = ChitStatus.ACTIVE
    version: int = 1

    def __post_init__(self):
        self.total_value = to_decimal(self.total_value)
        self.monthly_installment = to_decimal(self.monthly_installment)
        self.commission_percentage = to_decimal(self.commission_percentage)
        if self.total_value < ZERO:
            raise ValidationError("Chit value cannot be negative", field="total_value")
        if self.monthly_installment < ZERO:
            raise ValidationError("Monthly installment cannot be negative", field="monthly_installment")
        if self.duration_months < 1:
            raise ValidationError("Chit duration must be at least one month", field="duration_months")
        if not ZERO <= self.commission_percentage <= HUNDRED:
            raise ValidationError("Commission percentage must be between 0 and 100",
                                  field="commission_percentage")

    @property
    def commission_amount(self) -> Decimal:
        return commission_for(self.total_value, self.commission_percentage)

    @property
    def last_auction(self) -> Optional[ChitAuction]:
        return max(self.auctions, key=lambda a: a.month) if self.auctions else None

    def get_auction(self, auction_id: str) -> Optional[ChitAuction]:
        for auction in self.auctions:
            if auction.id == auction_id:
                return auction
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChitGroup':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            total_value=to_decimal(data['total_value']),
            duration_months=int(data['duration_months']),
            monthly_installment=to_decimal(data['monthly_installment']),
            commission_percentage=to_decimal(data['commission_percentage']),
            start_date=parse_date(data['start_date']),
            current_month=int(data.get('current_month', 0)),
            members=list(data.get('members', [])),
            auctions=[ChitAuction.from_dict(a) for a in data.get('auctions', [])],
            status=ChitStatus(data.get('status', 'ACTIVE')),
            version=data.get('version', 1)
        )


def commission_for(total_value: Any, commission_percentage: Any) -> Decimal:
    """total_value x commission_percentage / 100"""
    return to_decimal(total_value) * to_decimal(commission_percentage) / HUNDRED


def status_for_month(current_month: int, duration_months: int) -> ChitStatus:
    return ChitStatus.COMPLETED if current_month == duration_months else ChitStatus.ACTIVE


def record_auction(
    group: ChitGroup,
    month: int,
    winner_id: str,
    bid_amount: Any,
    dividend_per_member: Any = ZERO,
    winner_name: str = "",
    auction_date: Optional[date] = None,
    auction_id: Optional[str] = None
) -> ChitGroup:
    """
    Append next month's auction and advance current_month by one.

    The dividend per member is business policy supplied by the caller;
    the engine only checks it is not negative.

    Returns:
        Updated ChitGroup (input untouched)
    """
    bid_amount = to_decimal(bid_amount)
    dividend_per_member = to_decimal(dividend_per_member)

    if group.status == ChitStatus.COMPLETED or group.current_month >= group.duration_months:
        raise IntegrityViolation(
            f"Chit group {group.name} has completed all {group.duration_months} months",
            entity_type="chit_group", entity_id=group.id
        )
    if month != group.current_month + 1:
        raise ValidationError(
            f"Next auction for {group.name} is month {group.current_month + 1}, got {month}",
            field="month"
        )
    if not ZERO <= bid_amount <= group.total_value:
        raise ValidationError("Bid amount must be between 0 and the chit value", field="bid_amount")
    if dividend_per_member < ZERO:
        raise ValidationError("Dividend per member cannot be negative", field="dividend_per_member")
    if not winner_id:
        raise ValidationError("Auction winner is required", field="winner_id")
    if group.members and winner_id not in group.members:
        raise ValidationError(f"{winner_id} is not a member of {group.name}", field="winner_id")

    commission = group.commission_amount
    auction = ChitAuction(
        id=auction_id or f"AUC_{uuid.uuid4().hex[:12]}",
        month=month,
        winner_id=winner_id,
        winner_name=winner_name,
        bid_amount=bid_amount,
        winner_hand=group.total_value - bid_amount - commission,
        commission_amount=commission,
        dividend_per_member=dividend_per_member,
        date=auction_date or date.today()
    )

    new_month = group.current_month + 1
    return replace(
        group,
        auctions=group.auctions + [auction],
        current_month=new_month,
        status=status_for_month(new_month, group.duration_months),
        updated_at=datetime.now(timezone.utc),
        version=group.version + 1
    )


def delete_auction(group: ChitGroup, auction_id: str) -> ChitGroup:
    """
    Remove the most recent auction and step current_month back by one.
    Any earlier auction is rejected: removing it would leave a gap.
    """
    auction = group.get_auction(auction_id)
    if auction is None:
        raise DependencyNotFound("chit_auction", auction_id)
    if auction.month != group.current_month:
        raise IntegrityViolation(
            f"Auction for month {auction.month} is not the latest "
            f"(month {group.current_month}); delete later auctions first",
            entity_type="chit_auction", entity_id=auction_id
        )

    new_month = group.current_month - 1
    return replace(
        group,
        auctions=[a for a in group.auctions if a.id != auction_id],
        current_month=new_month,
        status=status_for_month(new_month, group.duration_months),
        updated_at=datetime.now(timezone.utc),
        version=group.version + 1
    )


@dataclass
class ChitState:
    """Derived view of a chit group"""
    group_id: str
    current_month: int
    duration_months: int
    remaining_months: int
    status: ChitStatus
    is_consistent: bool
    total_commission: Decimal
    total_dividends_per_seat: Decimal
    prized_seats: int
    unprized_seats: int
    next_auction_month: Optional[int]


def compute_chit_state(group: ChitGroup) -> ChitState:
    """Summarise a group and check its month/auction invariants"""
    months = sorted(a.month for a in group.auctions)
    is_consistent = (
        months == list(range(1, group.current_month + 1))
        and 0 <= group.current_month <= group.duration_months
        and group.status == status_for_month(group.current_month, group.duration_months)
    )
    prized = len(group.auctions)
    return ChitState(
        group_id=group.id,
        current_month=group.current_month,
        duration_months=group.duration_months,
        remaining_months=max(0, group.duration_months - group.current_month),
        status=group.status,
        is_consistent=is_consistent,
        total_commission=sum((a.commission_amount for a in group.auctions), ZERO),
        total_dividends_per_seat=sum((a.dividend_per_member for a in group.auctions), ZERO),
        prized_seats=min(prized, len(group.members)) if group.members else prized,
        unprized_seats=max(0, len(group.members) - prized),
        next_auction_month=group.current_month + 1 if group.current_month < group.duration_months else None
    )


@dataclass
class PassbookLine:
    month: int
    installment: Decimal
    dividend: Decimal
    net_paid: Decimal
    status: str  # PAID, DUE or FUTURE


@dataclass
class MemberPassbook:
    member_id: str
    seat_number: int
    is_prized: bool
    winning_auction: Optional[ChitAuction]
    total_dividend_earned: Decimal
    total_amount_paid: Decimal
    lines: List[PassbookLine]


def member_passbook(group: ChitGroup, member_id: str, seat_index: int) -> MemberPassbook:
    """
    Month-by-month statement for one seat. A member holding several seats
    is prized on their first N seats, where N is how many auctions they won.
    """
    if seat_index < 0 or seat_index >= len(group.members) or group.members[seat_index] != member_id:
        raise DependencyNotFound("chit_seat", f"{member_id}#{seat_index}")

    wins = sorted((a for a in group.auctions if a.winner_id == member_id), key=lambda a: a.month)
    seat_instance = group.members[:seat_index + 1].count(member_id)
    is_prized = seat_instance <= len(wins)

    by_month = {a.month: a for a in group.auctions}
    total_dividend = ZERO
    total_paid = ZERO
    lines = []
    for month in range(1, group.duration_months + 1):
        auction = by_month.get(month)
        dividend = auction.dividend_per_member if auction else ZERO
        if month <= group.current_month:
            payable = group.monthly_installment - dividend
            total_dividend += dividend
            total_paid += payable
            lines.append(PassbookLine(month, group.monthly_installment, dividend, payable, "PAID"))
        else:
            status = "DUE" if month == group.current_month + 1 else "FUTURE"
            lines.append(PassbookLine(month, group.monthly_installment, ZERO,
                                      group.monthly_installment, status))

    return MemberPassbook(
        member_id=member_id,
        seat_number=seat_index + 1,
        is_prized=is_prized,
        winning_auction=wins[seat_instance - 1] if is_prized else None,
        total_dividend_earned=total_dividend,
        total_amount_paid=total_paid,
        lines=lines
    )
