"""
Consistency Coordinator Module

Turns one user-initiated mutation into an ordered MutationPlan: the storage
writes to perform, grouped into steps, plus the audit entries to record once
they commit. Planning is pure. It reads a LedgerSnapshot and never touches
storage, so every validation failure happens before a single write exists.

Ordering rules the plans follow:

- A payment linked to an invoice is written before the invoice balance
  changes. Each step carries its own undo so the executor can compensate
  a payment whose invoice update failed.
- Editing or deleting a linked payment reverses the old invoice effect
  first, then applies the new one, then writes the payment.
- An auction commits before any invoice it generates, and generated
  invoices carry related_auction_id.
- Deletes cascade through back-references in dependency order: payments,
  then invoices, then the owning record.
- Invoice numbers are reserved (and committed) before any invoice that
  uses them, so a failed write can leave a gap but never a duplicate.
"""

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .accounts import Payment, PaymentType, VoucherType, AccountRegistry
from .audit import AuditAction, AuditEntityType, AuditEntry
from .chits import delete_auction as remove_chit_auction
from .chits import record_auction as append_chit_auction
from .config import LedgerConfig, get_config
from .currency import ZERO, format_amount
from .exceptions import DependencyNotFound, IntegrityViolation, ValidationError
from .investments import (
    CHIT_SAVINGS, ContributionType, Investment, InvestmentTransaction, next_contribution_month, new_transaction_id
)
from .investments import declare_prize as mark_prized
from .investments import record_contribution as append_contribution
from .investments import remove_contribution
from .invoices import Invoice, next_invoice_numbers, parse_invoice_number, recompute_invoice_balance
from .invoices import apply_payment as apply_invoice_payment
from .invoices import reverse_payment as reverse_invoice_payment
from .invoices import void_invoice as mark_void
from .schemas import (
    AuctionRequest, BulkDeleteRequest, BulkInvoiceRequest, ContributionRequest,
    InvoiceRequest, PaymentRequest, PrizeRequest, SavingsRequest, parse_request
)
from .snapshot import (
    CHIT_GROUPS, INVESTMENTS, INVOICES, PAYMENTS, SEQUENCES,
    LedgerSnapshot, SequenceCounter, invoice_scope
)
from .storage import DELETE, PUT, StorageRecord, WriteOp


@dataclass
class PlanStep:
    """
    Writes committed together as one atomic batch.

    undo holds the inverse writes, newest first. Steps that must never be
    rolled back (number reservations) set compensate=False. A chunked step
    may be split across several batches; a failure then reports how many
    records of counted_table were committed. Writes added after begin_group
    share a batch with the rest of their group.
    """
    name: str
    writes: List[WriteOp] = field(default_factory=list)
    undo: List[WriteOp] = field(default_factory=list)
    compensate: bool = True
    chunked: bool = False
    counted_table: Optional[str] = None
    group_starts: List[int] = field(default_factory=list)

    def begin_group(self) -> None:
        self.group_starts.append(len(self.writes))

    def batches(self, size: int) -> List[List[WriteOp]]:
        """
        Pack writes into batches of at most size without splitting a group.
        A group larger than size goes alone into its own batch.
        """
        if self.group_starts:
            bounds = sorted((set(self.group_starts) | {0}) - {len(self.writes)})
        else:
            bounds = list(range(len(self.writes)))
        groups = [self.writes[start:end] for start, end in zip(bounds, bounds[1:] + [len(self.writes)])]

        batches: List[List[WriteOp]] = []
        current: List[WriteOp] = []
        for group in groups:
            if current and len(current) + len(group) > size:
                batches.append(current)
                current = []
            current.extend(group)
        if current:
            batches.append(current)
        return batches

    def put(self, table: str, record: StorageRecord, previous: Optional[StorageRecord] = None) -> None:
        """Write record; previous is the stored state it replaces (None for a new record)"""
        self.writes.append(WriteOp(
            PUT, table, record.id, record.to_dict(),
            expected_version=previous.version if previous is not None else 0,
            description=f"{self.name}: put {table}/{record.id}"
        ))
        if previous is None:
            undo = WriteOp(DELETE, table, record.id, expected_version=record.version)
        else:
            undo = WriteOp(PUT, table, record.id, previous.to_dict(), expected_version=record.version)
        self.undo.insert(0, undo)

    def delete(self, table: str, record: StorageRecord) -> None:
        self.writes.append(WriteOp(
            DELETE, table, record.id,
            expected_version=record.version,
            description=f"{self.name}: delete {table}/{record.id}"
        ))
        self.undo.insert(0, WriteOp(PUT, table, record.id, record.to_dict(), expected_version=0))

    def count_committed(self, writes: Iterable[WriteOp]) -> int:
        if self.counted_table is None:
            return len(list(writes))
        return sum(1 for op in writes if op.table == self.counted_table)

    @property
    def total(self) -> int:
        return self.count_committed(self.writes)


@dataclass
class MutationPlan:
    """Ordered steps for one mutation, plus the audit entries to record after commit"""
    operation: str
    steps: List[PlanStep] = field(default_factory=list)
    audit_entries: List[AuditEntry] = field(default_factory=list)
    result: Any = None

    def step(self, name: str, **kwargs) -> PlanStep:
        step = PlanStep(name, **kwargs)
        self.steps.append(step)
        return step

    def prune(self) -> 'MutationPlan':
        """Drop steps that ended up with no writes"""
        self.steps = [s for s in self.steps if s.writes]
        return self

    @property
    def writes(self) -> List[WriteOp]:
        return [op for step in self.steps for op in step.writes]

    @property
    def reservations(self) -> List[WriteOp]:
        return [op for op in self.writes if op.table == SEQUENCES]


class ConsistencyCoordinator:
    """
    Plans every multi-entity mutation of the ledger.

    Each public method takes the current LedgerSnapshot and a request (a
    schema model or a plain dict) and returns a MutationPlan. Nothing here
    writes; LedgerService commits the plans.
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.config = config or get_config()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    # Payments

    def create_payment(self, snapshot: LedgerSnapshot, request: Union[PaymentRequest, Dict[str, Any]]) -> MutationPlan:
        """Write the voucher, then apply it to its invoice"""
        req = parse_request(PaymentRequest, request)
        registry = snapshot.registry()
        self._validate_modes(registry, req.mode, req.voucher_type, req.target_mode, new_voucher=True)

        now = self._clock()
        payment = self._build_payment(req, self._id_factory(), now, now)

        plan = MutationPlan("create_payment")
        invoice = None
        if payment.invoice_id:
            invoice = snapshot.get_invoice(payment.invoice_id)

        plan.step("write-payment").put(PAYMENTS, payment)
        if invoice is not None and payment.applies_to_invoice:
            plan.step("apply-invoice").put(INVOICES, apply_invoice_payment(invoice, payment.amount), invoice)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.PAYMENT,
            entity_id=payment.id,
            description=(
                f"Created {payment.voucher_type.value} payment: "
                f"{payment.source_name} - {format_amount(payment.amount)}"
            ),
            after=payment.to_dict(),
            metadata={'invoice_id': payment.invoice_id} if payment.invoice_id else {}
        ))
        plan.result = payment
        return plan

    def edit_payment(
        self,
        snapshot: LedgerSnapshot,
        payment_id: str,
        request: Union[PaymentRequest, Dict[str, Any]]
    ) -> MutationPlan:
        """Reverse the old invoice effect, apply the new one, then write the voucher"""
        req = parse_request(PaymentRequest, request)
        old = snapshot.get_payment(payment_id)
        registry = snapshot.registry()
        # Vouchers already drawn on an archived account may keep it
        self._validate_modes(
            registry, req.mode, req.voucher_type, req.target_mode,
            new_voucher=(req.mode != old.mode or req.target_mode != old.target_mode)
        )

        new = self._build_payment(req, old.id, old.created_at, self._clock(), version=old.version + 1,
                                  created_by=old.created_by)
        new_invoice = snapshot.get_invoice(new.invoice_id) if new.invoice_id else None

        plan = MutationPlan("edit_payment")
        working: Dict[str, Invoice] = {}

        reverse_step = plan.step("reverse-old-linkage")
        reversed_invoice = self._reverse_linkage(snapshot, old)
        if reversed_invoice is not None:
            reverse_step.put(INVOICES, reversed_invoice, snapshot.invoices[old.invoice_id])
            working[reversed_invoice.id] = reversed_invoice

        apply_step = plan.step("apply-new-linkage")
        if new_invoice is not None and new.applies_to_invoice:
            current = working.get(new_invoice.id, new_invoice)
            apply_step.put(INVOICES, apply_invoice_payment(current, new.amount), current)

        plan.step("write-payment").put(PAYMENTS, new, old)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.EDIT,
            entity_type=AuditEntityType.PAYMENT,
            entity_id=new.id,
            description=f"Updated payment: {new.source_name}",
            before=old.to_dict(),
            after=new.to_dict()
        ))
        plan.result = new
        return plan.prune()

    def delete_payment(self, snapshot: LedgerSnapshot, payment_id: str) -> MutationPlan:
        """Reverse the invoice effect, then delete the voucher"""
        payment = snapshot.get_payment(payment_id)
        plan = MutationPlan("delete_payment")

        reversed_invoice = self._reverse_linkage(snapshot, payment)
        if reversed_invoice is not None:
            plan.step("reverse-linkage").put(INVOICES, reversed_invoice, snapshot.invoices[payment.invoice_id])
        plan.step("delete-payment").delete(PAYMENTS, payment)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.PAYMENT,
            entity_id=payment.id,
            description=f"Deleted payment: {payment.source_name}",
            before=payment.to_dict()
        ))
        plan.result = payment
        return plan

    # Invoices

    def create_invoice(self, snapshot: LedgerSnapshot, request: Union[InvoiceRequest, Dict[str, Any]]) -> MutationPlan:
        req = parse_request(InvoiceRequest, request)
        plan = MutationPlan("create_invoice")
        invoices = self._number_invoices(snapshot, plan, [req])
        plan.step("write-invoice").put(INVOICES, invoices[0])

        invoice = invoices[0]
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.INVOICE,
            entity_id=invoice.id,
            description=f"Created invoice {invoice.invoice_number}: {invoice.customer_name} - "
                        f"{format_amount(invoice.amount)}",
            after=invoice.to_dict()
        ))
        plan.result = invoice
        return plan

    def void_invoice(self, snapshot: LedgerSnapshot, invoice_id: str) -> MutationPlan:
        invoice = snapshot.get_invoice(invoice_id)
        voided = mark_void(invoice)

        plan = MutationPlan("void_invoice")
        plan.step("void-invoice").put(INVOICES, voided, invoice)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.VOID,
            entity_type=AuditEntityType.INVOICE,
            entity_id=invoice.id,
            description=f"Voided invoice: {invoice.invoice_number}",
            before=invoice.to_dict(),
            after=voided.to_dict()
        ))
        plan.result = voided
        return plan

    def delete_invoice(self, snapshot: LedgerSnapshot, invoice_id: str) -> MutationPlan:
        """Detach linked vouchers, then delete the invoice"""
        invoice = snapshot.get_invoice(invoice_id)
        plan = MutationPlan("delete_invoice")

        detach = plan.step("detach-payments")
        for payment in self._detached_payments(snapshot, [invoice.id]):
            detach.put(PAYMENTS, payment, snapshot.payments[payment.id])
        plan.step("delete-invoice").delete(INVOICES, invoice)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.INVOICE,
            entity_id=invoice.id,
            description=f"Deleted invoice: {invoice.invoice_number}",
            before=invoice.to_dict()
        ))
        plan.result = invoice
        return plan.prune()

    def bulk_create_invoices(
        self,
        snapshot: LedgerSnapshot,
        request: Union[BulkInvoiceRequest, Dict[str, Any], Sequence[Any]]
    ) -> MutationPlan:
        """
        Number every invoice up front, then write them as one chunked step.
        Batches larger than the storage chunk size commit chunk by chunk.
        """
        if isinstance(request, (list, tuple)):
            request = {'invoices': list(request)}
        req = parse_request(BulkInvoiceRequest, request)

        plan = MutationPlan("bulk_create_invoices")
        invoices = self._number_invoices(snapshot, plan, req.invoices)
        write = plan.step("write-invoices", chunked=True, counted_table=INVOICES)
        for invoice in invoices:
            write.put(INVOICES, invoice)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.BULK_CREATE,
            entity_type=AuditEntityType.INVOICE,
            entity_id="BATCH",
            description=f"Bulk created {len(invoices)} invoices",
            metadata={
                'count': len(invoices),
                'first_number': invoices[0].invoice_number,
                'last_number': invoices[-1].invoice_number
            }
        ))
        plan.result = invoices
        return plan

    def bulk_delete_invoices(
        self,
        snapshot: LedgerSnapshot,
        request: Union[BulkDeleteRequest, Dict[str, Any], Sequence[str]]
    ) -> MutationPlan:
        """Each invoice and the vouchers detached from it always commit in the same batch"""
        if isinstance(request, (list, tuple)):
            request = {'invoice_ids': list(request)}
        req = parse_request(BulkDeleteRequest, request)

        invoice_ids = list(dict.fromkeys(req.invoice_ids))
        invoices = [snapshot.get_invoice(invoice_id) for invoice_id in invoice_ids]

        plan = MutationPlan("bulk_delete_invoices")
        step = plan.step("delete-invoices", chunked=True, counted_table=INVOICES)
        for invoice in invoices:
            step.begin_group()
            for payment in self._detached_payments(snapshot, [invoice.id]):
                step.put(PAYMENTS, payment, snapshot.payments[payment.id])
            step.delete(INVOICES, invoice)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.BULK_DELETE,
            entity_type=AuditEntityType.INVOICE,
            entity_id="BATCH",
            description=f"Bulk deleted {len(invoices)} invoices",
            metadata={'count': len(invoices), 'invoice_ids': invoice_ids}
        ))
        plan.result = invoices
        return plan

    # Chit auctions

    def record_auction(
        self,
        snapshot: LedgerSnapshot,
        group_id: str,
        request: Union[AuctionRequest, Dict[str, Any]]
    ) -> MutationPlan:
        """Append the auction and advance the month; generated invoices follow"""
        req = parse_request(AuctionRequest, request)
        group = snapshot.get_chit_group(group_id)
        updated = append_chit_auction(
            group,
            month=req.month,
            winner_id=req.winner_id,
            bid_amount=req.bid_amount,
            dividend_per_member=req.dividend_per_member,
            winner_name=req.winner_name,
            auction_date=req.date,
            auction_id=f"AUC_{self._id_factory()}"
        )
        auction = updated.last_auction

        plan = MutationPlan("record_auction")
        invoices = []
        if req.invoices:
            invoices = [
                replace(invoice, related_auction_id=auction.id)
                for invoice in self._number_invoices(snapshot, plan, req.invoices)
            ]
        plan.step("record-auction").put(CHIT_GROUPS, updated, group)
        if invoices:
            step = plan.step("write-auction-invoices")
            for invoice in invoices:
                step.put(INVOICES, invoice)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.CHIT,
            entity_id=group.id,
            description=(
                f"Recorded month {auction.month} auction for {group.name}: "
                f"{auction.winner_name or auction.winner_id} bid {format_amount(auction.bid_amount)}"
            ),
            before={'current_month': group.current_month, 'status': group.status},
            after={'current_month': updated.current_month, 'status': updated.status},
            metadata={'auction_id': auction.id, 'invoice_ids': [i.id for i in invoices]}
        ))
        plan.result = updated
        return plan

    def delete_auction(self, snapshot: LedgerSnapshot, group_id: str, auction_id: str) -> MutationPlan:
        """
        Cascade: auction payments, then auction invoices, then savings funded
        by the winnings, then the auction itself. A payment belongs to the
        auction when it points at the auction or at one of its invoices.
        """
        group = snapshot.get_chit_group(group_id)
        updated = remove_chit_auction(group, auction_id)

        invoices = snapshot.invoices_for_auction(auction_id)
        invoice_ids = {i.id for i in invoices}
        payments = [
            p for p in snapshot.payments.values()
            if p.related_auction_id == auction_id or p.invoice_id in invoice_ids
        ]
        payment_ids = {p.id for p in payments}

        savings = snapshot.investments_for_auction(auction_id)
        for investment in savings:
            if any(t.payment_id for t in investment.transactions):
                raise IntegrityViolation(
                    f"Savings {investment.name} has funded contributions; delete them before the auction",
                    entity_type="investment", entity_id=investment.id
                )

        plan = MutationPlan("delete_auction")
        payment_step = plan.step("delete-auction-payments")
        working: Dict[str, Invoice] = {}
        for payment in payments:
            # Invoices outside the cascade keep a correct balance
            if payment.invoice_id and payment.invoice_id not in invoice_ids:
                reversed_invoice = self._reverse_linkage(snapshot, payment, working)
                if reversed_invoice is not None:
                    previous = working.get(reversed_invoice.id, snapshot.invoices[reversed_invoice.id])
                    payment_step.put(INVOICES, reversed_invoice, previous)
                    working[reversed_invoice.id] = reversed_invoice
        for payment in payments:
            payment_step.delete(PAYMENTS, payment)

        invoice_step = plan.step("delete-auction-invoices")
        for invoice in invoices:
            invoice_step.delete(INVOICES, invoice)

        savings_step = plan.step("delete-auction-savings")
        for investment in savings:
            savings_step.delete(INVESTMENTS, investment)

        plan.step("remove-auction").put(CHIT_GROUPS, updated, group)

        auction = group.get_auction(auction_id)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.CHIT,
            entity_id=group.id,
            description=f"Deleted month {auction.month} auction for {group.name}",
            before={'current_month': group.current_month, 'status': group.status},
            after={'current_month': updated.current_month, 'status': updated.status},
            metadata={
                'auction_id': auction_id,
                'deleted_payments': sorted(payment_ids),
                'deleted_invoices': sorted(invoice_ids),
                'deleted_investments': sorted(i.id for i in savings)
            }
        ))
        plan.result = updated
        return plan.prune()

    def move_to_savings(
        self,
        snapshot: LedgerSnapshot,
        group_id: str,
        auction_id: str,
        request: Union[SavingsRequest, Dict[str, Any], None] = None
    ) -> MutationPlan:
        """
        Capitalise an auction's winner hand as a lump-sum CHIT_SAVINGS
        investment. The winnings are its single contribution, so the
        investment total equals the winner hand.
        """
        req = parse_request(SavingsRequest, request or {})
        group = snapshot.get_chit_group(group_id)
        auction = group.get_auction(auction_id)
        if auction is None:
            raise DependencyNotFound("chit_auction", auction_id)
        if snapshot.investments_for_auction(auction_id):
            raise IntegrityViolation(
                f"Month {auction.month} winnings of {group.name} are already in savings",
                entity_type="chit_group", entity_id=group.id
            )
        if auction.winner_hand <= 0:
            raise ValidationError(
                f"Month {auction.month} auction of {group.name} left nothing to save",
                field="winner_hand"
            )

        now = self._clock()
        start = req.date or auction.date
        winner = auction.winner_name or auction.winner_id
        investment = Investment(
            id=self._id_factory(),
            created_at=now,
            updated_at=now,
            name=f"{group.name} - CHIT #{auction.month}",
            type=CHIT_SAVINGS,
            provider="CHIT FUND WINNINGS",
            contribution_type=ContributionType.LUMP_SUM,
            amount_invested=auction.winner_hand,
            start_date=start,
            expected_maturity_value=auction.winner_hand,
            maturity_date=req.maturity_date or start + timedelta(days=365),
            transactions=[InvestmentTransaction(
                id=new_transaction_id(),
                month=1,
                amount_paid=auction.winner_hand,
                dividend=ZERO,
                date=start,
                notes=f"Winner hand of month {auction.month} auction"
            )],
            notes=req.notes or f"Generated from Chit Auction #{auction.month} (Winner: {winner})",
            related_auction_id=auction.id
        )

        plan = MutationPlan("move_to_savings")
        plan.step("write-savings").put(INVESTMENTS, investment)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.INVESTMENT,
            entity_id=investment.id,
            description=(
                f"Moved {format_amount(auction.winner_hand)} from {group.name} "
                f"month {auction.month} auction to savings"
            ),
            after=investment.to_dict(),
            metadata={'chit_group_id': group.id, 'auction_id': auction.id}
        ))
        plan.result = investment
        return plan

    # Investments

    def record_contribution(
        self,
        snapshot: LedgerSnapshot,
        investment_id: str,
        request: Union[ContributionRequest, Dict[str, Any]]
    ) -> MutationPlan:
        """Write the OUT voucher first, then the contribution that points at it"""
        req = parse_request(ContributionRequest, request)
        investment = snapshot.get_investment(investment_id)
        registry = snapshot.registry()
        registry.validate_new_voucher_mode(req.mode)

        now = self._clock()
        month = req.month or next_contribution_month(investment)
        voucher = Payment(
            id=self._id_factory(),
            created_at=now,
            updated_at=now,
            type=PaymentType.OUT,
            voucher_type=VoucherType.PAYMENT,
            mode=req.mode,
            amount=req.amount_paid,
            source_id=investment.id,
            source_name=investment.name,
            category=investment.voucher_category,
            date=req.date,
            notes=req.notes or f"{investment.name} contribution, month {month}"
        )
        transaction = InvestmentTransaction(
            id=new_transaction_id(),
            month=month,
            amount_paid=req.amount_paid,
            dividend=req.dividend,
            date=req.date,
            payment_id=voucher.id,
            notes=req.notes
        )
        updated = append_contribution(investment, transaction)

        plan = MutationPlan("record_contribution")
        plan.step("write-voucher").put(PAYMENTS, voucher)
        plan.step("record-contribution").put(INVESTMENTS, updated, investment)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.INVESTMENT,
            entity_id=investment.id,
            description=(
                f"Recorded month {month} contribution of {format_amount(req.amount_paid)} "
                f"to {investment.name}"
            ),
            after={'transaction_id': transaction.id, 'amount_paid': transaction.amount_paid,
                   'dividend': transaction.dividend, 'month': month},
            metadata={'payment_id': voucher.id}
        ))
        plan.result = updated
        return plan

    def delete_contribution(self, snapshot: LedgerSnapshot, investment_id: str, transaction_id: str) -> MutationPlan:
        """Delete the funding voucher, then the contribution"""
        investment = snapshot.get_investment(investment_id)
        transaction = investment.get_transaction(transaction_id)
        if transaction is None:
            raise DependencyNotFound("investment_transaction", transaction_id)
        updated = remove_contribution(investment, transaction_id)

        plan = MutationPlan("delete_contribution")
        voucher_step = plan.step("delete-voucher")
        if transaction.payment_id and transaction.payment_id in snapshot.payments:
            voucher_step.delete(PAYMENTS, snapshot.payments[transaction.payment_id])
        plan.step("remove-contribution").put(INVESTMENTS, updated, investment)

        plan.audit_entries.append(AuditEntry(
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.INVESTMENT,
            entity_id=investment.id,
            description=f"Deleted month {transaction.month} contribution to {investment.name}",
            before={'transaction_id': transaction.id, 'amount_paid': transaction.amount_paid,
                    'dividend': transaction.dividend, 'month': transaction.month},
            metadata={'payment_id': transaction.payment_id}
        ))
        plan.result = updated
        return plan.prune()

    def declare_prize(
        self,
        snapshot: LedgerSnapshot,
        investment_id: str,
        request: Union[PrizeRequest, Dict[str, Any]]
    ) -> MutationPlan:
        """Mark an external chit prized; a receiving account books the prize as a receipt"""
        req = parse_request(PrizeRequest, request)
        investment = snapshot.get_investment(investment_id)

        voucher = None
        if req.mode:
            snapshot.registry().validate_new_voucher_mode(req.mode)
            now = self._clock()
            voucher = Payment(
                id=self._id_factory(),
                created_at=now,
                updated_at=now,
                type=PaymentType.IN,
                voucher_type=VoucherType.RECEIPT,
                mode=req.mode,
                amount=req.prize_amount,
                source_id=investment.id,
                source_name=investment.name,
                category=investment.voucher_category,
                date=req.date,
                notes=req.notes or f"{investment.name} prize, month {req.prize_month}"
            )
        updated = mark_prized(investment, req.prize_amount, req.prize_month,
                              payment_id=voucher.id if voucher else None)

        plan = MutationPlan("declare_prize")
        if voucher is not None:
            plan.step("write-voucher").put(PAYMENTS, voucher)
        plan.step("declare-prize").put(INVESTMENTS, updated, investment)
        plan.audit_entries.append(AuditEntry(
            action=AuditAction.EDIT,
            entity_type=AuditEntityType.INVESTMENT,
            entity_id=investment.id,
            description=f"Prized {investment.name} in month {req.prize_month}: {format_amount(req.prize_amount)}",
            before={'is_prized': False},
            after={'is_prized': True, 'prize_month': req.prize_month, 'prize_amount': req.prize_amount},
            metadata={'payment_id': voucher.id} if voucher else {}
        ))
        plan.result = updated
        return plan

    # Helpers

    def _validate_modes(
        self,
        registry: AccountRegistry,
        mode: str,
        voucher_type: VoucherType,
        target_mode: Optional[str],
        new_voucher: bool
    ) -> None:
        check = registry.validate_new_voucher_mode if new_voucher else registry.validate_mode
        check(mode)
        if voucher_type == VoucherType.CONTRA:
            check(target_mode, field="target_mode")

    def _build_payment(
        self,
        req: PaymentRequest,
        payment_id: str,
        created_at: datetime,
        updated_at: datetime,
        version: int = 1,
        created_by: Optional[str] = None
    ) -> Payment:
        return Payment(
            id=payment_id,
            created_at=created_at,
            updated_at=updated_at,
            type=req.type,
            voucher_type=req.voucher_type,
            mode=req.mode,
            amount=req.amount,
            source_id=req.source_id,
            source_name=req.source_name,
            category=req.category,
            date=req.date,
            target_mode=req.target_mode,
            invoice_id=req.invoice_id,
            related_auction_id=req.related_auction_id,
            notes=req.notes,
            business_unit=req.business_unit,
            created_by=created_by,
            version=version
        )

    def _reverse_linkage(
        self,
        snapshot: LedgerSnapshot,
        payment: Payment,
        working: Optional[Dict[str, Invoice]] = None
    ) -> Optional[Invoice]:
        """
        Invoice with payment's effect removed, or None when there is nothing
        to reverse (unlinked, OUT, or void invoice).

        While the cached balance agrees with the payment log, the log decides
        how much to restore, which undoes an overpayment exactly. Once the
        cache has drifted the full amount is restored and reverse_payment
        reports any overflow.
        """
        if not payment.applies_to_invoice:
            return None
        invoice = (working or {}).get(payment.invoice_id) or snapshot.get_invoice(payment.invoice_id)
        if invoice.is_void:
            return None

        log = list(snapshot.payments.values())
        restore = payment.amount
        if invoice.id not in (working or {}) and invoice.balance == recompute_invoice_balance(invoice, log):
            remaining = [p for p in log if p.id != payment.id]
            restore = recompute_invoice_balance(invoice, remaining) - invoice.balance
        return reverse_invoice_payment(invoice, restore)

    def _detached_payments(self, snapshot: LedgerSnapshot, invoice_ids: Iterable[str]) -> List[Payment]:
        """Vouchers pointing at invoices about to be deleted, with the link cleared"""
        invoice_ids = set(invoice_ids)
        now = self._clock()
        return [
            replace(p, invoice_id=None, updated_at=now, version=p.version + 1)
            for p in snapshot.payments.values()
            if p.invoice_id in invoice_ids
        ]

    def _number_invoices(
        self,
        snapshot: LedgerSnapshot,
        plan: MutationPlan,
        requests: Sequence[InvoiceRequest]
    ) -> List[Invoice]:
        """
        Assign INV-<year>-<seq> numbers and add a reservation step that moves
        each year's counter past them. The counter write is version guarded,
        so a concurrent reservation fails the plan before any invoice exists.
        """
        prefix = self.config.invoice_prefix
        by_year: Dict[int, List[int]] = defaultdict(list)
        for index, req in enumerate(requests):
            by_year[req.date.year].append(index)

        existing = snapshot.invoice_numbers()
        numbers: Dict[int, str] = {}
        reserve = plan.step("reserve-numbers", compensate=False)
        now = self._clock()
        for year in sorted(by_year):
            scope = invoice_scope(year)
            counter = snapshot.sequence(scope)
            floor = counter.last if counter else 0
            assigned = next_invoice_numbers(existing, year, len(by_year[year]), prefix, floor)
            for index, number in zip(by_year[year], assigned):
                numbers[index] = number
            last = max(floor, parse_invoice_number(assigned[-1])[2])
            reserve.put(SEQUENCES, SequenceCounter(
                id=scope,
                created_at=counter.created_at if counter else now,
                updated_at=now,
                last=last,
                version=counter.version + 1 if counter else 1
            ), counter)

        invoices = []
        for index, req in enumerate(requests):
            invoices.append(Invoice(
                id=self._id_factory(),
                created_at=now,
                updated_at=now,
                invoice_number=numbers[index],
                customer_name=req.customer_name,
                type=req.type,
                amount=req.amount,
                date=req.date,
                direction=req.direction,
                customer_id=req.customer_id,
                lender_id=req.lender_id,
                due_date=req.due_date,
                category=req.category,
                notes=req.notes
            ))
        return invoices


# Mutation sequencing entry points

def apply_payment(snapshot: LedgerSnapshot, request: Union[PaymentRequest, Dict[str, Any]],
                  coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    """Plan a new voucher and its invoice application"""
    return (coordinator or ConsistencyCoordinator()).create_payment(snapshot, request)


def reverse_payment(snapshot: LedgerSnapshot, payment_id: str,
                    coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    """Plan the removal of a voucher and the reversal of its invoice effect"""
    return (coordinator or ConsistencyCoordinator()).delete_payment(snapshot, payment_id)


def record_auction(snapshot: LedgerSnapshot, group_id: str, request: Union[AuctionRequest, Dict[str, Any]],
                   coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    return (coordinator or ConsistencyCoordinator()).record_auction(snapshot, group_id, request)


def delete_auction(snapshot: LedgerSnapshot, group_id: str, auction_id: str,
                   coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    return (coordinator or ConsistencyCoordinator()).delete_auction(snapshot, group_id, auction_id)


def record_contribution(snapshot: LedgerSnapshot, investment_id: str,
                        request: Union[ContributionRequest, Dict[str, Any]],
                        coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    return (coordinator or ConsistencyCoordinator()).record_contribution(snapshot, investment_id, request)


def bulk_create_invoices(snapshot: LedgerSnapshot, request: Any,
                         coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    return (coordinator or ConsistencyCoordinator()).bulk_create_invoices(snapshot, request)


def bulk_delete_invoices(snapshot: LedgerSnapshot, request: Any,
                         coordinator: Optional[ConsistencyCoordinator] = None) -> MutationPlan:
    return (coordinator or ConsistencyCoordinator()).bulk_delete_invoices(snapshot, request)
