"""
Test suite for mutation planning

The coordinator never writes, so these tests inspect the plans it returns:
step order, the version each write expects, and the records it produces.
"""

import itertools
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_ledger.accounts import AccountStatus, BankAccount, Payment, PaymentType, VoucherType
from lending_ledger.audit import AuditAction, AuditEntityType
from lending_ledger.chits import ChitGroup
from lending_ledger.chits import record_auction as append_auction
from lending_ledger.config import LedgerConfig
from lending_ledger.coordinator import ConsistencyCoordinator, PlanStep
from lending_ledger.coordinator import apply_payment, bulk_create_invoices, reverse_payment
from lending_ledger.exceptions import DependencyNotFound, IntegrityViolation, ValidationError
from lending_ledger.investments import CHIT_SAVINGS, ChitConfig, ContributionType, Investment, compute_investment_total
from lending_ledger.invoices import Invoice, InvoiceType
from lending_ledger.snapshot import (
    CHIT_GROUPS, INVESTMENTS, INVOICES, PAYMENTS, SEQUENCES, LedgerSnapshot, SequenceCounter
)
from lending_ledger.storage import DELETE, PUT


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_coordinator():
    ids = itertools.count(1)
    return ConsistencyCoordinator(LedgerConfig(), clock=lambda: NOW, id_factory=lambda: f"ID{next(ids)}")


def make_invoice(invoice_id, amount="1000", balance=None, number=None, **kwargs):
    return Invoice(
        id=invoice_id, created_at=NOW, updated_at=NOW,
        invoice_number=number or f"INV-2025-{invoice_id[-1]:0>4}",
        customer_name="Lakshmi Stores", type=InvoiceType.ROYALTY,
        amount=Decimal(amount), date=date(2025, 3, 1),
        balance=Decimal(balance) if balance is not None else None,
        customer_id="CUST001", **kwargs
    )


def make_payment(payment_id, amount, invoice_id=None, type=PaymentType.IN, **kwargs):
    return Payment(
        id=payment_id, created_at=NOW, updated_at=NOW,
        type=type, voucher_type=VoucherType.RECEIPT if type == PaymentType.IN else VoucherType.PAYMENT,
        mode=kwargs.pop('mode', "CASH"), amount=Decimal(amount),
        source_id="CUST001", source_name="Lakshmi Stores", category="ROYALTY",
        date=date(2025, 3, 5), invoice_id=invoice_id, **kwargs
    )


def make_banks():
    return [
        BankAccount(id="CUB", created_at=NOW, updated_at=NOW, name="City Union Bank"),
        BankAccount(id="KVB", created_at=NOW, updated_at=NOW, name="Karur Vysya Bank",
                    status=AccountStatus.ARCHIVED),
    ]


def payment_request(amount="400", invoice_id="INV1", **overrides):
    request = {
        "type": "IN",
        "voucher_type": "RECEIPT",
        "mode": "CASH",
        "amount": amount,
        "category": "ROYALTY",
        "date": "2025-03-05",
        "source_id": "CUST001",
        "source_name": "Lakshmi Stores",
        "invoice_id": invoice_id,
    }
    request.update(overrides)
    return request


def invoice_request(amount="1000", day="2025-03-01", **overrides):
    request = {"customer_name": "Lakshmi Stores", "type": "ROYALTY", "amount": amount,
               "date": day, "customer_id": "CUST001"}
    request.update(overrides)
    return request


def step_names(plan):
    return [step.name for step in plan.steps]


class TestPlanStep:
    """Test write and undo construction"""

    def test_new_record_undo_is_guarded_delete(self):
        step = PlanStep("write")
        invoice = make_invoice("INV1")
        step.put(INVOICES, invoice)

        assert step.writes[0].kind == PUT
        assert step.writes[0].expected_version == 0
        assert step.undo[0].kind == DELETE
        assert step.undo[0].expected_version == invoice.version

    def test_update_undo_restores_previous(self):
        step = PlanStep("write")
        previous = make_invoice("INV1", version=4)
        updated = make_invoice("INV1", balance="600", version=5)
        step.put(INVOICES, updated, previous)

        assert step.writes[0].expected_version == 4
        assert step.undo[0].kind == PUT
        assert step.undo[0].expected_version == 5
        assert step.undo[0].data == previous.to_dict()

    def test_delete_undo_recreates(self):
        step = PlanStep("delete")
        payment = make_payment("P1", "100", version=2)
        step.delete(PAYMENTS, payment)

        assert step.writes[0].expected_version == 2
        assert step.undo[0].kind == PUT
        assert step.undo[0].expected_version == 0

    def test_undo_is_newest_first(self):
        step = PlanStep("write")
        step.put(INVOICES, make_invoice("INV1"))
        step.put(INVOICES, make_invoice("INV2"))
        assert [op.record_id for op in step.undo] == ["INV2", "INV1"]

    def test_batches_without_groups_split_anywhere(self):
        step = PlanStep("write", chunked=True)
        for n in range(1, 6):
            step.put(INVOICES, make_invoice(f"INV{n}"))
        assert [len(batch) for batch in step.batches(2)] == [2, 2, 1]

    def test_batches_keep_groups_together(self):
        step = PlanStep("delete", chunked=True)
        step.begin_group()
        step.delete(INVOICES, make_invoice("INV1"))
        step.begin_group()
        step.put(PAYMENTS, make_payment("P1", "100"), make_payment("P1", "100"))
        step.delete(INVOICES, make_invoice("INV2"))
        step.begin_group()
        step.delete(INVOICES, make_invoice("INV3"))

        assert [[op.record_id for op in batch] for batch in step.batches(2)] == [
            ["INV1"], ["P1", "INV2"], ["INV3"]
        ]

    def test_oversized_group_gets_its_own_batch(self):
        step = PlanStep("delete", chunked=True)
        step.begin_group()
        step.delete(INVOICES, make_invoice("INV1"))
        step.begin_group()
        for n in range(1, 4):
            step.put(PAYMENTS, make_payment(f"P{n}", "100"), make_payment(f"P{n}", "100"))
        step.delete(INVOICES, make_invoice("INV2"))

        assert [len(batch) for batch in step.batches(2)] == [1, 4]


class TestPaymentPlans:
    """Test create/edit/delete payment planning"""

    def setup_method(self):
        self.coordinator = make_coordinator()

    def snapshot(self, invoices=(), payments=()):
        return LedgerSnapshot.of(payments=payments, invoices=invoices, bank_accounts=make_banks())

    def test_create_writes_payment_before_invoice(self):
        snapshot = self.snapshot([make_invoice("INV1")])
        plan = self.coordinator.create_payment(snapshot, payment_request("400"))

        assert step_names(plan) == ["write-payment", "apply-invoice"]
        payment_write, invoice_write = plan.writes
        assert payment_write.table == PAYMENTS
        assert payment_write.expected_version == 0
        assert invoice_write.expected_version == 1
        assert invoice_write.data['balance'] == "600"
        assert invoice_write.data['status'] == "PARTIAL"
        assert plan.result.id == "ID1"

    def test_create_audit_entry(self):
        plan = self.coordinator.create_payment(self.snapshot([make_invoice("INV1")]), payment_request("400"))

        entry, = plan.audit_entries
        assert entry.action == AuditAction.CREATE
        assert entry.entity_type == AuditEntityType.PAYMENT
        assert entry.description == "Created RECEIPT payment: Lakshmi Stores - ₹400.00"
        assert entry.metadata == {'invoice_id': "INV1"}

    def test_out_payment_leaves_invoice_alone(self):
        snapshot = self.snapshot([make_invoice("INV1")])
        plan = self.coordinator.create_payment(
            snapshot, payment_request("400", type="OUT", voucher_type="PAYMENT", category="EXPENSE")
        )
        assert step_names(plan) == ["write-payment"]

    def test_unknown_invoice(self):
        with pytest.raises(DependencyNotFound, match="invoice INV9 not found"):
            self.coordinator.create_payment(self.snapshot(), payment_request(invoice_id="INV9"))

    def test_unknown_mode(self):
        with pytest.raises(ValidationError, match="Unknown payment mode"):
            self.coordinator.create_payment(self.snapshot(), payment_request(invoice_id=None, mode="HDFC"))

    def test_archived_mode_closed_to_new_vouchers(self):
        with pytest.raises(ValidationError, match="archived"):
            self.coordinator.create_payment(self.snapshot(), payment_request(invoice_id=None, mode="KVB"))

    def test_malformed_request(self):
        with pytest.raises(ValidationError, match="Invalid PaymentRequest") as exc_info:
            self.coordinator.create_payment(self.snapshot(), payment_request("-5", invoice_id=None))
        assert exc_info.value.field == "amount"

    def test_unknown_category(self):
        with pytest.raises(ValidationError, match="Unknown category"):
            self.coordinator.create_payment(self.snapshot(), payment_request(invoice_id=None, category="FITO6"))

    def test_delete_reverses_then_deletes(self):
        invoice = make_invoice("INV1", balance="600", version=2)
        payment = make_payment("P1", "400", "INV1")
        plan = self.coordinator.delete_payment(self.snapshot([invoice], [payment]), "P1")

        assert step_names(plan) == ["reverse-linkage", "delete-payment"]
        invoice_write, payment_delete = plan.writes
        assert invoice_write.data['balance'] == "1000"
        assert invoice_write.expected_version == 2
        assert payment_delete.kind == DELETE

    def test_delete_overpayment_restores_exactly(self):
        """400 + 800 against 1000; removing the 800 leaves 600 owed"""
        invoice = make_invoice("INV1", balance="0", version=3)
        payments = [make_payment("P1", "400", "INV1"), make_payment("P2", "800", "INV1")]
        plan = self.coordinator.delete_payment(self.snapshot([invoice], payments), "P2")

        assert Decimal(plan.writes[0].data['balance']) == Decimal('600')
        assert plan.writes[0].data['status'] == "PARTIAL"

    def test_drifted_invoice_is_not_clamped(self):
        invoice = make_invoice("INV1", balance="1000")
        payment = make_payment("P1", "500", "INV1")

        with pytest.raises(IntegrityViolation, match="above its amount"):
            self.coordinator.delete_payment(self.snapshot([invoice], [payment]), "P1")

    def test_void_invoice_is_not_reversed(self):
        invoice = make_invoice("INV1", balance="600", is_void=True)
        plan = self.coordinator.delete_payment(self.snapshot([invoice], [make_payment("P1", "400", "INV1")]), "P1")
        assert step_names(plan) == ["delete-payment"]

    def test_edit_amount_on_same_invoice(self):
        invoice = make_invoice("INV1", balance="600")
        payment = make_payment("P1", "400", "INV1")
        plan = self.coordinator.edit_payment(self.snapshot([invoice], [payment]), "P1", payment_request("700"))

        assert step_names(plan) == ["reverse-old-linkage", "apply-new-linkage", "write-payment"]
        reverse, apply, write = plan.writes
        assert reverse.data['balance'] == "1000"
        assert (reverse.expected_version, apply.expected_version) == (1, 2)
        assert apply.data['balance'] == "300"
        assert write.expected_version == 1
        assert write.data['version'] == 2
        assert write.data['amount'] == "700"

    def test_edit_moves_payment_between_invoices(self):
        invoices = [make_invoice("INV1", balance="600"), make_invoice("INV2", amount="900")]
        payment = make_payment("P1", "400", "INV1")
        plan = self.coordinator.edit_payment(
            self.snapshot(invoices, [payment]), "P1", payment_request("400", invoice_id="INV2")
        )

        reverse, apply, write = plan.writes
        assert (reverse.record_id, reverse.data['balance']) == ("INV1", "1000")
        assert (apply.record_id, apply.data['balance']) == ("INV2", "500")
        assert write.data['invoice_id'] == "INV2"

    def test_edit_unlinked_payment_skips_invoice_steps(self):
        payment = make_payment("P1", "400")
        plan = self.coordinator.edit_payment(self.snapshot([], [payment]), "P1",
                                             payment_request("450", invoice_id=None))
        assert step_names(plan) == ["write-payment"]

    def test_edit_may_keep_archived_mode(self):
        payment = make_payment("P1", "400", mode="KVB")
        plan = self.coordinator.edit_payment(self.snapshot([], [payment]), "P1",
                                             payment_request("450", invoice_id=None, mode="KVB"))
        assert plan.result.mode == "KVB"

    def test_module_level_entry_points(self):
        snapshot = self.snapshot([make_invoice("INV1", balance="900")], [make_payment("P1", "100", "INV1")])
        assert apply_payment(snapshot, payment_request(), coordinator=self.coordinator).operation == "create_payment"
        assert reverse_payment(snapshot, "P1", coordinator=self.coordinator).operation == "delete_payment"


class TestInvoicePlans:
    """Test invoice numbering and invoice cascades"""

    def setup_method(self):
        self.coordinator = make_coordinator()

    def test_create_reserves_number_first(self):
        counter = SequenceCounter(id="invoice-2025", created_at=NOW, updated_at=NOW, last=5, version=3)
        snapshot = LedgerSnapshot.of(invoices=[make_invoice("INV3")], sequences=[counter])
        plan = self.coordinator.create_invoice(snapshot, invoice_request())

        assert step_names(plan) == ["reserve-numbers", "write-invoice"]
        assert not plan.steps[0].compensate
        reservation, = plan.reservations
        assert reservation.table == SEQUENCES
        assert reservation.expected_version == 3
        assert reservation.data['last'] == 6
        assert plan.result.invoice_number == "INV-2025-0006"

    def test_first_invoice_creates_counter(self):
        plan = self.coordinator.create_invoice(LedgerSnapshot(), invoice_request())

        reservation, = plan.reservations
        assert reservation.expected_version == 0
        assert plan.result.invoice_number == "INV-2025-0001"
        assert plan.result.balance == Decimal('1000')

    def test_bulk_create_numbers_each_year(self):
        snapshot = LedgerSnapshot.of(invoices=[make_invoice("INV2", number="INV-2025-0002")])
        plan = self.coordinator.bulk_create_invoices(snapshot, [
            invoice_request(day="2025-12-30"),
            invoice_request(day="2026-01-02"),
            invoice_request(day="2025-12-31"),
        ])

        assert [i.invoice_number for i in plan.result] == ["INV-2025-0003", "INV-2026-0001", "INV-2025-0004"]
        assert [op.record_id for op in plan.reservations] == ["invoice-2025", "invoice-2026"]
        assert plan.steps[1].chunked
        assert plan.steps[1].total == 3
        assert plan.audit_entries[0].entity_id == "BATCH"

    def test_bulk_create_requires_invoices(self):
        with pytest.raises(ValidationError):
            bulk_create_invoices(LedgerSnapshot(), [], coordinator=self.coordinator)

    def test_void_twice(self):
        invoice = make_invoice("INV1", is_void=True)
        with pytest.raises(IntegrityViolation, match="already void"):
            self.coordinator.void_invoice(LedgerSnapshot.of(invoices=[invoice]), "INV1")

    def test_delete_detaches_payments(self):
        snapshot = LedgerSnapshot.of(
            invoices=[make_invoice("INV1", balance="600")],
            payments=[make_payment("P1", "400", "INV1"), make_payment("P2", "50")]
        )
        plan = self.coordinator.delete_invoice(snapshot, "INV1")

        assert step_names(plan) == ["detach-payments", "delete-invoice"]
        detach, delete = plan.writes
        assert detach.record_id == "P1"
        assert detach.data['invoice_id'] is None
        assert detach.data['version'] == 2
        assert delete.kind == DELETE

    def test_bulk_delete_detaches_ahead_of_each_invoice(self):
        snapshot = LedgerSnapshot.of(
            invoices=[make_invoice("INV1"), make_invoice("INV2")],
            payments=[make_payment("P2", "100", "INV2")]
        )
        plan = self.coordinator.bulk_delete_invoices(snapshot, ["INV1", "INV2", "INV1"])

        assert [(op.kind, op.record_id) for op in plan.writes] == [
            (DELETE, "INV1"), (PUT, "P2"), (DELETE, "INV2")
        ]
        assert plan.steps[0].total == 2

    def test_bulk_delete_never_splits_an_invoice_from_its_detaches(self):
        snapshot = LedgerSnapshot.of(
            invoices=[make_invoice("INV1"), make_invoice("INV2", balance="600")],
            payments=[make_payment("P1", "400", "INV2")]
        )
        step, = self.coordinator.bulk_delete_invoices(snapshot, ["INV1", "INV2"]).steps

        assert [[op.record_id for op in batch] for batch in step.batches(2)] == [["INV1"], ["P1", "INV2"]]

    def test_bulk_delete_unknown_invoice(self):
        with pytest.raises(DependencyNotFound):
            self.coordinator.bulk_delete_invoices(LedgerSnapshot(), ["INV404"])


class TestAuctionPlans:
    """Test chit auction planning and the delete cascade"""

    def setup_method(self):
        self.coordinator = make_coordinator()
        self.group = ChitGroup(
            id="CHIT1", created_at=NOW, updated_at=NOW, name="Diwali 5L",
            total_value=Decimal('500000'), duration_months=20, monthly_installment=Decimal('25000'),
            commission_percentage=Decimal('5'), start_date=date(2025, 1, 1)
        )

    def test_auction_commits_before_its_invoices(self):
        snapshot = LedgerSnapshot.of(chit_groups=[self.group])
        plan = self.coordinator.record_auction(snapshot, "CHIT1", {
            "month": 1, "winner_id": "M01", "bid_amount": "100000", "date": "2025-01-20",
            "invoices": [invoice_request("25000", day="2025-01-20", type="CHIT")]
        })

        assert step_names(plan) == ["reserve-numbers", "record-auction", "write-auction-invoices"]
        group_write = plan.steps[1].writes[0]
        assert group_write.table == CHIT_GROUPS
        assert group_write.expected_version == 1
        auction = plan.result.last_auction
        assert auction.winner_hand == Decimal('375000')
        assert plan.steps[2].writes[0].data['related_auction_id'] == auction.id
        assert plan.audit_entries[0].metadata['auction_id'] == auction.id

    def test_auction_without_invoices(self):
        plan = self.coordinator.record_auction(LedgerSnapshot.of(chit_groups=[self.group]), "CHIT1", {
            "month": 1, "winner_id": "M01", "bid_amount": "100000"
        })
        assert step_names(plan) == ["record-auction"]
        assert plan.result.current_month == 1

    def test_wrong_month(self):
        with pytest.raises(ValidationError, match="is month 1"):
            self.coordinator.record_auction(LedgerSnapshot.of(chit_groups=[self.group]), "CHIT1", {
                "month": 3, "winner_id": "M01", "bid_amount": "100000"
            })

    def test_delete_cascade_order(self):
        group = append_auction(self.group, 1, "M01", "100000", auction_id="AUC_1")
        invoices = [
            make_invoice("AINV1", amount="25000", related_auction_id="AUC_1"),
            make_invoice("OTHER", balance="700"),
        ]
        payments = [
            make_payment("P1", "5000", "AINV1", related_auction_id="AUC_1"),
            make_payment("P2", "1000", "AINV1"),
            make_payment("P3", "300", "OTHER", related_auction_id="AUC_1"),
        ]
        snapshot = LedgerSnapshot.of(chit_groups=[group], invoices=invoices, payments=payments)
        plan = self.coordinator.delete_auction(snapshot, "CHIT1", "AUC_1")

        assert step_names(plan) == ["delete-auction-payments", "delete-auction-invoices", "remove-auction"]
        assert [(op.kind, op.table, op.record_id) for op in plan.writes] == [
            (PUT, INVOICES, "OTHER"),
            (DELETE, PAYMENTS, "P1"),
            (DELETE, PAYMENTS, "P2"),
            (DELETE, PAYMENTS, "P3"),
            (DELETE, INVOICES, "AINV1"),
            (PUT, CHIT_GROUPS, "CHIT1"),
        ]
        assert plan.writes[0].data['balance'] == "1000"
        assert plan.audit_entries[0].metadata['deleted_payments'] == ["P1", "P2", "P3"]
        assert plan.result.current_month == 0

    def test_delete_cascade_removes_savings_from_winnings(self):
        group = append_auction(self.group, 1, "M01", "100000", auction_id="AUC_1")
        snapshot = LedgerSnapshot.of(chit_groups=[group])
        savings = self.coordinator.move_to_savings(snapshot, "CHIT1", "AUC_1").result

        snapshot = LedgerSnapshot.of(chit_groups=[group], investments=[savings])
        plan = self.coordinator.delete_auction(snapshot, "CHIT1", "AUC_1")

        assert step_names(plan) == ["delete-auction-savings", "remove-auction"]
        assert (plan.writes[0].kind, plan.writes[0].record_id) == (DELETE, savings.id)

    def test_delete_earlier_auction_rejected(self):
        group = append_auction(self.group, 1, "M01", "100000", auction_id="AUC_1")
        group = append_auction(group, 2, "M02", "90000", auction_id="AUC_2")

        with pytest.raises(IntegrityViolation, match="not the latest"):
            self.coordinator.delete_auction(LedgerSnapshot.of(chit_groups=[group]), "CHIT1", "AUC_1")

    def test_move_winnings_to_savings(self):
        group = append_auction(self.group, 1, "M01", "100000", winner_name="Selvi",
                               auction_date=date(2025, 1, 20), auction_id="AUC_1")
        plan = self.coordinator.move_to_savings(LedgerSnapshot.of(chit_groups=[group]), "CHIT1", "AUC_1")

        assert step_names(plan) == ["write-savings"]
        assert plan.writes[0].table == INVESTMENTS
        assert plan.writes[0].expected_version == 0
        savings = plan.result
        assert savings.name == "Diwali 5L - CHIT #1"
        assert savings.type == CHIT_SAVINGS
        assert savings.contribution_type == ContributionType.LUMP_SUM
        assert savings.related_auction_id == "AUC_1"
        assert savings.start_date == date(2025, 1, 20)
        assert savings.maturity_date == date(2026, 1, 20)
        assert savings.notes == "Generated from Chit Auction #1 (Winner: Selvi)"
        assert compute_investment_total(savings) == Decimal('375000')
        assert plan.audit_entries[0].description == (
            "Moved ₹375,000.00 from Diwali 5L month 1 auction to savings"
        )

    def test_winnings_move_to_savings_once(self):
        group = append_auction(self.group, 1, "M01", "100000", auction_id="AUC_1")
        savings = self.coordinator.move_to_savings(LedgerSnapshot.of(chit_groups=[group]), "CHIT1", "AUC_1").result

        with pytest.raises(IntegrityViolation, match="already in savings"):
            self.coordinator.move_to_savings(
                LedgerSnapshot.of(chit_groups=[group], investments=[savings]), "CHIT1", "AUC_1"
            )

    def test_move_unknown_auction(self):
        with pytest.raises(DependencyNotFound):
            self.coordinator.move_to_savings(LedgerSnapshot.of(chit_groups=[self.group]), "CHIT1", "AUC_404")


class TestInvestmentPlans:
    """Test contribution and prize planning"""

    def setup_method(self):
        self.coordinator = make_coordinator()
        self.investment = Investment(
            id="INVT1", created_at=NOW, updated_at=NOW, name="Sri Murugan Chits",
            type=CHIT_SAVINGS, provider="Sri Murugan", contribution_type=ContributionType.MONTHLY,
            amount_invested=Decimal('0'), start_date=date(2025, 1, 1),
            chit_config=ChitConfig(chit_value=Decimal('100000'), duration_months=20,
                                   monthly_installment=Decimal('5000'))
        )

    def snapshot(self, investment=None, payments=()):
        return LedgerSnapshot.of(investments=[investment or self.investment], payments=payments,
                                 bank_accounts=make_banks())

    def test_contribution_writes_voucher_first(self):
        plan = self.coordinator.record_contribution(self.snapshot(), "INVT1", {
            "amount_paid": "4500", "dividend": "500", "mode": "CUB", "date": "2025-02-05"
        })

        assert step_names(plan) == ["write-voucher", "record-contribution"]
        voucher = plan.writes[0].data
        assert voucher['type'] == "OUT"
        assert voucher['voucher_type'] == "PAYMENT"
        assert voucher['category'] == CHIT_SAVINGS
        assert voucher['amount'] == "4500"
        assert plan.writes[1].table == INVESTMENTS

        transaction, = plan.result.transactions
        assert transaction.payment_id == voucher['id']
        assert transaction.month == 1
        assert transaction.dividend == Decimal('500')

    def test_contribution_from_archived_account(self):
        with pytest.raises(ValidationError, match="archived"):
            self.coordinator.record_contribution(self.snapshot(), "INVT1", {
                "amount_paid": "4500", "mode": "KVB", "date": "2025-02-05"
            })

    def test_delete_contribution_removes_voucher(self):
        plan = self.coordinator.record_contribution(self.snapshot(), "INVT1", {
            "amount_paid": "4500", "mode": "CASH", "date": "2025-02-05"
        })
        voucher = Payment.from_dict(plan.writes[0].data)
        funded = plan.result

        plan = self.coordinator.delete_contribution(
            self.snapshot(funded, [voucher]), "INVT1", funded.transactions[0].id
        )
        assert step_names(plan) == ["delete-voucher", "remove-contribution"]
        assert plan.writes[0].record_id == voucher.id
        assert plan.result.transactions == []

    def test_delete_unknown_contribution(self):
        with pytest.raises(DependencyNotFound):
            self.coordinator.delete_contribution(self.snapshot(), "INVT1", "T404")

    def test_prize_with_receipt(self):
        plan = self.coordinator.declare_prize(self.snapshot(), "INVT1", {
            "prize_amount": "82000", "prize_month": 6, "date": "2025-06-15", "mode": "CUB"
        })

        assert step_names(plan) == ["write-voucher", "declare-prize"]
        assert plan.writes[0].data['type'] == "IN"
        assert plan.result.chit_config.payment_id == plan.writes[0].record_id

    def test_prize_without_receipt(self):
        plan = self.coordinator.declare_prize(self.snapshot(), "INVT1", {
            "prize_amount": "82000", "prize_month": 6, "date": "2025-06-15"
        })
        assert step_names(plan) == ["declare-prize"]
        assert plan.result.chit_config.is_prized
