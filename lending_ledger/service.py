"""
Ledger Service Module

Executes the plans produced by ConsistencyCoordinator against a storage
backend. For every mutation the service:

1. serialises on the mutation's sequence scopes (invoice-<year>,
   chit-<group id>, investment-<id>) with bounded lock waits,
2. loads a fresh snapshot and asks the coordinator for a plan,
3. commits the plan step by step, each step as an atomic batch guarded by
   record versions, retrying transient storage errors with backoff,
4. compensates committed steps when a later step fails, re-planning from
   fresh state after a version conflict,
5. records one audit entry per operation and logs the outcome.

Chunked steps (bulk invoice create/delete) commit batch by batch; a failure
part-way raises PartialBatchFailure with the exact committed count.
"""

import threading
import time
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from .accounts import AccountStatement, BankAccount, Payment, account_statement, compute_account_balances, general_ledger
from .audit import AuditAction, AuditEntityType, AuditEntry, AuditTrail
from .chits import ChitGroup, ChitState, compute_chit_state
from .config import LedgerConfig, get_config
from .coordinator import ConsistencyCoordinator, MutationPlan, PlanStep
from .customers import Customer
from .exceptions import OrphanedWrite, PartialBatchFailure, SequenceConflict
from .investments import Investment, compute_investment_total
from .invoices import Invoice, find_invoice_drift
from .liabilities import Liability
from .logging_config import get_logger, log_action, setup_logging
from .reporting import DashboardStats, compute_dashboard_stats, outstanding_payables, outstanding_receivables
from .schemas import AuctionRequest, BulkInvoiceRequest, InvoiceRequest, parse_request
from .snapshot import (
    APP_SETTINGS_ID, AUDIT_LOGS, BANK_ACCOUNTS, CHIT_GROUPS, CUSTOMERS, INVESTMENTS,
    LIABILITIES, SETTINGS, LedgerSnapshot, chit_scope, invoice_scope
)
from .storage import PUT, StorageInterface, StorageRecord, TransientStorageError, WriteOp, create_storage


def investment_scope(investment_id: str) -> str:
    return f"investment-{investment_id}"


class LedgerService:
    """
    Storage-backed front door to the ledger engine
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        coordinator: Optional[ConsistencyCoordinator] = None,
        audit_trail: Optional[AuditTrail] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.coordinator = coordinator or ConsistencyCoordinator(self.config)
        self.audit_trail = audit_trail or AuditTrail(self.storage, AUDIT_LOGS)
        setup_logging(self.config.log_level, log_format=self.config.log_format, log_file=self.config.log_file)
        self.logger = get_logger("lending_ledger.service")
        self._sleep = sleep
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Reads

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot.from_storage(self.storage)

    def dashboard_stats(self, today: Optional[date] = None) -> DashboardStats:
        return compute_dashboard_stats(self.snapshot(), today, self.config)

    def account_balances(self, include_archived: bool = False) -> Dict[str, Decimal]:
        snapshot = self.snapshot()
        registry = snapshot.registry()
        accounts = registry.all_accounts() if include_archived else registry.active_accounts()
        return compute_account_balances(snapshot.payments.values(), snapshot.account_opening_balances(), accounts)

    def general_ledger(self, start: Optional[date] = None, end: Optional[date] = None,
                       mode: Optional[str] = None) -> List[Payment]:
        return general_ledger(self.snapshot().payments.values(), start, end, mode)

    def account_statement(self, account: str, start: Optional[date] = None,
                          end: Optional[date] = None) -> AccountStatement:
        """Running balance of one account, oldest first"""
        snapshot = self.snapshot()
        snapshot.registry().validate_mode(account)
        return account_statement(snapshot.payments.values(), snapshot.account_opening_balances(), account, start, end)

    def outstanding_receivables(self):
        return outstanding_receivables(self.snapshot())

    def outstanding_payables(self):
        return outstanding_payables(self.snapshot())

    def chit_state(self, group_id: str) -> ChitState:
        return compute_chit_state(self.snapshot().get_chit_group(group_id))

    def investment_total(self, investment_id: str) -> Decimal:
        return compute_investment_total(self.snapshot().get_investment(investment_id))

    def invoice_drift(self):
        """Invoices whose cached balance disagrees with the payment log"""
        snapshot = self.snapshot()
        return find_invoice_drift(snapshot.invoices.values(), snapshot.payments.values())

    def verify_audit_trail(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    # Master records

    def create_customer(self, customer: Customer, **actor) -> Customer:
        return self._create_record("create_customer", CUSTOMERS, customer, AuditEntityType.CUSTOMER,
                                   f"Created customer: {customer.name}", **actor)

    def create_liability(self, liability: Liability, **actor) -> Liability:
        return self._create_record("create_liability", LIABILITIES, liability, AuditEntityType.LOAN,
                                   f"Created {liability.type.value} loan from {liability.provider_name}", **actor)

    def create_chit_group(self, group: ChitGroup, **actor) -> ChitGroup:
        return self._create_record("create_chit_group", CHIT_GROUPS, group, AuditEntityType.CHIT,
                                   f"Created chit group: {group.name}", **actor)

    def create_investment(self, investment: Investment, **actor) -> Investment:
        return self._create_record("create_investment", INVESTMENTS, investment, AuditEntityType.INVESTMENT,
                                   f"Created investment: {investment.name}", **actor)

    def create_bank_account(self, account: BankAccount, **actor) -> BankAccount:
        return self._create_record("create_bank_account", BANK_ACCOUNTS, account, AuditEntityType.SETTINGS,
                                   f"Added bank account: {account.name}", **actor)

    def set_opening_balances(self, balances: Dict[str, Any], user_id: Optional[str] = None,
                             performed_by: Optional[str] = None) -> Dict[str, Any]:
        """Replace the opening-balance overrides kept in app settings"""
        def plan_settings(snapshot: LedgerSnapshot) -> MutationPlan:
            current = self.storage.load(SETTINGS, APP_SETTINGS_ID)
            expected = current.get('version', 1) if current else 0
            data = dict(current or {'id': APP_SETTINGS_ID})
            data['opening_balances'] = {account: str(value) for account, value in balances.items()}
            data['version'] = expected + 1

            plan = MutationPlan("set_opening_balances")
            plan.step("write-settings").writes.append(WriteOp(
                PUT, SETTINGS, APP_SETTINGS_ID, data, expected_version=expected
            ))
            plan.audit_entries.append(AuditEntry(
                action=AuditAction.EDIT,
                entity_type=AuditEntityType.SETTINGS,
                entity_id=APP_SETTINGS_ID,
                description="Updated opening balances",
                before={'opening_balances': (current or {}).get('opening_balances', {})},
                after={'opening_balances': data['opening_balances']}
            ))
            plan.result = data['opening_balances']
            return plan

        return self._execute("set_opening_balances", ["settings"], plan_settings, user_id, performed_by)

    # Payments

    def create_payment(self, request, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> Payment:
        return self._execute(
            "create_payment", [],
            lambda snapshot: self.coordinator.create_payment(snapshot, request),
            user_id, performed_by
        )

    def edit_payment(self, payment_id: str, request, user_id: Optional[str] = None,
                     performed_by: Optional[str] = None) -> Payment:
        return self._execute(
            "edit_payment", [],
            lambda snapshot: self.coordinator.edit_payment(snapshot, payment_id, request),
            user_id, performed_by
        )

    def delete_payment(self, payment_id: str, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> Payment:
        return self._execute(
            "delete_payment", [],
            lambda snapshot: self.coordinator.delete_payment(snapshot, payment_id),
            user_id, performed_by
        )

    # Invoices

    def create_invoice(self, request, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> Invoice:
        req = parse_request(InvoiceRequest, request)
        return self._execute(
            "create_invoice", [invoice_scope(req.date.year)],
            lambda snapshot: self.coordinator.create_invoice(snapshot, req),
            user_id, performed_by
        )

    def void_invoice(self, invoice_id: str, user_id: Optional[str] = None,
                     performed_by: Optional[str] = None) -> Invoice:
        return self._execute(
            "void_invoice", [],
            lambda snapshot: self.coordinator.void_invoice(snapshot, invoice_id),
            user_id, performed_by
        )

    def delete_invoice(self, invoice_id: str, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> Invoice:
        return self._execute(
            "delete_invoice", [],
            lambda snapshot: self.coordinator.delete_invoice(snapshot, invoice_id),
            user_id, performed_by
        )

    def bulk_create_invoices(self, request, user_id: Optional[str] = None,
                             performed_by: Optional[str] = None) -> List[Invoice]:
        if isinstance(request, (list, tuple)):
            request = {'invoices': list(request)}
        req = parse_request(BulkInvoiceRequest, request)
        scopes = [invoice_scope(year) for year in {i.date.year for i in req.invoices}]
        return self._execute(
            "bulk_create_invoices", scopes,
            lambda snapshot: self.coordinator.bulk_create_invoices(snapshot, req),
            user_id, performed_by
        )

    def bulk_delete_invoices(self, request, user_id: Optional[str] = None,
                             performed_by: Optional[str] = None) -> List[Invoice]:
        return self._execute(
            "bulk_delete_invoices", [],
            lambda snapshot: self.coordinator.bulk_delete_invoices(snapshot, request),
            user_id, performed_by
        )

    # Chit auctions

    def record_auction(self, group_id: str, request, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> ChitGroup:
        req = parse_request(AuctionRequest, request)
        scopes = [chit_scope(group_id)] + [invoice_scope(year) for year in {i.date.year for i in req.invoices}]
        return self._execute(
            "record_auction", scopes,
            lambda snapshot: self.coordinator.record_auction(snapshot, group_id, req),
            user_id, performed_by
        )

    def delete_auction(self, group_id: str, auction_id: str, user_id: Optional[str] = None,
                       performed_by: Optional[str] = None) -> ChitGroup:
        return self._execute(
            "delete_auction", [chit_scope(group_id)],
            lambda snapshot: self.coordinator.delete_auction(snapshot, group_id, auction_id),
            user_id, performed_by
        )

    def move_to_savings(self, group_id: str, auction_id: str, request=None, user_id: Optional[str] = None,
                        performed_by: Optional[str] = None) -> Investment:
        return self._execute(
            "move_to_savings", [chit_scope(group_id)],
            lambda snapshot: self.coordinator.move_to_savings(snapshot, group_id, auction_id, request),
            user_id, performed_by
        )

    # Investments

    def record_contribution(self, investment_id: str, request, user_id: Optional[str] = None,
                            performed_by: Optional[str] = None) -> Investment:
        return self._execute(
            "record_contribution", [investment_scope(investment_id)],
            lambda snapshot: self.coordinator.record_contribution(snapshot, investment_id, request),
            user_id, performed_by
        )

    def delete_contribution(self, investment_id: str, transaction_id: str, user_id: Optional[str] = None,
                            performed_by: Optional[str] = None) -> Investment:
        return self._execute(
            "delete_contribution", [investment_scope(investment_id)],
            lambda snapshot: self.coordinator.delete_contribution(snapshot, investment_id, transaction_id),
            user_id, performed_by
        )

    def declare_prize(self, investment_id: str, request, user_id: Optional[str] = None,
                      performed_by: Optional[str] = None) -> Investment:
        return self._execute(
            "declare_prize", [investment_scope(investment_id)],
            lambda snapshot: self.coordinator.declare_prize(snapshot, investment_id, request),
            user_id, performed_by
        )

    # Execution

    def _create_record(self, operation: str, table: str, record: StorageRecord,
                       entity_type: AuditEntityType, description: str,
                       user_id: Optional[str] = None, performed_by: Optional[str] = None):
        def plan_create(snapshot: LedgerSnapshot) -> MutationPlan:
            plan = MutationPlan(operation)
            plan.step("write-record").put(table, record)
            plan.audit_entries.append(AuditEntry(
                action=AuditAction.CREATE,
                entity_type=entity_type,
                entity_id=record.id,
                description=description,
                after=record.to_dict()
            ))
            plan.result = record
            return plan

        return self._execute(operation, [], plan_create, user_id, performed_by)

    def _execute(self, operation: str, scopes: Iterable[str],
                 planner: Callable[[LedgerSnapshot], MutationPlan],
                 user_id: Optional[str] = None, performed_by: Optional[str] = None) -> Any:
        """Plan and commit under the scope locks, re-planning after version conflicts"""
        attempts = max(1, self.config.sequence_retry_attempts)
        with self._scoped_locks(scopes):
            for attempt in range(1, attempts + 1):
                plan = planner(self.snapshot())
                try:
                    self._commit(plan)
                    break
                except SequenceConflict as e:
                    if attempt == attempts:
                        log_action(
                            self.logger, "error",
                            f"{operation} gave up after {attempts} conflicting attempts: {e}",
                            user_id=user_id, action=operation, extra={'scope': e.scope}
                        )
                        raise
                    log_action(
                        self.logger, "warning",
                        f"{operation} conflicted on {e.scope}; re-planning (attempt {attempt}/{attempts})",
                        user_id=user_id, action=operation
                    )
                except PartialBatchFailure as e:
                    self._record_partial(plan, e, user_id, performed_by)
                    log_action(
                        self.logger, "error", str(e),
                        user_id=user_id, action=operation,
                        extra={'committed': e.committed, 'total': e.total}
                    )
                    raise

            self._record_audit(plan.audit_entries, user_id, performed_by)
            log_action(
                self.logger, "info", f"{operation} committed",
                user_id=user_id, action=operation,
                resource=self._resource(plan),
                extra={'writes': len(plan.writes), 'steps': [s.name for s in plan.steps]}
            )
            return plan.result

    def _commit(self, plan: MutationPlan) -> None:
        committed: List[PlanStep] = []
        for step in plan.steps:
            try:
                self._commit_step(plan.operation, step)
            except PartialBatchFailure:
                raise
            except Exception as e:
                self._compensate(plan, committed, step, e)
                raise
            committed.append(step)

    def _commit_step(self, operation: str, step: PlanStep) -> None:
        chunk_size = max(1, self.config.batch_chunk_size)
        if len(step.writes) <= chunk_size:
            self._apply(step.writes)
            return
        if not step.chunked:
            raise ValueError(
                f"Step '{step.name}' of {operation} has {len(step.writes)} writes, "
                f"above the batch limit of {chunk_size}"
            )

        done = 0
        for chunk in step.batches(chunk_size):
            try:
                self._apply(chunk)
            except Exception as e:
                if done == 0:
                    raise
                raise PartialBatchFailure(
                    operation, step.count_committed(step.writes[:done]), step.total, cause=e
                ) from e
            done += len(chunk)

    def _apply(self, ops: List[WriteOp]) -> None:
        """One atomic batch, retrying transient storage errors with exponential backoff"""
        attempts = max(1, self.config.storage_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                self.storage.apply_batch(ops)
                return
            except TransientStorageError as e:
                if attempt == attempts:
                    log_action(
                        self.logger, "error",
                        f"Storage batch failed after {attempts} attempts: {e}",
                        action="apply_batch", extra={'writes': len(ops)}
                    )
                    raise
                delay = self.config.storage_retry_backoff_seconds * (2 ** (attempt - 1))
                log_action(
                    self.logger, "warning",
                    f"Transient storage error, retrying in {delay:.2f}s: {e}",
                    action="apply_batch", extra={'attempt': attempt, 'writes': len(ops)}
                )
                self._sleep(delay)

    def _compensate(self, plan: MutationPlan, committed: List[PlanStep],
                    failed: PlanStep, error: Exception) -> None:
        """Undo committed steps newest first; stop and report on the first undo failure"""
        pending = [step for step in committed if step.compensate and step.undo]
        rolled_back = [step.name for step in pending]
        while pending:
            step = pending[-1]
            try:
                self._apply(step.undo)
            except Exception as undo_error:
                records = [f"{op.table}/{op.record_id}" for s in pending for op in s.writes]
                log_action(
                    self.logger, "error",
                    f"{plan.operation} could not roll back step '{step.name}': {undo_error}",
                    action=plan.operation, extra={'orphaned': records, 'failed_step': failed.name}
                )
                raise OrphanedWrite(plan.operation, failed.name, records, cause=error) from undo_error
            pending.pop()

        if rolled_back:
            log_action(
                self.logger, "warning",
                f"{plan.operation} failed at step '{failed.name}'; rolled back "
                f"{', '.join(rolled_back)}: {error}",
                action=plan.operation
            )

    @contextmanager
    def _scoped_locks(self, scopes: Iterable[str]):
        """Acquire scope locks in sorted order; give up after lock_timeout_seconds"""
        with self._locks_guard:
            locks = [(scope, self._locks.setdefault(scope, threading.Lock())) for scope in sorted(set(scopes))]
        acquired = []
        try:
            for scope, lock in locks:
                if not lock.acquire(timeout=self.config.lock_timeout_seconds):
                    raise SequenceConflict(scope, f"Timed out waiting for {scope}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _record_audit(self, entries: List[AuditEntry], user_id: Optional[str],
                      performed_by: Optional[str]) -> None:
        if not self.config.enable_audit_logging:
            return
        for entry in entries:
            self.audit_trail.record(entry, user_id=user_id, performed_by=performed_by)

    def _record_partial(self, plan: MutationPlan, failure: PartialBatchFailure,
                        user_id: Optional[str], performed_by: Optional[str]) -> None:
        """Audit what a partial bulk run actually committed"""
        entries = []
        for entry in plan.audit_entries:
            entries.append(AuditEntry(
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                description=f"{entry.description} (partial: {failure.committed} of {failure.total} committed)",
                before=entry.before,
                after=entry.after,
                metadata={**entry.metadata, 'committed': failure.committed, 'total': failure.total,
                          'partial': True}
            ))
        self._record_audit(entries, user_id, performed_by)

    @staticmethod
    def _resource(plan: MutationPlan) -> Optional[str]:
        if not plan.audit_entries:
            return None
        entry = plan.audit_entries[0]
        return f"{entry.entity_type.value.lower()}:{entry.entity_id}"
