from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

from pydantic import ValidationError

from config import get_settings
from events import (
    FORCE_REFRESH_ALL,
    LEDGER_CHANGED,
    LIABILITY_LINKED,
    LIABILITY_UNLINKED,
    RULE_MATERIALIZED,
    EventBus,
    LedgerChanged,
    LiabilityLinked,
    LiabilityUnlinked,
    RuleMaterialized,
    get_event_bus,
)
from models import AccountKind, DeleteScope, Frequency, TransactionKind
from outcomes import Outcome
from periods import Period, clamp_day, local_today, month_index
from recurrence import (
    OccurrencePreview,
    build_occurrence,
    due_occurrences,
    pending_slots,
    preview_future,
    rebase_cursor,
)
from schemas import (
    LOAN_REPAYMENT_CATEGORY,
    Account,
    AccountIn,
    Liability,
    LiabilityIn,
    RecurringRule,
    RecurringRuleIn,
    TransactionIn,
    TransactionPatch,
    TransactionRecord,
    new_id,
)


logger = logging.getLogger(__name__)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(err["msg"] for err in exc.errors())
    return str(exc)


@dataclass
class TransactionFilters:
    kind: Optional[TransactionKind] = None
    account_id: Optional[str] = None
    category: Optional[str] = None
    recurring_rule_id: Optional[str] = None

    def matches(self, record: TransactionRecord) -> bool:
        if self.kind and record.kind != self.kind:
            return False
        if self.account_id and self.account_id not in (
            record.account_id,
            record.to_account_id,
        ):
            return False
        if self.category and record.category != self.category:
            return False
        if self.recurring_rule_id and record.recurring_rule_id != self.recurring_rule_id:
            return False
        return True


@dataclass(frozen=True)
class Drift:
    account_id: str
    incremental_cents: int
    recomputed_cents: int

    @property
    def difference_cents(self) -> int:
        return self.incremental_cents - self.recomputed_cents


class AccountService:
    """Registry of asset accounts and liabilities, keyed by stable id.

    Derived values (``current_value_cents`` / ``balance_cents``) are written
    only by :class:`BalanceSynchronizer`.
    """

    def __init__(self) -> None:
        self.assets: dict[str, Account] = {}
        self.liabilities: dict[str, Liability] = {}

    def exists(self, account_id: Optional[str]) -> bool:
        return bool(account_id) and (
            account_id in self.assets or account_id in self.liabilities
        )

    def kind_of(self, account_id: str) -> Optional[AccountKind]:
        if account_id in self.assets:
            return AccountKind.asset
        if account_id in self.liabilities:
            return AccountKind.liability
        return None

    def name_of(self, account_id: Optional[str]) -> str:
        if not account_id:
            return ""
        holder = self.assets.get(account_id) or self.liabilities.get(account_id)
        return holder.name if holder else account_id

    def get(self, account_id: str) -> Outcome[Union[Account, Liability]]:
        holder = self.assets.get(account_id) or self.liabilities.get(account_id)
        if holder is None:
            return Outcome.not_found("Account not found")
        return Outcome.success(holder)

    def get_liability(self, liability_id: str) -> Outcome[Liability]:
        liability = self.liabilities.get(liability_id)
        if liability is None:
            return Outcome.not_found("Liability not found")
        return Outcome.success(liability)

    def list(self) -> list[Account]:
        return sorted(self.assets.values(), key=lambda a: (a.name.lower(), a.id))

    def list_liabilities(self) -> list[Liability]:
        return sorted(self.liabilities.values(), key=lambda l: (l.name.lower(), l.id))

    def create(self, data: Union[AccountIn, dict]) -> Outcome[Account]:
        try:
            data = data if isinstance(data, AccountIn) else AccountIn.model_validate(data)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))
        account = Account(
            name=data.name,
            asset_type=data.asset_type,
            cost_basis_cents=data.cost_basis_cents,
            current_value_cents=data.cost_basis_cents,
        )
        self.assets[account.id] = account
        logger.info(f"account_created: id={account.id}")
        return Outcome.success(account)

    def update(
        self,
        account_id: str,
        name: Optional[str] = None,
        asset_type: Optional[str] = None,
    ) -> Outcome[Account]:
        """Rename or retype an account. Its id, and so every reference, is unchanged."""
        account = self.assets.get(account_id)
        if account is None:
            return Outcome.not_found("Account not found")
        if name is not None:
            clean_name = name.strip()
            if not clean_name:
                return Outcome.invalid("Account name cannot be empty")
            account.name = clean_name
        if asset_type:
            account.asset_type = asset_type
        account.updated_at = datetime.utcnow()
        return Outcome.success(account)

    def store_liability(self, liability: Liability) -> None:
        self.liabilities[liability.id] = liability

    def remove_liability(self, liability_id: str) -> Optional[Liability]:
        return self.liabilities.pop(liability_id, None)

    def replace_all(
        self, assets: list[Account], liabilities: list[Liability]
    ) -> None:
        self.assets = {a.id: a for a in assets}
        self.liabilities = {l.id: l for l in liabilities}


class TransactionService:
    """The ledger: the single source of truth for what happened."""

    def __init__(
        self, accounts: AccountService, bus: Optional[EventBus] = None
    ) -> None:
        self.accounts = accounts
        self.bus = bus or get_event_bus()
        self.records: dict[str, TransactionRecord] = {}

    def check_references(self, account_id: str, to_account_id: Optional[str]) -> None:
        if not self.accounts.exists(account_id):
            raise ValueError("Account not found")
        if to_account_id and not self.accounts.exists(to_account_id):
            raise ValueError("Destination account not found")

    def get(self, transaction_id: str) -> Outcome[TransactionRecord]:
        record = self.records.get(transaction_id)
        if record is None:
            return Outcome.not_found("Transaction not found")
        return Outcome.success(record)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[TransactionRecord]:
        records = sorted(
            self.records.values(), key=lambda r: (r.date, r.created_at, r.id)
        )
        if filters:
            records = [r for r in records if filters.matches(r)]
        return records

    def list_by_date_range(
        self,
        start: date,
        end: date,
        filters: Optional[TransactionFilters] = None,
    ) -> list[TransactionRecord]:
        return [r for r in self.list(filters) if start <= r.date <= end]

    def list_by_period(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> list[TransactionRecord]:
        return self.list_by_date_range(period.start, period.end, filters)

    def list_by_rule(self, rule_id: str) -> list[TransactionRecord]:
        return self.list(TransactionFilters(recurring_rule_id=rule_id))

    def add(self, data: Union[TransactionIn, dict]) -> Outcome[TransactionRecord]:
        try:
            data = (
                data
                if isinstance(data, TransactionIn)
                else TransactionIn.model_validate(data)
            )
            self.check_references(data.account_id, data.to_account_id)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))
        now = datetime.utcnow()
        record = TransactionRecord(**data.model_dump(), created_at=now, updated_at=now)
        self.append_record(record)
        return Outcome.success(record)

    def append_record(self, record: TransactionRecord) -> None:
        """Insert an already validated record and announce it."""
        self.records[record.id] = record
        self.bus.publish(LEDGER_CHANGED, LedgerChanged(current=record.model_copy()))

    def update(
        self, transaction_id: str, patch: Union[TransactionPatch, dict]
    ) -> Outcome[TransactionRecord]:
        existing = self.records.get(transaction_id)
        if existing is None:
            return Outcome.not_found("Transaction not found")
        try:
            patch = (
                patch
                if isinstance(patch, TransactionPatch)
                else TransactionPatch.model_validate(patch)
            )
            changes = patch.model_dump(exclude_unset=True)
            merged = existing.model_dump(include=set(TransactionIn.model_fields))
            merged.update(changes)
            if (
                merged["kind"] != TransactionKind.transfer
                and "to_account_id" not in changes
            ):
                merged["to_account_id"] = None
            data = TransactionIn.model_validate(merged)
            self.check_references(data.account_id, data.to_account_id)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))

        previous = existing.model_copy()
        updated = existing.model_copy(
            update={**data.model_dump(), "updated_at": datetime.utcnow()}
        )
        self.records[transaction_id] = updated
        self.bus.publish(
            LEDGER_CHANGED,
            LedgerChanged(previous=previous, current=updated.model_copy()),
        )
        return Outcome.success(updated)

    def remove(self, transaction_id: str) -> Outcome[TransactionRecord]:
        record = self.records.pop(transaction_id, None)
        if record is None:
            return Outcome.not_found("Transaction not found")
        self.bus.publish(LEDGER_CHANGED, LedgerChanged(previous=record.model_copy()))
        return Outcome.success(record)

    def replace_all(self, records: list[TransactionRecord]) -> None:
        self.records = {r.id: r for r in records}


def ledger_effects(record: TransactionRecord) -> dict[str, int]:
    """Signed per-account effect of ``record`` from the asset point of view."""
    amount = record.amount_cents
    if record.kind == TransactionKind.income:
        return {record.account_id: amount}
    if record.kind == TransactionKind.expense:
        return {record.account_id: -amount}
    effects = {record.account_id: -amount}
    if record.to_account_id:
        effects[record.to_account_id] = effects.get(record.to_account_id, 0) + amount
    return effects


class BalanceSynchronizer:
    """Keeps derived account values equal to base + signed ledger effects.

    Updates are incremental: every ``ledger-changed`` event reverses the
    previous state's effect and applies the new one. Full recomputation is
    reserved for ``force-refresh-all`` and explicit recovery.
    """

    def __init__(
        self,
        accounts: AccountService,
        ledger: TransactionService,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.accounts = accounts
        self.ledger = ledger
        self.bus = bus or get_event_bus()
        self.bus.subscribe(LEDGER_CHANGED, self._on_ledger_changed)
        self.bus.subscribe(FORCE_REFRESH_ALL, self._on_force_refresh)

    def _on_ledger_changed(self, event: LedgerChanged) -> None:
        if event.previous is not None:
            self.reverse(event.previous)
        if event.current is not None:
            self.apply(event.current)

    def _on_force_refresh(self, _event) -> None:
        self.recompute_all()

    def _polarity(self, account_id: str) -> Optional[int]:
        kind = self.accounts.kind_of(account_id)
        if kind == AccountKind.asset:
            return 1
        if kind == AccountKind.liability:
            # a liability balance is what is owed
            return -1
        return None

    def _shift(self, account_id: str, delta: int) -> None:
        polarity = self._polarity(account_id)
        if polarity is None:
            logger.debug(f"balance_skip: account_id={account_id} reason=unknown")
            return
        if account_id in self.accounts.assets:
            account = self.accounts.assets[account_id]
            account.current_value_cents += polarity * delta
        else:
            liability = self.accounts.liabilities[account_id]
            liability.balance_cents += polarity * delta

    def apply(self, record: TransactionRecord) -> None:
        for account_id, delta in ledger_effects(record).items():
            self._shift(account_id, delta)

    def reverse(self, record: TransactionRecord) -> None:
        for account_id, delta in ledger_effects(record).items():
            self._shift(account_id, -delta)

    def current_value(self, account_id: str) -> Optional[int]:
        if account_id in self.accounts.assets:
            return self.accounts.assets[account_id].current_value_cents
        if account_id in self.accounts.liabilities:
            return self.accounts.liabilities[account_id].balance_cents
        return None

    def expected_value(self, account_id: str) -> Optional[int]:
        polarity = self._polarity(account_id)
        if polarity is None:
            return None
        if account_id in self.accounts.assets:
            base = self.accounts.assets[account_id].cost_basis_cents
        else:
            base = self.accounts.liabilities[account_id].base_balance_cents
        net = 0
        for record in self.ledger.records.values():
            net += ledger_effects(record).get(account_id, 0)
        return base + polarity * net

    def recompute_account(self, account_id: str) -> Outcome[int]:
        value = self.expected_value(account_id)
        if value is None:
            return Outcome.not_found("Account not found")
        if account_id in self.accounts.assets:
            self.accounts.assets[account_id].current_value_cents = value
        else:
            self.accounts.liabilities[account_id].balance_cents = value
        return Outcome.success(value)

    def recompute_all(self) -> dict[str, int]:
        ids = list(self.accounts.assets) + list(self.accounts.liabilities)
        values = {account_id: self.recompute_account(account_id).value for account_id in ids}
        logger.info(f"balances_recomputed: accounts={len(values)}")
        return values

    def check_drift(self) -> list[Drift]:
        drifts: list[Drift] = []
        ids = list(self.accounts.assets) + list(self.accounts.liabilities)
        for account_id in ids:
            incremental = self.current_value(account_id)
            recomputed = self.expected_value(account_id)
            if incremental != recomputed:
                drift = Drift(account_id, incremental, recomputed)
                logger.warning(
                    f"balance_drift: account_id={account_id} "
                    f"incremental={incremental} recomputed={recomputed}"
                )
                drifts.append(drift)
        return drifts

    def rebase(self, account_id: str, base_cents: int) -> Outcome[int]:
        if account_id in self.accounts.assets:
            account = self.accounts.assets[account_id]
            account.current_value_cents += base_cents - account.cost_basis_cents
            account.cost_basis_cents = base_cents
            account.updated_at = datetime.utcnow()
            return Outcome.success(account.current_value_cents)
        if account_id in self.accounts.liabilities:
            liability = self.accounts.liabilities[account_id]
            liability.balance_cents += base_cents - liability.base_balance_cents
            liability.base_balance_cents = base_cents
            liability.updated_at = datetime.utcnow()
            return Outcome.success(liability.balance_cents)
        return Outcome.not_found("Account not found")


class RecurringRuleService:
    def __init__(
        self,
        ledger: TransactionService,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.ledger = ledger
        self.bus = bus or get_event_bus()
        self.rules: dict[str, RecurringRule] = {}

    def get(self, rule_id: str) -> Outcome[RecurringRule]:
        rule = self.rules.get(rule_id)
        if rule is None:
            return Outcome.not_found("Rule not found")
        return Outcome.success(rule)

    def list(self, *, active_only: bool = False) -> list[RecurringRule]:
        rules = sorted(self.rules.values(), key=lambda r: (r.anchor_date, r.id))
        if active_only:
            rules = [r for r in rules if r.active]
        return rules

    def _coerce(self, data: Union[RecurringRuleIn, dict]) -> RecurringRuleIn:
        data = (
            data
            if isinstance(data, RecurringRuleIn)
            else RecurringRuleIn.model_validate(data)
        )
        self.ledger.check_references(data.account_id, data.to_account_id)
        return data

    def create(
        self,
        data: Union[RecurringRuleIn, dict],
        *,
        liability_id: Optional[str] = None,
    ) -> Outcome[RecurringRule]:
        try:
            data = self._coerce(data)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))
        rule = RecurringRule(**data.model_dump(), liability_id=liability_id)
        self.rules[rule.id] = rule
        self._materialize(rule, [rule.anchor_date])
        logger.info(
            f"rule_created: id={rule.id} frequency={rule.frequency.value} "
            f"anchor={rule.anchor_date.isoformat()}"
        )
        return Outcome.success(rule)

    def update(
        self, rule_id: str, data: Union[RecurringRuleIn, dict]
    ) -> Outcome[RecurringRule]:
        rule = self.rules.get(rule_id)
        if rule is None:
            return Outcome.not_found("Rule not found")
        try:
            data = self._coerce(data)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))
        previous = rule.model_copy()
        for field, value in data.model_dump().items():
            setattr(rule, field, value)
        if (previous.anchor_date, previous.frequency) != (rule.anchor_date, rule.frequency):
            rule.materialized_count = rebase_cursor(previous, rule)
            logger.info(
                f"rule_rescheduled: id={rule.id} anchor={rule.anchor_date.isoformat()} "
                f"cursor={previous.materialized_count}->{rule.materialized_count}"
            )
        rule.updated_at = datetime.utcnow()
        return Outcome.success(rule)

    def activate(self, rule_id: str) -> Outcome[RecurringRule]:
        return self._set_active(rule_id, True)

    def deactivate(self, rule_id: str) -> Outcome[RecurringRule]:
        return self._set_active(rule_id, False)

    def _set_active(self, rule_id: str, active: bool) -> Outcome[RecurringRule]:
        rule = self.rules.get(rule_id)
        if rule is None:
            return Outcome.not_found("Rule not found")
        if rule.active != active:
            rule.active = active
            rule.updated_at = datetime.utcnow()
            logger.info(f"rule_active: id={rule_id} active={active}")
        return Outcome.success(rule)

    def delete(self, rule_id: str) -> Outcome[list[TransactionRecord]]:
        if rule_id not in self.rules:
            return Outcome.not_found("Rule not found")
        removed = self._remove_occurrences(self.ledger.list_by_rule(rule_id))
        del self.rules[rule_id]
        logger.info(f"rule_deleted: id={rule_id} occurrences_removed={len(removed)}")
        return Outcome.success(removed)

    def delete_occurrence(
        self, transaction_id: str, scope: Union[DeleteScope, str] = DeleteScope.single
    ) -> Outcome[list[TransactionRecord]]:
        record = self.ledger.records.get(transaction_id)
        if record is None:
            return Outcome.not_found("Transaction not found")
        try:
            scope = DeleteScope(scope)
        except ValueError:
            return Outcome.invalid(f"Unknown delete scope: {scope}")

        if scope == DeleteScope.single or not record.is_recurring:
            self.ledger.remove(transaction_id)
            return Outcome.success([record])

        rule_id = record.recurring_rule_id
        if scope == DeleteScope.all:
            if rule_id in self.rules:
                return self.delete(rule_id)
            return Outcome.success(
                self._remove_occurrences(self.ledger.list_by_rule(rule_id))
            )

        cutoff = month_index(record.date)
        targets = [
            r for r in self.ledger.list_by_rule(rule_id) if month_index(r.date) >= cutoff
        ]
        if rule_id in self.rules:
            self.deactivate(rule_id)
        removed = self._remove_occurrences(targets)
        logger.info(
            f"rule_future_deleted: id={rule_id} from={record.date.isoformat()} "
            f"occurrences_removed={len(removed)}"
        )
        return Outcome.success(removed)

    def _remove_occurrences(
        self, records: list[TransactionRecord]
    ) -> list[TransactionRecord]:
        removed: list[TransactionRecord] = []
        for record in records:
            outcome = self.ledger.remove(record.id)
            if outcome.ok:
                removed.append(outcome.value)
        return removed

    def _materialize(self, rule: RecurringRule, dates: list[date]) -> list[TransactionRecord]:
        created: list[TransactionRecord] = []
        for occurrence_date in dates:
            record = build_occurrence(rule, occurrence_date)
            self.ledger.append_record(record)
            rule.materialized_count += 1
            created.append(record)
            self.bus.publish(
                RULE_MATERIALIZED, RuleMaterialized(rule_id=rule.id, date=occurrence_date)
            )
        if created:
            rule.updated_at = datetime.utcnow()
        return created

    def materialize_due(
        self, as_of: Optional[date] = None
    ) -> Outcome[list[TransactionRecord]]:
        as_of = as_of or local_today()
        plan: list[tuple[RecurringRule, list[date]]] = []
        for rule in self.list(active_only=True):
            dates = due_occurrences(rule, as_of)
            if not dates:
                continue
            try:
                self.ledger.check_references(rule.account_id, rule.to_account_id)
            except ValueError as exc:
                logger.warning(f"materialize_skipped: rule_id={rule.id} reason={exc}")
                self.deactivate(rule.id)
                continue
            plan.append((rule, dates))

        created: list[TransactionRecord] = []
        for rule, dates in plan:
            created.extend(self._materialize(rule, dates))
        logger.info(
            f"materialize_due: as_of={as_of.isoformat()} rules={len(plan)} "
            f"occurrences={len(created)}"
        )
        return Outcome.success(created)

    def preview_future(
        self,
        rule_id: str,
        horizon_months: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> Outcome[OccurrencePreview]:
        rule = self.rules.get(rule_id)
        if rule is None:
            return Outcome.not_found("Rule not found")
        if horizon_months is None:
            horizon_months = get_settings().preview_months
        if horizon_months < 0:
            return Outcome.invalid("Horizon must not be negative")
        return Outcome.success(preview_future(rule, horizon_months, today=today))

    def upcoming(
        self, days: int = 7, *, today: Optional[date] = None
    ) -> list[tuple[RecurringRule, date]]:
        today = today or local_today()
        until = today + timedelta(days=days)
        upcoming: list[tuple[RecurringRule, date]] = []
        for rule in self.list(active_only=True):
            for slot in pending_slots(rule):
                if slot > until:
                    break
                if slot >= today:
                    upcoming.append((rule, slot))
        return sorted(upcoming, key=lambda item: (item[1], item[0].id))

    def replace_all(self, rules: list[RecurringRule]) -> None:
        self.rules = {r.id: r for r in rules}


class LiabilityService:
    """Links each liability to at most one autopay rule.

    ``save`` is the only way liabilities are created or edited and it calls
    ``sync`` exactly once, so repeated saves of the same state never produce
    a second rule.
    """

    def __init__(
        self,
        accounts: AccountService,
        rules: RecurringRuleService,
        synchronizer: BalanceSynchronizer,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.accounts = accounts
        self.rules = rules
        self.synchronizer = synchronizer
        self.bus = bus or get_event_bus()
        self._links: dict[str, str] = {}

    def rebuild_links(self) -> None:
        self._links = {}
        for rule in self.rules.list():
            if not rule.liability_id:
                continue
            current = self._links.get(rule.liability_id)
            # prefer the active rule if a liability somehow has several
            if current is None or (rule.active and not self.rules.rules[current].active):
                self._links[rule.liability_id] = rule.id

    def rule_for(self, liability_id: str) -> Optional[RecurringRule]:
        rule_id = self._links.get(liability_id)
        if rule_id is None:
            return None
        rule = self.rules.rules.get(rule_id)
        if rule is None:
            # the series was deleted through the rule service
            del self._links[liability_id]
        return rule

    def autopay_anchor(
        self,
        liability: Liability,
        existing: Optional[RecurringRule] = None,
        *,
        today: Optional[date] = None,
    ) -> date:
        day = liability.payment_day
        if liability.start_date:
            return clamp_day(liability.start_date.year, liability.start_date.month, day)
        if existing is not None:
            return clamp_day(existing.anchor_date.year, existing.anchor_date.month, day)
        today = today or local_today()
        this_month = clamp_day(today.year, today.month, day)
        if today.day < this_month.day:
            return this_month
        if today.month == 12:
            return clamp_day(today.year + 1, 1, day)
        return clamp_day(today.year, today.month + 1, day)

    def autopay_template(
        self,
        liability: Liability,
        existing: Optional[RecurringRule] = None,
        *,
        today: Optional[date] = None,
    ) -> RecurringRuleIn:
        return RecurringRuleIn(
            amount_cents=liability.monthly_payment_cents,
            kind=TransactionKind.expense,
            category=LOAN_REPAYMENT_CATEGORY,
            account_id=liability.payment_account_id,
            note=liability.name,
            frequency=Frequency.monthly,
            anchor_date=self.autopay_anchor(liability, existing, today=today),
            max_occurrences=liability.payment_periods,
        )

    def save(
        self, data: Union[LiabilityIn, dict], *, today: Optional[date] = None
    ) -> Outcome[Liability]:
        try:
            data = data if isinstance(data, LiabilityIn) else LiabilityIn.model_validate(data)
            if data.payment_account_id:
                if not self.accounts.exists(data.payment_account_id):
                    raise ValueError("Payment account not found")
                if data.payment_account_id == data.id:
                    raise ValueError("A liability cannot pay itself")
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))

        fields = data.model_dump(exclude={"id", "base_balance_cents"})
        existing = self.accounts.liabilities.get(data.id) if data.id else None
        if existing is None:
            liability = Liability(
                **fields,
                id=data.id or new_id(),
                base_balance_cents=data.base_balance_cents,
                balance_cents=data.base_balance_cents,
            )
            self.accounts.store_liability(liability)
            logger.info(f"liability_created: id={liability.id}")
        else:
            liability = existing
            for field, value in fields.items():
                setattr(liability, field, value)
            liability.updated_at = datetime.utcnow()
            if data.base_balance_cents != liability.base_balance_cents:
                self.synchronizer.rebase(liability.id, data.base_balance_cents)

        synced = self.sync(liability, today=today)
        if not synced.ok:
            return Outcome(synced.status, value=liability, error=synced.error)
        return Outcome.success(liability)

    def sync(
        self, liability: Liability, *, today: Optional[date] = None
    ) -> Outcome[Optional[RecurringRule]]:
        rule = self.rule_for(liability.id)
        if not liability.has_autopay:
            if rule is not None and rule.active:
                self.rules.deactivate(rule.id)
                self.bus.publish(
                    LIABILITY_UNLINKED, LiabilityUnlinked(liability_id=liability.id)
                )
                logger.info(f"liability_unlinked: id={liability.id} rule_id={rule.id}")
            return Outcome.success(None)

        try:
            template = self.autopay_template(liability, rule, today=today)
        except ValueError as exc:
            return Outcome.invalid(_error_message(exc))

        if rule is None:
            outcome = self.rules.create(template, liability_id=liability.id)
            if not outcome.ok:
                return outcome
            rule = outcome.value
            self._links[liability.id] = rule.id
            self.bus.publish(
                LIABILITY_LINKED, LiabilityLinked(liability_id=liability.id, rule_id=rule.id)
            )
            logger.info(f"liability_linked: id={liability.id} rule_id={rule.id}")
            return Outcome.success(rule)

        current = rule.model_dump(include=set(RecurringRuleIn.model_fields))
        changed = current != template.model_dump() or not rule.active
        if changed:
            outcome = self.rules.update(rule.id, template)
            if not outcome.ok:
                return outcome
            self.rules.activate(rule.id)
            self.bus.publish(
                LIABILITY_LINKED, LiabilityLinked(liability_id=liability.id, rule_id=rule.id)
            )
            logger.info(f"liability_relinked: id={liability.id} rule_id={rule.id}")
        return Outcome.success(rule)

    def delete(self, liability_id: str) -> Outcome[Liability]:
        liability = self.accounts.liabilities.get(liability_id)
        if liability is None:
            return Outcome.not_found("Liability not found")
        rule = self.rule_for(liability_id)
        if rule is not None:
            self.rules.delete(rule.id)
        self._links.pop(liability_id, None)
        for other in self.rules.list(active_only=True):
            if liability_id in (other.account_id, other.to_account_id):
                self.rules.deactivate(other.id)
        self.accounts.remove_liability(liability_id)
        self.bus.publish(LIABILITY_UNLINKED, LiabilityUnlinked(liability_id=liability_id))
        logger.info(f"liability_deleted: id={liability_id}")
        return Outcome.success(liability)
