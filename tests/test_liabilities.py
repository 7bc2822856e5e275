from datetime import date

from events import LIABILITY_LINKED, LIABILITY_UNLINKED, EventBus
from models import Frequency, TransactionKind
from outcomes import OutcomeStatus
from schemas import AccountIn, Liability, LiabilityIn, RecurringRuleIn
from services import (
    AccountService,
    BalanceSynchronizer,
    LiabilityService,
    RecurringRuleService,
    TransactionService,
)


def _services():
    bus = EventBus()
    accounts = AccountService()
    ledger = TransactionService(accounts, bus)
    synchronizer = BalanceSynchronizer(accounts, ledger, bus)
    rules = RecurringRuleService(ledger, bus)
    liabilities = LiabilityService(accounts, rules, synchronizer, bus)
    checking = accounts.create(AccountIn(name="Checking", cost_basis_cents=2_000_000)).value
    linked, unlinked = [], []
    bus.subscribe(LIABILITY_LINKED, linked.append)
    bus.subscribe(LIABILITY_UNLINKED, unlinked.append)
    return accounts, ledger, rules, liabilities, checking, linked, unlinked


def _car_loan(checking_id: str, **overrides) -> LiabilityIn:
    data = dict(
        name="Car Loan",
        liability_type="car_loan",
        base_balance_cents=15_000_000,
        monthly_payment_cents=500_000,
        payment_account_id=checking_id,
        payment_day=31,
        payment_periods=36,
        start_date=date(2024, 1, 31),
    )
    data.update(overrides)
    return LiabilityIn(**data)


def test_car_loan_end_to_end():
    _, ledger, rules, liabilities, checking, linked, _ = _services()

    loan = liabilities.save(_car_loan(checking.id)).value
    rules.materialize_due(date(2024, 3, 31))

    rule = liabilities.rule_for(loan.id)
    assert rule.frequency == Frequency.monthly
    assert rule.max_occurrences == 36
    payments = ledger.list_by_rule(rule.id)
    assert [p.date for p in payments] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]
    assert {p.kind for p in payments} == {TransactionKind.expense}
    assert {p.category for p in payments} == {"Loan Repayment"}
    assert {p.note for p in payments} == {"Car Loan"}
    assert checking.current_value_cents == 2_000_000 - 3 * 500_000
    assert [e.rule_id for e in linked] == [rule.id]


def test_repeated_save_keeps_one_rule():
    _, ledger, rules, liabilities, checking, linked, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value

    again = liabilities.save(_car_loan(checking.id, id=loan.id)).value
    liabilities.sync(again)

    assert again is loan
    assert len(rules.list()) == 1
    assert len(ledger.records) == 1
    assert len(linked) == 1


def test_removing_payment_details_deactivates_and_reactivates_same_rule():
    _, ledger, rules, liabilities, checking, linked, unlinked = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    rule = liabilities.rule_for(loan.id)

    liabilities.save(_car_loan(checking.id, id=loan.id, monthly_payment_cents=None))

    assert not rule.active
    assert [e.liability_id for e in unlinked] == [loan.id]
    assert len(ledger.list_by_rule(rule.id)) == 1

    liabilities.save(_car_loan(checking.id, id=loan.id, monthly_payment_cents=450_000))

    assert rules.list() == [rule]
    assert rule.active
    assert rule.amount_cents == 450_000
    assert rule.materialized_count == 1
    assert len(linked) == 2


def test_changing_payment_day_reanchors_within_month():
    _, _, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(
        _car_loan(checking.id, start_date=None, payment_day=15),
        today=date(2024, 5, 10),
    ).value
    rule = liabilities.rule_for(loan.id)
    assert rule.anchor_date == date(2024, 5, 15)

    liabilities.save(
        _car_loan(checking.id, id=loan.id, start_date=None, payment_day=20),
        today=date(2024, 9, 1),
    )

    assert rule.anchor_date == date(2024, 5, 20)
    assert rule.materialized_count == 1
    assert len(rules.list()) == 1


def test_default_anchor_without_start_date():
    _, _, _, liabilities, _, _, _ = _services()

    def anchor(day, today):
        return liabilities.autopay_anchor(Liability(name="x", payment_day=day), today=today)

    assert anchor(15, date(2024, 5, 10)) == date(2024, 5, 15)
    assert anchor(15, date(2024, 5, 15)) == date(2024, 6, 15)
    assert anchor(31, date(2024, 2, 10)) == date(2024, 2, 29)
    assert anchor(5, date(2024, 12, 20)) == date(2025, 1, 5)


def test_delete_liability_cascades_payments():
    accounts, ledger, rules, liabilities, checking, _, unlinked = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    rules.materialize_due(date(2024, 3, 31))

    assert liabilities.delete(loan.id).ok

    assert rules.list() == []
    assert ledger.records == {}
    assert checking.current_value_cents == 2_000_000
    assert accounts.get_liability(loan.id).status == OutcomeStatus.not_found
    assert [e.liability_id for e in unlinked] == [loan.id]
    assert liabilities.delete(loan.id).status == OutcomeStatus.not_found


def test_rule_deleted_elsewhere_is_recreated_on_next_sync():
    _, _, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    first = liabilities.rule_for(loan.id)

    rules.delete(first.id)
    assert liabilities.rule_for(loan.id) is None

    second = liabilities.sync(loan).value
    assert second.id != first.id
    assert liabilities.rule_for(loan.id) is second


def test_rebuild_links_finds_rule_by_liability_id():
    _, _, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    rule = liabilities.rule_for(loan.id)

    liabilities._links.clear()
    liabilities.rebuild_links()

    assert liabilities.rule_for(loan.id) is rule


def test_unknown_payment_account_is_rejected():
    accounts, _, rules, liabilities, _, _, _ = _services()

    outcome = liabilities.save(_car_loan("missing"))

    assert outcome.status == OutcomeStatus.invalid
    assert accounts.list_liabilities() == []
    assert rules.list() == []


def test_liability_without_autopay_has_no_rule():
    _, _, rules, liabilities, _, linked, _ = _services()

    loan = liabilities.save(LiabilityIn(name="Student Loan", base_balance_cents=900_000)).value

    assert loan.balance_cents == 900_000
    assert liabilities.rule_for(loan.id) is None
    assert rules.list() == []
    assert linked == []


def test_base_balance_change_rebases():
    _, _, _, liabilities, checking, _, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value

    liabilities.save(_car_loan(checking.id, id=loan.id, base_balance_cents=14_000_000))

    assert loan.base_balance_cents == 14_000_000
    assert loan.balance_cents == 14_000_000


def test_deleting_liability_stops_rules_that_pay_into_it():
    _, ledger, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(LiabilityIn(name="Card", base_balance_cents=300_000)).value
    top_up = rules.create(
        RecurringRuleIn(
            amount_cents=10_000,
            kind=TransactionKind.transfer,
            account_id=checking.id,
            to_account_id=loan.id,
            frequency=Frequency.monthly,
            anchor_date=date(2024, 1, 1),
        )
    ).value
    rent = rules.create(
        RecurringRuleIn(
            amount_cents=80_000,
            kind=TransactionKind.expense,
            category="Rent",
            account_id=checking.id,
            frequency=Frequency.monthly,
            anchor_date=date(2024, 1, 1),
        )
    ).value

    liabilities.delete(loan.id)
    outcome = rules.materialize_due(date(2024, 3, 1))

    assert outcome.ok
    assert not top_up.active
    assert [r.date for r in ledger.list_by_rule(rent.id)] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
    ]
    assert len(ledger.list_by_rule(top_up.id)) == 1


def test_moving_start_date_earlier_does_not_charge_twice():
    _, ledger, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    rules.materialize_due(date(2024, 3, 31))

    liabilities.save(_car_loan(checking.id, id=loan.id, start_date=date(2023, 12, 31)))
    rules.materialize_due(date(2024, 3, 31))

    rule = liabilities.rule_for(loan.id)
    assert rule.anchor_date == date(2023, 12, 31)
    assert [p.date for p in ledger.list_by_rule(rule.id)] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
    ]
    assert checking.current_value_cents == 2_000_000 - 3 * 500_000
    assert liabilities.synchronizer.recompute_account(checking.id).value == (
        2_000_000 - 3 * 500_000
    )

    rules.materialize_due(date(2024, 4, 30))
    assert ledger.list_by_rule(rule.id)[-1].date == date(2024, 4, 30)
    assert len(ledger.list_by_rule(rule.id)) == 4


def test_moving_start_date_later_does_not_skip_payments():
    _, ledger, rules, liabilities, checking, _, _ = _services()
    loan = liabilities.save(_car_loan(checking.id)).value
    rules.materialize_due(date(2024, 3, 31))

    liabilities.save(_car_loan(checking.id, id=loan.id, start_date=date(2024, 3, 31)))
    rules.materialize_due(date(2024, 5, 31))

    rule = liabilities.rule_for(loan.id)
    assert [p.date for p in ledger.list_by_rule(rule.id)] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
        date(2024, 5, 31),
    ]
    assert liabilities.synchronizer.check_drift() == []


def test_liability_id_longer_than_storage_column_is_rejected():
    accounts, _, _, liabilities, _, _, _ = _services()

    outcome = liabilities.save({"id": "x" * 33, "name": "Car Loan"})

    assert outcome.status == OutcomeStatus.invalid
    assert accounts.list_liabilities() == []
