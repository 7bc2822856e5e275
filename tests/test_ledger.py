from datetime import date

from events import LEDGER_CHANGED, EventBus
from models import TransactionKind
from outcomes import OutcomeStatus
from schemas import AccountIn, TransactionIn, TransactionPatch
from services import (
    AccountService,
    BalanceSynchronizer,
    TransactionFilters,
    TransactionService,
)


def _ledger():
    bus = EventBus()
    accounts = AccountService()
    ledger = TransactionService(accounts, bus)
    BalanceSynchronizer(accounts, ledger, bus)
    checking = accounts.create(AccountIn(name="Checking", cost_basis_cents=100_000)).value
    savings = accounts.create(AccountIn(name="Savings")).value
    events = []
    bus.subscribe(LEDGER_CHANGED, events.append)
    return ledger, checking, savings, events


def _expense(account_id: str, amount: int = 2_000, day: date = date(2024, 3, 5)) -> TransactionIn:
    return TransactionIn(
        amount_cents=amount,
        kind=TransactionKind.expense,
        category="Groceries",
        account_id=account_id,
        date=day,
    )


def test_add_publishes_a_snapshot():
    ledger, checking, _, events = _ledger()

    outcome = ledger.add(_expense(checking.id))

    assert outcome.ok
    record = outcome.value
    assert len(events) == 1
    assert events[0].previous is None
    assert events[0].current == record
    assert events[0].current is not ledger.records[record.id]


def test_invalid_transfer_is_rejected_without_event():
    ledger, checking, _, events = _ledger()

    outcome = ledger.add(
        {
            "amount_cents": 500,
            "kind": "transfer",
            "account_id": checking.id,
            "date": "2024-03-05",
        }
    )

    assert outcome.status == OutcomeStatus.invalid
    assert "destination" in outcome.error
    assert ledger.records == {}
    assert events == []


def test_add_rejects_unknown_account_and_bad_amount():
    ledger, checking, _, events = _ledger()

    unknown = ledger.add(_expense("missing"))
    negative = ledger.add(
        {
            "amount_cents": -5,
            "kind": "expense",
            "category": "Food",
            "account_id": checking.id,
            "date": "2024-03-05",
        }
    )

    assert unknown.status == OutcomeStatus.invalid
    assert negative.status == OutcomeStatus.invalid
    assert events == []


def test_transfer_gets_default_category():
    ledger, checking, savings, _ = _ledger()

    record = ledger.add(
        TransactionIn(
            amount_cents=10_000,
            kind=TransactionKind.transfer,
            account_id=checking.id,
            to_account_id=savings.id,
            date=date(2024, 3, 1),
        )
    ).value

    assert record.category == "Transfer"


def test_update_and_remove_unknown_ids_are_not_found():
    ledger, _, _, events = _ledger()

    assert ledger.update("nope", TransactionPatch(amount_cents=1)).status == OutcomeStatus.not_found
    assert ledger.remove("nope").status == OutcomeStatus.not_found
    assert ledger.get("nope").status == OutcomeStatus.not_found
    assert events == []


def test_update_carries_previous_and_current():
    ledger, checking, _, events = _ledger()
    record = ledger.add(_expense(checking.id, amount=2_000)).value

    updated = ledger.update(record.id, TransactionPatch(amount_cents=3_000)).value

    assert updated.amount_cents == 3_000
    assert updated.id == record.id
    assert events[-1].previous.amount_cents == 2_000
    assert events[-1].current.amount_cents == 3_000


def test_update_rejects_destination_on_expense():
    ledger, checking, savings, events = _ledger()
    record = ledger.add(_expense(checking.id)).value

    outcome = ledger.update(record.id, {"to_account_id": savings.id})

    assert outcome.status == OutcomeStatus.invalid
    assert ledger.records[record.id].to_account_id is None
    assert len(events) == 1


def test_update_rejects_unknown_fields():
    ledger, checking, _, _ = _ledger()
    record = ledger.add(_expense(checking.id)).value

    assert ledger.update(record.id, {"colour": "red"}).status == OutcomeStatus.invalid


def test_list_by_date_range_is_inclusive_and_ordered():
    ledger, checking, _, _ = _ledger()
    for day in (date(2024, 3, 20), date(2024, 3, 1), date(2024, 2, 28), date(2024, 3, 31)):
        ledger.add(_expense(checking.id, day=day))

    records = ledger.list_by_date_range(date(2024, 3, 1), date(2024, 3, 31))

    assert [r.date for r in records] == [date(2024, 3, 1), date(2024, 3, 20), date(2024, 3, 31)]


def test_list_filters_by_account_and_kind():
    ledger, checking, savings, _ = _ledger()
    ledger.add(_expense(checking.id))
    ledger.add(
        TransactionIn(
            amount_cents=1_000,
            kind=TransactionKind.income,
            category="Interest",
            account_id=savings.id,
            date=date(2024, 3, 2),
        )
    )

    incomes = ledger.list(TransactionFilters(kind=TransactionKind.income))
    on_checking = ledger.list(TransactionFilters(account_id=checking.id))

    assert [r.category for r in incomes] == ["Interest"]
    assert [r.category for r in on_checking] == ["Groceries"]
