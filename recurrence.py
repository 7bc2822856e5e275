from datetime import date, datetime
from itertools import islice
from typing import Iterator, Optional

from periods import add_interval, add_months, local_today
from schemas import RecurringRule, TransactionRecord


def occurrence_slots(rule: RecurringRule) -> Iterator[date]:
    """Yield every scheduled date of ``rule``, starting with the anchor.

    Each step is taken from the previous slot with the anchor's day of month,
    so clamping in a short month never shifts later slots. Stops after
    ``max_occurrences`` slots when the rule is capped.
    """
    anchor_day = rule.anchor_date.day
    current = rule.anchor_date
    produced = 0
    while rule.max_occurrences is None or produced < rule.max_occurrences:
        yield current
        produced += 1
        current = add_interval(current, rule.frequency, anchor_day=anchor_day)


def pending_slots(rule: RecurringRule) -> Iterator[date]:
    return islice(occurrence_slots(rule), rule.materialized_count, None)


def rebase_cursor(previous: RecurringRule, rule: RecurringRule) -> int:
    """Count the slots of ``rule`` already covered by what ``previous`` posted.

    A new slot counts as consumed when it falls before the next slot the old
    schedule still owed, or on or before its last slot once it was exhausted.
    """
    if previous.materialized_count == 0:
        return 0
    consumed = list(islice(occurrence_slots(previous), previous.materialized_count))
    if not consumed:
        return 0
    last = consumed[-1]
    following = next(pending_slots(previous), None)
    count = 0
    for slot in occurrence_slots(rule):
        if following is not None and slot >= following:
            break
        if following is None and slot > last:
            break
        count += 1
    return count


def due_occurrences(rule: RecurringRule, as_of: date) -> list[date]:
    if not rule.active:
        return []
    due: list[date] = []
    for slot in pending_slots(rule):
        if slot > as_of:
            break
        due.append(slot)
    return due


class OccurrencePreview:
    """Lazy, finite, restartable view of a rule's unmaterialized slots.

    Iterating twice yields the same dates; nothing is ever written to the
    ledger from here.
    """

    def __init__(self, rule: RecurringRule, horizon_end: date) -> None:
        self.rule = rule
        self.horizon_end = horizon_end

    def __iter__(self) -> Iterator[date]:
        if not self.rule.active:
            return
        for slot in pending_slots(self.rule):
            if slot > self.horizon_end:
                return
            yield slot

    def __repr__(self) -> str:
        return (
            f"OccurrencePreview(rule_id={self.rule.id!r}, "
            f"horizon_end={self.horizon_end.isoformat()})"
        )


def preview_future(
    rule: RecurringRule,
    horizon_months: int = 12,
    *,
    today: Optional[date] = None,
) -> OccurrencePreview:
    today = today or local_today()
    return OccurrencePreview(rule, add_months(today, horizon_months))


def build_occurrence(rule: RecurringRule, occurrence_date: date) -> TransactionRecord:
    now = datetime.utcnow()
    return TransactionRecord(
        amount_cents=rule.amount_cents,
        kind=rule.kind,
        category=rule.category,
        account_id=rule.account_id,
        to_account_id=rule.to_account_id,
        date=occurrence_date,
        note=rule.note,
        recurring_rule_id=rule.id,
        created_at=now,
        updated_at=now,
    )
