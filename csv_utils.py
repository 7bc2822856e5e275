import csv
import re
from io import StringIO
from typing import Callable, Sequence

from schemas import TransactionRecord


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_transactions(
    transactions: Sequence[TransactionRecord],
    account_name: Callable[[str], str] = lambda account_id: account_id or "",
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Kind", "Amount", "Category", "Account", "To Account", "Note"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.kind.value,
                format_amount(txn.amount_cents),
                sanitize_csv_value(txn.category),
                sanitize_csv_value(account_name(txn.account_id)),
                sanitize_csv_value(account_name(txn.to_account_id) if txn.to_account_id else ""),
                sanitize_csv_value(txn.note or ""),
            ]
        )
    return output.getvalue()
