import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import Expense


FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
SHELL_LIKE = re.compile(r"^(?:cmd|powershell|bash|sh)\b|^https?://", re.IGNORECASE)


def sanitize_csv_value(value: str) -> str:
    """Neutralise cells a spreadsheet would evaluate by prefixing them with a tab."""
    cell = (value or "").strip()
    if cell.startswith(FORMULA_PREFIXES) or SHELL_LIKE.match(cell):
        return "\t" + cell
    return cell


def parse_amount(value: str) -> Decimal:
    """Parse a user-typed amount such as ``12.50``, ``12,50`` or ``$1 200.00``."""
    clean = value.strip().replace("$", "").replace("€", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    if not clean:
        raise ValueError("Amount is required")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    return amount


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Category", "Amount", "Comments"])
    for expense in expenses:
        writer.writerow(
            [
                expense.created_at.date().isoformat(),
                sanitize_csv_value(expense.category),
                f"{expense.amount:.2f}",
                sanitize_csv_value(expense.comments or ""),
            ]
        )
    return output.getvalue()
