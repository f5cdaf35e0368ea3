"""Normalisation of free-form model output into a strict receipt.

The extraction prompt asks the model for a JSON object shaped like::

    {
      "merchant": {"name", "address", "contact"},
      "transaction": {"date", "receipt_number", "payment_method"},
      "items": [{"name", "quantity", "unit_price", "total_price"}],
      "totals": {"subtotal", "tax", "total", "currency"}
    }

but nothing guarantees compliance: replies arrive wrapped in Markdown
fences, surrounded by prose, with missing sections, numbers as strings
or camelCase keys from older prompt versions.  ``normalize`` turns any
such reply into a ``NormalizedReceipt`` or returns a
``NormalizationError`` when no JSON object can be recovered at all.

Every field is coerced on its own by a small typed helper, so a bad
value only ever degrades that field to its default.  The module is pure:
no I/O, no clock, no randomness.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Union

from receipt_scanner.models.schemas import LineItem, NormalizedReceipt

_OPEN_FENCE = re.compile(r"^```[A-Za-z0-9_+.-]*[ \t]*(?:\r?\n)?")
_CLOSE_FENCE = re.compile(r"(?:\r?\n)?[ \t]*```$")
_AMOUNT_TOKEN = re.compile(r"-?\d[\d,]*(?:\.\d+)?")

EXCERPT_LENGTH = 200


@dataclass(frozen=True)
class NormalizationError:
    """Failure variant of ``normalize``: no JSON object could be recovered."""

    reason: str
    excerpt: str = ""
    kind: str = "malformed_output"


NormalizationResult = Union[NormalizedReceipt, NormalizationError]


# ---------------------------------------------------------------------------
# Text recovery


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence (with optional language tag)."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _OPEN_FENCE.sub("", cleaned, count=1)
        cleaned = _CLOSE_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def _parse_object(text: str) -> Optional[dict]:
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def _outermost_braces(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def parse_model_output(raw_text: str) -> Optional[dict]:
    """Recover the JSON object from a model reply, or ``None``.

    Tried in order: the fence-stripped text as a whole, then the span
    between the first ``{`` and the last ``}``.
    """
    cleaned = strip_code_fences(raw_text)
    parsed = _parse_object(cleaned)
    if parsed is not None:
        return parsed
    candidate = _outermost_braces(cleaned)
    if candidate is None:
        return None
    return _parse_object(candidate)


# ---------------------------------------------------------------------------
# Field coercion


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first key present with a non-null value."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def as_text(value: Any) -> str:
    """Coerce to a stripped string; containers and null become ``""``."""
    if isinstance(value, str):
        return value.strip()
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        return str(int(value)) if value.is_integer() else str(value)
    return ""


def as_amount(value: Any) -> float:
    """Coerce to a finite, non-negative float; anything else becomes 0.

    Strings are parsed as plain numbers first (``"1e3"`` is 1000).  Failing
    that they may carry currency symbols, codes and thousands separators
    (``"$1,234.50"``, ``"12.00 EUR"``) around exactly one number; text with
    several numbers in it is ambiguous and becomes 0.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            tokens = _AMOUNT_TOKEN.findall(value)
            if len(tokens) != 1:
                return 0.0
            number = float(tokens[0].replace(",", ""))
    else:
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def coerce_item(raw: Any) -> Optional[LineItem]:
    """Coerce one entry of ``items``; non-object entries are dropped."""
    if not isinstance(raw, Mapping):
        return None
    return LineItem(
        name=as_text(_first(raw, "name", "description")),
        quantity=as_amount(_first(raw, "quantity", "qty")),
        unit_price=as_amount(_first(raw, "unit_price", "unitPrice")),
        total_price=as_amount(_first(raw, "total_price", "totalPrice")),
    )


def coerce_items(raw: Any) -> List[LineItem]:
    if not isinstance(raw, list):
        return []
    items: Iterable[Optional[LineItem]] = (coerce_item(entry) for entry in raw)
    return [item for item in items if item is not None]


def _format_amount(amount: float) -> str:
    return f"{amount:.2f}"


def build_summary(merchant_name: str, transaction_date: str, amount: float, currency: str) -> str:
    """Human-readable one-liner, e.g. ``"Acme on 2024-03-01 — total 42.50 USD"``.

    Empty parts are left out rather than rendered as placeholders.
    """
    head = merchant_name
    if transaction_date:
        head = f"{head} on {transaction_date}" if head else f"on {transaction_date}"
    tail = " ".join(part for part in ("total", _format_amount(amount), currency) if part)
    return f"{head} — {tail}" if head else tail


def _transaction_amount(total: float, subtotal: float, tax: float, items: List[LineItem]) -> float:
    if total > 0:
        return total
    if subtotal > 0:
        return round(subtotal + tax, 2)
    return round(sum(item.total_price for item in items), 2)


def coerce_receipt(data: Mapping[str, Any]) -> NormalizedReceipt:
    """Build a ``NormalizedReceipt`` from an already-parsed object."""
    merchant_raw = data.get("merchant")
    merchant = {"name": merchant_raw} if isinstance(merchant_raw, str) else _as_mapping(merchant_raw)
    transaction = _as_mapping(data.get("transaction"))
    totals = _as_mapping(data.get("totals"))

    merchant_name = as_text(merchant.get("name"))
    transaction_date = as_text(transaction.get("date"))
    items = coerce_items(data.get("items"))
    subtotal = as_amount(totals.get("subtotal"))
    tax = as_amount(totals.get("tax"))
    amount = _transaction_amount(as_amount(totals.get("total")), subtotal, tax, items)
    currency = as_text(totals.get("currency")).upper()

    summary = as_text(_first(data, "summary", "receipt_summary", "receiptSummary"))
    if not summary:
        summary = build_summary(merchant_name, transaction_date, amount, currency)

    return NormalizedReceipt(
        merchant_name=merchant_name,
        merchant_address=as_text(merchant.get("address")),
        merchant_contact=as_text(merchant.get("contact")),
        transaction_date=transaction_date,
        receipt_number=as_text(_first(transaction, "receipt_number", "receiptNumber")),
        payment_method=as_text(_first(transaction, "payment_method", "paymentMethod")),
        items=items,
        subtotal=subtotal,
        tax=tax,
        transaction_amount=amount,
        currency=currency,
        summary=summary,
        display_name=as_text(_first(data, "file_display_name", "fileDisplayName", "display_name")),
    )


def normalize(raw: Union[str, bytes, Mapping[str, Any], None]) -> NormalizationResult:
    """Normalise raw model output (text or an already-decoded object).

    Never raises on shape problems: the result is either a
    ``NormalizedReceipt`` or a ``NormalizationError``.
    """
    if isinstance(raw, Mapping):
        return coerce_receipt(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return NormalizationError(reason=f"unsupported model output type: {type(raw).__name__}")
    data = parse_model_output(raw)
    if data is None:
        return NormalizationError(
            reason="model output did not contain a JSON object",
            excerpt=raw.strip()[:EXCERPT_LENGTH],
        )
    return coerce_receipt(data)


__all__ = [
    "NormalizationError",
    "NormalizationResult",
    "normalize",
    "parse_model_output",
    "strip_code_fences",
    "coerce_receipt",
    "build_summary",
]
