"""
Business rules applied to the applicant record before it is drawn.

resolve() fills derived fields (apply date, auto-pay summary) and clears values
that must not leak onto the form, e.g. a stale MVNO name or bank details when
the applicant pays by card.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

CARD_FIELDS = ("card_company", "card_number", "card_exp_year", "card_exp_month", "card_name")
BANK_FIELDS = ("bank_name", "bank_account")


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_apply_date(now: datetime) -> str:
    return f"신청일자 {now.year}년 {now.month}월 {now.day:02d}일"


def _clear(record: dict, keys: tuple[str, ...]) -> None:
    for key in keys:
        record[key] = ""


def normalize_autopay(record: dict) -> dict:
    """Keep exactly one of the card or bank field sets and fill the autopay_* summary."""
    method = as_text(record.get("autopay_method")).lower()

    if method == "card":
        yy = as_text(record.get("card_exp_year"))[-2:]
        mm = as_text(record.get("card_exp_month"))
        if yy and mm:
            record["autopay_exp"] = f"{yy}/{mm.zfill(2)}"
        _clear(record, BANK_FIELDS)
    elif method == "bank":
        _clear(record, CARD_FIELDS)
        record["autopay_exp"] = record.get("autopay_exp") or ""
    elif as_text(record.get("autopay_exp")).strip():
        _clear(record, BANK_FIELDS)
    else:
        _clear(record, CARD_FIELDS)

    if not record.get("autopay_org"):
        if method == "card":
            record["autopay_org"] = record.get("card_company") or ""
        else:
            record["autopay_org"] = record.get("bank_name") or record.get("card_company") or ""
    if not record.get("autopay_number"):
        if method == "card":
            record["autopay_number"] = record.get("card_number") or ""
        else:
            record["autopay_number"] = record.get("bank_account") or record.get("card_number") or ""
    if not record.get("autopay_holder"):
        record["autopay_holder"] = record.get("card_name") or record.get("holder") or ""
    return record


def resolve(record: dict, now: Optional[datetime] = None) -> dict:
    """Fill derived fields on ``record`` in place and return it."""
    if not record.get("apply_date"):
        record["apply_date"] = format_apply_date(now or datetime.now())
    if as_text(record.get("prev_carrier")).upper() != "MVNO":
        record["mvno_name"] = ""
    return normalize_autopay(record)


def split_compound_key(compound: str) -> tuple[str, str]:
    sep = "." if "." in compound else ":"
    field, _, expected = compound.partition(sep)
    return field, expected


def checkbox_matches(compound: str, record: dict) -> bool:
    """True when ``record`` selects the option named by ``field.expected``."""
    field, expected = split_compound_key(compound)
    value = record.get(field)
    if isinstance(value, bool):
        return value and expected.lower() == "true"
    if isinstance(value, str):
        return value.lower() == expected.lower()
    if value is None:
        return False
    return as_text(value) == expected


def record_from_payload(payload: Any) -> dict:
    """Return a fresh applicant record from ``{"data": {...}}`` or a flat field map.

    ``data`` may itself be a JSON string, as sent by urlencoded form posts.
    """
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if isinstance(data, str) and data.strip():
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            data = None
    if isinstance(data, dict):
        return dict(data)
    return {k: v for k, v in payload.items() if k not in ("data", "debug")}
