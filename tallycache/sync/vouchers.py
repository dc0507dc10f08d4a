"""Voucher field access, watermarks and update merging.

The service is not consistent about field names across Tally versions, so
each field is read from the first alias present.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

MASTER_ID_FIELDS = ("mstid", "MSTID", "masterid", "MASTERID")
ALTER_ID_FIELDS = ("alterid", "ALTERID")
VOUCHER_NO_FIELDS = ("voucher_number", "VCHNO", "vchno")
DATE_FIELDS = ("cp_date", "DATE", "date", "CP_DATE")
AMOUNT_FIELDS = ("amount", "AMT", "amt")


def _first(voucher: Dict[str, Any], fields) -> Any:
    for field in fields:
        value = voucher.get(field)
        if value not in (None, "", 0):
            return value
    return None


def alter_id(voucher: Dict[str, Any]) -> Optional[int]:
    """The voucher's alteration id as an int, or None when absent or not numeric."""
    value = _first(voucher, ALTER_ID_FIELDS)
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def max_alter_id(vouchers: Iterable[Dict[str, Any]], current: Optional[int] = None) -> Optional[int]:
    """Highest alteration id across ``vouchers`` and ``current``."""
    best = current
    for voucher in vouchers:
        value = alter_id(voucher)
        if value is not None and (best is None or value > best):
            best = value
    return best


def voucher_identity(voucher: Dict[str, Any]) -> str:
    """Deduplication key: master+alter id, else number+date, else master id."""
    master = _first(voucher, MASTER_ID_FIELDS)
    alter = _first(voucher, ALTER_ID_FIELDS)
    if master is not None and alter is not None:
        return f"{master}_{alter}"

    number = _first(voucher, VOUCHER_NO_FIELDS)
    day = _first(voucher, DATE_FIELDS)
    if number is not None and day is not None:
        return f"{number}_{day}"

    if master is not None:
        return str(master)

    return json.dumps(
        {"vchno": number, "date": day, "amount": _first(voucher, AMOUNT_FIELDS)},
        sort_keys=True,
        default=str,
    )


def merge_vouchers(existing: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Append incoming vouchers not already present in ``existing``.

    Existing vouchers are always kept; an update never loses data.
    """
    seen = {voucher_identity(v) for v in existing}
    merged = list(existing)
    for voucher in incoming:
        identity = voucher_identity(voucher)
        if identity not in seen:
            seen.add(identity)
            merged.append(voucher)
    return merged
