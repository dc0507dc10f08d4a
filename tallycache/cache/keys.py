"""Cache key construction and parsing.

Key names are stable: existing caches written by earlier releases are read
back with the same names.
"""

import re
from datetime import date
from typing import List, Optional, Tuple

from ..models.cache import CacheType
from ..models.sync import CompanyIdentity

CUSTOMERS_PREFIX = "ledgerlist-w-addrs"
ITEMS_PREFIX = "stockitems"
CHECKPOINT_PREFIX = "download_progress"
COMPLETE_SUFFIX = "complete"

_WINDOW_RE = re.compile(r"_(\d{4}-\d{2}-\d{2})_(\d{4}-\d{2}-\d{2})$")


def sales_base_key(identity: CompanyIdentity) -> str:
    return f"sales_{identity.location_id}_{identity.guid}"


def sales_window_key(identity: CompanyIdentity, start: date, end: date) -> str:
    return f"{sales_base_key(identity)}_{start.isoformat()}_{end.isoformat()}"


def sales_complete_key(identity: CompanyIdentity) -> str:
    return f"{sales_base_key(identity)}_{COMPLETE_SUFFIX}"


def customers_key(identity: CompanyIdentity) -> str:
    return f"{CUSTOMERS_PREFIX}_{identity.location_id}_{identity.company_name}"


def items_key(identity: CompanyIdentity) -> str:
    return f"{ITEMS_PREFIX}_{identity.location_id}_{identity.company_name}"


def dashboard_key(identity: CompanyIdentity, name: str) -> str:
    return f"dashboard_{identity.location_id}_{identity.guid}_{name}"


def checkpoint_key(identity: CompanyIdentity) -> str:
    return f"{CHECKPOINT_PREFIX}_{identity.location_id}_{identity.guid}"


def legacy_count_key(key: str) -> str:
    return f"{key}_chunks"


def legacy_fragment_key(key: str, index: int) -> str:
    return f"{key}_chunk_{index}"


_LEGACY_SUFFIX_RE = re.compile(r"_(chunks|chunk_\d+)$")


def legacy_base(key: str) -> str:
    """The primary key a legacy count marker or fragment belongs to."""
    return _LEGACY_SUFFIX_RE.sub("", key)


def parse_window(key: str) -> Optional[Tuple[date, date]]:
    """Extract the ``(start, end)`` window encoded at the end of a key."""
    match = _WINDOW_RE.search(key)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1)), date.fromisoformat(match.group(2))
    except ValueError:
        return None


def base_key(key: str) -> str:
    """Strip a trailing date window from a key."""
    return _WINDOW_RE.sub("", key)


def infer_type(key: str) -> CacheType:
    """Guess the dataset category from a key's prefix."""
    if key.startswith("sales_"):
        return CacheType.SALES
    if key.startswith("dashboard_"):
        return CacheType.DASHBOARD
    if key.startswith(CUSTOMERS_PREFIX + "_"):
        return CacheType.CUSTOMERS
    if key.startswith(ITEMS_PREFIX + "_"):
        return CacheType.ITEMS
    return CacheType.SESSION


def company_keys(identity: CompanyIdentity) -> List[str]:
    """Fixed (non-windowed) keys owned by one tenant."""
    return [checkpoint_key(identity), customers_key(identity), items_key(identity)]


def belongs_to_company(key: str, identity: CompanyIdentity) -> bool:
    loc, guid = identity.location_id, identity.guid
    if key.startswith(f"sales_{loc}_{guid}_") or key.startswith(f"dashboard_{loc}_{guid}_"):
        return True
    return key in company_keys(identity)
