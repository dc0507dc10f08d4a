"""Dataset fetchers on top of the HTTP client.

``SalesFetcher`` knows the request and response shapes of the data service;
it does not store anything.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import BadResponseError
from ..models.sync import CompanyIdentity
from .client import CONNECTIONS_PATH, LEDGERS_PATH, SALES_EXTRACT_PATH, STOCK_ITEMS_PATH, TallyApiClient
from .windows import DateWindow, format_api_date, parse_books_from

logger = logging.getLogger(__name__)


class ExtractResult(BaseModel):
    """Vouchers returned by one sales extract request."""

    vouchers: List[Dict[str, Any]] = Field(default_factory=list)
    needs_slice: bool = False


def _needs_slice(response: Dict[str, Any]) -> bool:
    """The server asks for the range to be fetched in chunks instead."""
    if response.get("frontendslice") == "Yes":
        return True
    for field in ("message", "error"):
        value = response.get(field)
        if isinstance(value, str) and "slice" in value.lower():
            return True
    return False


class SalesFetcher:
    """Builds requests for sales extracts and master lists."""

    def __init__(self, client: TallyApiClient, voucher_type: Optional[str] = None):
        self.client = client
        self.voucher_type = voucher_type

    def build_payload(
        self,
        identity: CompanyIdentity,
        from_date: date,
        to_date: date,
        last_alter_id: Optional[int] = None,
        serverslice: bool = False,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tallyloc_id": identity.location_id,
            "company": identity.company_name,
            "guid": identity.guid,
            "fromdate": format_api_date(from_date),
            "todate": format_api_date(to_date),
            "serverslice": "Yes" if serverslice else "No",
        }
        if self.voucher_type:
            payload["vouchertype"] = self.voucher_type
        if last_alter_id is not None:
            payload["lastaltid"] = last_alter_id
        return payload

    def _company_payload(self, identity: CompanyIdentity) -> Dict[str, Any]:
        return {
            "tallyloc_id": identity.location_id,
            "company": identity.company_name,
            "guid": identity.guid,
        }

    @staticmethod
    def _list_field(response: Any, field: str, path: str) -> List[Dict[str, Any]]:
        if not isinstance(response, dict):
            raise BadResponseError(f"Expected a JSON object from {path}")
        value = response.get(field)
        if value is None:
            return []
        if not isinstance(value, list):
            raise BadResponseError(f"Field '{field}' from {path} is not a list")
        return value

    async def fetch_window(
        self,
        identity: CompanyIdentity,
        window: DateWindow,
        last_alter_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch the vouchers of one chunk."""
        payload = self.build_payload(identity, window.start, window.end, last_alter_id)
        response = await self.client.post(SALES_EXTRACT_PATH, payload)
        vouchers = self._list_field(response, "vouchers", SALES_EXTRACT_PATH)
        logger.debug("Window %d (%s) returned %d vouchers", window.index, window.label, len(vouchers))
        return vouchers

    async def fetch_updates(
        self,
        identity: CompanyIdentity,
        from_date: date,
        to_date: date,
        last_alter_id: int,
    ) -> ExtractResult:
        """Fetch records altered after ``last_alter_id`` in one server-sliced request."""
        payload = self.build_payload(identity, from_date, to_date, last_alter_id, serverslice=True)
        response = await self.client.post(SALES_EXTRACT_PATH, payload)
        if isinstance(response, dict) and _needs_slice(response):
            logger.info("Server asked to slice the update for %s", identity)
            return ExtractResult(needs_slice=True)
        return ExtractResult(vouchers=self._list_field(response, "vouchers", SALES_EXTRACT_PATH))

    async def fetch_customers(self, identity: CompanyIdentity) -> List[Dict[str, Any]]:
        response = await self.client.post(LEDGERS_PATH, self._company_payload(identity))
        return self._list_field(response, "ledgers", LEDGERS_PATH)

    async def fetch_items(self, identity: CompanyIdentity) -> List[Dict[str, Any]]:
        response = await self.client.post(STOCK_ITEMS_PATH, self._company_payload(identity))
        return self._list_field(response, "stockItems", STOCK_ITEMS_PATH)

    async def fetch_books_from(self, identity: CompanyIdentity) -> Optional[date]:
        """Look up the company's first accounting date from the user's connections."""
        response = await self.client.get(CONNECTIONS_PATH)
        if isinstance(response, list):
            connections = response
        elif isinstance(response, dict):
            connections = list(response.get("createdByMe") or []) + list(response.get("sharedWithMe") or [])
        else:
            raise BadResponseError(f"Unexpected response from {CONNECTIONS_PATH}")

        for connection in connections:
            if isinstance(connection, dict) and connection.get("guid") == identity.guid:
                raw = connection.get("booksfrom")
                if raw:
                    try:
                        return parse_books_from(raw)
                    except ValueError as e:
                        raise BadResponseError(f"Unreadable booksfrom date {raw!r}: {e}")
        return None
