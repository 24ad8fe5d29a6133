"""Async client for the WSDOT ferries REST APIs (schedule, vessels, terminals)."""
from __future__ import annotations

import os
import re
from datetime import date
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "https://www.wsdot.wa.gov/ferries/api"
FAMILIES = ("schedule", "vessels", "terminals")

WSF_HTTP_TIMEOUT = httpx.Timeout(20.0, connect=5.0)
WSF_HTTP_LIMITS = httpx.Limits(max_keepalive_connections=10, max_connections=20)

_WSF_DATE_RE = re.compile(r"/Date\((-?\d+)([-+]\d{4})?\)/")


class WSFFetchError(RuntimeError):
    """Transient upstream failure: network, HTTP status or payload shape."""


def parse_wsf_date(value: Optional[str]) -> Optional[int]:
    """Epoch seconds from WSF's ``/Date(ms±hhmm)/`` format.

    The millisecond count is already UTC; the offset only says which zone
    the server rendered it in, so it is ignored.
    """
    if not value or not isinstance(value, str):
        return None
    match = _WSF_DATE_RE.search(value)
    if not match:
        return None
    return int(match.group(1)) // 1000


class WSFClient:
    """Stateless wrapper over the three WSF REST families.

    Every request carries the ``apiaccesscode`` credential. Nothing is cached
    here; callers decide what to keep and when to retry.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client

    @classmethod
    def from_env(cls) -> "WSFClient":
        """Build a ``WSFClient`` from ``WSDOT_API_KEY`` and optional ``WSF_API_BASE``."""
        api_key = (os.getenv("WSDOT_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("Missing required environment variables: WSDOT_API_KEY")
        base_url = (os.getenv("WSF_API_BASE") or "").strip() or DEFAULT_API_BASE
        return cls(api_key=api_key, base_url=base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=WSF_HTTP_TIMEOUT, limits=WSF_HTTP_LIMITS)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, family: str, *parts: Any) -> str:
        path = "/".join(str(p) for p in parts)
        return f"{self._base_url}/{family}/rest/{path}"

    async def _get_json(self, url: str) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.get(
                url,
                params={"apiaccesscode": self._api_key},
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise WSFFetchError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise WSFFetchError(f"GET {url} returned invalid JSON: {exc}") from exc

    async def _get_list(self, url: str) -> List[Dict[str, Any]]:
        data = await self._get_json(url)
        if not isinstance(data, list):
            raise WSFFetchError(f"GET {url} returned {type(data).__name__}, expected list")
        return data

    async def check_flush(self, family: str) -> Optional[int]:
        """Cache flush date of ``family`` in epoch seconds.

        Returns ``None`` when the endpoint fails or answers with something
        unparseable, which callers treat as "changed".
        """
        if family not in FAMILIES:
            raise ValueError(f"unknown WSF family: {family}")
        try:
            data = await self._get_json(self._url(family, "cacheflushdate"))
        except WSFFetchError as exc:
            print(f"[wsf] {family} cacheflushdate unavailable: {exc}")
            return None
        return parse_wsf_date(data)

    async def fetch_vessels_verbose(self) -> List[Dict[str, Any]]:
        return await self._get_list(self._url("vessels", "vesselverbose"))

    async def fetch_vessel_locations(self) -> List[Dict[str, Any]]:
        return await self._get_list(self._url("vessels", "vessellocations"))

    async def fetch_terminals_and_mates(self, trip_date: date) -> List[Dict[str, Any]]:
        return await self._get_list(
            self._url("schedule", "terminalsandmates", trip_date.isoformat())
        )

    async def fetch_schedule_today(self, departing_id: int, arriving_id: int) -> List[Dict[str, Any]]:
        """Today's sailings for one terminal pair (the first ``TerminalCombos`` entry)."""
        url = self._url("schedule", "scheduletoday", departing_id, arriving_id, "false")
        data = await self._get_json(url)
        combos = data.get("TerminalCombos") if isinstance(data, dict) else None
        if not isinstance(combos, list):
            raise WSFFetchError(f"GET {url} returned no TerminalCombos")
        if not combos:
            return []
        times = combos[0].get("Times") or []
        if not isinstance(times, list):
            raise WSFFetchError(f"GET {url} returned malformed Times")
        return times

    async def fetch_route_details(
        self, trip_date: date, departing_id: int, arriving_id: int
    ) -> Optional[Dict[str, Any]]:
        url = self._url("schedule", "routedetails", trip_date.isoformat(), departing_id, arriving_id)
        routes = await self._get_list(url)
        return routes[0] if routes else None

    async def fetch_terminals_verbose(self) -> List[Dict[str, Any]]:
        return await self._get_list(self._url("terminals", "terminalverbose"))

    async def fetch_terminal_sailing_space(self) -> List[Dict[str, Any]]:
        return await self._get_list(self._url("terminals", "terminalsailingspace"))
