from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any

import httpx

from app.services.errors import RegistryUnavailableError
from app.services.parcel_registry import BuildingUnit, ParcelRecord
from app.services.unit_normalizer import compact_address_key, normalize_address, normalize_dong, normalize_ho

logger = logging.getLogger(__name__)

PNU_RE = re.compile(r"^\d{19}$")
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _norm_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any) -> float | None:
    text = (_norm_text(value) or "").replace(",", "")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class GisRegistryConfig:
    endpoint_url: str
    service_key: str | None
    timeout_sec: float = 5.0
    max_retries: int = 2
    cache_ttl_sec: int = 600
    requests_per_sec: float = 5.0


class GisRegistryClient:
    """Looks parcels up in the public land registry by lot address."""

    def __init__(self, config: GisRegistryConfig, transport: httpx.BaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[float, ParcelRecord | None]] = {}
        self._next_allowed_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.config.endpoint_url)

    def lookup_parcel(self, address: str) -> ParcelRecord | None:
        address_text = normalize_address(address)
        if not address_text:
            return None
        if not self.is_configured():
            raise RegistryUnavailableError("parcel registry endpoint is not configured")

        cache_key = compact_address_key(address_text)
        now = time.time()
        with self._lock:
            hit = self._cache.get(cache_key)
            if hit and hit[0] > now:
                return hit[1]

        parcel = self._lookup_with_retry(address_text)
        with self._lock:
            self._cache[cache_key] = (time.time() + max(1, self.config.cache_ttl_sec), parcel)
        return parcel

    def _lookup_with_retry(self, address: str) -> ParcelRecord | None:
        attempts = max(1, self.config.max_retries + 1)
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                return self._lookup_once(address)
            except (httpx.HTTPError, ValueError) as exc:
                last_exc = exc
                if attempt + 1 >= attempts or not self._is_retryable(exc):
                    break
                time.sleep(min(2.0, 0.35 * (2**attempt)))
        logger.warning("gis_registry_unavailable address=%s error=%s", address, last_exc)
        raise RegistryUnavailableError(f"parcel registry lookup failed: {last_exc}") from last_exc

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in RETRYABLE_STATUS
        return isinstance(exc, httpx.TransportError)

    def _lookup_once(self, address: str) -> ParcelRecord | None:
        self._wait_for_rate_limit()
        params = {"address": address, "format": "json"}
        if self.config.service_key:
            params["serviceKey"] = self.config.service_key
        with httpx.Client(timeout=self.config.timeout_sec, transport=self._transport) as client:
            resp = client.get(self.config.endpoint_url, params=params)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return self._parse_parcel(resp.json())

    def _wait_for_rate_limit(self) -> None:
        min_interval = 1.0 / max(self.config.requests_per_sec, 0.1)
        with self._lock:
            now = time.monotonic()
            wait_for = max(0.0, self._next_allowed_at - now)
            self._next_allowed_at = max(now, self._next_allowed_at) + min_interval
        if wait_for > 0:
            time.sleep(wait_for)

    def _parse_parcel(self, payload: Any) -> ParcelRecord | None:
        item = self._extract_item(payload)
        if not item:
            return None
        pnu = _norm_text(item.get("pnu"))
        if not pnu or not PNU_RE.match(pnu):
            return None

        units = []
        for raw in item.get("units") or []:
            if not isinstance(raw, dict) or not _norm_text(raw.get("id")):
                continue
            units.append(
                BuildingUnit(
                    id=str(raw["id"]),
                    pnu=pnu,
                    dong=normalize_dong(raw.get("dong")),
                    ho=normalize_ho(raw.get("ho")),
                    building_name=_norm_text(raw.get("buildingName") or raw.get("building_name")),
                )
            )

        owner_count = _number(item.get("ownerCount") or item.get("owner_count"))
        return ParcelRecord(
            pnu=pnu,
            address=normalize_address(item.get("address")) or "",
            area=_number(item.get("area")),
            official_price=_number(item.get("officialPrice") or item.get("official_price")),
            owner_count=int(owner_count) if owner_count is not None else None,
            units=tuple(units),
        )

    @staticmethod
    def _extract_item(payload: Any) -> dict[str, Any] | None:
        if not isinstance(payload, dict):
            return None

        if "success" in payload:
            if not payload.get("success"):
                return None
            data = payload.get("data")
            return data if isinstance(data, dict) else None

        header = payload.get("response", {}).get("header", {})
        if isinstance(header, dict):
            result_code = _norm_text(header.get("resultCode"))
            if result_code and result_code not in {"00", "INFO-00"}:
                result_msg = _norm_text(header.get("resultMsg")) or ""
                raise ValueError(f"registry response error: {result_code} {result_msg}".strip())

        cur: Any = payload
        for key in ("response", "body", "items"):
            if isinstance(cur, dict) and key in cur:
                cur = cur[key]
        if isinstance(cur, dict) and "item" in cur:
            cur = cur["item"]
        if isinstance(cur, list):
            cur = next((x for x in cur if isinstance(x, dict)), None)
        return cur if isinstance(cur, dict) else None
