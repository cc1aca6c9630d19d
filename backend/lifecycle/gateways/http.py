"""
Shared httpx plumbing for the provider adapters.

Transport failures (timeouts, connection resets) mean the outcome is unknown,
so they surface as GatewayError and the calling step retries. HTTP error
statuses are returned to the adapter, which maps them to False / None.
"""

import logging
from datetime import date, datetime, timezone as dt_timezone
from typing import Optional

import httpx
from django.conf import settings
from django.utils.dateparse import parse_date, parse_datetime

from ..exceptions import GatewayError

logger = logging.getLogger(__name__)


def build_client(base_url: str, transport: Optional[httpx.BaseTransport] = None, **kwargs) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        timeout=getattr(settings, "GATEWAY_TIMEOUT_SECONDS", 30.0),
        transport=transport,
        **kwargs,
    )


def send(client: httpx.Client, method: str, url: str, provider: str, **kwargs) -> httpx.Response:
    try:
        return client.request(method, url, **kwargs)
    except httpx.TransportError as exc:
        logger.warning("[Gateway][%s] %s %s transport failure: %s", provider, method, url, exc)
        raise GatewayError(
            message=f"{provider} request failed: {exc}",
            code="GATEWAY_TRANSPORT_ERROR",
            detail={"provider": provider, "method": method, "url": url},
        ) from exc


def log_failure(provider: str, action: str, response: httpx.Response, **context) -> None:
    logger.error(
        "[Gateway][%s] %s failed: status=%s body=%s context=%s",
        provider, action, response.status_code, response.text[:500], context,
    )


def from_timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


def from_iso(value) -> Optional[datetime]:
    """ISO datetime or bare date (taken as midnight UTC)."""
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt_timezone.utc)
        return parsed
    day = parse_date(value)
    if day is None:
        return None
    return datetime.combine(day, datetime.min.time(), tzinfo=dt_timezone.utc)


def to_timestamp(value: datetime | date) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(datetime.combine(value, datetime.min.time(), tzinfo=dt_timezone.utc).timestamp())
