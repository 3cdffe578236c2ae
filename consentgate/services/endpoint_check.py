from __future__ import annotations

from dataclasses import dataclass
import time

import httpx

from consentgate.core.config import get_settings
from consentgate.core.errors import ValidationError
from consentgate.domain.models import Proxy
from consentgate.domain.proxy_status import ProxyStatus
from consentgate.services.telemetry import record_external_call


@dataclass(frozen=True)
class EndpointCheckResult:
    url: str
    ok: bool
    status_code: int | None
    latency_ms: float
    error: str | None


async def verify_endpoint(
    proxy: Proxy,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EndpointCheckResult:
    # Probe the distribution with a HEAD request; failures are reported, never raised.
    if proxy.status != ProxyStatus.CREATE_COMPLETE.value or not proxy.endpoint_url:
        raise ValidationError(
            "PROXY_NOT_READY",
            "Proxy endpoint is not available until provisioning completes",
            {"status": proxy.status},
        )
    settings = get_settings()
    url = proxy.endpoint_url
    timeout = settings.endpoint_check_timeout_ms / 1000.0
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = await client.head(url)
    except httpx.HTTPError as exc:
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration="endpoint.verify", latency_ms=latency_ms, success=False)
        return EndpointCheckResult(
            url=url,
            ok=False,
            status_code=None,
            latency_ms=latency_ms,
            error=f"{exc.__class__.__name__}: {exc}",
        )
    latency_ms = (time.monotonic() - start) * 1000.0
    ok = response.status_code < 400
    record_external_call(integration="endpoint.verify", latency_ms=latency_ms, success=ok)
    return EndpointCheckResult(
        url=url,
        ok=ok,
        status_code=response.status_code,
        latency_ms=latency_ms,
        error=None if ok else f"HTTP {response.status_code}",
    )
