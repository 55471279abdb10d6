"""
rpc_client.py — Resilient client for the PK simulation endpoint
================================================================
POSTs a compiled SimulationRequest and returns a validated SimulationResult.

Error classification
--------------------
  HTTP 503                        → SimulationUnavailable(kind="server")    retried, cap 10 s
  connection refused / timeout    → SimulationUnavailable(kind="network")   retried, cap 5 s
  missing CORS allow-origin       → SimulationUnavailable(kind="cross_origin") retried, cap 5 s
  other 4xx / 5xx                 → SimulationRejected                       never retried
  non-JSON or malformed body      → MalformedSimulationResponse              never retried

Cross-origin checks only apply when the client is constructed with an
`origin` (the browser-facing deployment); server-side callers leave it None.

Usage
-----
    async with SimulationClient() as client:
        result = await client.call(request, retries=7)
"""

import asyncio
import json
import logging
import ssl
from typing import Optional

import aiohttp
import certifi

from .errors import (
    KIND_CROSS_ORIGIN,
    KIND_NETWORK,
    KIND_SERVER,
    MalformedSimulationResponse,
    SimulationRejected,
    SimulationUnavailable,
)
from .models import SimulationRequest, SimulationResult
from .retry import RetryPolicy
from .settings import CONNECT_TIMEOUT, REQUEST_TIMEOUT, SIMULATION_URL

logger = logging.getLogger(__name__)


class SimulationClient:

    def __init__(
        self,
        url:            str = SIMULATION_URL,
        retry_policy:   Optional[RetryPolicy] = None,
        origin:         Optional[str] = None,
        result_cache=None,
    ):
        self.url          = url
        self.retry_policy = retry_policy or RetryPolicy()
        self.origin       = origin
        self.result_cache = result_cache
        self.session: Optional[aiohttp.ClientSession] = None
        self.ssl_context = self._create_ssl_context()

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context with certifi certificates."""
        try:
            ctx = ssl.create_default_context(cafile=certifi.where())
            logger.debug("✅ Using certifi CA certificates")
            return ctx
        except Exception as e:
            logger.warning(f"⚠️  Certifi failed: {e}")
            return ssl.create_default_context()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session with proper SSL and timeouts."""
        if self.session is None or self.session.closed:
            timeout   = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT)
            connector = aiohttp.TCPConnector(ssl=self.ssl_context)
            self.session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self.session

    async def close(self):
        """Close the aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def __aenter__(self) -> "SimulationClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Transport ─────────────────────────────────────────────────────────────

    def _origin_allowed(self, resp: aiohttp.ClientResponse) -> bool:
        """True when the response carries a usable Access-Control-Allow-Origin."""
        allowed = resp.headers.get("Access-Control-Allow-Origin")
        return allowed in ("*", self.origin)

    async def _post_once(self, request: SimulationRequest) -> SimulationResult:
        """Single POST, classified into the error kinds above."""
        session = await self._get_session()
        headers = {"Content-Type": "application/json"}
        if self.origin:
            headers["Origin"] = self.origin

        try:
            async with session.post(self.url, data=request.to_json(), headers=headers) as resp:
                logger.debug(f"Simulation response: HTTP {resp.status} ({request.model_name})")
                if self.origin and not self._origin_allowed(resp):
                    raise SimulationUnavailable(KIND_CROSS_ORIGIN, 1)
                if resp.status == 503:
                    raise SimulationUnavailable(KIND_SERVER, 1)
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    logger.error(f"❌ Simulation rejected (HTTP {resp.status}) for model {request.model_name}")
                    raise SimulationRejected(resp.status, body)
                try:
                    payload = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
                    raise MalformedSimulationResponse(f"Response is not JSON: {e}") from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise SimulationUnavailable(KIND_NETWORK, 1, cause=e) from e

        return SimulationResult.from_payload(payload)

    # ── Public API ────────────────────────────────────────────────────────────

    async def call(
        self,
        request:    SimulationRequest,
        retries:    Optional[int] = None,
        persist:    bool = False,
        result_cache=None,
    ) -> SimulationResult:
        """
        Run one simulation under the retry policy. `retries` overrides the
        policy's attempt count (batch probes use fewer attempts than the
        initial single-shot call; 0 is clamped to one attempt). With
        `persist=True` the result is handed to `result_cache`, or the
        client's own cache when none is passed, as the canonical result for
        the patient + drug.
        """
        policy = self.retry_policy.with_attempts(retries) if retries is not None else self.retry_policy
        label = f"simulate {request.drug_name} {request.amount_after}mg q{request.tau_after}h"
        result = await policy.run(lambda: self._post_once(request), label=label)

        if persist:
            target = result_cache if result_cache is not None else self.result_cache
            if target is None:
                logger.warning("⚠️  persist requested but no result cache configured")
            else:
                target.persist_canonical(request, result)
        return result
