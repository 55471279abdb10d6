"""
prober.py — One candidate regimen → one ProbeResult
====================================================
Compiles the record with {amount, tau} overrides, runs the simulation and
judges the target metric against the band. Simulation failures become
ProbeResult(result=None, in_range=False); validation errors propagate since
they would fail every candidate the same way.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .errors import MissingClinicalData, SimulationError
from .models import ClinicalRecord, ProbeResult, TargetBand
from .request_compiler import RequestCompiler
from .rpc_client import SimulationClient

logger = logging.getLogger(__name__)


class CancellationToken:
    """Set when the owning scenario is closed; checked before each probe."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError once the token is cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError()


class DoseProber:

    def __init__(
        self,
        compiler:   RequestCompiler,
        client:     SimulationClient,
        record:     ClinicalRecord,
        band:       Optional[TargetBand],
        now:        Optional[datetime] = None,
    ):
        self.compiler = compiler
        self.client   = client
        self.record   = record
        self.band     = band
        self.now      = now

    async def probe(
        self,
        dose:       float,
        interval:   Optional[float] = None,
        attempts:   Optional[int] = None,
        token:      Optional[CancellationToken] = None,
    ) -> ProbeResult:
        if token is not None:
            token.raise_if_cancelled()

        overrides = {"amount": dose}
        if interval is not None:
            overrides["tau"] = interval
        request = self.compiler.compile(self.record, overrides, now=self.now)
        if request is None:
            raise MissingClinicalData("Patient or active prescription missing")

        try:
            result = await self.client.call(request, retries=attempts)
        except SimulationError as e:
            logger.warning(f"⚠️  Probe {dose}mg q{request.tau_after}h failed: {e}")
            return ProbeResult(dose=dose, interval=request.tau_after, result=None, in_range=False)

        if token is not None:
            token.raise_if_cancelled()

        if self.band is None:
            value, in_range = None, False
        else:
            value = result.metric(self.band.metric, tau=request.tau_after)
            in_range = self.band.contains(value)
        logger.debug(f"Probe {dose}mg q{request.tau_after}h → {value} in_range={in_range}")
        return ProbeResult(
            dose=dose,
            interval=request.tau_after,
            result=result,
            in_range=in_range,
            value=value,
        )
