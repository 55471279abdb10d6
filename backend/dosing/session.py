"""
session.py — Per patient + drug dosing session
===============================================
Owns the scenario registry and wires compiler → client → prober → search
controller → result cache → history for one ClinicalRecord.

API
---
    session = DosingSession(record, client, history=history)
    await session.run_baseline()                    # canonical call, persisted
    scenario = session.open_scenario(ScenarioKind.DOSE)
    suggestions = await session.compute(scenario.id)
    probe = await session.evaluate_selection(scenario.id, 400)
    await session.close_scenario(scenario.id)

`trigger()` schedules `compute()` behind a 250 ms debounce so repeated
triggers of a scenario's initial computation coalesce into one search.
Closing a scenario cancels its token and its running task; late results
for a closed scenario are discarded.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import MissingClinicalData, ValidationError
from .history import ResultHistory
from .model_rules import step_size
from .models import (
    ClinicalRecord,
    DoseSuggestionSet,
    ProbeResult,
    SimulationRequest,
    SimulationResult,
    TargetBand,
    option_key,
)
from .prober import DoseProber
from .request_compiler import RequestCompiler
from .result_cache import ResultCache
from .rpc_client import SimulationClient
from .search import AdaptiveSearchController, Scenario, ScenarioKind, ScenarioState
from .settings import SearchSettings

logger = logging.getLogger(__name__)


class DosingSession:

    def __init__(
        self,
        record:     ClinicalRecord,
        client:     SimulationClient,
        history:    Optional[ResultHistory] = None,
        settings:   Optional[SearchSettings] = None,
        compiler:   Optional[RequestCompiler] = None,
        now:        Optional[datetime] = None,
    ):
        if record.patient is None or record.prescription is None:
            raise MissingClinicalData("A patient and an active prescription are required")

        self.record   = record
        self.client   = client
        self.history  = history
        self.settings = settings or SearchSettings()
        self.compiler = compiler or RequestCompiler()
        self.now      = now or datetime.now()
        self.cache    = ResultCache(history=history)

        rx = record.prescription
        self.band = TargetBand.parse(rx.target_type, rx.target_value)
        self.step = step_size(rx, self.settings)
        self.prober = DoseProber(self.compiler, client, record, self.band, now=self.now)
        self.controller = AdaptiveSearchController(
            self.prober, self.cache, self.band, self.step, settings=self.settings,
        )

        self.scenarios: Dict[str, Scenario] = {}
        self._ids = itertools.count(1)
        self.baseline_request: Optional[SimulationRequest] = None
        self.baseline_result:  Optional[SimulationResult]  = None

    @property
    def patient_id(self) -> str:
        return self.record.patient_id

    @property
    def drug_name(self) -> str:
        return self.record.drug_name

    # ── Baseline ──────────────────────────────────────────────────────────────

    def compile_baseline(self) -> SimulationRequest:
        """Compile the current-regimen request from the clinical record."""
        request = self.compiler.compile(self.record, now=self.now)
        if request is None:
            raise MissingClinicalData("A patient and an active prescription are required")
        return request

    async def run_baseline(self, persist: bool = True) -> SimulationResult:
        """Current-regimen simulation; the only call persisted to history."""
        request = self.compile_baseline()
        result = await self.client.call(
            request, retries=self.settings.baseline_attempts,
            persist=persist, result_cache=self.cache,
        )
        self.baseline_request = request
        self.baseline_result = result
        if self.history is not None and persist:
            self.history.set_active(self.patient_id, self.drug_name)
        logger.info(f"✅ Baseline for {self.patient_id}/{self.drug_name}: model {request.model_name}")
        return result

    def _baseline_from_result(self, request: SimulationRequest, result: SimulationResult) -> ProbeResult:
        """Wrap the canonical baseline result as a ProbeResult for the search."""
        value = result.metric(self.band.metric, tau=request.tau_after) if self.band else None
        return ProbeResult(
            dose=request.amount_after,
            interval=request.tau_after,
            result=result,
            in_range=self.band.contains(value) if self.band else False,
            value=value,
        )

    async def _scenario_baseline(self, scenario: Scenario) -> ProbeResult:
        """Baseline probe at the scenario's interval, reusing cached results."""
        request = self.baseline_request or self.compile_baseline()
        dose, tau = request.amount_before, request.tau_before
        interval = scenario.interval if scenario.kind == ScenarioKind.DOSE_INTERVAL and scenario.interval else tau

        if self.baseline_result is not None and interval == tau:
            return self._baseline_from_result(request, self.baseline_result)
        cached = self.cache.lookup(dose, interval)
        if cached is not None:
            return cached
        return await self.prober.probe(
            dose, interval, attempts=self.settings.baseline_attempts, token=scenario.token,
        )

    # ── Scenario registry ─────────────────────────────────────────────────────

    def open_scenario(self, kind: ScenarioKind, interval: Optional[float] = None) -> Scenario:
        """Register a new IDLE scenario with a unique id."""
        scenario = Scenario(id=f"{kind.value}-{next(self._ids)}", kind=ScenarioKind(kind), interval=interval)
        self.scenarios[scenario.id] = scenario
        logger.info(f"Opened scenario {scenario.id}")
        return scenario

    def get(self, scenario_id: str) -> Scenario:
        """Look up an open scenario."""
        try:
            return self.scenarios[scenario_id]
        except KeyError:
            raise KeyError(f"Unknown or closed scenario: {scenario_id}") from None

    def suggestions(self, scenario_id: str) -> Optional[DoseSuggestionSet]:
        return self.cache.get(scenario_id)

    def subscribe(self, scenario_id: str, callback: Callable[[DoseSuggestionSet], None]) -> None:
        """Receive the suggestion set after every publish for a scenario."""
        self.cache.subscribe(scenario_id, callback)

    async def compute(self, scenario_id: str) -> Optional[DoseSuggestionSet]:
        """Run the search for a scenario now, bypassing the debounce."""
        scenario = self.get(scenario_id)
        if scenario.state != ScenarioState.IDLE:
            scenario.transition(ScenarioState.IDLE)
        try:
            baseline = await self._scenario_baseline(scenario)
        except ValidationError as e:
            scenario.error = str(e)
            scenario.transition(ScenarioState.FAILED)
            return None
        siblings: List[Scenario] = [s for s in self.scenarios.values() if s.id != scenario_id]
        return await self.controller.run(scenario, baseline, siblings)

    def trigger(self, scenario_id: str) -> asyncio.Task:
        """Debounced compute(); a trigger during the debounce window replaces the pending one."""
        scenario = self.get(scenario_id)
        pending = scenario.task
        if pending is not None and not pending.done():
            if scenario.state != ScenarioState.IDLE:
                return pending
            pending.cancel()
            logger.debug(f"Debounced repeated trigger for {scenario_id}")

        async def debounced():
            await asyncio.sleep(self.settings.debounce_seconds)
            return await self.compute(scenario_id)

        scenario.task = asyncio.ensure_future(debounced())
        return scenario.task

    async def retry(self, scenario_id: str) -> Optional[DoseSuggestionSet]:
        """Manual retry of a FAILED scenario."""
        scenario = self.get(scenario_id)
        if not scenario.retryable:
            raise RuntimeError(f"Scenario {scenario_id} is {scenario.state.value}, not failed")
        logger.info(f"🔁 Manual retry of {scenario_id}")
        return await self.compute(scenario_id)

    async def close_scenario(self, scenario_id: str) -> None:
        """Cancel in-flight work and drop the scenario and its options."""
        scenario = self.scenarios.pop(scenario_id, None)
        if scenario is None:
            return
        scenario.token.cancel()
        task = scenario.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.cache.discard(scenario_id)
        logger.info(f"Closed scenario {scenario_id}")

    async def close(self) -> None:
        """Close every scenario and the simulation client."""
        for scenario_id in list(self.scenarios):
            await self.close_scenario(scenario_id)
        await self.client.close()

    # ── Selection ─────────────────────────────────────────────────────────────

    async def evaluate_selection(
        self,
        scenario_id:    str,
        dose:           Optional[float] = None,
        interval:       Optional[float] = None,
    ) -> ProbeResult:
        """Result for a picked or custom regimen, probing on demand when not cached."""
        scenario = self.get(scenario_id)
        request = self.baseline_request or self.compile_baseline()
        dose = dose if dose is not None else request.amount_before
        if interval is None:
            interval = scenario.interval if scenario.kind == ScenarioKind.DOSE_INTERVAL and scenario.interval else request.tau_before
        if self.band is None:
            raise MissingClinicalData("Target range is required to evaluate a regimen")

        probe = self.cache.lookup(dose, interval)
        if probe is None:
            probe = await self.prober.probe(
                dose, interval, attempts=self.settings.probe_attempts, token=scenario.token,
            )
        self.cache.remember(probe)

        value = interval if scenario.kind == ScenarioKind.INTERVAL else dose
        suggestions = self.cache.get(scenario_id)
        if suggestions is not None and not probe.failed and not scenario.closed:
            if probe.in_range:
                self.cache.publish(scenario_id, value, probe)
            if option_key(value) in suggestions.options:
                suggestions.select(value)
        return probe
