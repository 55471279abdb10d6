"""
search.py — Adaptive dose / interval search
============================================
Finds every candidate regimen whose predicted exposure lands in the target
band, publishing in-band candidates as soon as they are known.

Scenario states
---------------
    Idle → Bracketing → BatchProbing → Done | Failed
    Idle → BatchProbing               (already in target, interval ladder)
    Idle → Done                       (no target band, reused sibling)
    Done | Failed → Idle              (recompute / manual retry)

Dose search (current regimen out of band)
-----------------------------------------
  1. Bracket: probe current ± 1 step concurrently. Both failing → Failed.
  2. Fit a line through (dose, exposure) for the baseline and brackets
     (numpy.polyfit). With a positive slope, predict the dose landing on the
     band edge nearest the current exposure and start one step short of it.
     Otherwise step from the bracket closer to the band.
  3. BatchProbe: batches of 3 concurrent probes moving away from the current
     dose. A batch continues the search only while its last item (in
     traversal order) is in band; the first out-of-band result after entering
     the band ends it. Hard caps: 20 batches, 12 options, dose ≥ 1 mg.

Already in target: probe up to 6 steps below and 6 above, each direction
stopping at its first out-of-band result.

Five consecutive failed probes (after one inline retry each) → Failed;
options already published stay visible.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

import numpy as np

from .errors import SEARCH_FAILED_MESSAGE, ProbeFailed, ValidationError
from .models import (
    ABOVE,
    ASCENDING,
    DESCENDING,
    WITHIN,
    DoseSuggestionSet,
    ProbeResult,
    TargetBand,
    option_key,
)
from .prober import CancellationToken, DoseProber
from .result_cache import ResultCache
from .retry import RetryPolicy
from .settings import SearchSettings

logger = logging.getLogger(__name__)

HOURS_PER_WEEK = 168

# 2–48 h, then 1, 2, 4, 6, 8 weeks
INTERVAL_LADDER_HOURS: Tuple[float, ...] = (
    2, 3, 4, 6, 8, 12, 24, 48,
    1 * HOURS_PER_WEEK, 2 * HOURS_PER_WEEK, 4 * HOURS_PER_WEEK,
    6 * HOURS_PER_WEEK, 8 * HOURS_PER_WEEK,
)

_LABEL_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(시간|주|weeks?|wk|w|hours?|hrs?|h)?", re.IGNORECASE)
_WEEK_UNITS = ("주", "week", "weeks", "wk", "w")


def parse_interval_label(text: str) -> Optional[float]:
    """'12시간' -> 12.0, '1주' -> 168.0, 'q8h' -> 8.0"""
    match = _LABEL_RE.search(text or "")
    if not match:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "").lower()
    if unit in _WEEK_UNITS:
        return value * HOURS_PER_WEEK
    return value


def format_interval_label(hours: float) -> str:
    if hours >= HOURS_PER_WEEK and hours % HOURS_PER_WEEK == 0:
        return f"{int(hours // HOURS_PER_WEEK)}주"
    return f"{hours:g}시간"


# ─────────────────────────────────────────────────────────────────────────────
# Scenario
# ─────────────────────────────────────────────────────────────────────────────

class ScenarioKind(str, Enum):
    DOSE          = "dose"            # vary amount, current interval
    DOSE_INTERVAL = "dose_interval"   # vary amount at a chosen interval
    INTERVAL      = "interval"        # vary interval along the ladder


class ScenarioState(Enum):
    IDLE          = "idle"
    BRACKETING    = "bracketing"
    BATCH_PROBING = "batch_probing"
    DONE          = "done"
    FAILED        = "failed"


_TRANSITIONS = {
    ScenarioState.IDLE:          {ScenarioState.BRACKETING, ScenarioState.BATCH_PROBING,
                                  ScenarioState.DONE, ScenarioState.FAILED},
    ScenarioState.BRACKETING:    {ScenarioState.BATCH_PROBING, ScenarioState.DONE, ScenarioState.FAILED},
    ScenarioState.BATCH_PROBING: {ScenarioState.DONE, ScenarioState.FAILED},
    ScenarioState.DONE:          {ScenarioState.IDLE},
    ScenarioState.FAILED:        {ScenarioState.IDLE},
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class Scenario:
    id:                 str
    kind:               ScenarioKind
    interval:           Optional[float]         = None
    state:              ScenarioState           = ScenarioState.IDLE
    error:              Optional[str]           = None
    band:               Optional[TargetBand]    = None
    baseline_dose:      Optional[float]         = None
    baseline_interval:  Optional[float]         = None
    baseline_status:    Optional[str]           = None
    token:              CancellationToken       = field(default_factory=CancellationToken, repr=False)
    task:               Optional[asyncio.Task]  = field(default=None, repr=False)

    def transition(self, new_state: ScenarioState) -> None:
        """Move to `new_state`; raises on an illegal transition."""
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.id}: {self.state.value} → {new_state.value}")
        logger.info(f"🔁 Scenario {self.id}: {self.state.value} → {new_state.value}")
        self.state = new_state

    @property
    def closed(self) -> bool:
        return self.token.cancelled

    @property
    def retryable(self) -> bool:
        return self.state == ScenarioState.FAILED


class _SearchExhausted(Exception):
    pass


@dataclass
class _Run:
    scenario:       Scenario
    suggestions:    DoseSuggestionSet
    dose:           float
    interval:       float
    failures:       int      = 0
    tested:         Set[int] = field(default_factory=set)


# ─────────────────────────────────────────────────────────────────────────────
# Controller
# ─────────────────────────────────────────────────────────────────────────────

class AdaptiveSearchController:

    def __init__(
        self,
        prober:         DoseProber,
        cache:          ResultCache,
        band:           Optional[TargetBand],
        step:           float,
        settings:       Optional[SearchSettings] = None,
        probe_retry:    Optional[RetryPolicy] = None,
    ):
        self.prober   = prober
        self.cache    = cache
        self.band     = band
        self.step     = step
        self.settings = settings or SearchSettings()
        self.probe_retry = probe_retry or RetryPolicy(
            max_attempts=2,
            base_delay=0.0,
            is_retryable=lambda e: isinstance(e, ProbeFailed),
        )

    async def run(
        self,
        scenario:   Scenario,
        baseline:   ProbeResult,
        siblings:   Iterable[Scenario] = (),
    ) -> Optional[DoseSuggestionSet]:
        """
        Search for one scenario starting from the current-regimen `baseline`.
        Returns the suggestion set; on failure the scenario is left in
        FAILED with `error` set and whatever was published is returned.
        """
        scenario.band = self.band
        scenario.error = None
        try:
            if scenario.kind == ScenarioKind.INTERVAL:
                await self._run_intervals(scenario, baseline)
            else:
                await self._run_doses(scenario, baseline, list(siblings))
        except _SearchExhausted:
            self._fail(scenario, SEARCH_FAILED_MESSAGE)
        except ValidationError as e:
            self._fail(scenario, str(e))
        return self.cache.get(scenario.id)

    def _fail(self, scenario: Scenario, message: str) -> None:
        scenario.error = message
        scenario.transition(ScenarioState.FAILED)
        logger.error(f"❌ Scenario {scenario.id} failed: {message}")

    # ── Probing helpers ───────────────────────────────────────────────────────

    def _publish(self, run: _Run, value: float, probe: ProbeResult,
                 auto_select: Optional[bool] = None) -> None:
        if run.scenario.closed:
            return
        self.cache.publish(run.scenario.id, value, probe, auto_select=auto_select)

    def _option_count(self, run: _Run) -> int:
        return len(run.suggestions.non_baseline_values())

    async def _probe(self, run: _Run, dose: float, interval: float, attempts: int) -> ProbeResult:
        """Cached result, else a fresh probe retried once inline."""
        cached = self.cache.lookup(dose, interval)
        if cached is not None:
            return cached

        async def attempt() -> ProbeResult:
            probe = await self.prober.probe(dose, interval, attempts=attempts, token=run.scenario.token)
            if probe.failed:
                raise ProbeFailed(f"{dose}mg q{interval}h")
            return probe

        try:
            return await self.probe_retry.run(attempt, label=f"probe {dose}mg q{interval}h")
        except ProbeFailed:
            return ProbeResult(dose=dose, interval=interval, result=None, in_range=False)

    async def _batch(self, run: _Run, regimens: List[Tuple[float, float]], attempts: int) -> List[ProbeResult]:
        """Probe regimens concurrently; results come back in input order."""
        run.scenario.token.raise_if_cancelled()
        results = await asyncio.gather(
            *[self._probe(run, dose, interval, attempts) for dose, interval in regimens]
        )
        for probe in results:
            self.cache.remember(probe)
        return list(results)

    def _account(self, run: _Run, results: List[ProbeResult]) -> None:
        """Track consecutive failures; gives up at the failure cutoff."""
        for probe in results:
            if probe.failed:
                run.failures += 1
                if run.failures >= self.settings.failure_cutoff:
                    logger.error(f"❌ {run.failures} consecutive probe failures in {run.scenario.id}")
                    raise _SearchExhausted()
            else:
                run.failures = 0

    def _start(self, scenario: Scenario, baseline: ProbeResult, value: float,
               order: str, include_baseline: bool) -> _Run:
        """Open the scenario's set and publish the baseline first."""
        suggestions = self.cache.open(scenario.id, value, order, include_baseline)
        run = _Run(scenario, suggestions, dose=baseline.dose, interval=baseline.interval)
        # current regimen is highlighted by default only when in band or unbanded
        self._publish(run, value, baseline, auto_select=self.band is None or baseline.in_range)
        return run

    # ── Dose scenarios ────────────────────────────────────────────────────────

    async def _run_doses(self, scenario: Scenario, baseline: ProbeResult, siblings: List[Scenario]) -> None:
        """Dose search at a fixed interval."""
        scenario.baseline_dose = baseline.dose
        scenario.baseline_interval = baseline.interval

        if self.band is None:
            logger.warning(f"⚠️  No target band for {scenario.id}; only the current regimen is shown")
            self._start(scenario, baseline, baseline.dose, ASCENDING, False)
            scenario.transition(ScenarioState.DONE)
            return
        if baseline.failed or baseline.value is None:
            raise _SearchExhausted()

        status = self.band.status(baseline.value)
        scenario.baseline_status = status
        order = DESCENDING if status == ABOVE else ASCENDING
        run = self._start(scenario, baseline, baseline.dose, order, status == WITHIN)

        if self._reuse(run, siblings, status):
            scenario.transition(ScenarioState.DONE)
            return

        if status == WITHIN:
            scenario.transition(ScenarioState.BATCH_PROBING)
            await self._search_in_target(run)
        else:
            scenario.transition(ScenarioState.BRACKETING)
            direction, start, entered = await self._bracket(run, baseline, status)
            scenario.transition(ScenarioState.BATCH_PROBING)
            await self._batch_probe(run, direction, start, entered)

        scenario.transition(ScenarioState.DONE)
        logger.info(
            f"✅ Scenario {scenario.id}: {self._option_count(run)} in-band options "
            f"({self.band.metric} {self.band.low}-{self.band.high})"
        )

    def _reuse(self, run: _Run, siblings: List[Scenario], status: str) -> bool:
        """Copy options from a finished sibling with the same baseline and band."""
        s = self.settings
        threshold = s.reuse_threshold_in_target if status == WITHIN else s.reuse_threshold
        for sib in siblings:
            if sib.id == run.scenario.id or sib.kind == ScenarioKind.INTERVAL:
                continue
            if sib.state != ScenarioState.DONE or sib.band != self.band:
                continue
            if sib.baseline_dose is None or sib.baseline_interval is None:
                continue
            if option_key(sib.baseline_dose) != option_key(run.dose):
                continue
            if option_key(sib.baseline_interval) != option_key(run.interval):
                continue
            sib_set = self.cache.get(sib.id)
            if sib_set is None:
                continue
            values = sib_set.non_baseline_values()
            if len(values) < threshold:
                continue
            for value in values[:s.option_cap]:
                self._publish(run, value, sib_set.options[value])
            logger.info(f"✅ Scenario {run.scenario.id}: reused {min(len(values), s.option_cap)} options from {sib.id}")
            return True
        return False

    async def _bracket(self, run: _Run, baseline: ProbeResult, status: str) -> Tuple[int, int, bool]:
        """Returns (direction, first offset to probe, band already entered)."""
        current, step = run.dose, self.step
        regimens = [(current + step, run.interval)]
        offsets = [1]
        if current - step >= self.settings.min_dose:
            regimens.append((current - step, run.interval))
            offsets.append(-1)

        results = await self._batch(run, regimens, attempts=self.settings.bracket_attempts)
        run.tested.update(offsets)
        if all(p.failed for p in results):
            raise _SearchExhausted()
        self._account(run, results)

        direction = -1 if status == ABOVE else 1
        entered = False
        for offset, probe in zip(offsets, results):
            if probe.in_range:
                self._publish(run, probe.dose, probe)
                if offset == direction:
                    entered = True

        points = [(current, baseline.value)] + [
            (p.dose, p.value) for p in results if not p.failed and p.value is not None
        ]
        start = self._predict_start(points, status, direction)
        if start is None:
            usable = [p for p in results if not p.failed and p.value is not None]
            if len(usable) == 2:
                d_up, d_down = (self.band.distance(p.value) for p in usable)
                if d_up != d_down:
                    closer = usable[0] if d_up < d_down else usable[1]
                    direction = 1 if closer.dose > current else -1
            start = 1
        logger.info(
            f"🔁 Scenario {run.scenario.id}: bracketed {current}±{step}, "
            f"direction {'up' if direction > 0 else 'down'}, start offset {start}"
        )
        return direction, start, entered

    def _predict_start(self, points, status: str, direction: int) -> Optional[int]:
        """Linear fit of exposure on dose to guess the first offset near the band edge."""
        doses = np.array([p[0] for p in points], dtype=float)
        values = np.array([p[1] for p in points], dtype=float)
        if len(np.unique(doses)) < 2:
            return None
        slope, intercept = np.polyfit(doses, values, 1)
        if not np.isfinite(slope) or slope <= 0:
            return None
        target = self.band.high if status == ABOVE else self.band.low
        predicted = (target - intercept) / slope
        delta = (predicted - doses[0]) * direction
        if not np.isfinite(delta) or delta <= 0:
            return None
        steps = int(math.ceil(delta / self.step - 1e-9))
        return max(1, steps - 1)

    async def _batch_probe(self, run: _Run, direction: int, start: int, entered: bool) -> None:
        """Step away from the baseline in batches until enough options are found."""
        s = self.settings
        origin = run.scenario.baseline_status
        offset = start
        for batch_no in range(s.max_batches):
            candidates = []
            while len(candidates) < s.batch_size:
                dose = run.dose + direction * offset * self.step
                if dose < s.min_dose:
                    break
                if offset * direction not in run.tested:
                    candidates.append((offset * direction, round(dose, 4)))
                offset += 1
            if not candidates:
                logger.info(f"Scenario {run.scenario.id}: reached minimum dose")
                return

            results = await self._batch(run, [(d, run.interval) for _, d in candidates],
                                        attempts=s.probe_attempts)
            run.tested.update(o for o, _ in candidates)
            self._account(run, results)

            stop = False
            for probe in results:
                status = self.band.status(probe.value)
                if probe.in_range:
                    entered = True
                    self._publish(run, probe.dose, probe)
                    if self._option_count(run) >= s.option_cap:
                        stop = True
                        break
                elif entered and not probe.failed:
                    stop = True
                    break
                elif status is not None and status != origin:
                    # stepped across the whole band without landing in it
                    logger.warning(f"⚠️  Scenario {run.scenario.id}: band skipped at {probe.dose}mg")
                    stop = True
                    break

            if stop or (entered and not results[-1].in_range):
                return
            logger.debug(f"Scenario {run.scenario.id}: batch {batch_no + 1} done, continuing")
        logger.warning(f"⚠️  Scenario {run.scenario.id}: batch limit ({s.max_batches}) reached")

    async def _search_in_target(self, run: _Run) -> None:
        """Step both ways from an in-band baseline until the band is left."""
        s = self.settings
        for direction in (-1, 1):
            offset = 1
            while offset <= s.symmetric_span:
                upper = min(offset + s.batch_size, s.symmetric_span + 1)
                candidates = [
                    run.dose + direction * o * self.step
                    for o in range(offset, upper)
                    if run.dose + direction * o * self.step >= s.min_dose
                ]
                if not candidates:
                    break
                results = await self._batch(run, [(round(d, 4), run.interval) for d in candidates],
                                            attempts=s.probe_attempts)
                self._account(run, results)
                left_band = False
                for probe in results:
                    if probe.failed:
                        continue
                    if not probe.in_range:
                        left_band = True
                        break
                    self._publish(run, probe.dose, probe)
                if left_band:
                    break
                offset = upper

    # ── Interval scenario ─────────────────────────────────────────────────────

    async def _run_intervals(self, scenario: Scenario, baseline: ProbeResult) -> None:
        """Keep the dose and try each ladder interval."""
        scenario.baseline_dose = baseline.dose
        scenario.baseline_interval = baseline.interval

        if self.band is None:
            logger.warning(f"⚠️  No target band for {scenario.id}; only the current regimen is shown")
            self._start(scenario, baseline, baseline.interval, ASCENDING, False)
            scenario.transition(ScenarioState.DONE)
            return
        if baseline.failed or baseline.value is None:
            raise _SearchExhausted()

        scenario.baseline_status = self.band.status(baseline.value)
        run = self._start(scenario, baseline, baseline.interval, ASCENDING, False)
        scenario.transition(ScenarioState.BATCH_PROBING)

        s = self.settings
        ladder = [h for h in INTERVAL_LADDER_HOURS if option_key(h) != option_key(baseline.interval)]
        for i in range(0, len(ladder), s.batch_size):
            chunk = ladder[i:i + s.batch_size]
            results = await self._batch(run, [(run.dose, float(h)) for h in chunk],
                                        attempts=s.probe_attempts)
            self._account(run, results)
            for hours, probe in zip(chunk, results):
                if probe.in_range:
                    self._publish(run, float(hours), probe)

        scenario.transition(ScenarioState.DONE)
        logger.info(f"✅ Scenario {scenario.id}: {self._option_count(run)} in-band intervals")
