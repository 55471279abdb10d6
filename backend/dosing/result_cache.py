"""
result_cache.py — Progressive result cache
===========================================
Per-scenario suggestion sets that fill in while a search is running, plus a
session-wide store of raw probe outcomes keyed by (dose, interval) so any
scenario can reuse a probe another scenario already paid for.

publish() is idempotent per key and last-writer-wins. Subscribers registered
for a scenario are called after every publish with the updated set.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .models import ASCENDING, DoseSuggestionSet, ProbeResult, SimulationRequest, SimulationResult, option_key

logger = logging.getLogger(__name__)

Subscriber = Callable[[DoseSuggestionSet], None]


class ResultCache:

    def __init__(self, history=None):
        self.history = history
        self._sets:         Dict[str, DoseSuggestionSet]            = {}
        self._raw:          Dict[Tuple[float, float], ProbeResult]  = {}
        self._subscribers:  Dict[str, List[Subscriber]]             = {}

    # ── Suggestion sets ───────────────────────────────────────────────────────

    def open(
        self,
        scenario_id:    str,
        baseline:       float,
        order:          str = ASCENDING,
        include_baseline_in_order: bool = False,
    ) -> DoseSuggestionSet:
        """(Re)create the visible set for a scenario; previous options are dropped."""
        suggestion_set = DoseSuggestionSet(
            scenario_id=scenario_id,
            baseline=baseline,
            order=order,
            include_baseline_in_order=include_baseline_in_order,
        )
        self._sets[scenario_id] = suggestion_set
        return suggestion_set

    def get(self, scenario_id: str) -> Optional[DoseSuggestionSet]:
        """Current suggestion set for a scenario, or None once discarded."""
        return self._sets.get(scenario_id)

    def discard(self, scenario_id: str) -> None:
        """Drop a scenario's set and subscribers; later publishes are ignored."""
        self._sets.pop(scenario_id, None)
        self._subscribers.pop(scenario_id, None)

    def subscribe(self, scenario_id: str, callback: Subscriber) -> None:
        self._subscribers.setdefault(scenario_id, []).append(callback)

    def publish(self, scenario_id: str, value: float, probe: ProbeResult,
                auto_select: Optional[bool] = None) -> bool:
        """Add `probe` under `value` (a dose, or an interval for interval scenarios)."""
        self.remember(probe)
        suggestion_set = self._sets.get(scenario_id)
        if suggestion_set is None:
            logger.debug(f"Publish for closed scenario {scenario_id} ignored")
            return False
        is_new = suggestion_set.add(value, probe, auto_select=auto_select)
        for callback in self._subscribers.get(scenario_id, []):
            callback(suggestion_set)
        return is_new

    # ── Raw probe outcomes ────────────────────────────────────────────────────

    def remember(self, probe: ProbeResult) -> None:
        """Store a successful probe for reuse by any scenario."""
        if probe.failed or probe.interval is None:
            return
        self._raw[(option_key(probe.dose), option_key(probe.interval))] = probe

    def lookup(self, dose: float, interval: float) -> Optional[ProbeResult]:
        """Previously probed result for (dose, interval), if any."""
        return self._raw.get((option_key(dose), option_key(interval)))

    # ── Canonical persistence ─────────────────────────────────────────────────

    def persist_canonical(self, request: SimulationRequest, result: SimulationResult) -> None:
        """Forward the canonical baseline result to history."""
        if self.history is None:
            logger.debug("No history configured; canonical result kept in memory only")
            return
        self.history.append(request, result)
