"""
Tests for ResultHistory persistence and the canonical-result path.
"""

from datetime import datetime, timedelta, timezone

import pytest

from backend.dosing.history import ResultHistory
from backend.dosing.models import SavedRegimen, SimulationResult
from backend.dosing.request_compiler import RequestCompiler
from backend.dosing.result_cache import ResultCache
from backend.dosing.store import InMemoryStore

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Advances one minute per reading."""

    def __init__(self):
        self.now = START

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture
def history():
    return ResultHistory(InMemoryStore(), clock=SteppingClock())


@pytest.fixture
def sim_request(record):
    return RequestCompiler().compile(record)


def result(trough):
    return SimulationResult.from_payload({"CTROUGH_after": trough, "Steady_state": "true"})


class TestAppend:

    def test_writes_latest_and_history_keys(self, history, sim_request):
        history.append(sim_request, result(25))
        store = history.store
        assert store.get_json("result:p1")["model_name"] == "vancomycin1_1"
        assert store.get_json("result:p1:Vancomycin")["data"]["CTROUGH_after"] == 25
        entries = history.entries("p1", "Vancomycin")
        assert len(entries) == 1
        assert entries[0].summary["CTROUGH_after"] == 25
        assert entries[0].dataset[0]["ID"] == "p1"

    def test_history_capped_at_five_newest(self, history, sim_request):
        for trough in range(7):
            history.append(sim_request, result(trough))
        entries = history.entries("p1", "Vancomycin")
        assert len(entries) == 5
        assert [e.summary["CTROUGH_after"] for e in entries] == [2, 3, 4, 5, 6]

    def test_load_latest_prefers_newest_history(self, history, sim_request):
        history.append(sim_request, result(20))
        history.append(sim_request, result(18))
        assert history.load_latest("p1", "Vancomycin")["CTROUGH_after"] == 18

    def test_has_result(self, history, sim_request):
        assert not history.has_result("p1")
        history.append(sim_request, result(20))
        assert history.has_result("p1")
        assert history.has_result("p1", "Vancomycin")
        assert not history.has_result("p1", "Cyclosporin")
        assert history.latest_timestamp("p1", "Vancomycin") is not None


class TestRegimenState:

    def test_prescription_round_trip(self, history):
        history.save_prescription("p1", "Vancomycin", SavedRegimen(amount=750, tau=8))
        loaded = history.load_prescription("p1", "Vancomycin")
        assert (loaded.amount, loaded.tau) == (750, 8)
        assert loaded.timestamp > 0

    def test_unreadable_prescription(self, history):
        history.store.set("prescription:p1:Vancomycin", '{"tau": 8}')
        assert history.load_prescription("p1", "Vancomycin") is None

    def test_active_marker(self, history):
        history.set_active("p1", "Vancomycin")
        assert history.is_active("p1", "Vancomycin")
        history.set_active("p1", "Vancomycin", active=False)
        assert not history.is_active("p1", "Vancomycin")


class TestCanonicalPersistence:

    def test_result_cache_persists_through_history(self, history, sim_request):
        cache = ResultCache(history=history)
        cache.persist_canonical(sim_request, result(22))
        assert history.load_latest("p1", "Vancomycin")["CTROUGH_after"] == 22

    def test_without_history_nothing_is_written(self, sim_request):
        cache = ResultCache()
        cache.persist_canonical(sim_request, result(22))
