"""
Tests for the adaptive search controller, driven through DosingSession with
the linear fake client (trough = dose / 20 at q12h).
"""

import logging
from datetime import timedelta

import pytest

from backend.dosing.errors import SEARCH_FAILED_MESSAGE
from backend.dosing.models import TargetBand
from backend.dosing.prober import DoseProber
from backend.dosing.search import (
    INTERVAL_LADDER_HOURS,
    AdaptiveSearchController,
    ScenarioKind,
    ScenarioState,
    format_interval_label,
    parse_interval_label,
)
from backend.dosing.session import DosingSession
from backend.dosing.settings import SearchSettings

from .conftest import FIRST_DOSE, FakeSimulationClient, make_record

NOW = FIRST_DOSE + timedelta(days=10)


def session_for(record=None, client=None, **settings):
    settings.setdefault("debounce_seconds", 0.0)
    return DosingSession(
        record or make_record(),
        client or FakeSimulationClient(),
        settings=SearchSettings(**settings),
        now=NOW,
    )


async def run_scenario(session, kind=ScenarioKind.DOSE, interval=None, baseline=True):
    if baseline:
        await session.run_baseline(persist=False)
    scenario = session.open_scenario(kind, interval=interval)
    suggestions = await session.compute(scenario.id)
    return scenario, suggestions


class TestAboveTarget:
    """Current trough 25 mg/L against a 10-20 band"""

    @pytest.mark.asyncio
    async def test_steps_down_to_twelve_options(self):
        session = session_for()
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.DONE
        expected = [500] + [400 - 10 * i for i in range(12)]
        assert suggestions.values() == expected
        assert suggestions.values()[-1] == 290

    @pytest.mark.asyncio
    async def test_first_in_band_option_is_selected(self):
        session = session_for()
        _, suggestions = await run_scenario(session)
        assert not suggestions.options[500].in_range
        assert suggestions.selected == 400

    @pytest.mark.asyncio
    async def test_brackets_probed_first(self):
        client = FakeSimulationClient()
        session = session_for(client=client)
        await run_scenario(session)
        assert sorted(client.probed_doses()[1:3]) == [490, 510]

    @pytest.mark.asyncio
    async def test_no_probe_below_minimum_dose(self):
        record = make_record(amount=30, target_value="0.1-0.2")
        client = FakeSimulationClient()
        session = session_for(record=record, client=client)
        scenario, suggestions = await run_scenario(session)
        assert min(client.probed_doses()) >= 1
        assert scenario.state == ScenarioState.DONE
        assert suggestions.non_baseline_values() == []


class TestBelowTarget:

    @pytest.mark.asyncio
    async def test_steps_up_in_ascending_order(self):
        session = session_for(record=make_record(target_value="30-40"))
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.DONE
        assert suggestions.values() == [500] + [600 + 10 * i for i in range(12)]


class TestInTarget:

    @pytest.mark.asyncio
    async def test_symmetric_search_stops_at_band_edge(self):
        session = session_for(record=make_record(target_value="20-26"))
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.DONE
        assert suggestions.values() == [440, 450, 460, 470, 480, 490, 500, 510, 520]
        assert suggestions.selected == 500

    @pytest.mark.asyncio
    async def test_symmetric_span_is_six_steps(self):
        client = FakeSimulationClient()
        session = session_for(record=make_record(target_value="1-100"), client=client)
        _, suggestions = await run_scenario(session)
        assert suggestions.values() == [440 + 10 * i for i in range(13)]


class TestFailures:

    @pytest.mark.asyncio
    async def test_both_brackets_failing_fails_scenario(self):
        client = FakeSimulationClient(fail=lambda r: r.amount_after in (490, 510))
        session = session_for(client=client)
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.FAILED
        assert scenario.error == SEARCH_FAILED_MESSAGE
        assert scenario.retryable
        assert suggestions.values() == [500]

    @pytest.mark.asyncio
    async def test_failed_probe_retried_once_inline(self):
        client = FakeSimulationClient(fail=lambda r: r.amount_after in (490, 510))
        session = session_for(client=client)
        await run_scenario(session)
        doses = client.probed_doses()
        assert doses.count(490) == 2
        assert doses.count(510) == 2

    @pytest.mark.asyncio
    async def test_five_consecutive_failures(self):
        client = FakeSimulationClient(fail=lambda r: r.amount_after < 480)
        session = session_for(client=client)
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.FAILED
        assert scenario.error == SEARCH_FAILED_MESSAGE
        assert suggestions.values() == [500]

    @pytest.mark.asyncio
    async def test_published_options_survive_failure(self):
        client = FakeSimulationClient(fail=lambda r: r.amount_after <= 480)
        session = session_for(record=make_record(target_value="20-26"), client=client)
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.FAILED
        assert suggestions.values() == [490, 500]

    @pytest.mark.asyncio
    async def test_failure_after_entering_band_ends_search(self):
        client = FakeSimulationClient(fail=lambda r: r.amount_after < 370)
        session = session_for(client=client)
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.DONE
        assert suggestions.values() == [500, 400, 390, 380, 370]

    @pytest.mark.asyncio
    async def test_failed_baseline(self):
        client = FakeSimulationClient(fail=lambda r: True)
        session = session_for(client=client)
        scenario, _ = await run_scenario(session, baseline=False)
        assert scenario.state == ScenarioState.FAILED
        assert scenario.error == SEARCH_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_validation_error_surfaces_message(self):
        session = session_for(record=make_record(route="oral"))
        scenario, _ = await run_scenario(session, baseline=False)
        assert scenario.state == ScenarioState.FAILED
        assert "IV" in scenario.error


class TestNoTarget:

    @pytest.mark.asyncio
    async def test_only_current_regimen_shown(self):
        client = FakeSimulationClient()
        session = session_for(record=make_record(target_value=""), client=client)
        scenario, suggestions = await run_scenario(session)

        assert scenario.state == ScenarioState.DONE
        assert suggestions.values() == [500]
        assert len(client.calls) == 1
        assert suggestions.selected == 500


class TestReuse:

    @pytest.mark.asyncio
    async def test_second_scenario_reuses_complete_sibling(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        client = FakeSimulationClient()
        session = session_for(client=client)
        _, first = await run_scenario(session)
        calls = len(client.calls)

        second = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(second.id)

        assert second.state == ScenarioState.DONE
        assert len(client.calls) == calls
        assert suggestions.values() == first.values()
        assert f"reused 12 options from {first.scenario_id}" in caplog.text

    @pytest.mark.asyncio
    async def test_incomplete_sibling_not_reused(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        client = FakeSimulationClient()
        session = session_for(client=client, option_cap=5)
        await run_scenario(session)
        calls = len(client.calls)

        second = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(second.id)

        assert second.state == ScenarioState.DONE
        assert "reused" not in caplog.text
        # probes already paid for by the first scenario come from the cache
        assert len(client.calls) == calls
        assert len(suggestions.non_baseline_values()) == 5

    @pytest.mark.asyncio
    async def test_sibling_at_other_interval_not_reused(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        client = FakeSimulationClient()
        session = session_for(client=client)
        sibling, at_24h = await run_scenario(session, ScenarioKind.DOSE_INTERVAL, interval=24)
        assert sibling.state == ScenarioState.DONE
        assert len(at_24h.non_baseline_values()) == 12
        calls = len(client.calls)

        scenario = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(scenario.id)

        assert scenario.state == ScenarioState.DONE
        assert "reused" not in caplog.text
        assert len(client.calls) > calls
        assert suggestions.values() == [500] + [400 - 10 * i for i in range(12)]

    @pytest.mark.asyncio
    async def test_sibling_with_other_band_not_reused(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        client = FakeSimulationClient()
        session = session_for(client=client)
        first, _ = await run_scenario(session)
        assert first.band == TargetBand("Trough", 10, 20)

        wider = TargetBand("Trough", 5, 20)
        session.controller = AdaptiveSearchController(
            DoseProber(session.compiler, client, session.record, wider, now=NOW),
            session.cache, wider, session.step, settings=session.settings,
        )
        second = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(second.id)

        assert second.state == ScenarioState.DONE
        assert second.band == wider
        assert "reused" not in caplog.text
        assert len(suggestions.non_baseline_values()) == 12

    @pytest.mark.asyncio
    async def test_in_target_sibling_reused_at_lower_threshold(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        client = FakeSimulationClient()
        session = session_for(record=make_record(target_value="20-26"), client=client)
        first, first_set = await run_scenario(session)
        assert len(first_set.non_baseline_values()) == 8
        calls = len(client.calls)

        second = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(second.id)

        assert second.state == ScenarioState.DONE
        assert len(client.calls) == calls
        assert suggestions.values() == first_set.values()
        assert f"reused 8 options from {first.id}" in caplog.text

    @pytest.mark.asyncio
    async def test_in_target_sibling_below_threshold_not_reused(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.dosing.search")
        session = session_for(record=make_record(target_value="20-26"), reuse_threshold_in_target=9)
        await run_scenario(session)

        second = session.open_scenario(ScenarioKind.DOSE)
        suggestions = await session.compute(second.id)

        assert second.state == ScenarioState.DONE
        assert "reused" not in caplog.text
        assert len(suggestions.non_baseline_values()) == 8


class TestDoseAtInterval:

    @pytest.mark.asyncio
    async def test_search_at_chosen_interval(self):
        client = FakeSimulationClient()
        session = session_for(client=client)
        scenario, suggestions = await run_scenario(session, ScenarioKind.DOSE_INTERVAL, interval=24)

        assert scenario.state == ScenarioState.DONE
        assert scenario.baseline_interval == 24
        assert all(r.tau_after == 24 for r in client.calls[1:])
        assert suggestions.values() == [440 + 10 * i for i in range(13)]


class TestIntervalScenario:

    @pytest.mark.asyncio
    async def test_ladder_keeps_in_band_intervals(self):
        client = FakeSimulationClient()
        session = session_for(client=client)
        scenario, suggestions = await run_scenario(session, ScenarioKind.INTERVAL)

        assert scenario.state == ScenarioState.DONE
        assert suggestions.values() == [12, 24]
        assert suggestions.selected == 24
        probed = sorted(r.tau_after for r in client.calls[1:])
        assert probed == sorted(h for h in INTERVAL_LADDER_HOURS if h != 12)
        assert all(r.amount_after == 500 for r in client.calls)


class TestIntervalLabels:

    @pytest.mark.parametrize("text,hours", [
        ("12시간", 12),
        ("1주", 168),
        ("2 weeks", 336),
        ("q8h", 8),
    ])
    def test_parse(self, text, hours):
        assert parse_interval_label(text) == hours

    def test_format(self):
        assert format_interval_label(12) == "12시간"
        assert format_interval_label(336) == "2주"
