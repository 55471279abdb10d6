"""
Tests for DoseProber: one candidate regimen → one ProbeResult.
"""

import asyncio

import pytest

from backend.dosing.errors import MissingClinicalData, RouteUnsupported
from backend.dosing.models import ClinicalRecord, TargetBand
from backend.dosing.prober import CancellationToken, DoseProber
from backend.dosing.request_compiler import RequestCompiler

from .conftest import FakeSimulationClient, make_record

BAND = TargetBand("Trough", 10, 20)


def prober_for(record, client, band=BAND):
    return DoseProber(RequestCompiler(), client, record, band)


class TestProbe:

    @pytest.mark.asyncio
    async def test_in_band_dose(self, record, fake_client):
        probe = await prober_for(record, fake_client).probe(400)
        assert probe.value == 20
        assert probe.in_range is True
        assert probe.interval == 12
        assert fake_client.calls[0].amount_after == 400

    @pytest.mark.asyncio
    async def test_out_of_band_dose(self, record, fake_client):
        probe = await prober_for(record, fake_client).probe(500)
        assert probe.value == 25
        assert probe.in_range is False

    @pytest.mark.asyncio
    async def test_interval_override(self, record, fake_client):
        probe = await prober_for(record, fake_client).probe(500, interval=24)
        assert probe.interval == 24
        assert probe.value == 12.5
        assert probe.in_range is True

    @pytest.mark.asyncio
    async def test_passes_attempt_budget(self, record):
        seen = []

        class Recording(FakeSimulationClient):
            async def call(self, request, retries=None, persist=False):
                seen.append((retries, persist))
                return await super().call(request, retries, persist)

        await prober_for(record, Recording()).probe(400, attempts=3)
        assert seen == [(3, False)]

    @pytest.mark.asyncio
    async def test_simulation_failure_becomes_failed_probe(self, record):
        client = FakeSimulationClient(fail=lambda r: True)
        probe = await prober_for(record, client).probe(400)
        assert probe.failed
        assert probe.in_range is False
        assert probe.value is None

    @pytest.mark.asyncio
    async def test_without_band_nothing_is_in_range(self, record, fake_client):
        probe = await prober_for(record, fake_client, band=None).probe(400)
        assert not probe.failed
        assert probe.in_range is False


class TestValidation:

    @pytest.mark.asyncio
    async def test_route_error_propagates(self, fake_client):
        record = make_record(route="oral")
        with pytest.raises(RouteUnsupported):
            await prober_for(record, fake_client).probe(400)
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_missing_prescription(self, record, fake_client):
        bare = ClinicalRecord(patient=record.patient, prescription=None)
        with pytest.raises(MissingClinicalData):
            await prober_for(bare, fake_client).probe(400)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_call(self, record, fake_client):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            await prober_for(record, fake_client).probe(400, token=token)
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_call_discards_result(self, record):
        token = CancellationToken()

        class CancelsMidFlight(FakeSimulationClient):
            async def call(self, request, retries=None, persist=False):
                token.cancel()
                return await super().call(request, retries, persist)

        with pytest.raises(asyncio.CancelledError):
            await prober_for(record, CancelsMidFlight()).probe(400, token=token)
