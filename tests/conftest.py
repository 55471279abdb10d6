"""
Shared fixtures for the dose-finding tests.

The fake simulation client answers with a linear exposure model so search
outcomes are predictable:

    trough = dose / 20 * (12 / tau)      500 mg q12h → 25
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pytest

from backend.dosing.errors import KIND_SERVER, SimulationUnavailable
from backend.dosing.models import (
    ClinicalRecord,
    DoseEvent,
    ObservationEvent,
    PatientCovariates,
    Prescription,
    RenalInfo,
    SavedRegimen,
    SimulationRequest,
    SimulationResult,
)
from backend.dosing.settings import SearchSettings

FIRST_DOSE = datetime(2026, 10, 1, 8, 0)


def linear_trough(dose: float, tau: float) -> float:
    return dose / 20 * (12 / tau)


class FakeSimulationClient:
    """Stands in for SimulationClient at the call() seam."""

    def __init__(
        self,
        exposure: Callable[[float, float], float] = linear_trough,
        fail: Callable[[SimulationRequest], bool] = lambda request: False,
    ):
        self.exposure = exposure
        self.fail = fail
        self.calls: List[SimulationRequest] = []
        self.result_cache = None
        self.closed = False

    def payload_for(self, request: SimulationRequest) -> dict:
        after = self.exposure(request.amount_after, request.tau_after)
        before = self.exposure(request.amount_before, request.tau_before)
        return {
            "AUC_tau_before": before * 10,
            "AUC_24_before":  before * 20,
            "CMAX_before":    before * 2,
            "CTROUGH_before": before,
            "AUC_tau_after":  after * 10,
            "AUC_24_after":   after * 20,
            "CMAX_after":     after * 2,
            "CTROUGH_after":  after,
            "Steady_state":   "true",
            "IPRED_CONC":     [{"time": 0, "IPRED": after * 2}, {"time": request.tau_after, "IPRED": after}],
            "PRED_CONC":      [{"time": 0, "PRED": after * 2}, {"time": request.tau_after, "PRED": after}],
        }

    async def call(self, request: SimulationRequest, retries: Optional[int] = None,
                   persist: bool = False, result_cache=None):
        self.calls.append(request)
        if self.fail(request):
            raise SimulationUnavailable(KIND_SERVER, retries or 3)
        result = SimulationResult.from_payload(self.payload_for(request))
        target = result_cache if result_cache is not None else self.result_cache
        if persist and target is not None:
            target.persist_canonical(request, result)
        return result

    async def close(self):
        self.closed = True

    def probed_doses(self) -> List[float]:
        return [r.amount_after for r in self.calls]


class BlockingSimulationClient(FakeSimulationClient):
    """Holds every non-baseline call until `release` is set."""

    def __init__(self, baseline_dose: float = 500, **kwargs):
        super().__init__(**kwargs)
        self.baseline_dose = baseline_dose
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def call(self, request, retries=None, persist=False, result_cache=None):
        if request.amount_after != self.baseline_dose:
            self.started.set()
            await self.release.wait()
        return await super().call(request, retries=retries, persist=persist, result_cache=result_cache)


def make_record(
    drug_name:       str = "Vancomycin",
    indication:      str = "Not specified/Korean",
    additional_info: str = "",
    target_type:     str = "Trough",
    target_value:    str = "10-20",
    amount:          float = 500,
    tau:             float = 12,
    route:           str = "IV",
    dosage_form:     str = "",
    doses:           Optional[int] = 3,
    observations:    bool = True,
    saved:           bool = True,
    renal:           Optional[RenalInfo] = RenalInfo(result="CRCL = 85"),
    sex:             str = "male",
) -> ClinicalRecord:
    patient = PatientCovariates(
        patient_id="p1", weight=70, age=60, sex=sex, height=170, renal=renal,
    )
    prescription = Prescription(
        patient_id="p1",
        drug_name=drug_name,
        indication=indication,
        additional_info=additional_info,
        target_type=target_type,
        target_value=target_value,
        dosage_form=dosage_form,
        route=route,
    )
    dose_events = [
        DoseEvent(
            patient_id="p1",
            drug_name=drug_name,
            timestamp=FIRST_DOSE + timedelta(hours=tau * i),
            amount=amount,
            route=route,
            infusion_minutes=60 if route == "IV" else 0,
            interval_hours=tau,
        )
        for i in range(doses or 0)
    ]
    obs = []
    if observations and dose_events:
        obs = [ObservationEvent(
            patient_id="p1",
            drug_name=drug_name,
            timestamp=dose_events[-1].timestamp + timedelta(hours=tau - 0.5),
            concentration=25.0,
        )]
    saved_regimen = SavedRegimen(amount=amount, tau=tau, route=route, infusion_minutes=60) if saved else None
    return ClinicalRecord(
        patient=patient,
        prescription=prescription,
        doses=dose_events,
        observations=obs,
        saved_regimen=saved_regimen,
    )


@pytest.fixture
def record() -> ClinicalRecord:
    """Vancomycin 500 mg q12h IV, trough target 10-20 (current trough 25)."""
    return make_record()


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def fake_client() -> FakeSimulationClient:
    return FakeSimulationClient()


@pytest.fixture
def client_factory():
    return FakeSimulationClient


@pytest.fixture
def search_settings() -> SearchSettings:
    return SearchSettings(debounce_seconds=0.0)


@pytest.fixture
def session_now() -> datetime:
    """Well past the 72 h window after the last recorded dose."""
    return FIRST_DOSE + timedelta(days=10)
