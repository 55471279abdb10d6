"""
request_compiler.py — ClinicalRecord → SimulationRequest
=========================================================
Normalises fragmented clinical records into the dataset the simulation
service consumes.

Dataset layout
--------------
  • dose rows (EVID=1), compartment from route: oral → 2, IV → 1
  • observation rows (EVID=0), compartment 1, DV = measured concentration
  • TIME = hours since the earliest dose, clamped at 0
  • no doses        → one synthetic dose row at TIME 0 (saved regimen)
  • no observations → one placeholder row at TIME = tau_after, DV null
  • rows ordered by TIME, dose before observation on ties

'Before' regimen scalars come from the saved regimen, then the latest dose
event, then the gap between the last two doses, then 12 h. 'After' scalars
are the overrides, defaulting to 'before'.

The compiler is a pure function of (record, overrides, now): identical
inputs give byte-identical payloads.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from .model_rules import check_route, resolve_model_name, toxicity_flag
from .models import (
    CMT_IV,
    CMT_OBSERVATION,
    ClinicalRecord,
    DatasetRow,
    DoseEvent,
    SimulationRequest,
    is_oral_route,
)
from .renal import compute_renal_function

logger = logging.getLogger(__name__)

DEFAULT_TAU_HOURS        = 12.0
DEFAULT_AMOUNT           = 100.0
PLACEHOLDER_OBS_HOURS    = 2.0
DECIMALS                 = 4


def _hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def _valid_positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def compute_tau_from_doses(doses: List[DoseEvent]) -> Optional[float]:
    """Interval between the last two doses, or None when undefined."""
    if len(doses) < 2:
        return None
    ordered = sorted(doses, key=lambda d: d.timestamp)
    tau = _hours_between(ordered[-1].timestamp, ordered[-2].timestamp)
    return tau if _valid_positive(tau) else None


def infusion_rate(amount: float, infusion_minutes: Optional[float]) -> float:
    if not infusion_minutes or infusion_minutes <= 0:
        return 0.0
    return amount / (infusion_minutes / 60)


class RequestCompiler:

    def compile(
        self,
        record:     ClinicalRecord,
        overrides:  Optional[Dict[str, float]] = None,
        now:        Optional[datetime] = None,
    ) -> Optional[SimulationRequest]:
        patient, rx = record.patient, record.prescription
        if patient is None or rx is None:
            logger.debug("Compile skipped: patient or active prescription missing")
            return None

        overrides = overrides or {}
        pid, drug = patient.patient_id, rx.drug_name
        saved = record.saved_regimen

        doses = sorted(
            (d for d in record.doses if d.patient_id == pid and d.drug_name == drug),
            key=lambda d: d.timestamp,
        )
        observations = sorted(
            (o for o in record.observations if o.patient_id == pid and o.drug_name == drug),
            key=lambda o: o.timestamp,
        )

        if saved is not None:
            check_route(drug, saved.route)
        for dose in doses:
            check_route(drug, dose.route)

        last_dose = doses[-1] if doses else None
        renal = compute_renal_function(patient.renal, patient)
        toxi = patient.toxicity_risk if patient.toxicity_risk is not None else toxicity_flag(rx)

        # ── Before regimen ────────────────────────────────────────────────────
        if saved is not None:
            amount_before = saved.amount
        elif last_dose is not None:
            amount_before = last_dose.amount
        else:
            amount_before = DEFAULT_AMOUNT

        tau_candidates = (
            saved.tau if saved is not None else None,
            last_dose.interval_hours if last_dose is not None else None,
            compute_tau_from_doses(doses),
        )
        tau_before = next((t for t in tau_candidates if _valid_positive(t)), DEFAULT_TAU_HOURS)

        if saved is not None:
            cmt_before = saved.cmt
        elif last_dose is not None:
            cmt_before = last_dose.compartment
        else:
            cmt_before = CMT_IV

        if last_dose is not None and last_dose.infusion_minutes:
            infusion_minutes = last_dose.infusion_minutes
        elif saved is not None and saved.infusion_minutes:
            infusion_minutes = saved.infusion_minutes
        else:
            infusion_minutes = 0.0

        if last_dose is not None:
            rate_before = last_dose.rate
        elif saved is not None and not is_oral_route(saved.route):
            rate_before = infusion_rate(saved.amount, saved.infusion_minutes)
        else:
            rate_before = 0.0

        # ── After regimen ─────────────────────────────────────────────────────
        amount_after = overrides.get("amount", amount_before)
        tau_after = overrides.get("tau", tau_before)
        if not _valid_positive(tau_after):
            tau_after = tau_before
        cmt_after = cmt_before
        rate_after = infusion_rate(amount_after, infusion_minutes) if infusion_minutes > 0 else rate_before

        # ── Dataset ───────────────────────────────────────────────────────────
        def row(time: float, dv, amt: float, rate: float, cmt: int, evid: int) -> DatasetRow:
            return DatasetRow(
                id=pid,
                time=round(max(0.0, time), DECIMALS),
                dv=dv,
                amt=amt,
                rate=round(rate, DECIMALS),
                cmt=cmt,
                wt=patient.weight,
                sex=patient.sex_code,
                age=patient.age,
                crcl=renal.crcl,
                egfr=renal.egfr,
                toxi=toxi,
                evid=evid,
            )

        anchor = doses[0].timestamp if doses else (now or datetime.now())
        rows: List[DatasetRow] = []
        if doses:
            for dose in doses:
                rows.append(row(
                    _hours_between(dose.timestamp, anchor),
                    None, dose.amount, dose.rate, dose.compartment, 1,
                ))
        else:
            rows.append(row(0.0, None, amount_before, rate_before, cmt_before, 1))

        if observations:
            for obs in observations:
                rows.append(row(
                    _hours_between(obs.timestamp, anchor),
                    obs.concentration, 0.0, 0.0, CMT_OBSERVATION, 0,
                ))
        else:
            placeholder = tau_after if _valid_positive(tau_after) else PLACEHOLDER_OBS_HOURS
            rows.append(row(placeholder, None, 0.0, 0.0, CMT_OBSERVATION, 0))

        rows.sort(key=lambda r: (r.time, -r.evid))

        model_name = resolve_model_name(
            rx,
            renal=patient.renal,
            last_dose_time=last_dose.timestamp if last_dose else None,
            now=now,
        )
        if model_name is None:
            logger.warning(f"⚠️  No PK model for {drug} / '{rx.indication}'")

        return SimulationRequest(
            patient_id=pid,
            drug_name=drug,
            model_name=model_name,
            weight=patient.weight,
            age=patient.age,
            sex=patient.sex_code,
            crcl=renal.crcl,
            egfr=renal.egfr,
            toxi=toxi,
            tau_before=round(tau_before, DECIMALS),
            amount_before=amount_before,
            rate_before=round(rate_before, DECIMALS),
            cmt_before=cmt_before,
            tau_after=round(tau_after, DECIMALS),
            amount_after=amount_after,
            rate_after=round(rate_after, DECIMALS),
            cmt_after=cmt_after,
            dataset=tuple(rows),
        )
