"""
models.py — Clinical records, simulation payloads and probe results
====================================================================
Read-only clinical snapshots (covariates, dose and observation events,
prescription) go in; SimulationRequest / SimulationResult travel over the
wire; ProbeResult and DoseSuggestionSet carry the search output.

Wire format
-----------
SimulationRequest.to_payload() produces the POST body the simulation
service expects (input_* scalars + dataset rows with upper-case NONMEM
column names). SimulationResult.from_payload() validates the response.
"""

import hashlib
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import MalformedSimulationResponse

ORAL_MARKERS     = ("po", "oral", "경구")
CMT_IV           = 1
CMT_ORAL         = 2
CMT_OBSERVATION  = 1

METRIC_AUC       = "auc"
METRIC_PEAK      = "peak"
METRIC_TROUGH    = "trough"

BELOW            = "below"
WITHIN           = "within"
ABOVE            = "above"

ASCENDING        = "ascending"
DESCENDING       = "descending"

# metric -> (after key, before key)
_METRIC_KEYS: Dict[str, Tuple[str, str]] = {
    METRIC_AUC:    ("AUC_24_after",   "AUC_24_before"),
    METRIC_PEAK:   ("CMAX_after",     "CMAX_before"),
    METRIC_TROUGH: ("CTROUGH_after",  "CTROUGH_before"),
}

SUMMARY_FIELDS = (
    "AUC_tau_before", "AUC_24_before", "CMAX_before", "CTROUGH_before",
    "AUC_tau_after",  "AUC_24_after",  "CMAX_after",  "CTROUGH_after",
)


def is_oral_route(route: Optional[str]) -> bool:
    text = (route or "").lower()
    return any(marker in text for marker in ORAL_MARKERS)


def compartment_for_route(route: Optional[str]) -> int:
    return CMT_ORAL if is_oral_route(route) else CMT_IV


def option_key(value: float) -> float:
    """Dose/interval values are compared at 4-decimal precision."""
    return round(float(value), 4)


def metric_for_target(target_type: Optional[str]) -> Optional[str]:
    text = (target_type or "").lower()
    if "auc" in text:
        return METRIC_AUC
    if "peak" in text or "max" in text:
        return METRIC_PEAK
    if "trough" in text or "min" in text:
        return METRIC_TROUGH
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Clinical snapshots
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RenalInfo:
    result:             str             = ""
    creatinine:         Optional[float] = None
    formula:            str             = "cockcroft-gault"
    renal_replacement:  str             = ""


@dataclass(frozen=True)
class PatientCovariates:
    patient_id:     str
    weight:         float
    age:            float
    sex:            str                 = "male"
    height:         float               = 0.0
    renal:          Optional[RenalInfo] = None
    toxicity_risk:  Optional[int]       = None

    @property
    def sex_code(self) -> int:
        return 1 if (self.sex or "").lower() in ("male", "m") else 0


@dataclass(frozen=True)
class DoseEvent:
    patient_id:         str
    drug_name:          str
    timestamp:          datetime
    amount:             float
    route:              str             = "IV"
    infusion_minutes:   float           = 0.0
    interval_hours:     Optional[float] = None

    @property
    def compartment(self) -> int:
        return compartment_for_route(self.route)

    @property
    def rate(self) -> float:
        """mg/h for an IV infusion; bolus and oral doses have no rate."""
        if is_oral_route(self.route) or not self.infusion_minutes or self.infusion_minutes <= 0:
            return 0.0
        return self.amount / (self.infusion_minutes / 60)


@dataclass(frozen=True)
class ObservationEvent:
    patient_id:     str
    drug_name:      str
    timestamp:      datetime
    concentration:  Optional[float] = None


@dataclass(frozen=True)
class Prescription:
    patient_id:         str
    drug_name:          str
    indication:         str             = ""
    additional_info:    str             = ""
    target_type:        str             = ""
    target_value:       str             = ""
    dosage_form:        str             = ""
    route:              str             = ""
    dosage:             Optional[float] = None


@dataclass
class SavedRegimen:
    """Regimen confirmed on the prescription step; preferred 'before' source."""
    amount:             float
    tau:                float
    cmt:                int             = CMT_IV
    route:              str             = "IV"
    infusion_minutes:   Optional[float] = None
    timestamp:          float           = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount":           self.amount,
            "tau":              self.tau,
            "cmt":              self.cmt,
            "route":            self.route,
            "infusion_minutes": self.infusion_minutes,
            "timestamp":        self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedRegimen":
        return cls(
            amount=float(data["amount"]),
            tau=float(data["tau"]),
            cmt=int(data.get("cmt", CMT_IV)),
            route=data.get("route", "IV"),
            infusion_minutes=data.get("infusion_minutes"),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class ClinicalRecord:
    """Everything the compiler reads for one patient + drug."""
    patient:        Optional[PatientCovariates]
    prescription:   Optional[Prescription]
    doses:          List[DoseEvent]         = field(default_factory=list)
    observations:   List[ObservationEvent]  = field(default_factory=list)
    saved_regimen:  Optional[SavedRegimen]  = None

    @property
    def patient_id(self) -> Optional[str]:
        return self.patient.patient_id if self.patient else None

    @property
    def drug_name(self) -> Optional[str]:
        return self.prescription.drug_name if self.prescription else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicalRecord":
        """Build a record from a JSON case file (see run_dose_search.py)."""
        p = data.get("patient")
        rx = data.get("prescription")
        patient = None
        if p:
            renal = RenalInfo(**p["renal"]) if p.get("renal") else None
            patient = PatientCovariates(
                patient_id=str(p["id"]),
                weight=float(p["weight"]),
                age=float(p["age"]),
                sex=p.get("sex", "male"),
                height=float(p.get("height") or 0.0),
                renal=renal,
                toxicity_risk=p.get("toxicity_risk"),
            )
        prescription = None
        if rx and patient:
            prescription = Prescription(patient_id=patient.patient_id, **rx)
        pid = patient.patient_id if patient else ""
        drug = prescription.drug_name if prescription else ""
        doses = [
            DoseEvent(
                patient_id=pid,
                drug_name=drug,
                timestamp=datetime.fromisoformat(d["timestamp"]),
                amount=float(d["amount"]),
                route=d.get("route", "IV"),
                infusion_minutes=float(d.get("infusion_minutes") or 0.0),
                interval_hours=d.get("interval_hours"),
            )
            for d in data.get("doses", [])
        ]
        observations = [
            ObservationEvent(
                patient_id=pid,
                drug_name=drug,
                timestamp=datetime.fromisoformat(o["timestamp"]),
                concentration=o.get("concentration"),
            )
            for o in data.get("observations", [])
        ]
        saved = data.get("saved_regimen")
        return cls(
            patient=patient,
            prescription=prescription,
            doses=doses,
            observations=observations,
            saved_regimen=SavedRegimen.from_dict(saved) if saved else None,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Target band
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TargetBand:
    target_type:    str
    low:            float
    high:           float

    @classmethod
    def parse(cls, target_type: Optional[str], text: Optional[str]) -> Optional["TargetBand"]:
        """'10-20', '400 ~ 600 mg·h/L' -> band from the first two numbers."""
        if metric_for_target(target_type) is None:
            return None
        nums = [float(n) for n in re.findall(r"\d+\.?\d*", text or "")]
        if len(nums) < 2:
            return None
        low, high = sorted(nums[:2])
        return cls(target_type=target_type, low=low, high=high)

    @property
    def metric(self) -> str:
        return metric_for_target(self.target_type)

    def status(self, value: Optional[float]) -> Optional[str]:
        if value is None:
            return None
        if value < self.low:
            return BELOW
        if value > self.high:
            return ABOVE
        return WITHIN

    def contains(self, value: Optional[float]) -> bool:
        return self.status(value) == WITHIN

    def distance(self, value: float) -> float:
        if value < self.low:
            return self.low - value
        if value > self.high:
            return value - self.high
        return 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Simulation request
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DatasetRow:
    id:     str
    time:   float
    dv:     Optional[float]
    amt:    float
    rate:   float
    cmt:    int
    wt:     float
    sex:    int
    age:    float
    crcl:   Optional[float]
    egfr:   Optional[float]
    toxi:   int
    evid:   int

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "ID":   self.id,
            "TIME": self.time,
            "DV":   self.dv,
            "AMT":  self.amt,
            "RATE": self.rate,
            "CMT":  self.cmt,
            "WT":   self.wt,
            "SEX":  self.sex,
            "AGE":  self.age,
        }
        if self.crcl is not None:
            row["CRCL"] = self.crcl
        if self.egfr is not None:
            row["EGFR"] = self.egfr
        row["TOXI"] = self.toxi
        row["EVID"] = self.evid
        return row


@dataclass(frozen=True)
class SimulationRequest:
    patient_id:     str
    drug_name:      str
    model_name:     Optional[str]
    weight:         float
    age:            float
    sex:            int
    crcl:           Optional[float]
    egfr:           Optional[float]
    toxi:           int
    tau_before:     float
    amount_before:  float
    rate_before:    float
    cmt_before:     int
    tau_after:      float
    amount_after:   float
    rate_after:     float
    cmt_after:      int
    dataset:        Tuple[DatasetRow, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"input_WT": self.weight}
        if self.crcl is not None:
            body["input_CRCL"] = self.crcl
        if self.egfr is not None:
            body["input_EGFR"] = self.egfr
        body.update({
            "input_AGE":            self.age,
            "input_SEX":            self.sex,
            "input_TOXI":           self.toxi,
            "input_tau_before":     self.tau_before,
            "input_amount_before":  self.amount_before,
            "input_rate_before":    self.rate_before,
            "input_cmt_before":     self.cmt_before,
            "input_tau_after":      self.tau_after,
            "input_amount_after":   self.amount_after,
            "input_rate_after":     self.rate_after,
            "input_cmt_after":      self.cmt_after,
            "model_name":           self.model_name,
            "dataset":              [row.to_dict() for row in self.dataset],
        })
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, separators=(",", ":"))

    @property
    def cache_key(self) -> str:
        blob = json.dumps(self.to_payload(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def dataset_dicts(self) -> List[Dict[str, Any]]:
        return [row.to_dict() for row in self.dataset]


# ─────────────────────────────────────────────────────────────────────────────
# Simulation result
# ─────────────────────────────────────────────────────────────────────────────

def _optional_float(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedSimulationResponse(f"{key} is not numeric: {value!r}")
    if math.isnan(number):
        return None
    return number


def _parse_series(payload: Dict[str, Any], key: str, value_key: str) -> List[Tuple[float, float]]:
    raw = payload.get(key) or []
    if not isinstance(raw, list):
        raise MalformedSimulationResponse(f"{key} must be a list")
    series = []
    for point in raw:
        if not isinstance(point, dict):
            raise MalformedSimulationResponse(f"{key} entries must be objects")
        t, v = point.get("time"), point.get(value_key)
        if t is None or v is None:
            continue
        try:
            series.append((float(t), float(v)))
        except (TypeError, ValueError):
            raise MalformedSimulationResponse(f"{key} point is not numeric: {point!r}")
    series.sort(key=lambda p: p[0])
    return series


def parse_steady_state(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


@dataclass
class SimulationResult:
    summary:        Dict[str, Optional[float]]
    steady_state:   bool
    ipred:          List[Tuple[float, float]] = field(default_factory=list)
    pred:           List[Tuple[float, float]] = field(default_factory=list)
    raw:            Dict[str, Any]            = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "SimulationResult":
        if not isinstance(payload, dict):
            raise MalformedSimulationResponse(
                f"Expected a JSON object, got {type(payload).__name__}"
            )
        summary = {name: _optional_float(payload, name) for name in SUMMARY_FIELDS}
        return cls(
            summary=summary,
            steady_state=parse_steady_state(payload.get("Steady_state")),
            ipred=_parse_series(payload, "IPRED_CONC", "IPRED"),
            pred=_parse_series(payload, "PRED_CONC", "PRED"),
            raw=payload,
        )

    def metric(self, name: str, tau: Optional[float] = None) -> Optional[float]:
        """
        Exposure metric for the adjusted regimen ('after'), falling back to
        the current regimen ('before'), and finally to a value derived from
        the IPRED curve.
        """
        after_key, before_key = _METRIC_KEYS[name]
        for key in (after_key, before_key):
            if self.summary.get(key) is not None:
                return self.summary[key]
        return self._derive_metric(name, tau)

    def _derive_metric(self, name: str, tau: Optional[float]) -> Optional[float]:
        if len(self.ipred) < 2:
            return None
        series = np.asarray(self.ipred, dtype=float)
        times, conc = series[:, 0], series[:, 1]
        if name == METRIC_PEAK:
            return float(np.max(conc))
        if name == METRIC_TROUGH:
            window = tau if tau and tau > 0 else 24.0
            mask = times >= times[-1] - window
            return float(np.min(conc[mask]))
        # AUC over the final 24 h, trapezoidal
        mask = times >= times[-1] - 24.0
        t, c = times[mask], conc[mask]
        if len(t) < 2:
            return None
        return float(np.sum(np.diff(t) * (c[1:] + c[:-1]) / 2))

    def summary_dict(self) -> Dict[str, Any]:
        out = {k: v for k, v in self.summary.items() if v is not None}
        out["Steady_state"] = self.steady_state
        return out


# ─────────────────────────────────────────────────────────────────────────────
# Search output
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ProbeResult:
    dose:       float
    interval:   Optional[float]
    result:     Optional[SimulationResult]
    in_range:   bool
    value:      Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.result is None


@dataclass
class DoseSuggestionSet:
    """
    In-band candidates for one scenario. The baseline (current regimen) is
    pinned first; other options follow the scenario's ordering policy. The
    in-target case uses one ascending list with the baseline in place.
    """
    scenario_id:    str
    baseline:       float
    order:          str                     = ASCENDING
    include_baseline_in_order: bool         = False
    options:        Dict[float, ProbeResult] = field(default_factory=dict)
    selected:       Optional[float]         = None

    def add(self, value: float, probe: ProbeResult, auto_select: Optional[bool] = None) -> bool:
        """
        Insert or overwrite; returns True when the key was new. The first
        in-band option becomes the selection unless `auto_select` says otherwise.
        """
        key = option_key(value)
        is_new = key not in self.options
        self.options[key] = probe
        if auto_select is None:
            auto_select = probe.in_range
        if self.selected is None and auto_select:
            self.selected = key
        return is_new

    def select(self, value: float) -> None:
        key = option_key(value)
        if key not in self.options:
            raise KeyError(f"{value} is not a published option for {self.scenario_id}")
        self.selected = key

    def values(self) -> List[float]:
        base = option_key(self.baseline)
        if self.include_baseline_in_order:
            return sorted(self.options)
        others = [v for v in self.options if v != base]
        others.sort(reverse=(self.order == DESCENDING))
        return ([base] if base in self.options else []) + others

    def non_baseline_values(self) -> List[float]:
        base = option_key(self.baseline)
        return [v for v in self.values() if v != base]

    def __len__(self) -> int:
        return len(self.options)


@dataclass
class HistoryEntry:
    id:             str
    timestamp:      str
    model_name:     Optional[str]
    summary:        Dict[str, Any]
    dataset:        List[Dict[str, Any]]
    data:           Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":         self.id,
            "timestamp":  self.timestamp,
            "model_name": self.model_name,
            "summary":    self.summary,
            "dataset":    self.dataset,
            "data":       self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=str(data.get("id", "")),
            timestamp=str(data.get("timestamp", "")),
            model_name=data.get("model_name"),
            summary=data.get("summary") or {},
            dataset=data.get("dataset") or [],
            data=data.get("data") or {},
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 (with or without 'Z') or epoch milliseconds -> aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
