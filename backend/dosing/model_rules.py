"""
model_rules.py — Drug / indication / context lookup
====================================================
One table answers every per-drug question the engine asks:

  • which population PK model serves (drug, indication, context)
  • which administration routes the available models support
  • the dose search step (mg) and concentration unit
  • whether the nephrotoxic co-medication flag (TOXI) is set

Context modifiers
-----------------
  CRRT        renal replacement field or prescription additional info
              mentions "crrt" (case-insensitive)
  within72h   last recorded dose is at most 72 h before `now`
  POD bucket  prescription additional info, e.g. "POD 3~6"
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from .errors import RouteUnsupported, UnsupportedModelContext
from .models import Prescription, RenalInfo, is_oral_route
from .settings import SearchSettings

logger = logging.getLogger(__name__)

VANCOMYCIN  = "Vancomycin"
CYCLOSPORIN = "Cyclosporin"

NEUROSURGICAL       = "Neurosurgical patients/Korean"
NOT_SPECIFIED       = "Not specified/Korean"
NON_TOXIC_ANSWERS   = ("복용 중인 약물 없음", "기타")
UNSUPPORTED_OTHER   = "기타"
CRRT_ONLY_MESSAGE   = "CRRT 분석 모델만 지원됩니다."

WITHIN_HOURS        = 72
ORAL_SOLID_FORM     = "capsule/tablet"

# drug -> indication -> model code, or {context: model code}
MODEL_CODE_TABLE: Dict[str, Dict[str, Union[str, Dict[str, str]]]] = {
    VANCOMYCIN: {
        NOT_SPECIFIED: {
            "default":   "Vancomycin1-1",
            "CRRT":      "Vancomycin1-2",
        },
        NEUROSURGICAL: {
            "default":   "Vancomycin2-1",
            "within72h": "Vancomycin2-2",
        },
    },
    CYCLOSPORIN: {
        "Renal transplant recipients/Korean": {
            "POD ~2":    "Cyclosporin1-1",
            "POD 3~6":   "Cyclosporin1-2",
            "POD 7~":    "Cyclosporin1-3",
            "default":   "Cyclosporin1-1",
        },
        "Allo-HSCT/Korean":                         "Cyclosporin2",
        "Thoracic transplant recipients/European":  "Cyclosporin3",
    },
}


@dataclass(frozen=True)
class DrugRule:
    unit:           str
    iv_only:        bool = False


DRUG_RULES: Dict[str, DrugRule] = {
    VANCOMYCIN:  DrugRule(unit="mg/L",  iv_only=True),
    CYCLOSPORIN: DrugRule(unit="ng/mL"),
}

_ALIASES = {
    "vancomycin":   VANCOMYCIN,
    "cyclosporin":  CYCLOSPORIN,
    "cyclosporine": CYCLOSPORIN,
}


def canonical_drug(drug_name: Optional[str]) -> Optional[str]:
    """Map a drug name or synonym to its canonical name."""
    if not drug_name:
        return None
    return _ALIASES.get(drug_name.strip().lower(), drug_name)


def normalize_model_code(code: str) -> str:
    """'Vancomycin1-2' -> 'vancomycin1_2'"""
    if not code:
        return code
    return (code[0].lower() + code[1:]).replace("-", "_")


def is_crrt(renal: Optional[RenalInfo], additional_info: Optional[str]) -> bool:
    from_renal = "crrt" in ((renal.renal_replacement if renal else "") or "").lower()
    from_rx = "crrt" in (additional_info or "").lower()
    return from_renal or from_rx


def resolve_model_name(
    prescription:   Prescription,
    renal:          Optional[RenalInfo] = None,
    last_dose_time: Optional[datetime] = None,
    now:            Optional[datetime] = None,
) -> Optional[str]:
    drug = canonical_drug(prescription.drug_name)
    indication = prescription.indication
    if not drug or not indication:
        return None
    table = MODEL_CODE_TABLE.get(drug)
    if table is None:
        return None
    entry = table.get(indication)
    if entry is None:
        return None
    if isinstance(entry, str):
        return normalize_model_code(entry)

    info = prescription.additional_info or ""

    if drug == VANCOMYCIN:
        if indication == NOT_SPECIFIED and info == UNSUPPORTED_OTHER:
            raise UnsupportedModelContext(CRRT_ONLY_MESSAGE)
        if is_crrt(renal, info) and "CRRT" in entry:
            return normalize_model_code(entry["CRRT"])
        if last_dose_time is not None and "within72h" in entry:
            reference = now or datetime.now()
            elapsed_h = (reference - last_dose_time).total_seconds() / 3600
            if elapsed_h <= WITHIN_HOURS:
                return normalize_model_code(entry["within72h"])
        return normalize_model_code(entry["default"])

    if drug == CYCLOSPORIN:
        pod = info.strip()
        code = entry.get(pod) if pod else None
        return normalize_model_code(code or entry["default"])

    default = entry.get("default")
    return normalize_model_code(default) if default else None


def check_route(drug_name: str, route: Optional[str]) -> None:
    """Raise RouteUnsupported when an IV-only drug is given by mouth."""
    rule = DRUG_RULES.get(canonical_drug(drug_name))
    if rule and rule.iv_only and is_oral_route(route):
        raise RouteUnsupported(drug_name, route or "", "IV")


def toxicity_flag(prescription: Prescription) -> int:
    """TOXI=1 for neurosurgical vancomycin with a named nephrotoxic co-medication."""
    info = prescription.additional_info
    if (
        canonical_drug(prescription.drug_name) == VANCOMYCIN
        and prescription.indication == NEUROSURGICAL
        and info
        and info not in NON_TOXIC_ANSWERS
    ):
        return 1
    return 0


def step_size(prescription: Prescription, settings: Optional[SearchSettings] = None) -> float:
    """Search step in mg for the prescribed drug and form."""
    settings = settings or SearchSettings()
    if canonical_drug(prescription.drug_name) == CYCLOSPORIN:
        if (prescription.dosage_form or "").strip().lower() == ORAL_SOLID_FORM:
            return settings.oral_cyclosporin_step
    return settings.step


def concentration_unit(drug_name: Optional[str]) -> str:
    rule = DRUG_RULES.get(canonical_drug(drug_name))
    return rule.unit if rule else "mg/L"
