"""
renal.py — Renal function covariate (CRCL / eGFR)
==================================================
Resolution order:
  1. A directly entered lab result string, "CRCL = 85" or "eGFR = 60".
  2. Any bare number in the result string, taken as CRCL.
  3. Serum creatinine with the selected formula (Cockcroft-Gault, MDRD,
     CKD-EPI). MDRD and CKD-EPI are de-normalised from 1.73 m² using the
     Mosteller BSA.
  4. CRCL 90 mL/min when nothing is recorded.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

from .models import PatientCovariates, RenalInfo

logger = logging.getLogger(__name__)

DEFAULT_CRCL = 90.0
STANDARD_BSA = 1.73

_RESULT_RE = re.compile(r"(CRCL|eGFR)\s*=\s*([\d.]+)", re.IGNORECASE)
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


@dataclass(frozen=True)
class RenalFunction:
    crcl: Optional[float] = None
    egfr: Optional[float] = None


def mosteller_bsa(height_cm: float, weight_kg: float) -> float:
    if not height_cm or not weight_kg:
        return STANDARD_BSA
    return math.sqrt((weight_kg * height_cm) / 3600)


def cockcroft_gault(age: float, weight: float, scr: float, female: bool) -> float:
    """Creatinine clearance (mL/min)."""
    base = ((140 - age) * weight) / (72 * scr)
    return base * 0.85 if female else base


def mdrd(age: float, scr: float, female: bool, bsa: float) -> float:
    egfr = 175 * scr ** -1.154 * age ** -0.203 * (0.742 if female else 1.0)
    return egfr * (bsa / STANDARD_BSA)


def ckd_epi(age: float, scr: float, female: bool, bsa: float) -> float:
    k = 0.7 if female else 0.9
    a = -0.329 if female else -0.411
    egfr = (
        141
        * min(scr / k, 1) ** a
        * max(scr / k, 1) ** -1.209
        * 0.993 ** age
        * (1.018 if female else 1.0)
    )
    return egfr * (bsa / STANDARD_BSA)


def _parse_number(text: str) -> Optional[float]:
    cleaned = _NON_NUMERIC_RE.sub("", text)
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if value > 0 else None


def compute_renal_function(
    renal: Optional[RenalInfo],
    covariates: PatientCovariates,
) -> RenalFunction:
    if renal is None:
        return RenalFunction(crcl=DEFAULT_CRCL)

    text = str(renal.result or "")
    match = _RESULT_RE.search(text)
    if match:
        try:
            value = float(match.group(2))
        except ValueError:
            value = 0.0
        if value > 0:
            if match.group(1).lower() == "crcl":
                return RenalFunction(crcl=value)
            return RenalFunction(egfr=value)

    bare = _parse_number(text) if text else None
    if bare is not None:
        return RenalFunction(crcl=bare)

    scr = renal.creatinine
    if scr is not None and scr > 0:
        female = covariates.sex_code == 0
        age, weight = covariates.age, covariates.weight
        formula = (renal.formula or "").lower()
        if formula == "mdrd":
            bsa = mosteller_bsa(covariates.height, weight)
            return RenalFunction(egfr=mdrd(age, scr, female, bsa))
        if formula == "ckd-epi":
            bsa = mosteller_bsa(covariates.height, weight)
            return RenalFunction(egfr=ckd_epi(age, scr, female, bsa))
        if formula != "cockcroft-gault":
            logger.warning(f"⚠️  Unknown renal formula '{renal.formula}', using Cockcroft-Gault")
        return RenalFunction(crcl=cockcroft_gault(age, weight, scr, female))

    return RenalFunction(crcl=DEFAULT_CRCL)
