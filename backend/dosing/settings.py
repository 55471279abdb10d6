"""
settings.py — Endpoint, storage layout and search/quota tunables
================================================================
All thresholds used by the search controller and quota manager live here so
callers can override them per session. The defaults reproduce the clinical
dashboard's behaviour.
"""

import os
from dataclasses import dataclass
from pathlib import Path

# ─────────────────────────────────────────────────────────────────────────────
# Remote simulation endpoint
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_SIMULATION_URL = "https://b74ljng162.apigw.ntruss.com/tdm/prod/"
SIMULATION_URL         = os.environ.get("TDM_SIMULATION_URL", DEFAULT_SIMULATION_URL)

REQUEST_TIMEOUT        = 60   # seconds, whole request
CONNECT_TIMEOUT        = 15

# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────

CACHE_DIR   = Path(os.environ.get("TDM_CACHE_DIR", "/tmp/tdm_dose_cache"))
STORE_FILE  = CACHE_DIR / "store.json"

KEY_RESULT        = "result"
KEY_HISTORY       = "history"
KEY_PRESCRIPTION  = "prescription"
KEY_ACTIVE        = "active"

DEFAULT_STORE_CAPACITY = 5 * 1024 * 1024   # bytes, browser-equivalent quota


def result_key(patient_id: str, drug_name: str = None) -> str:
    if drug_name is None:
        return f"{KEY_RESULT}:{patient_id}"
    return f"{KEY_RESULT}:{patient_id}:{drug_name}"


def history_key(patient_id: str, drug_name: str) -> str:
    return f"{KEY_HISTORY}:{patient_id}:{drug_name}"


def prescription_key(patient_id: str, drug_name: str) -> str:
    return f"{KEY_PRESCRIPTION}:{patient_id}:{drug_name}"


def active_key(patient_id: str, drug_name: str) -> str:
    return f"{KEY_ACTIVE}:{patient_id}:{drug_name}"


def split_key(key: str):
    """'history:p1:Vancomycin' -> ('history', 'p1', 'Vancomycin'); drug may be None."""
    parts = key.split(":", 2)
    if len(parts) < 2:
        return parts[0], None, None
    if len(parts) == 2:
        return parts[0], parts[1], None
    return parts[0], parts[1], parts[2]


# ─────────────────────────────────────────────────────────────────────────────
# Tunables
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class SearchSettings:
    step:                   float = 10.0
    oral_cyclosporin_step:  float = 25.0
    min_dose:               float = 1.0
    batch_size:             int   = 3
    max_batches:            int   = 20
    option_cap:             int   = 12
    symmetric_span:         int   = 6
    reuse_threshold:        int   = 12
    reuse_threshold_in_target: int = 6
    failure_cutoff:         int   = 5
    bracket_attempts:       int   = 5
    probe_attempts:         int   = 3
    baseline_attempts:      int   = 7
    debounce_seconds:       float = 0.25


@dataclass
class QuotaSettings:
    normal_age_days:        float = 30.0
    aggressive_age_days:    float = 7.0
    normal_max_keys:        int   = 10
    aggressive_max_keys:    int   = 50
    keep_recent:            int   = 2
    history_cap:            int   = 5
