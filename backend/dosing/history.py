"""
history.py — Persisted results, history and saved regimen state
================================================================
Key layout (values are JSON):

    result:{patient}                latest canonical result for the patient
    result:{patient}:{drug}         latest canonical result for patient + drug
    history:{patient}:{drug}        up to 5 HistoryEntry dicts, newest last
    prescription:{patient}:{drug}   SavedRegimen confirmed on the prescription step
    active:{patient}:{drug}         marker that a simulation is active

Every result/history write goes through the QuotaManager so a full store
triggers eviction instead of losing the newest result.
"""

import logging
from typing import Any, Dict, List, Optional

from .models import HistoryEntry, SavedRegimen, SimulationRequest, SimulationResult, parse_timestamp, utc_now
from .quota import QuotaManager, entry_time
from .settings import (
    KEY_RESULT,
    QuotaSettings,
    active_key,
    history_key,
    prescription_key,
    result_key,
    split_key,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)


class ResultHistory:

    def __init__(
        self,
        store:      KeyValueStore,
        quota:      Optional[QuotaManager] = None,
        settings:   Optional[QuotaSettings] = None,
        clock=utc_now,
    ):
        self.store    = store
        self.settings = settings or (quota.settings if quota else QuotaSettings())
        self.quota    = quota or QuotaManager(store, self.settings, clock=clock)
        self.clock    = clock

    # ── Results ───────────────────────────────────────────────────────────────

    def append(self, request: SimulationRequest, result: SimulationResult) -> HistoryEntry:
        """Persist a canonical result: latest-result keys plus capped history."""
        pid, drug = request.patient_id, request.drug_name
        now = self.clock()
        latest = {
            "timestamp":  now.isoformat(),
            "model_name": request.model_name,
            "data":       result.raw,
        }
        self.quota.write_json(result_key(pid), latest, pid, drug)

        entry = HistoryEntry(
            id=str(int(now.timestamp() * 1000)),
            timestamp=now.isoformat(),
            model_name=request.model_name,
            summary=result.summary_dict(),
            dataset=request.dataset_dicts(),
            data=result.raw,
        )
        entries = [e.to_dict() for e in self.entries(pid, drug)]
        entries.append(entry.to_dict())
        entries.sort(key=entry_time)
        cap = self.settings.history_cap
        if len(entries) > cap:
            entries = entries[-cap:]

        self.quota.write_json(history_key(pid, drug), entries, pid, drug)
        self.quota.write_json(result_key(pid, drug), latest, pid, drug)
        logger.info(f"✅ Saved result for {pid}/{drug} (history: {len(entries)})")
        return entry

    def entries(self, patient_id: str, drug_name: str) -> List[HistoryEntry]:
        """Stored history for a patient + drug, oldest first."""
        raw = self.store.get_json(history_key(patient_id, drug_name), default=[])
        if not isinstance(raw, list):
            logger.warning(f"⚠️  History for {patient_id}/{drug_name} is not a list; ignoring")
            return []
        return [HistoryEntry.from_dict(e) for e in raw if isinstance(e, dict)]

    def load_latest(self, patient_id: str, drug_name: str) -> Optional[Dict[str, Any]]:
        """Newest history entry's payload, else the latest-result key."""
        entries = self.entries(patient_id, drug_name)
        if entries:
            newest = max(entries, key=lambda e: entry_time(e.to_dict()))
            if newest.data:
                return newest.data
        latest = self.store.get_json(result_key(patient_id, drug_name))
        if isinstance(latest, dict):
            return latest.get("data", latest)
        return None

    def has_result(self, patient_id: str, drug_name: Optional[str] = None) -> bool:
        """True when history or a latest-result key exists for the patient (and drug)."""
        if drug_name:
            if self.entries(patient_id, drug_name):
                return True
            return self.store.get(result_key(patient_id, drug_name)) is not None
        for key in self.store.keys():
            kind, patient, _ = split_key(key)
            if kind == KEY_RESULT and patient == patient_id:
                return True
        return False

    def latest_timestamp(self, patient_id: str, drug_name: str):
        latest = self.store.get_json(result_key(patient_id, drug_name))
        if isinstance(latest, dict):
            return parse_timestamp(latest.get("timestamp"))
        return None

    # ── Saved regimen / active marker ─────────────────────────────────────────

    def save_prescription(self, patient_id: str, drug_name: str, regimen: SavedRegimen) -> None:
        """Persist the regimen the clinician last saved."""
        if not regimen.timestamp:
            regimen.timestamp = self.clock().timestamp() * 1000
        self.quota.write_json(prescription_key(patient_id, drug_name), regimen.to_dict(), patient_id, drug_name)

    def load_prescription(self, patient_id: str, drug_name: str) -> Optional[SavedRegimen]:
        raw = self.store.get_json(prescription_key(patient_id, drug_name))
        if not isinstance(raw, dict):
            return None
        try:
            return SavedRegimen.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️  Saved regimen for {patient_id}/{drug_name} unreadable: {e}")
            return None

    def set_active(self, patient_id: str, drug_name: str, active: bool = True) -> None:
        """Mark the patient + drug as having a current simulation."""
        key = active_key(patient_id, drug_name)
        if active:
            self.quota.write_json(key, {"timestamp": self.clock().isoformat()}, patient_id, drug_name)
        else:
            self.store.remove(key)

    def is_active(self, patient_id: str, drug_name: str) -> bool:
        return self.store.get(active_key(patient_id, drug_name)) is not None

    def clear_results(self, older_only: bool = False, exclude_patient_id: Optional[str] = None) -> int:
        """Remove stored results; returns the number of keys removed."""
        return self.quota.clear_results(older_only=older_only, exclude_patient_id=exclude_patient_id)
