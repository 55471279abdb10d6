"""
quota.py — Storage quota manager
=================================
Invoked when a persisted write raises StorageQuotaExceeded. Escalates
through three eviction tiers, retrying the write after each:

  Tier 1  other patients' result/history keys older than 30 days, ≤ 10 keys
  Tier 2  other patients' keys older than 7 days, ≤ 50 keys;
          current patient's histories trimmed to the 2 newest entries
  Tier 3  current patient + drug history and latest-result keys removed

If the write still fails after tier 3, StorageExhausted is raised.

A key counts as stale when its oldest timestamp is older than the tier
threshold, when it carries no timestamp, or when it cannot be parsed.
Patient ownership is read from the key segments (kind:patient[:drug]).
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .errors import StorageExhausted, StorageQuotaExceeded
from .models import parse_timestamp, utc_now
from .settings import (
    KEY_HISTORY,
    KEY_RESULT,
    QuotaSettings,
    history_key,
    result_key,
    split_key,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

_EVICTABLE = (KEY_RESULT, KEY_HISTORY)
_EPOCH     = datetime(1970, 1, 1, tzinfo=timezone.utc)


def entry_time(entry) -> datetime:
    stamp = parse_timestamp(entry.get("timestamp")) if isinstance(entry, dict) else None
    return stamp or _EPOCH


@dataclass
class EvictionReport:
    tier:       int
    removed:    List[str] = field(default_factory=list)
    trimmed:    List[str] = field(default_factory=list)


class QuotaManager:

    def __init__(
        self,
        store:      KeyValueStore,
        settings:   Optional[QuotaSettings] = None,
        clock:      Callable[[], datetime] = utc_now,
    ):
        self.store    = store
        self.settings = settings or QuotaSettings()
        self.clock    = clock

    # ── Staleness ─────────────────────────────────────────────────────────────

    def _oldest_timestamp(self, raw: str) -> Optional[datetime]:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            stamps = [parse_timestamp(e.get("timestamp")) for e in parsed if isinstance(e, dict)]
            if not stamps or any(s is None for s in stamps):
                return None
            return min(stamps)
        if isinstance(parsed, dict):
            return parse_timestamp(parsed.get("timestamp"))
        return None

    def is_stale(self, key: str, max_age_days: float) -> bool:
        """True when the key's data is older than `max_age_days` or carries no readable timestamp."""
        raw = self.store.get(key)
        if raw is None:
            return False
        try:
            oldest = self._oldest_timestamp(raw)
        except (json.JSONDecodeError, AttributeError):
            return True
        if oldest is None:
            return True
        age_days = (self.clock() - oldest).total_seconds() / 86400
        return age_days > max_age_days

    def _evictable_keys(self):
        for key in sorted(self.store.keys()):
            kind, patient, _ = split_key(key)
            if kind in _EVICTABLE:
                yield key, patient

    # ── Tiers ─────────────────────────────────────────────────────────────────

    def evict(self, current_patient_id: str, aggressive: bool = False) -> EvictionReport:
        """Tier 1 (or tier 2 when aggressive) eviction of other patients' data."""
        s = self.settings
        max_age = s.aggressive_age_days if aggressive else s.normal_age_days
        max_keys = s.aggressive_max_keys if aggressive else s.normal_max_keys
        report = EvictionReport(tier=2 if aggressive else 1)

        candidates = []
        for key, patient in self._evictable_keys():
            if patient == current_patient_id:
                if aggressive and key.startswith(KEY_HISTORY + ":"):
                    if self._trim_history(key):
                        report.trimmed.append(key)
                continue
            if self.is_stale(key, max_age):
                candidates.append(key)

        for key in candidates[:max_keys]:
            self.store.remove(key)
            report.removed.append(key)

        if report.removed or report.trimmed:
            logger.warning(
                f"⚠️  Quota tier {report.tier}: removed {len(report.removed)} keys, "
                f"trimmed {len(report.trimmed)} histories"
            )
        return report

    def _trim_history(self, key: str) -> bool:
        entries = self.store.get_json(key)
        keep = self.settings.keep_recent
        if not isinstance(entries, list) or len(entries) <= keep:
            return False
        entries.sort(key=entry_time)
        self.store.set_json(key, entries[-keep:])
        return True

    def evict_current(self, patient_id: str, drug_name: Optional[str]) -> EvictionReport:
        """Tier 3: drop the current patient + drug's own results."""
        report = EvictionReport(tier=3)
        keys = [result_key(patient_id)]
        if drug_name:
            keys += [result_key(patient_id, drug_name), history_key(patient_id, drug_name)]
        for key in keys:
            if self.store.get(key) is not None:
                self.store.remove(key)
                report.removed.append(key)
        logger.warning(f"⚠️  Quota tier 3: cleared current data for {patient_id} ({len(report.removed)} keys)")
        return report

    # ── Guarded write ─────────────────────────────────────────────────────────

    def write(self, key: str, value: str, patient_id: str, drug_name: Optional[str] = None) -> int:
        """
        Write `value`, escalating eviction tiers on quota failure.
        Returns the tier that made room (0 when no eviction was needed).
        """
        try:
            self.store.set(key, value)
            return 0
        except StorageQuotaExceeded as e:
            logger.warning(f"⚠️  {e}")

        steps = (
            lambda: self.evict(patient_id, aggressive=False),
            lambda: self.evict(patient_id, aggressive=True),
            lambda: self.evict_current(patient_id, drug_name),
        )
        for tier, step in enumerate(steps, start=1):
            step()
            try:
                self.store.set(key, value)
                logger.info(f"✅ Stored '{key}' after tier {tier} eviction")
                return tier
            except StorageQuotaExceeded:
                continue

        logger.error(f"❌ Storage exhausted writing '{key}'")
        raise StorageExhausted(key)

    def write_json(self, key: str, obj, patient_id: str, drug_name: Optional[str] = None) -> int:
        """Write with escalating eviction; returns the tier that made room (0 if none)."""
        return self.write(key, json.dumps(obj, ensure_ascii=False), patient_id, drug_name)

    # ── Manual cleanup ────────────────────────────────────────────────────────

    def clear_results(
        self,
        older_only:         bool = False,
        exclude_patient_id: Optional[str] = None,
    ) -> int:
        """Remove stored results/histories; optionally only those past the 30-day threshold."""
        removed = 0
        for key, patient in list(self._evictable_keys()):
            if exclude_patient_id and patient == exclude_patient_id:
                continue
            if older_only and not self.is_stale(key, self.settings.normal_age_days):
                continue
            self.store.remove(key)
            removed += 1
        logger.info(f"✅ Cleared {removed} stored result keys")
        return removed
