"""
errors.py — Exception taxonomy for the dose-finding engine
===========================================================

    DoseFindingError
    ├── ValidationError               never retried, surfaced immediately
    │   ├── MissingClinicalData
    │   ├── RouteUnsupported
    │   └── UnsupportedModelContext
    ├── SimulationError
    │   ├── SimulationUnavailable     retries exhausted (server / network / cross_origin)
    │   ├── SimulationRejected        non-retryable HTTP status
    │   └── MalformedSimulationResponse
    ├── ProbeFailed                   caller-side probe retry signal
    ├── StorageQuotaExceeded          raised by a KeyValueStore write
    └── StorageExhausted              quota eviction could not make room
"""

from typing import Optional

# User-facing messages (shown verbatim by the UI layer)
SEARCH_FAILED_MESSAGE     = "제안 계산에 실패했습니다"
STORAGE_EXHAUSTED_MESSAGE = "저장 공간이 부족합니다. 브라우저 저장소를 정리해주세요."

KIND_SERVER       = "server"
KIND_NETWORK      = "network"
KIND_CROSS_ORIGIN = "cross_origin"

_KIND_DIAGNOSTICS = {
    KIND_SERVER: (
        "Simulation server temporarily unavailable (HTTP 503). "
        "The service is overloaded or restarting; try again shortly."
    ),
    KIND_NETWORK: (
        "Network failure: the simulation server could not be reached "
        "(connection refused, no route to host or timeout). "
        "Check connectivity to the endpoint."
    ),
    KIND_CROSS_ORIGIN: (
        "Cross-origin rejection: the simulation server did not allow this "
        "origin. Check the server's Access-Control-Allow-Origin configuration."
    ),
}


class DoseFindingError(Exception):
    """Base class for every error raised by backend.dosing."""


# ── Validation ────────────────────────────────────────────────────────────────

class ValidationError(DoseFindingError):
    diagnostic = "Validation failure: the request was rejected before simulation."


class MissingClinicalData(ValidationError):
    pass


class RouteUnsupported(ValidationError):
    def __init__(self, drug_name: str, route: str, allowed: str):
        self.drug_name = drug_name
        self.route     = route
        self.allowed   = allowed
        super().__init__(
            f"{drug_name} supports only the {allowed} route "
            f"(got '{route}'); change the administration route."
        )


class UnsupportedModelContext(ValidationError):
    pass


# ── Remote simulation ─────────────────────────────────────────────────────────

class SimulationError(DoseFindingError):
    pass


class SimulationUnavailable(SimulationError):
    """Retries exhausted on a transient failure."""

    def __init__(self, kind: str, attempts: int, cause: Optional[BaseException] = None):
        self.kind     = kind
        self.attempts = attempts
        self.cause    = cause
        detail = f" Last error: {cause}" if cause is not None else ""
        super().__init__(
            f"{_KIND_DIAGNOSTICS.get(kind, kind)} "
            f"(gave up after {attempts} attempt{'s' if attempts != 1 else ''}).{detail}"
        )

    @property
    def diagnostic(self) -> str:
        return _KIND_DIAGNOSTICS.get(self.kind, self.kind)


class SimulationRejected(SimulationError):
    """Non-retryable HTTP status from the simulation endpoint."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body   = body
        if 400 <= status < 500:
            prefix = "Validation failure"
        else:
            prefix = "Simulation server error"
        snippet = f": {body[:200]}" if body else ""
        super().__init__(f"{prefix} (HTTP {status}){snippet}")


class MalformedSimulationResponse(SimulationError):
    pass


# ── Search / storage ──────────────────────────────────────────────────────────

class ProbeFailed(DoseFindingError):
    pass


class StorageQuotaExceeded(DoseFindingError):
    def __init__(self, key: str, needed: int, available: int):
        self.key       = key
        self.needed    = needed
        self.available = available
        super().__init__(
            f"Quota exceeded writing '{key}': needs {needed} bytes, "
            f"{available} available"
        )


class StorageExhausted(DoseFindingError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(STORAGE_EXHAUSTED_MESSAGE)


def is_retryable(error: BaseException) -> bool:
    """Transient remote/network failures are retryable; everything else is not."""
    if isinstance(error, SimulationUnavailable):
        return True
    return False
