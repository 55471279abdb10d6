"""
run_dose_search.py — Dose search runner
========================================
Loads a JSON case (patient, prescription, doses, observations, optional
saved regimen), runs the baseline simulation and one adjustment scenario
against the configured endpoint, and prints the suggestion set.

Case file
---------
    {
      "patient":      {"id": "p1", "weight": 70, "age": 60, "sex": "male",
                       "height": 170, "renal": {"result": "CRCL = 85"}},
      "prescription": {"drug_name": "Vancomycin",
                       "indication": "Not specified/Korean",
                       "target_type": "Trough", "target_value": "10-20"},
      "doses":        [{"timestamp": "2026-10-01T08:00", "amount": 500,
                        "route": "IV", "infusion_minutes": 60,
                        "interval_hours": 12}],
      "observations": [{"timestamp": "2026-10-01T19:30", "concentration": 25}]
    }

Usage
-----
    python run_dose_search.py case.json [--scenario dose|dose_interval|interval]
                                        [--interval 24] [--url URL]
                                        [--output suggestions.json] [--no-persist]

TDM_SIMULATION_URL overrides the default endpoint.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from backend.dosing.errors import DoseFindingError
from backend.dosing.history import ResultHistory
from backend.dosing.models import ClinicalRecord
from backend.dosing.rpc_client import SimulationClient
from backend.dosing.search import ScenarioKind, format_interval_label
from backend.dosing.session import DosingSession
from backend.dosing.settings import SIMULATION_URL, STORE_FILE
from backend.dosing.store import JsonFileStore

logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def run_case(
    case_path:  Path,
    kind:       ScenarioKind,
    interval:   float = None,
    url:        str = SIMULATION_URL,
    output:     Path = None,
    persist:    bool = True,
) -> dict:
    with open(case_path) as f:
        record = ClinicalRecord.from_dict(json.load(f))

    history = ResultHistory(JsonFileStore(STORE_FILE))
    client = SimulationClient(url=url)
    session = DosingSession(record, client, history=history)
    try:
        baseline = await session.run_baseline(persist=persist)
        scenario = session.open_scenario(kind, interval=interval)
        suggestions = await session.compute(scenario.id)
    finally:
        await session.close()

    summary = {
        "patient":        record.patient_id,
        "drug":           record.drug_name,
        "model_name":     session.baseline_request.model_name,
        "baseline":       baseline.summary_dict(),
        "scenario":       scenario.id,
        "state":          scenario.state.value,
        "error":          scenario.error,
        "target":         None,
        "options":        [],
    }
    if session.band is not None:
        summary["target"] = {
            "type": session.band.target_type,
            "low":  session.band.low,
            "high": session.band.high,
        }
    if suggestions is not None:
        for value in suggestions.values():
            probe = suggestions.options[value]
            summary["options"].append({
                "value":    value,
                "label":    format_interval_label(value) if kind == ScenarioKind.INTERVAL else f"{value:g}mg",
                "exposure": probe.value,
                "current":  value == suggestions.baseline,
                "selected": value == suggestions.selected,
            })

    print("\n" + "=" * 60)
    print(f"{record.drug_name} / {record.patient_id}  ({scenario.id}: {scenario.state.value})")
    print("=" * 60)
    if scenario.error:
        print(f"  ❌ {scenario.error}")
    for opt in summary["options"]:
        marker = "*" if opt["current"] else " "
        exposure = "n/a" if opt["exposure"] is None else f"{opt['exposure']:.2f}"
        print(f"  {marker} {opt['label']:>10}  →  {exposure}")

    if output:
        with open(output, "w") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)
        logger.info(f"✅ Suggestions written to {output}")
    return summary


def main():
    parser = argparse.ArgumentParser(description="Run an adaptive dose search for one TDM case")
    parser.add_argument("case", type=Path, help="JSON case file")
    parser.add_argument(
        "--scenario",
        choices=[k.value for k in ScenarioKind],
        default=ScenarioKind.DOSE.value,
    )
    parser.add_argument("--interval", type=float, default=None,
                        help="Fixed interval (h) for the dose_interval scenario")
    parser.add_argument("--url", type=str, default=SIMULATION_URL)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--no-persist", action="store_true",
                        help="Do not write the baseline result to history")
    args = parser.parse_args()

    try:
        asyncio.run(run_case(
            case_path=args.case,
            kind=ScenarioKind(args.scenario),
            interval=args.interval,
            url=args.url,
            output=args.output,
            persist=not args.no_persist,
        ))
    except DoseFindingError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
