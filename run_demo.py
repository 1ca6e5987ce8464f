"""
Walkthrough of one patient's shift through the journey engine.

This script exercises:
1. Configuration loading and validation
2. Observation normalization and EWS scoring
3. Journey transitions and the room/phase projections
4. Monitoring tasks going overdue under the scheduler
5. Rebuilding every projection from the log alone

Run with: uv run python run_demo.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from edflow.config import get_config, print_config_summary, validate_config
from edflow.services.event_log import JourneyEventLog
from edflow.services.journey import JourneyService
from edflow.services.projections import project

console = Console()


class DemoClock:
    """Manually advanced clock so the shift runs in milliseconds."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


async def check_configuration() -> bool:
    console.print(Panel("Configuration", style="blue"))
    try:
        validate_config()
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"Configuration check failed: {e}", style="red")
        return False


async def check_patient_journey(service: JourneyService, clock: DemoClock) -> bool:
    console.print(Panel("Patient Journey", style="blue"))
    patient = "ABC1001"

    try:
        service.record_arrival(patient, "ambulance")
        service.record_triage(patient, ats=3, complaint="Shortness of breath")
        service.record_observation(
            patient,
            {"rr": "22", "hr": "104", "sbp": "128", "spo2": "95", "temp": "100.4", "tempUnit": "F"},
        )
        service.assign_room(patient, "Room 12")
        service.start_monitoring(patient)

        clock.advance(20)
        service.record_observation(
            patient,
            {
                "rr": 26,
                "hr": 118,
                "sbp": 98,
                "spo2": 91,
                "temp": 38.6,
                "loc": "V",
                "onOxygen": True,
            },
        )
        service.place_order(patient, "Chest X-ray")
        clock.advance(25)
        service.record_result(patient, "Chest X-ray", "Right lower lobe consolidation")

        table = Table(title=f"Journey for {patient}")
        table.add_column("Time", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Label", style="white")
        for event in service.log.list_for_patient(patient):
            style = "red" if event.severity == "warn" else None
            table.add_row(
                event.timestamp.strftime("%H:%M"), event.kind.value, event.label, style=style
            )
        console.print(table)

        obs_table = Table(title="Observation History")
        for column in ("Time", "RR", "HR", "SBP", "SpO2", "Temp", "EWS", "Algorithm"):
            obs_table.add_column(column)
        for obs in service.get_observation_history(patient):
            obs_table.add_row(
                obs.timestamp.strftime("%H:%M"),
                *(
                    str(v) if v is not None else "-"
                    for v in (obs.rr, obs.hr, obs.sbp, obs.spo2, obs.temp)
                ),
                str(obs.ews),
                obs.algo_id,
            )
        console.print(obs_table)

        console.print(f"Phase: {service.get_phase(patient).value}")
        console.print(f"Room: {service.get_room(patient)}")
        console.print(f"Next obs due: {service.get_next_due(patient)}")
        console.print(f"EWS trend: {service.get_ews_trend(patient)}")
        return True

    except Exception as e:
        console.print(f"Journey check failed: {e}", style="red")
        return False


async def check_monitoring(service: JourneyService, clock: DemoClock) -> bool:
    console.print(Panel("Monitoring Scheduler", style="blue"))
    patient = "ABC1001"

    try:
        clock.advance(30)
        changed = service.tick_monitoring()
        repeated = service.tick_monitoring()

        table = Table(title="Monitoring Tasks")
        table.add_column("Task", style="cyan")
        table.add_column("Kind")
        table.add_column("Status")
        table.add_column("Due")
        for task in service.tasks_for(patient):
            due = task.due_at.strftime("%H:%M") if isinstance(task.due_at, datetime) else "-"
            style = "red" if task.status.value == "overdue" else None
            table.add_row(task.id[:8], task.kind, task.status.value, due, style=style)
        console.print(table)

        console.print(f"First tick changed tasks: {changed}; second tick changed: {repeated}")
        return changed and not repeated

    except Exception as e:
        console.print(f"Monitoring check failed: {e}", style="red")
        return False


async def check_replay(service: JourneyService) -> bool:
    console.print(Panel("Replay From Log", style="blue"))
    patient = "ABC1001"

    try:
        rebuilt = project(service.log.list_for_patient(patient))
        cached = service.get_projection(patient)
        consistent = rebuilt == cached
        console.print(
            f"Refold matches cached projection: {consistent}",
            style="green" if consistent else "red",
        )
        return consistent

    except Exception as e:
        console.print(f"Replay check failed: {e}", style="red")
        return False


async def run_demo() -> None:
    console.print(Panel("EDFlow Journey Engine - Shift Walkthrough", style="bold blue"))

    clock = DemoClock(datetime(2025, 3, 14, 8, 0, tzinfo=UTC))
    service = JourneyService(log=JourneyEventLog(), config=get_config(), clock=clock)

    checks = [
        ("Configuration", check_configuration()),
        ("Patient Journey", check_patient_journey(service, clock)),
        ("Monitoring", check_monitoring(service, clock)),
        ("Replay", check_replay(service)),
    ]

    results = []
    for name, check in checks:
        console.print(f"\n{'=' * 60}")
        results.append((name, await check))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Summary")
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for name, ok in results:
        summary_table.add_row(name, "PASSED" if ok else "FAILED")
        passed += int(ok)
    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} checks passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\nDemo stopped by user", style="yellow")
