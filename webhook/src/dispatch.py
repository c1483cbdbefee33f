from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from prometheus_client import Counter

from controller.src.controller import RolloutController, TriggerOutcome
from controller.src.errors import PartialBatchFailure
from controller.src.models import PushEvent
from controller.src.resolver import resolve

LOGGER = logging.getLogger(__name__)

PUSH_EVENTS_TOTAL = Counter(
    "argoos_push_events_total",
    "Decoded push events by dispatch outcome",
    ["outcome"],
)


@dataclass
class DispatchReport:
    """Counts of what happened to each event of one notification batch."""

    events: int = 0
    impacted: int = 0
    triggered: int = 0
    coalesced: int = 0
    rejected: int = 0
    failures: list[PartialBatchFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "events": self.events,
            "impacted": self.impacted,
            "triggered": self.triggered,
            "coalesced": self.coalesced,
            "rejected": self.rejected,
            "failed": len(self.failures),
        }


def dispatch_event(controller: RolloutController, event: PushEvent, report: DispatchReport) -> None:
    impacted = resolve(controller.current_snapshot(), event)
    if not impacted:
        LOGGER.info("No workload references %s", event.reference)
        PUSH_EVENTS_TOTAL.labels(outcome="unmatched").inc()
        return

    PUSH_EVENTS_TOTAL.labels(outcome="impacted").inc()
    report.impacted += len(impacted)
    for workload_id in sorted(impacted):
        outcome = controller.trigger(workload_id, event)
        if outcome is TriggerOutcome.ACCEPTED:
            report.triggered += 1
        elif outcome is TriggerOutcome.COALESCED:
            report.coalesced += 1
        else:
            report.rejected += 1


def dispatch_events(controller: RolloutController, events: Iterable[PushEvent]) -> DispatchReport:
    """Resolve and trigger every event; one failing event never aborts the others."""
    report = DispatchReport()
    for event in events:
        report.events += 1
        PUSH_EVENTS_TOTAL.labels(outcome="decoded").inc()
        try:
            dispatch_event(controller, event, report)
        except Exception as exc:
            LOGGER.exception("Failed to dispatch push event for %s", event.reference)
            PUSH_EVENTS_TOTAL.labels(outcome="failed").inc()
            report.failures.append(PartialBatchFailure(event.reference, exc))
    return report
