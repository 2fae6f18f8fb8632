"""Conflict handling: turn a conflict outcome into a report and a phase pause.

A phase holds at most one ``PauseRecord``. When several tasks in the same
phase report conflicts, each one emits ``agent.conflict_detected`` and is
appended to the existing record, but ``agent.paused`` is emitted only for the
first. Resolving the pause emits ``agent.resumed`` once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ..agent.models import AgentTask, AgentTaskResult
from ..recovery.classifier import ErrorCategory, ErrorClassification, Severity
from ..state import ConflictReport, OrchestratorState, PauseRecord
from .events import EventBus, EventType

logger = logging.getLogger(__name__)

DEFAULT_ACTION_URL = "/conflicts"

DEFAULT_RECOMMENDATIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.SECURITY_VULNERABILITY: [
        "Review the reported vulnerabilities",
        "Fix the affected code or accept the risk explicitly",
        "Resume the phase with a resolution note",
    ],
    ErrorCategory.BUSINESS_RULE_VIOLATION: [
        "Confirm the business rule with its owner",
        "Resume the phase with a resolution note",
    ],
    ErrorCategory.POLICY_VIOLATION: [
        "Check the change against the applicable policy",
        "Resume the phase with a resolution note",
    ],
    ErrorCategory.DATA_INTEGRITY_ISSUE: [
        "Inspect the conflicting records",
        "Resume the phase with a resolution note",
    ],
}


def _vulnerabilities(result: AgentTaskResult | None) -> list[dict[str, Any]]:
    if result is None:
        return []
    raw = result.metadata.get("vulnerabilities") or []
    return [v for v in raw if isinstance(v, dict)]


def _describe(vuln: dict[str, Any]) -> str:
    name = str(vuln.get("id") or vuln.get("type") or vuln.get("name") or "unnamed")
    location = vuln.get("location") or vuln.get("file")
    if location:
        line = vuln.get("line")
        location = f"{location}:{line}" if line else location
        return f"{name} ({location})"
    return name


class ConflictHandler:
    """Builds conflict reports and maintains one pause record per phase."""

    def __init__(self, events: EventBus, action_url: str = DEFAULT_ACTION_URL):
        self.events = events
        self.action_url = action_url

    def build_report(
        self,
        task: AgentTask,
        result: AgentTaskResult | None,
        classification: ErrorClassification,
    ) -> ConflictReport:
        vulns = _vulnerabilities(result)
        metadata = result.metadata if result else {}

        severity = classification.severity
        for vuln in vulns:
            parsed = Severity.parse(vuln.get("severity"))
            if parsed is not None and parsed.rank > severity.rank:
                severity = parsed

        if vulns:
            affected = [_describe(v) for v in vulns]
        else:
            affected = [str(i) for i in metadata.get("affected_items", [])] or [task.id]

        actions: list[str] = []
        for vuln in vulns:
            rec = vuln.get("recommendation") or vuln.get("remediation")
            if rec and rec not in actions:
                actions.append(str(rec))
        if not actions:
            actions = [str(a) for a in metadata.get("recommended_actions", [])]
        if not actions:
            actions = list(
                DEFAULT_RECOMMENDATIONS.get(
                    classification.category, ["Resume the phase with a resolution note"]
                )
            )

        message = classification.message or classification.description
        if vulns:
            message = f"{len(vulns)} issue(s) reported by {task.agent_type}: {message}"

        return ConflictReport(
            task_id=task.id,
            agent_type=task.agent_type,
            phase=task.phase,
            milestone=task.milestone,
            conflict_type=classification.category.value,
            severity=severity.value,
            message=message,
            affected_items=affected,
            recommended_actions=actions,
        )

    def register(
        self, state: OrchestratorState, report: ConflictReport
    ) -> tuple[PauseRecord, bool]:
        """Attach a conflict to its phase's pause, creating the pause if needed.

        Must be called under the scheduler's state lock.

        Returns:
            The pause record and whether it was newly created.
        """
        self.events.emit(EventType.CONFLICT_DETECTED, **report.event_payload())

        pause = state.pauses.get(report.phase)
        if pause is not None:
            pause.conflicts.append(report)
            logger.warning(
                "Additional conflict in paused phase %d from %s (%d total)",
                report.phase,
                report.agent_type,
                len(pause.conflicts),
            )
            return pause, False

        pause = PauseRecord(
            phase=report.phase,
            reason=f"{report.conflict_type} reported by {report.agent_type}",
            action_url=self.action_url,
            conflicts=[report],
        )
        state.pauses[report.phase] = pause
        logger.warning("Phase %d paused: %s", report.phase, pause.reason)
        self.events.emit(
            EventType.PAUSED,
            phase=report.phase,
            reason=pause.reason,
            pauseType=pause.pause_type,
            requiresAction=pause.requires_action,
            actionUrl=pause.action_url,
        )
        return pause, True

    def resolve(
        self, state: OrchestratorState, phase: int, resolution_note: str
    ) -> PauseRecord | None:
        """Remove the phase's pause and emit ``agent.resumed``."""
        pause = state.pauses.pop(phase, None)
        if pause is None:
            return None
        pause.resumed_at = datetime.now()
        pause.resolution_note = resolution_note
        logger.info("Phase %d resumed: %s", phase, resolution_note or "(no note)")
        self.events.emit(
            EventType.RESUMED,
            phase=phase,
            resolutionNote=resolution_note,
            conflicts=len(pause.conflicts),
        )
        return pause

    @staticmethod
    def is_paused(state: OrchestratorState, phase: int) -> bool:
        return phase in state.pauses
