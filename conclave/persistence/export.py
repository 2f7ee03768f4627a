"""Export formatters.

Provides JSON and Markdown exports for decision sessions and compliance
ledgers, and renders the phase approval document for a gate.
"""

from __future__ import annotations

from pydantic import BaseModel

from conclave.compliance.ledger import ComplianceLedger
from conclave.gate.phases import (
    approval_criteria,
    display_name,
    next_phase,
    next_phase_actions,
)
from conclave.schemas.committee import DecisionSessionRecord
from conclave.schemas.gate import GateState, PhaseGateRecord
from conclave.templates import render_template

_UNMET_PREFIX = "Criterion not met: "


def export_json(record: BaseModel) -> str:
    """Export any record as a formatted JSON string.

    Returns:
        Pretty-printed JSON string of the full record.
    """
    return record.model_dump_json(indent=2)


def export_markdown(record: DecisionSessionRecord) -> str:
    """Export a decision session as a human-readable Markdown report.

    Returns:
        Markdown-formatted string.
    """
    request = record.request
    lines: list[str] = []

    lines.append(f"# Decision Session: {record.session_id}")
    lines.append("")

    lines.append("## Request")
    lines.append("")
    if request.target:
        lines.append(f"- **Target:** {request.target}")
    lines.append(f"- **Domain:** {request.domain}")
    lines.append(f"- **Threshold:** {request.threshold:.2f}")
    lines.append(f"- **Timeout:** {request.timeout_seconds:g}s")
    lines.append(f"- **Created By:** {request.created_by}")
    lines.append(f"- **Created:** {record.created_at.isoformat()}")
    lines.append(f"- **Deadline:** {record.deadline.isoformat()}")
    lines.append(f"- **Status:** {record.status.value.title()}")
    if record.resolved_at:
        lines.append(f"- **Resolved:** {record.resolved_at.isoformat()}")
    if record.resolution_reason:
        lines.append(f"- **Reason:** {record.resolution_reason}")
    lines.append("")

    tally = record.tally
    lines.append("## Tally")
    lines.append("")
    lines.append("| Approve | Reject | Abstain | Eligible | Approve % | Reject % |")
    lines.append("|---------|--------|---------|----------|-----------|----------|")
    lines.append(
        f"| {tally.approve} | {tally.reject} | {tally.abstain} | {tally.eligible} | "
        f"{tally.approve_fraction:.0%} | {tally.reject_fraction:.0%} |"
    )
    lines.append("")

    if record.votes:
        lines.append("## Votes")
        lines.append("")
        for vote in record.votes.values():
            lines.append(
                f"- **{vote.member_id}:** {vote.decision.value.upper()} "
                f"at {vote.timestamp.isoformat()}"
            )
            if vote.rationale:
                lines.append(f"  - {vote.rationale}")
        lines.append("")

    superseded = len(record.vote_log) - len(record.votes)
    if superseded > 0 or record.late_votes:
        lines.append("## Audit")
        lines.append("")
        if superseded > 0:
            lines.append(f"- {superseded} superseded vote(s) in the submission log")
        for vote in record.late_votes:
            lines.append(
                f"- Late vote by {vote.member_id} ({vote.decision.value}) "
                f"at {vote.timestamp.isoformat()}"
            )
        lines.append("")

    lines.append("---")
    lines.append("*Generated by Conclave*")
    lines.append("")

    return "\n".join(lines)


def export_ledger_markdown(ledger: ComplianceLedger, min_score: float) -> str:
    """Export a compliance ledger with its gate decision as Markdown."""
    decision = ledger.gate_decision(min_score)
    lines: list[str] = []

    lines.append(f"# Compliance Ledger: {ledger.ledger_id}")
    lines.append("")
    lines.append(f"- **Score:** {ledger.score:.2f} (minimum {min_score:.2f})")
    lines.append(f"- **Verdict:** {decision.verdict.value.upper()}")
    lines.append("")

    lines.append("## Requirements")
    lines.append("")
    lines.append("| Requirement | Severity | Check | Current | Score |")
    lines.append("|-------------|----------|-------|---------|-------|")
    for requirement in ledger.requirements:
        result = ledger.current_result(requirement.requirement_id)
        if result is None:
            current, score = "pending", "-"
        else:
            current = "pass" if result.passed else "fail"
            score = f"{result.score:.2f}"
        lines.append(
            f"| {requirement.requirement_id} | {requirement.severity.value} | "
            f"{requirement.check_type} | {current} | {score} |"
        )
    lines.append("")

    if decision.reasons:
        lines.append("## Blocking Reasons")
        lines.append("")
        for reason in decision.reasons:
            lines.append(f"- {reason}")
        lines.append("")

    lines.append("---")
    lines.append("*Generated by Conclave*")
    lines.append("")

    return "\n".join(lines)


def render_approval_document(
    gate: PhaseGateRecord,
    ledger: ComplianceLedger,
    session: DecisionSessionRecord | None = None,
    workflow_id: str = "",
) -> str:
    """Render the phase approval document for a gate.

    Lists the phase's approval criteria (checked off from the current
    criteria checklist result), the committee's votes, the compliance
    score and open violations, and the activities of the next phase.
    """
    criteria = approval_criteria(gate.phase)
    criteria_met = _criteria_met(gate, ledger, criteria)
    approved_at = next(
        (t.at.isoformat() for t in gate.history if t.to_state == GateState.COMPLETED),
        "",
    )
    upcoming = next_phase(gate.phase) if gate.phase is not None else None

    return render_template(
        "approval.md",
        workflow_id=workflow_id,
        phase_name=display_name(gate.phase) if gate.phase else gate.phase_id,
        gate=gate,
        approved_at=approved_at,
        criteria=criteria,
        criteria_met=criteria_met,
        session=session,
        votes=list(session.votes.values()) if session else [],
        compliance=ledger.gate_decision(gate.min_score),
        violations=ledger.violations,
        next_phase_name=display_name(upcoming) if gate.phase else "Next Phase",
        next_actions=next_phase_actions(gate.phase),
    )


def _criteria_met(
    gate: PhaseGateRecord, ledger: ComplianceLedger, criteria: list[str],
) -> list[str]:
    if gate.state == GateState.COMPLETED:
        return list(criteria)
    if gate.phase is None:
        return []
    result = ledger.current_result(f"{gate.phase.value}.criteria")
    if result is None:
        return []
    unmet = {f.removeprefix(_UNMET_PREFIX) for f in result.findings}
    return [c for c in criteria if c not in unmet]
