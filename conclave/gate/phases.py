"""Workflow phase catalogue.

Order of the specification-driven workflow, the criteria a committee
checks before approving each phase, and the activities that open the
phase that follows it.
"""

from __future__ import annotations

from conclave.schemas.compliance import ComplianceRequirement, Severity
from conclave.schemas.gate import WorkflowPhase

PHASE_SEQUENCE: tuple[WorkflowPhase, ...] = (
    WorkflowPhase.REQUIREMENTS_CLARIFICATION,
    WorkflowPhase.RESEARCH_DESIGN,
    WorkflowPhase.IMPLEMENTATION_PLANNING,
    WorkflowPhase.TASK_EXECUTION,
    WorkflowPhase.QUALITY_ASSURANCE,
    WorkflowPhase.DEPLOYMENT_VALIDATION,
)

DISPLAY_NAMES: dict[WorkflowPhase, str] = {
    WorkflowPhase.REQUIREMENTS_CLARIFICATION: "Requirements Clarification",
    WorkflowPhase.RESEARCH_DESIGN: "Research & Design",
    WorkflowPhase.IMPLEMENTATION_PLANNING: "Implementation Planning",
    WorkflowPhase.TASK_EXECUTION: "Task Execution",
    WorkflowPhase.QUALITY_ASSURANCE: "Quality Assurance",
    WorkflowPhase.DEPLOYMENT_VALIDATION: "Deployment & Validation",
}

APPROVAL_CRITERIA: dict[WorkflowPhase, list[str]] = {
    WorkflowPhase.REQUIREMENTS_CLARIFICATION: [
        "Requirements document completed",
        "User stories defined",
        "Acceptance criteria established",
        "Stakeholder sign-off obtained",
    ],
    WorkflowPhase.RESEARCH_DESIGN: [
        "Technical design completed",
        "Architecture decisions documented",
        "Security considerations addressed",
        "Performance requirements defined",
    ],
    WorkflowPhase.IMPLEMENTATION_PLANNING: [
        "Task breakdown completed",
        "Dependencies identified",
        "Resource allocation planned",
        "Timeline established",
    ],
    WorkflowPhase.TASK_EXECUTION: [
        "Core functionality implemented",
        "Code review completed",
        "Unit tests passing",
        "Integration tests successful",
    ],
    WorkflowPhase.QUALITY_ASSURANCE: [
        "All tests passing",
        "Performance benchmarks met",
        "Security validation completed",
        "Documentation updated",
    ],
    WorkflowPhase.DEPLOYMENT_VALIDATION: [
        "Production deployment successful",
        "Post-deployment validation completed",
        "Monitoring and alerting active",
        "User acceptance confirmed",
    ],
}

# Keyed by the phase being entered; None is the end of the workflow
NEXT_PHASE_ACTIONS: dict[WorkflowPhase | None, list[str]] = {
    WorkflowPhase.RESEARCH_DESIGN: [
        "Generate the technical design",
        "Review and refine technical specifications",
        "Validate architectural decisions",
        "Obtain technical approval",
    ],
    WorkflowPhase.IMPLEMENTATION_PLANNING: [
        "Generate the task breakdown",
        "Review task breakdown and dependencies",
        "Assign tasks to team members",
        "Set up development environment",
    ],
    WorkflowPhase.TASK_EXECUTION: [
        "Implement tasks in order",
        "Follow TDD practices",
        "Conduct regular code reviews",
        "Update documentation as needed",
    ],
    WorkflowPhase.QUALITY_ASSURANCE: [
        "Execute comprehensive test suite",
        "Perform security assessment",
        "Validate performance requirements",
        "Complete documentation review",
    ],
    WorkflowPhase.DEPLOYMENT_VALIDATION: [
        "Deploy to production environment",
        "Execute post-deployment validation",
        "Monitor system performance",
        "Gather user feedback",
    ],
    None: [
        "Archive project documentation",
        "Conduct project retrospective",
        "Document lessons learned",
        "Plan maintenance and support",
    ],
}


def next_phase(phase: WorkflowPhase) -> WorkflowPhase | None:
    """The phase after ``phase``, or None when the workflow is complete."""
    index = PHASE_SEQUENCE.index(phase)
    if index + 1 < len(PHASE_SEQUENCE):
        return PHASE_SEQUENCE[index + 1]
    return None


def display_name(phase: WorkflowPhase | None) -> str:
    if phase is None:
        return "Completed"
    return DISPLAY_NAMES[phase]


def approval_criteria(phase: WorkflowPhase | None) -> list[str]:
    if phase is None:
        return ["Phase requirements met"]
    return list(APPROVAL_CRITERIA[phase])


def next_phase_actions(phase: WorkflowPhase | None) -> list[str]:
    """Activities for the phase that follows ``phase``."""
    if phase is None:
        return ["Continue with next phase activities"]
    return list(NEXT_PHASE_ACTIONS[next_phase(phase)])


def phase_gate_id(workflow_id: str, phase: WorkflowPhase) -> str:
    """Conventional gate id for a workflow phase."""
    return f"{workflow_id}:{phase.value}"


def default_requirements(phase: WorkflowPhase) -> list[ComplianceRequirement]:
    """Requirement catalogue for a phase gate opened without one."""
    return [
        ComplianceRequirement(
            requirement_id=f"{phase.value}.criteria",
            description=f"{display_name(phase)} approval criteria met",
            severity=Severity.BLOCKING,
            check_type="criteria_checklist",
            remediation="Complete the outstanding approval criteria: "
            + ", ".join(APPROVAL_CRITERIA[phase]),
        ),
    ]
