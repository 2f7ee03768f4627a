"""Compliance check runner and built-in checks.

A check is any callable taking a context mapping and returning a
CheckOutcome, either directly or as an awaitable. Checks are registered
by ``check_type`` in a CheckRegistry. run_check() never lets a
misbehaving check escape: a missing implementation, an exception or an
out-of-range score all become a failing result with a diagnostic finding.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from conclave.clock import Clock, utc_now
from conclave.errors import CheckExecutionFailure
from conclave.schemas.compliance import (
    CheckOutcome,
    ComplianceRequirement,
    ComplianceResult,
)

logger = logging.getLogger(__name__)

CheckFn = Callable[[Mapping[str, Any]], Any]

# Steering document structure, weighted as the document reviewers score it
REQUIRED_SECTIONS = ("Purpose", "Guidelines")
OPTIONAL_SECTIONS = ("Context for Agents", "Standards", "Best Practices")
MIN_DOCUMENT_LENGTH = 200


class CheckRegistry:
    """Maps check types to check callables."""

    def __init__(self, checks: Mapping[str, CheckFn] | None = None) -> None:
        self._checks: dict[str, CheckFn] = dict(checks or {})

    def register(self, check_type: str, check: CheckFn) -> None:
        """Register (or replace) the implementation for a check type."""
        self._checks[check_type] = check

    def get(self, check_type: str) -> CheckFn | None:
        return self._checks.get(check_type)

    def __contains__(self, check_type: object) -> bool:
        return check_type in self._checks

    def names(self) -> list[str]:
        return sorted(self._checks)


async def run_check(
    requirement: ComplianceRequirement,
    context: Mapping[str, Any],
    registry: CheckRegistry,
    clock: Clock = utc_now,
) -> ComplianceResult:
    """Run the check registered for a requirement and build its result.

    Args:
        requirement: The requirement to validate.
        context: Artifact data handed to the check.
        registry: Where the check implementation is looked up.
        clock: Source of the result timestamp.

    Returns:
        A ComplianceResult. Failures of the check itself are reported as
        a failing result with score 0.0, never raised.
    """
    check = registry.get(requirement.check_type)
    if check is None:
        logger.warning(
            "No check registered for '%s' (requirement %s)",
            requirement.check_type, requirement.requirement_id,
        )
        return _failed(
            requirement, clock,
            f"No check implementation registered for type '{requirement.check_type}'",
        )

    try:
        outcome = await _invoke(requirement.check_type, check, context)
    except CheckExecutionFailure as exc:
        logger.warning("Requirement %s: %s", requirement.requirement_id, exc)
        return _failed(requirement, clock, str(exc))

    return ComplianceResult(
        requirement_id=requirement.requirement_id,
        passed=outcome.passed,
        score=outcome.score,
        findings=tuple(outcome.findings),
        check_type=requirement.check_type,
        timestamp=clock(),
    )


async def _invoke(
    check_type: str, check: CheckFn, context: Mapping[str, Any],
) -> CheckOutcome:
    try:
        outcome = check(context)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
    except Exception as exc:
        raise CheckExecutionFailure(check_type, f"{type(exc).__name__}: {exc}") from exc

    if not isinstance(outcome, CheckOutcome):
        raise CheckExecutionFailure(
            check_type, f"expected CheckOutcome, got {type(outcome).__name__}",
        )
    if not 0.0 <= outcome.score <= 1.0:
        raise CheckExecutionFailure(check_type, f"score {outcome.score} outside [0, 1]")
    return outcome


def _failed(
    requirement: ComplianceRequirement, clock: Clock, finding: str,
) -> ComplianceResult:
    return ComplianceResult(
        requirement_id=requirement.requirement_id,
        passed=False,
        score=0.0,
        findings=(finding,),
        check_type=requirement.check_type,
        timestamp=clock(),
    )


# ── Built-in checks ──────────────────────────────────────────────


def _has_section(content: str, section: str) -> bool:
    return f"## {section}" in content or f"### {section}" in content


def _title_case(domain: str) -> str:
    return domain[:1].upper() + domain[1:]


def document_structure(context: Mapping[str, Any]) -> CheckOutcome:
    """Score the structure of a steering or design document.

    Reads ``document`` (Markdown text) and ``domain`` from the context.
    Required sections weigh 0.6, optional sections 0.2, the
    ``# {Domain} Steering Document`` title 0.1, a mention of the domain
    0.05 and a minimum length 0.05. Passes when every required section,
    the title and the minimum length are present.
    """
    content = str(context.get("document", ""))
    domain = str(context.get("domain", ""))

    found_required = [s for s in REQUIRED_SECTIONS if _has_section(content, s)]
    found_optional = [s for s in OPTIONAL_SECTIONS if _has_section(content, s)]
    has_title = bool(domain) and f"# {_title_case(domain)} Steering Document" in content
    has_domain = bool(domain) and domain.lower() in content.lower()
    long_enough = len(content) > MIN_DOCUMENT_LENGTH

    score = (
        len(found_required) / len(REQUIRED_SECTIONS) * 0.6
        + len(found_optional) / len(OPTIONAL_SECTIONS) * 0.2
        + (0.1 if has_title else 0.0)
        + (0.05 if has_domain else 0.0)
        + (0.05 if long_enough else 0.0)
    )

    findings = [
        f"Missing required section: {s}"
        for s in REQUIRED_SECTIONS if s not in found_required
    ]
    if not has_title:
        findings.append(f"Missing title '# {_title_case(domain)} Steering Document'")
    if not long_enough:
        findings.append(f"Document shorter than {MIN_DOCUMENT_LENGTH} characters")

    passed = len(found_required) == len(REQUIRED_SECTIONS) and has_title and long_enough
    return CheckOutcome(passed=passed, score=min(round(score, 4), 1.0), findings=findings)


def criteria_checklist(context: Mapping[str, Any]) -> CheckOutcome:
    """Fraction of approval criteria marked met.

    Reads ``criteria`` (list of criterion texts) and ``criteria_met``
    (the subset that is satisfied). An empty checklist passes.
    """
    criteria = list(context.get("criteria", []))
    met = set(context.get("criteria_met", []))
    if not criteria:
        return CheckOutcome(passed=True, score=1.0)

    unmet = [c for c in criteria if c not in met]
    return CheckOutcome(
        passed=not unmet,
        score=(len(criteria) - len(unmet)) / len(criteria),
        findings=[f"Criterion not met: {c}" for c in unmet],
    )


def manual_attestation(context: Mapping[str, Any]) -> CheckOutcome:
    """Pass when someone attested to the requirement (``attested``)."""
    attested = context.get("attested")
    if attested:
        return CheckOutcome(passed=True, score=1.0)
    return CheckOutcome(passed=False, score=0.0, findings=["No attestation recorded"])


BUILTIN_CHECKS: dict[str, CheckFn] = {
    "document_structure": document_structure,
    "criteria_checklist": criteria_checklist,
    "manual_attestation": manual_attestation,
}


def default_registry() -> CheckRegistry:
    """A registry preloaded with the built-in checks."""
    return CheckRegistry(BUILTIN_CHECKS)
