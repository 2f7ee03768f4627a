"""Compliance tracker for a workflow instance.

Owns the compliance ledgers of one workflow instance, runs checks
against them, and serializes result recording per ledger. Each committed
ledger is persisted under ``ledger:{id}`` before it becomes visible.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from conclave.clock import Clock, utc_now
from conclave.compliance.checks import CheckRegistry, default_registry, run_check
from conclave.compliance.ledger import ComplianceLedger
from conclave.errors import (
    ConfigurationError,
    EntityFaultedError,
    InvariantViolationError,
    UnknownLedgerError,
)
from conclave.events import EngineEvent, compliance_recorded, outbox_entries
from conclave.locks import EntityLocks
from conclave.persistence.store import StateStore
from conclave.schemas.compliance import (
    ComplianceLedgerRecord,
    ComplianceRequirement,
    ComplianceResult,
    GateDecision,
)

logger = logging.getLogger(__name__)

LEDGER_NAMESPACE = "ledger"


@dataclass
class LedgerUpdate:
    """Outcome of recording a result against a ledger."""

    ledger: ComplianceLedgerRecord
    result: ComplianceResult
    recorded: bool
    score: float
    events: list[EngineEvent] = field(default_factory=list)


class ComplianceTracker:
    """Manages compliance ledgers and check execution."""

    def __init__(
        self,
        store: StateStore,
        registry: CheckRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._registry = registry or default_registry()
        self._clock = clock
        self._ledgers: dict[str, ComplianceLedger] = {}
        self._locks = EntityLocks()
        self._faulted: dict[str, str] = {}

    @property
    def registry(self) -> CheckRegistry:
        return self._registry

    async def load(self) -> int:
        """Load persisted ledgers, recomputing their derived state."""
        payloads = await self._store.list(LEDGER_NAMESPACE)
        for payload in payloads:
            record = ComplianceLedgerRecord.model_validate(payload)
            try:
                self._ledgers[record.ledger_id] = ComplianceLedger.from_record(record)
            except InvariantViolationError as exc:
                self._ledgers[record.ledger_id] = ComplianceLedger(
                    record.ledger_id, record.requirements,
                )
                self._fault(record.ledger_id, exc)
        logger.info("Loaded %d compliance ledgers", len(payloads))
        return len(payloads)

    async def create_ledger(
        self,
        requirements: list[ComplianceRequirement],
        ledger_id: str | None = None,
    ) -> ComplianceLedgerRecord:
        """Create an empty ledger for a requirement catalogue.

        Raises:
            ConfigurationError: Duplicate ledger id or requirement ids.
        """
        ledger_id = ledger_id or str(uuid.uuid4())
        if ledger_id in self._ledgers:
            raise ConfigurationError(f"Ledger already exists: {ledger_id}")
        try:
            ledger = ComplianceLedger(ledger_id, requirements, created_at=self._clock())
        except InvariantViolationError as exc:
            raise ConfigurationError(str(exc)) from exc

        async with self._lock(ledger_id):
            await self._commit(ledger)
        logger.info(
            "Created ledger %s with %d requirements", ledger_id, len(requirements),
        )
        return ledger.to_record()

    async def record_result(
        self, ledger_id: str, result: ComplianceResult,
    ) -> LedgerUpdate:
        """Append a result; a duplicate (requirement, timestamp) is a no-op.

        Raises:
            UnknownLedgerError: No such ledger.
            UnknownRequirementError: The requirement is not in the ledger.
        """
        self._require(ledger_id)
        async with self._lock(ledger_id):
            self._check_faulted(ledger_id)
            ledger = self._working_copy(ledger_id)
            try:
                recorded = ledger.record(result)
            except InvariantViolationError as exc:
                self._fault(ledger_id, exc)
                raise
            events: list[EngineEvent] = []
            if recorded:
                event = compliance_recorded(
                    ledger_id,
                    result.model_dump(mode="json"),
                    score=ledger.score,
                    open_violations=len(ledger.violations),
                )
                await self._commit(ledger, [event])
                events.append(event)
                logger.info(
                    "Ledger %s: %s %s (score %.2f, aggregate %.2f)",
                    ledger_id, result.requirement_id,
                    "passed" if result.passed else "failed",
                    result.score, ledger.score,
                )
            else:
                logger.debug(
                    "Ledger %s: duplicate result for %s ignored",
                    ledger_id, result.requirement_id,
                )
            committed = self._ledgers[ledger_id]
            return LedgerUpdate(
                ledger=committed.to_record(),
                result=result,
                recorded=recorded,
                score=committed.score,
                events=events,
            )

    async def run_compliance_check(
        self,
        ledger_id: str,
        requirement_id: str,
        context: Mapping[str, Any],
    ) -> LedgerUpdate:
        """Run the requirement's check and record the result.

        The check runs outside the ledger lock; only the append is
        serialized.
        """
        self._require(ledger_id)
        self._check_faulted(ledger_id)
        requirement = self._ledgers[ledger_id].requirement(requirement_id)
        result = await run_check(requirement, context, self._registry, self._clock)
        return await self.record_result(ledger_id, result)

    def get_gate_decision(self, ledger_id: str, min_score: float) -> GateDecision:
        """Gate decision from the last committed ledger state."""
        self._require(ledger_id)
        self._check_faulted(ledger_id)
        return self._ledgers[ledger_id].gate_decision(min_score)

    def get_ledger(self, ledger_id: str) -> ComplianceLedger:
        """Committed ledger. Callers must treat it as read-only."""
        self._require(ledger_id)
        return self._ledgers[ledger_id]

    def list_ledgers(self) -> list[ComplianceLedger]:
        return sorted(self._ledgers.values(), key=lambda ledger: ledger.created_at)

    def is_faulted(self, ledger_id: str) -> bool:
        return ledger_id in self._faulted

    @asynccontextmanager
    async def hold(self, ledger_id: str) -> AsyncIterator[ComplianceLedger]:
        """Hold the ledger lock while reading a consistent snapshot."""
        self._require(ledger_id)
        async with self._lock(ledger_id):
            self._check_faulted(ledger_id)
            yield self._ledgers[ledger_id]

    # ── Internals ────────────────────────────────────────────────

    def _lock(self, ledger_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(ledger_id)

    def _require(self, ledger_id: str) -> None:
        if ledger_id not in self._ledgers:
            raise UnknownLedgerError(ledger_id)

    def _check_faulted(self, ledger_id: str) -> None:
        if ledger_id in self._faulted:
            raise EntityFaultedError(ledger_id, self._faulted[ledger_id])

    def _fault(self, ledger_id: str, exc: Exception) -> None:
        self._faulted[ledger_id] = str(exc)
        logger.error("Ledger %s halted after invariant violation: %s", ledger_id, exc)

    def _working_copy(self, ledger_id: str) -> ComplianceLedger:
        return ComplianceLedger.from_record(self._ledgers[ledger_id].to_record())

    async def _commit(
        self, ledger: ComplianceLedger, events: Iterable[EngineEvent] = (),
    ) -> None:
        await self._store.write_many([
            (LEDGER_NAMESPACE, ledger.ledger_id, ledger.to_record().model_dump(mode="json")),
            *outbox_entries(events),
        ])
        self._ledgers[ledger.ledger_id] = ledger
