"""Calculation run orchestration.

Validates a request, pins a rule-set version, derives every work item
against the pinned snapshot and records the run with its breakdown lines.

Run lifecycle:
    submit -> (memoized terminal run) | insert PENDING -> claim RUNNING
           -> derive items concurrently -> price -> finalize (one transaction)

Per-item failures land in the run's error log and never abort the run.
Only validation and lookup errors are raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal, DecimalException
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from cmmcalc.calculation import repository
from cmmcalc.calculation.accumulator import BreakdownAccumulator
from cmmcalc.calculation.derivation import Derivation, quantize
from cmmcalc.calculation.hashing import compute_input_hash, normalize_snapshot
from cmmcalc.calculation.pricing import NullPriceProvider, PriceProvider, lookup_prices
from cmmcalc.calculation.state import final_status
from cmmcalc.config import EngineConfig, get_config
from cmmcalc.db.connection import get_session, get_session_factory
from cmmcalc.db.models import MaterialMasterModel
from cmmcalc.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    ItemFailure,
    PersistenceError,
    RunNotFoundError,
    UnknownMaterial,
    ValidationError,
)
from cmmcalc.models import (
    CalculationRequest,
    CalculationRun,
    FailureReason,
    ItemError,
    MaterialBreakdownLine,
    MaterialMaster,
    ResultSummary,
    RunStatus,
    WorkItem,
    utcnow,
)
from cmmcalc.rules.formula import FormulaEvaluator
from cmmcalc.rules.registry import RuleSetRegistry, RuleSnapshot
from cmmcalc.taxonomy.tree import load_taxonomy
from cmmcalc.units.converter import UnitConverter, load_converter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_db_error(exc: BaseException) -> bool:
    """Errors worth retrying: dropped connections, lock timeouts."""
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class CalculationOrchestrator:
    """Entry point for submitting and inspecting calculation runs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        registry: RuleSetRegistry | None = None,
        price_provider: PriceProvider | None = None,
        config: EngineConfig | None = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self.registry = registry or RuleSetRegistry(self._session_factory)
        self.price_provider = price_provider or NullPriceProvider()
        self.config = config or get_config().engine
        self.evaluator = FormulaEvaluator(max_length=self.config.max_formula_length)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_run(self, request: CalculationRequest) -> CalculationRun:
        """Derive a material breakdown for ``request``.

        Identical input against the same rule-set version returns the
        existing run instead of computing a new one.

        Raises:
            ValidationError: Request refers to unknown or mismatched reference data
            PersistenceError: The run could not be recorded at all
        """
        started = time.perf_counter()

        if not request.work_items:
            raise ValidationError("A calculation request needs at least one work item")

        if request.rule_set_version:
            rule_set = await self.registry.get_version(request.rule_set_version)
        else:
            rule_set = await self.registry.get_current()
        snapshot = await self.registry.snapshot(rule_set.version)

        materials, converter = await self._load_reference(request, snapshot)

        input_snapshot = normalize_snapshot(request)
        input_hash = compute_input_hash(input_snapshot, rule_set.version)

        existing = await self._find_existing(input_hash, rule_set.version)
        if existing is not None:
            return await self._reuse(existing)

        try:
            run_id = await self._persist(
                self._insert_pending,
                request,
                rule_set.version,
                input_snapshot,
                input_hash,
            )
        except IntegrityError:
            # Lost the insert race for (hash, version)
            existing = await self._find_existing(input_hash, rule_set.version)
            if existing is None:
                raise
            return await self._reuse(existing)

        logger.info(
            f"Run {run_id} submitted: {len(request.work_items)} items, "
            f"rule set {rule_set.version}, hash {input_hash[:12]}"
        )

        if not await self._persist(self._claim, run_id):
            logger.info(f"Run {run_id} was claimed or closed elsewhere; waiting for it")
            return await self._await_terminal(run_id)
        logger.info(f"Run {run_id} claimed")

        try:
            return await asyncio.wait_for(
                self._execute(run_id, request, snapshot, materials, converter, started),
                timeout=self.config.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Run {run_id} exceeded {self.config.run_timeout_seconds}s, marking FAILED"
            )
            return await self._fail(run_id, FailureReason.TIMEOUT, started)
        except Exception:
            # A claimed run must not stay RUNNING
            logger.exception(f"Run {run_id} aborted by an unexpected error, marking FAILED")
            return await self._fail(run_id, FailureReason.INTERNAL_ERROR, started)

    async def get_run(self, run_id: UUID) -> CalculationRun:
        """Run with its breakdown lines.

        Raises:
            RunNotFoundError: Unknown run id
        """
        async with get_session(self._session_factory) as session:
            row = await repository.load_run(session, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            return repository.run_from_model(row)

    async def list_runs(
        self,
        project_id: str | None = None,
        category_l1: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CalculationRun]:
        """Runs newest first, without their lines."""
        async with get_session(self._session_factory) as session:
            rows, _ = await repository.list_runs(
                session,
                project_id=project_id,
                category_l1=category_l1,
                status=status,
                limit=limit,
                offset=offset,
            )
            return [repository.run_from_model(row, include_lines=False) for row in rows]

    async def cancel_run(self, run_id: UUID) -> CalculationRun:
        """Move a PENDING or RUNNING run to FAILED(CANCELLED).

        Raises:
            RunNotFoundError: Unknown run id
            InvalidTransition: The run already finished
        """
        async with get_session(self._session_factory) as session:
            row = await repository.load_run(session, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            status = RunStatus(row.status)
            if status.is_terminal:
                raise InvalidTransition(status.value, RunStatus.FAILED.value)

            now = utcnow()
            created_at = row.created_at
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=now.tzinfo)
            cancelled = await repository.transition(
                session,
                run_id,
                RunStatus.FAILED,
                failure_reason=FailureReason.CANCELLED.value,
                completed_at=now,
                duration_ms=int((now - created_at).total_seconds() * 1000),
            )

        if cancelled:
            logger.info(f"Run {run_id} cancelled")
        run = await self.get_run(run_id)
        if not cancelled and run.failure_reason is not FailureReason.CANCELLED:
            raise InvalidTransition(run.status.value, RunStatus.FAILED.value)
        return run

    # ------------------------------------------------------------------
    # Validation and reference data
    # ------------------------------------------------------------------

    async def _load_reference(
        self, request: CalculationRequest, snapshot: RuleSnapshot
    ) -> tuple[dict[str, MaterialMaster], UnitConverter]:
        """Validate the request and load the materials and conversions it needs."""
        item_codes = {item.material_code for item in request.work_items if item.material_code}
        rule_codes = {rule.target_material for rule in snapshot.rules if rule.target_material}
        codes = item_codes | rule_codes

        async with get_session(self._session_factory) as session:
            taxonomy = await load_taxonomy(session)
            material_rows = []
            if codes:
                material_rows = list(
                    (
                        await session.execute(
                            select(MaterialMasterModel).where(MaterialMasterModel.code.in_(sorted(codes)))
                        )
                    ).scalars()
                )
            converter = await load_converter(session, codes)

        materials = {row.code: MaterialMaster.model_validate(row) for row in material_rows}

        taxonomy.validate_scope(request.category_l1)
        for item in request.work_items:
            taxonomy.validate_scope(request.category_l1, item.category_l2, item.category_l3)
            if item.material_code:
                material = materials.get(item.material_code)
                if material is None:
                    raise UnknownMaterial(item.material_code)
                if material.is_deleted:
                    raise UnknownMaterial(item.material_code, "has been deleted")

        active = {code: m for code, m in materials.items() if not m.is_deleted}
        return active, converter

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run_id: UUID,
        request: CalculationRequest,
        snapshot: RuleSnapshot,
        materials: dict[str, MaterialMaster],
        converter: UnitConverter,
        started: float,
    ) -> CalculationRun:
        derivation = Derivation(
            snapshot=snapshot,
            category_l1=request.category_l1,
            materials=materials,
            converter=converter,
            evaluator=self.evaluator,
            building_params=request.building_params,
            scenario=request.scenario,
            quantity_decimals=self.config.quantity_decimals,
        )
        outcomes = await self._derive_all(derivation, request.work_items)

        lines = [o for o in outcomes if isinstance(o, MaterialBreakdownLine)]
        errors = [o for o in outcomes if isinstance(o, ItemError)]
        for error in errors:
            logger.info(
                f"Run {run_id} item {error.item_code} failed: {error.error_type.value} {error.message}"
            )

        prices = await lookup_prices(
            self.price_provider, (line.material_code for line in lines if line.material_code)
        )

        accumulator = BreakdownAccumulator(run_id)
        for line in lines:
            accumulator.append(self._priced(line, prices))

        status, reason = final_status(len(lines), len(errors))
        summary = accumulator.summary(len(request.work_items), len(errors))

        try:
            await self._persist(
                self._finalize, run_id, accumulator, status, reason, summary, errors, started
            )
        except ConcurrencyConflict:
            logger.info(f"Run {run_id} was closed while computing; discarding results")
        except PersistenceError as e:
            logger.error(f"Run {run_id} could not be finalized: {e}")
            return await self._fail(run_id, FailureReason.PERSISTENCE, started)

        run = await self.get_run(run_id)
        logger.info(
            f"Run {run_id} finished {run.status.value}: "
            f"{len(lines)} lines, {len(errors)} errors, {run.duration_ms}ms"
        )
        return run

    async def _derive_all(
        self, derivation: Derivation, items: Sequence[WorkItem]
    ) -> list[MaterialBreakdownLine | ItemError]:
        """Derive items concurrently (bounded), keeping input order."""
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_items))

        async def derive_one(item: WorkItem) -> MaterialBreakdownLine | ItemError:
            async with semaphore:
                try:
                    return await asyncio.to_thread(derivation.derive, item)
                except ItemFailure as exc:
                    return ItemError(
                        item_code=item.item_code,
                        error_type=exc.error_type,
                        message=str(exc),
                    )

        return list(await asyncio.gather(*(derive_one(item) for item in items)))

    def _priced(
        self, line: MaterialBreakdownLine, prices: dict[str, Decimal]
    ) -> MaterialBreakdownLine:
        price = prices.get(line.material_code) if line.material_code else None
        if price is None:
            return line
        decimals = self.config.price_decimals
        try:
            unit_price = quantize(price, decimals)
            subtotal = quantize(line.final_quantity * unit_price, decimals)
        except DecimalException:
            logger.warning(
                f"Subtotal for {line.source_work_item_code} ({line.material_code}) "
                f"exceeds decimal precision; leaving it unpriced"
            )
            return line
        return line.model_copy(update={"unit_price": unit_price, "subtotal": subtotal})

    # ------------------------------------------------------------------
    # Persistence steps
    # ------------------------------------------------------------------

    async def _persist(self, step: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a database step, retrying transient failures with backoff.

        Raises:
            PersistenceError: Transient failures outlasted the retry budget
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.persistence_retry_attempts)),
            wait=wait_exponential(multiplier=self.config.persistence_retry_backoff_base, max=10),
            retry=retry_if_exception(is_transient_db_error),
            before_sleep=lambda state: logger.warning(
                f"Retrying {step.__name__} after attempt {state.attempt_number}: "
                f"{state.outcome.exception() if state.outcome else ''}"
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await step(*args)
        except DBAPIError as exc:
            if is_transient_db_error(exc):
                raise PersistenceError(f"{step.__name__} failed: {exc}") from exc
            raise
        return result

    async def _find_existing(self, input_hash: str, version: str) -> CalculationRun | None:
        async with get_session(self._session_factory) as session:
            row = await repository.find_by_hash(session, input_hash, version)
            return repository.run_from_model(row) if row is not None else None

    async def _reuse(self, existing: CalculationRun) -> CalculationRun:
        if existing.status.is_terminal:
            logger.info(f"Run {existing.run_id} reused for identical input ({existing.status.value})")
            return existing
        logger.info(f"Run {existing.run_id} in progress for identical input; waiting")
        return await self._await_terminal(existing.run_id)

    async def _insert_pending(
        self,
        request: CalculationRequest,
        version: str,
        input_snapshot: dict[str, Any],
        input_hash: str,
    ) -> UUID:
        async with get_session(self._session_factory) as session:
            return await repository.insert_pending(
                session,
                project_id=request.project_id,
                category_l1=request.category_l1,
                rule_set_version=version,
                input_snapshot=input_snapshot,
                input_hash=input_hash,
                created_at=utcnow(),
            )

    async def _claim(self, run_id: UUID) -> bool:
        async with get_session(self._session_factory) as session:
            return await repository.transition(session, run_id, RunStatus.RUNNING)

    async def _finalize(
        self,
        run_id: UUID,
        accumulator: BreakdownAccumulator,
        status: RunStatus,
        reason: FailureReason | None,
        summary: ResultSummary,
        errors: list[ItemError],
        started: float,
    ) -> None:
        """Status CAS and line insert in one transaction."""
        async with get_session(self._session_factory) as session:
            swapped = await repository.transition(
                session,
                run_id,
                status,
                failure_reason=reason.value if reason else None,
                result_summary=summary.model_dump(mode="json"),
                error_log=[error.model_dump(mode="json") for error in errors],
                duration_ms=_elapsed_ms(started),
                completed_at=utcnow(),
            )
            if not swapped:
                raise ConcurrencyConflict(f"Run {run_id} is no longer RUNNING")
            await accumulator.flush(session)

    async def _fail(self, run_id: UUID, reason: FailureReason, started: float) -> CalculationRun:
        """Best-effort move to FAILED(reason); returns the run as stored."""
        try:
            async with get_session(self._session_factory) as session:
                await repository.transition(
                    session,
                    run_id,
                    RunStatus.FAILED,
                    failure_reason=reason.value,
                    duration_ms=_elapsed_ms(started),
                    completed_at=utcnow(),
                )
        except DBAPIError as e:
            logger.error(f"Could not mark run {run_id} FAILED({reason.value}): {e}")
        return await self.get_run(run_id)

    async def _await_terminal(self, run_id: UUID) -> CalculationRun:
        """Poll a run owned by another submitter until it finishes.

        A run still open after the run timeout is assumed abandoned and is
        failed with TIMEOUT.
        """
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.run_timeout_seconds
        while True:
            run = await self.get_run(run_id)
            if run.status.is_terminal:
                return run
            if loop.time() >= deadline:
                logger.warning(f"Run {run_id} still {run.status.value} after timeout")
                return await self._fail(run_id, FailureReason.TIMEOUT, started)
            await asyncio.sleep(self.config.run_poll_interval_seconds)
