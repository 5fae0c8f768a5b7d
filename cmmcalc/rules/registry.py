"""Versioned rule-set registry.

Enforces the invariant: at most one current rule set. Promotion demotes the
previous current set and locks the promoted one against edits in a single
transaction; the in-process current pointer is swapped under one lock.
Runs pin a version and read an immutable ``RuleSnapshot`` of it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cmmcalc.db.connection import get_session, get_session_factory
from cmmcalc.db.models import ConversionRuleModel, RuleSetModel, WasteFactorModel
from cmmcalc.errors import RuleSetImmutableError, UnknownRuleSet
from cmmcalc.models import ConversionRule, RuleSet, RuleType, TaxonomyScope, WasteFactor, utcnow

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def scope_matches(
    rule_scope: TaxonomyScope,
    query: TaxonomyScope,
    rule_material: str | None = None,
    query_material: str | None = None,
) -> bool:
    """Populated rule fields must equal the query's; unset fields are wildcards."""
    pairs = (
        (rule_scope.category_l1, query.category_l1),
        (rule_scope.category_l2, query.category_l2),
        (rule_scope.category_l3, query.category_l3),
        (rule_material, query_material),
    )
    return all(wanted is None or wanted == actual for wanted, actual in pairs)


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable view of one rule-set version, pinned by a calculation run."""

    rule_set: RuleSet
    rules: tuple[ConversionRule, ...]
    waste_factors: tuple[WasteFactor, ...]

    @property
    def version(self) -> str:
        return self.rule_set.version

    def rules_for(
        self,
        scope: TaxonomyScope,
        rule_type: RuleType | None = None,
        material_code: str | None = None,
    ) -> list[ConversionRule]:
        return [
            rule
            for rule in self.rules
            if rule.is_active
            and (rule_type is None or rule.rule_type is rule_type)
            and scope_matches(rule.scope, scope, rule.source_material, material_code)
        ]


def rule_to_model(rule: ConversionRule) -> ConversionRuleModel:
    return ConversionRuleModel(
        id=rule.id,
        rule_set_version=rule.rule_set_version,
        rule_type=rule.rule_type.value,
        category_l1=rule.category_l1,
        category_l2=rule.category_l2,
        category_l3=rule.category_l3,
        source_material=rule.source_material,
        target_material=rule.target_material,
        formula=rule.formula,
        variables=dict(rule.variables),
        output_unit=rule.output_unit,
        priority=rule.priority,
        description=rule.description,
        is_active=rule.is_active,
    )


class RuleSetRegistry:
    """Reads rule sets and owns the current-version pointer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or get_session_factory()
        self._lock = asyncio.Lock()
        self._current: RuleSet | None = None
        self._snapshots: dict[str, RuleSnapshot] = {}

    async def get_current(self) -> RuleSet:
        """Current rule set (cached pointer, loaded on first use).

        Raises:
            UnknownRuleSet: If no rule set has been promoted
        """
        current = self._current
        if current is not None:
            return current

        async with self._lock:
            if self._current is None:
                async with get_session(self._session_factory) as session:
                    row = (
                        await session.execute(
                            select(RuleSetModel).where(RuleSetModel.is_current.is_(True))
                        )
                    ).scalar_one_or_none()
                if row is None:
                    raise UnknownRuleSet("current")
                self._current = RuleSet.model_validate(row)
            return self._current

    async def get_version(self, version: str) -> RuleSet:
        async with get_session(self._session_factory) as session:
            row = await session.get(RuleSetModel, version)
        if row is None:
            raise UnknownRuleSet(version)
        return RuleSet.model_validate(row)

    async def list_versions(self) -> list[RuleSet]:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                select(RuleSetModel).order_by(RuleSetModel.effective_from.desc())
            )
            return [RuleSet.model_validate(row) for row in result.scalars()]

    async def get_effective(self, as_of: datetime) -> RuleSet:
        """Rule set whose effective window contains ``as_of``.

        Query: effective_from <= as_of < COALESCE(effective_to, +inf); the
        latest effective_from wins.
        """
        stmt = (
            select(RuleSetModel)
            .where(
                RuleSetModel.effective_from <= as_of,
                (RuleSetModel.effective_to.is_(None)) | (RuleSetModel.effective_to > as_of),
            )
            .order_by(RuleSetModel.effective_from.desc())
            .limit(1)
        )
        async with get_session(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise UnknownRuleSet(f"effective at {as_of.isoformat()}")
        return RuleSet.model_validate(row)

    async def promote(self, version: str) -> RuleSet:
        """Make ``version`` current and lock it against edits.

        The previous current set is demoted (and its effective window closed)
        in the same transaction.

        Raises:
            UnknownRuleSet: If ``version`` does not exist
        """
        async with self._lock:
            now = utcnow()
            async with get_session(self._session_factory) as session:
                target = await session.get(RuleSetModel, version)
                if target is None:
                    raise UnknownRuleSet(version)

                result = await session.execute(
                    select(RuleSetModel).where(
                        RuleSetModel.is_current.is_(True),
                        RuleSetModel.version != version,
                    )
                )
                for previous in result.scalars():
                    previous.is_current = False
                    if previous.effective_to is None and _as_utc(previous.effective_from) < now:
                        previous.effective_to = now
                    logger.info(f"Demoted rule set {previous.version}")

                # Demotions must hit the database before the new current row
                await session.flush()

                target.is_current = True
                target.is_editable = False
                target.effective_to = None
                await session.flush()
                promoted = RuleSet.model_validate(target)

            self._current = promoted
            self._snapshots.pop(version, None)

        logger.info(f"Promoted rule set {version} to current")
        return promoted

    async def create_rule_set(
        self,
        version: str,
        name: str,
        description: str | None = None,
        effective_from: datetime | None = None,
    ) -> RuleSet:
        """Create a new editable (draft) rule set."""
        rule_set = RuleSet(
            version=version,
            name=name,
            description=description,
            effective_from=effective_from or utcnow(),
        )
        async with get_session(self._session_factory) as session:
            session.add(
                RuleSetModel(
                    version=rule_set.version,
                    name=rule_set.name,
                    description=rule_set.description,
                    is_current=False,
                    is_editable=True,
                    effective_from=rule_set.effective_from,
                )
            )
        return rule_set

    async def add_rules(self, version: str, rules: Iterable[ConversionRule]) -> int:
        """Append rules to an editable rule set.

        Raises:
            UnknownRuleSet: If ``version`` does not exist
            RuleSetImmutableError: If the set is current or otherwise locked
        """
        async with get_session(self._session_factory) as session:
            rule_set = await session.get(RuleSetModel, version)
            if rule_set is None:
                raise UnknownRuleSet(version)
            if not rule_set.is_editable:
                raise RuleSetImmutableError(version)

            count = 0
            for rule in rules:
                if rule.rule_set_version != version:
                    rule = rule.model_copy(update={"rule_set_version": version})
                session.add(rule_to_model(rule))
                count += 1

        self._snapshots.pop(version, None)
        logger.info(f"Added {count} rules to rule set {version}")
        return count

    async def rules_for(
        self,
        version: str,
        scope: TaxonomyScope,
        rule_type: RuleType | None = None,
        material_code: str | None = None,
    ) -> list[ConversionRule]:
        snapshot = await self.snapshot(version)
        return snapshot.rules_for(scope, rule_type, material_code)

    async def waste_factors_for(self, version: str) -> list[WasteFactor]:
        snapshot = await self.snapshot(version)
        return [factor for factor in snapshot.waste_factors if factor.is_active]

    async def snapshot(self, version: str) -> RuleSnapshot:
        """Load (or reuse) the immutable snapshot of ``version``.

        Only locked rule sets are cached; drafts are re-read each time.

        Raises:
            UnknownRuleSet: If ``version`` does not exist
        """
        cached = self._snapshots.get(version)
        if cached is not None:
            return cached

        async with get_session(self._session_factory) as session:
            row = await session.get(RuleSetModel, version)
            if row is None:
                raise UnknownRuleSet(version)
            rule_set = RuleSet.model_validate(row)

            rule_rows = await session.execute(
                select(ConversionRuleModel)
                .where(ConversionRuleModel.rule_set_version == version)
                .order_by(ConversionRuleModel.priority.desc(), ConversionRuleModel.id)
            )
            waste_rows = await session.execute(
                select(WasteFactorModel).where(WasteFactorModel.rule_set_version == version)
            )
            snapshot = RuleSnapshot(
                rule_set=rule_set,
                rules=tuple(ConversionRule.model_validate(r) for r in rule_rows.scalars()),
                waste_factors=tuple(WasteFactor.model_validate(w) for w in waste_rows.scalars()),
            )

        if not rule_set.is_editable:
            self._snapshots[version] = snapshot
        return snapshot

    def invalidate(self) -> None:
        """Forget the cached current pointer and snapshots."""
        self._current = None
        self._snapshots.clear()
