"""Three-level trade taxonomy (L1 trade, L2 sub-trade, L3 work item).

Nodes live in a flat list; a code -> index dict and a parent-index array
give constant-time resolution and ancestor walks (at most three hops).
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cmmcalc.db.models import CategoryL1Model, CategoryL2Model, CategoryL3Model
from cmmcalc.errors import ScopeMismatch, UnknownCategory
from cmmcalc.models import CategoryNode


class CategoryTaxonomy:
    def __init__(self, nodes: Iterable[CategoryNode]) -> None:
        self._nodes: list[CategoryNode] = []
        self._index: dict[str, int] = {}
        self._parents: list[int] = []  # -1 for L1 roots
        self._children: list[list[int]] = []

        # Insert level by level so parents always precede children
        for node in sorted(nodes, key=lambda n: n.level):
            if node.code in self._index:
                raise ValueError(f"Duplicate category code {node.code}")

            parent_idx = -1
            if node.parent_code is not None:
                parent_idx = self._index.get(node.parent_code, -1)
                if parent_idx < 0:
                    raise ValueError(
                        f"Category {node.code} references unknown parent {node.parent_code}"
                    )
                parent = self._nodes[parent_idx]
                if parent.level != node.level - 1:
                    raise ValueError(
                        f"Category {node.code} (L{node.level}) cannot sit under "
                        f"{parent.code} (L{parent.level})"
                    )

            idx = len(self._nodes)
            self._nodes.append(node)
            self._index[node.code] = idx
            self._parents.append(parent_idx)
            self._children.append([])
            if parent_idx >= 0:
                self._children[parent_idx].append(idx)

    def __contains__(self, code: object) -> bool:
        return code in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    def _idx(self, code: str) -> int:
        try:
            return self._index[code]
        except KeyError:
            raise UnknownCategory(code) from None

    def resolve(self, code: str) -> CategoryNode:
        return self._nodes[self._idx(code)]

    def level(self, code: str) -> int:
        return self.resolve(code).level

    def ancestors(self, code: str) -> list[CategoryNode]:
        """Path from the L1 root down to ``code`` (inclusive)."""
        path: list[CategoryNode] = []
        idx = self._idx(code)
        while idx >= 0:
            path.append(self._nodes[idx])
            idx = self._parents[idx]
        path.reverse()
        return path

    def children(self, code: str) -> list[CategoryNode]:
        nodes = [self._nodes[i] for i in self._children[self._idx(code)]]
        return sorted(nodes, key=lambda n: (n.sort_order, n.code))

    def roots(self) -> list[CategoryNode]:
        nodes = [n for n, parent in zip(self._nodes, self._parents) if parent < 0]
        return sorted(nodes, key=lambda n: (n.sort_order, n.code))

    def validate_scope(self, l1: str, l2: str | None = None, l3: str | None = None) -> None:
        """Check that l1 is a trade, l2 sits under l1 and l3 under l2.

        Raises:
            UnknownCategory: A code does not exist
            ScopeMismatch: A code exists at the wrong level or under another parent
        """
        node = self.resolve(l1)
        if node.level != 1:
            raise ScopeMismatch(f"{l1} is an L{node.level} category, expected L1")

        if l2 is not None:
            self._check_parent(l2, expected_level=2, parent=l1)
        if l3 is not None:
            if l2 is None:
                raise ScopeMismatch(f"L3 category {l3} given without an L2 category")
            self._check_parent(l3, expected_level=3, parent=l2)

    def _check_parent(self, code: str, expected_level: int, parent: str) -> None:
        node = self.resolve(code)
        if node.level != expected_level:
            raise ScopeMismatch(f"{code} is an L{node.level} category, expected L{expected_level}")
        if node.parent_code != parent:
            raise ScopeMismatch(f"{code} belongs to {node.parent_code}, not {parent}")

    def as_tree(self, l1: str | None = None, include_inactive: bool = False) -> list[dict[str, Any]]:
        """Nested listing ordered by sort_order, optionally for one trade."""

        def build(node: CategoryNode) -> dict[str, Any]:
            entry: dict[str, Any] = {
                "code": node.code,
                "name": node.name,
                "level": node.level,
            }
            if node.default_unit:
                entry["default_unit"] = node.default_unit
            if node.default_materials:
                entry["default_materials"] = list(node.default_materials)
            kids = [
                build(child)
                for child in self.children(node.code)
                if include_inactive or child.is_active
            ]
            if node.level < 3:
                entry["children"] = kids
            return entry

        if l1 is not None:
            root = self.resolve(l1)
            if root.level != 1:
                raise ScopeMismatch(f"{l1} is not an L1 category")
            return [build(root)]
        return [build(n) for n in self.roots() if include_inactive or n.is_active]


async def load_taxonomy(session: AsyncSession) -> CategoryTaxonomy:
    """Build the taxonomy from the three category tables."""
    nodes: list[CategoryNode] = []

    for row in (await session.execute(select(CategoryL1Model))).scalars():
        nodes.append(
            CategoryNode(
                code=row.code,
                name=row.name,
                level=1,
                sort_order=row.sort_order,
                is_active=row.is_active,
            )
        )
    for row in (await session.execute(select(CategoryL2Model))).scalars():
        nodes.append(
            CategoryNode(
                code=row.code,
                name=row.name,
                level=2,
                parent_code=row.l1_code,
                default_unit=row.default_unit,
                sort_order=row.sort_order,
                is_active=row.is_active,
            )
        )
    for row in (await session.execute(select(CategoryL3Model))).scalars():
        nodes.append(
            CategoryNode(
                code=row.code,
                name=row.name,
                level=3,
                parent_code=row.l2_code,
                default_materials=list(row.default_materials or []),
                default_params=dict(row.default_params or {}),
                sort_order=row.sort_order,
                is_active=row.is_active,
            )
        )

    return CategoryTaxonomy(nodes)
