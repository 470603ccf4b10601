"""
Aggregation Engine

Computes statistics for a jurisdiction node from the Family and Citizen
tables. Leaf (GN) counts come from a single grouped query over the node's
descendant GN ids; every higher level is a sum over those leaves, so the
rollup is consistent at every tier by construction.

Statistics are computed on read. The queries issued for one request do not
share a snapshot, so concurrent writes can make a district breakdown and a
district total differ briefly.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from registry.models import Citizen, Family, JurisdictionLevel
from registry.monitoring import query_timer
from registry.scope import JurisdictionTree, TreeNode

logger = logging.getLogger(__name__)

CHILD_MAX_AGE = 18
SENIOR_MIN_AGE = 60


def ratio(numerator: float, denominator: float) -> float:
    """Division that reports 0.0 for an empty denominator."""
    if not denominator:
        return 0.0
    return round(numerator / denominator, 2)


def years_ago(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return today.replace(year=today.year - years, day=28)


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class LeafCounts:
    family_count: int = 0
    citizen_count: int = 0
    pending_transfer_count: int = 0


@dataclass
class StatisticsRecord:
    """Statistics for one jurisdiction node."""
    jurisdiction_id: int
    level: JurisdictionLevel
    office_name: str = ""
    family_count: int = 0
    citizen_count: int = 0
    pending_transfer_count: int = 0
    gn_count: int = 0
    division_count: int = 0
    available: bool = True

    @classmethod
    def unavailable(cls, node: TreeNode) -> 'StatisticsRecord':
        return cls(
            jurisdiction_id=node.id,
            level=node.level,
            office_name=node.office_name,
            available=False
        )

    @property
    def population(self) -> int:
        return self.citizen_count

    @property
    def people_per_family(self) -> float:
        return ratio(self.citizen_count, self.family_count)

    @property
    def families_per_gn(self) -> float:
        return ratio(self.family_count, self.gn_count)

    @property
    def gn_per_division(self) -> float:
        return ratio(self.gn_count, self.division_count)

    def to_dict(self) -> dict:
        return {
            'jurisdiction_id': self.jurisdiction_id,
            'level': self.level.value,
            'office_name': self.office_name,
            'family_count': self.family_count,
            'citizen_count': self.citizen_count,
            'population': self.population,
            'pending_transfer_count': self.pending_transfer_count,
            'gn_count': self.gn_count,
            'division_count': self.division_count,
            'people_per_family': self.people_per_family,
            'families_per_gn': self.families_per_gn,
            'gn_per_division': self.gn_per_division,
            'available': self.available,
        }


@dataclass
class Demographics:
    """Gender and age-band distribution of live citizens under a node."""
    jurisdiction_id: int
    total: int = 0
    by_gender: Dict[str, int] = field(default_factory=dict)
    children: int = 0
    adults: int = 0
    seniors: int = 0
    unknown_age: int = 0
    available: bool = True

    def to_dict(self) -> dict:
        return {
            'jurisdiction_id': self.jurisdiction_id,
            'total': self.total,
            'by_gender': dict(self.by_gender),
            'age_groups': {
                'children': self.children,
                'adults': self.adults,
                'seniors': self.seniors,
                'unknown': self.unknown_age,
            },
            'available': self.available,
        }


# ============================================
# ENGINE
# ============================================

class AggregationEngine:
    """
    Jurisdiction rollups.

    Usage:
        engine = AggregationEngine(session, JurisdictionTree.load(session))
        record = engine.stats(division_id)
    """

    def __init__(self, session: Session, tree: JurisdictionTree):
        self.session = session
        self.tree = tree

    def leaf_counts(self, gn_ids: Iterable[int]) -> Dict[int, LeafCounts]:
        """
        Per-GN counts from one grouped query.

        Raises:
            SQLAlchemyError: propagated; callers degrade to unavailable
        """
        gn_ids = sorted(set(gn_ids))
        if not gn_ids:
            return {}

        live_citizen = and_(
            Citizen.family_id == Family.family_id,
            Citizen.is_alive.is_(True)
        )
        stmt = (
            select(
                Family.gn_id,
                func.count(distinct(Family.family_id)).label("family_count"),
                func.count(Citizen.citizen_id).label("citizen_count"),
                func.count(distinct(
                    case((Family.has_pending_transfer.is_(True), Family.family_id))
                )).label("pending_transfer_count"),
            )
            .select_from(Family)
            .outerjoin(Citizen, live_citizen)
            .where(Family.gn_id.in_(gn_ids))
            .group_by(Family.gn_id)
        )

        with query_timer("stats.leaf_counts"):
            rows = self.session.execute(stmt).all()

        return {
            row.gn_id: LeafCounts(
                family_count=row.family_count,
                citizen_count=row.citizen_count,
                pending_transfer_count=row.pending_transfer_count,
            )
            for row in rows
        }

    def _rollup(self, node: TreeNode, leaves: Dict[int, LeafCounts]) -> StatisticsRecord:
        subtree = self.tree.descendants(node.id)
        gn_ids = self.tree.gn_descendants(node.id)

        record = StatisticsRecord(
            jurisdiction_id=node.id,
            level=node.level,
            office_name=node.office_name,
            gn_count=len(gn_ids),
            division_count=sum(
                1 for n in subtree
                if self.tree.node(n).level == JurisdictionLevel.DIVISION
            ),
        )
        for gn_id in gn_ids:
            counts = leaves.get(gn_id)
            if counts is None:
                continue
            record.family_count += counts.family_count
            record.citizen_count += counts.citizen_count
            record.pending_transfer_count += counts.pending_transfer_count
        return record

    def stats(self, node_id: int) -> StatisticsRecord:
        """
        Statistics for one node.

        A storage failure yields a zeroed record with ``available=False``
        and a logged warning instead of an exception.

        Raises:
            EntityNotFoundError: node is not in the tree
        """
        node = self.tree.node(node_id)
        try:
            leaves = self.leaf_counts(self.tree.gn_descendants(node_id))
        except SQLAlchemyError as e:
            logger.warning(f"Statistics unavailable for {node.level.value} {node_id}: {e}")
            return StatisticsRecord.unavailable(node)
        return self._rollup(node, leaves)

    def breakdown(self, node_id: int) -> List[StatisticsRecord]:
        """
        Statistics for each direct child of a node, from one leaf query.
        """
        node = self.tree.node(node_id)
        children = self.tree.children(node_id)
        if not children:
            return []

        try:
            leaves = self.leaf_counts(self.tree.gn_descendants(node_id))
        except SQLAlchemyError as e:
            logger.warning(f"Breakdown unavailable for {node.level.value} {node_id}: {e}")
            return [StatisticsRecord.unavailable(child) for child in children]

        return [self._rollup(child, leaves) for child in children]

    def demographics(self, node_id: int, today: Optional[date] = None) -> Demographics:
        """
        Gender distribution and age bands of live citizens under a node.

        Bands: children under 18, adults 18 to 60, seniors over 60.
        Citizens without a birth date are counted as unknown.
        """
        self.tree.node(node_id)
        gn_ids: FrozenSet[int] = self.tree.gn_descendants(node_id)
        result = Demographics(jurisdiction_id=node_id)
        if not gn_ids:
            return result

        today = today or date.today()
        child_cutoff = years_ago(today, CHILD_MAX_AGE)
        senior_cutoff = years_ago(today, SENIOR_MIN_AGE + 1)
        dob = Citizen.date_of_birth

        stmt = (
            select(
                Citizen.gender,
                func.count(Citizen.citizen_id).label("total"),
                func.sum(case((dob > child_cutoff, 1), else_=0)).label("children"),
                func.sum(case((and_(dob <= child_cutoff, dob > senior_cutoff), 1), else_=0)).label("adults"),
                func.sum(case((dob <= senior_cutoff, 1), else_=0)).label("seniors"),
                func.sum(case((dob.is_(None), 1), else_=0)).label("unknown_age"),
            )
            .join(Family, Family.family_id == Citizen.family_id)
            .where(Family.gn_id.in_(sorted(gn_ids)), Citizen.is_alive.is_(True))
            .group_by(Citizen.gender)
        )

        try:
            with query_timer("stats.demographics"):
                rows = self.session.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.warning(f"Demographics unavailable for jurisdiction {node_id}: {e}")
            result.available = False
            return result

        for row in rows:
            gender = (row.gender or "unknown").lower()
            result.by_gender[gender] = result.by_gender.get(gender, 0) + row.total
            result.total += row.total
            result.children += int(row.children or 0)
            result.adults += int(row.adults or 0)
            result.seniors += int(row.seniors or 0)
            result.unknown_age += int(row.unknown_age or 0)

        return result
