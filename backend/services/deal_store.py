"""
Deal Store - read-only access to the deal records the search tool queries.

Backends:
- InMemoryDealStore: seeded from a list (tests, local development)
- PostgresDealStore: `deals` table via DatabaseManager
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from errors import PersistenceError
from services.database import DatabaseManager

logger = logging.getLogger(__name__)


class Deal(BaseModel):
    """One deal record. Numeric fields are optional in the source data."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    ebitda: Optional[float] = None
    revenue: Optional[float] = None
    company_location: Optional[str] = Field(default=None, alias="companyLocation")
    ebitda_margin: Optional[float] = Field(default=None, alias="ebitdaMargin")
    created_at: int = Field(default=0, alias="createdAt")


@dataclass
class DealQuery:
    """Conjunctive deal filter. None means "no constraint"."""

    id: Optional[str] = None
    title: Optional[str] = None
    min_ebitda: Optional[float] = None
    max_ebitda: Optional[float] = None
    min_revenue: Optional[float] = None
    max_revenue: Optional[float] = None
    exact_revenue: Optional[float] = None
    company_location: Optional[str] = None
    min_ebitda_margin: Optional[float] = None
    max_ebitda_margin: Optional[float] = None
    limit: int = 10


class DealStore(ABC):
    """Abstract read-only deal repository. Results are ordered by EBITDA, highest first."""

    @abstractmethod
    async def search(self, query: DealQuery) -> List[Deal]:
        pass


def _in_range(value: Optional[float], lo: Optional[float], hi: Optional[float]) -> bool:
    if lo is None and hi is None:
        return True
    if value is None:
        return False
    if lo is not None and value < lo:
        return False
    if hi is not None and value > hi:
        return False
    return True


def _contains(haystack: Optional[str], needle: Optional[str]) -> bool:
    if not needle:
        return True
    return haystack is not None and needle.lower() in haystack.lower()


def _like_literal(value: str) -> str:
    """Escape LIKE wildcards so the value matches as a plain substring."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class InMemoryDealStore(DealStore):
    def __init__(self, deals: Iterable[Deal] = ()):
        self._deals: List[Deal] = list(deals)

    def add(self, deal: Deal) -> None:
        self._deals.append(deal)

    def _matches(self, deal: Deal, q: DealQuery) -> bool:
        if q.id and deal.id != q.id:
            return False
        if not _contains(deal.title, q.title):
            return False
        if not _in_range(deal.ebitda, q.min_ebitda, q.max_ebitda):
            return False
        if q.exact_revenue is not None:
            if deal.revenue != q.exact_revenue:
                return False
        elif not _in_range(deal.revenue, q.min_revenue, q.max_revenue):
            return False
        if not _contains(deal.company_location, q.company_location):
            return False
        return _in_range(deal.ebitda_margin, q.min_ebitda_margin, q.max_ebitda_margin)

    async def search(self, query: DealQuery) -> List[Deal]:
        hits = [d for d in self._deals if self._matches(d, query)]
        # Highest EBITDA first, missing EBITDA last
        hits.sort(key=lambda d: (d.ebitda is None, -(d.ebitda or 0.0)))
        return hits[: query.limit]


class PostgresDealStore(DealStore):
    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def build_query(q: DealQuery) -> tuple:
        """Translate a DealQuery into (sql, args) with positional parameters."""
        clauses: List[str] = []
        args: list = []

        def add(clause: str, value) -> None:
            args.append(value)
            clauses.append(clause.format(n=len(args)))

        if q.id:
            add("id = ${n}", q.id)
        if q.title:
            add("title ILIKE '%' || ${n} || '%' ESCAPE '\\'", _like_literal(q.title))
        if q.min_ebitda is not None:
            add("ebitda >= ${n}", q.min_ebitda)
        if q.max_ebitda is not None:
            add("ebitda <= ${n}", q.max_ebitda)
        if q.exact_revenue is not None:
            add("revenue = ${n}", q.exact_revenue)
        else:
            if q.min_revenue is not None:
                add("revenue >= ${n}", q.min_revenue)
            if q.max_revenue is not None:
                add("revenue <= ${n}", q.max_revenue)
        if q.company_location:
            add("company_location ILIKE '%' || ${n} || '%' ESCAPE '\\'", _like_literal(q.company_location))
        if q.min_ebitda_margin is not None:
            add("ebitda_margin >= ${n}", q.min_ebitda_margin)
        if q.max_ebitda_margin is not None:
            add("ebitda_margin <= ${n}", q.max_ebitda_margin)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(q.limit)
        sql = (
            "SELECT id, title, ebitda, revenue, company_location, ebitda_margin, created_at "
            f"FROM deals {where} ORDER BY ebitda DESC NULLS LAST LIMIT ${len(args)}"
        )
        return sql, args

    async def search(self, query: DealQuery) -> List[Deal]:
        sql, args = self.build_query(query)
        try:
            rows = await self.db.fetch(sql, *args)
        except Exception as e:
            raise PersistenceError("Deal search failed", details=str(e), operation="search_deals") from e
        return [Deal(**row) for row in rows]
