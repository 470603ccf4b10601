"""
Paginated Query Executor

Runs a filtered list query as exactly two statements: a COUNT(*) over the
filtered set, joined only to what the active filters need, and a page
query with ORDER BY / LIMIT / OFFSET.

Also provides page-link helpers that rewrite only the ``page`` parameter
of the current query string, so a followed link reproduces the same
filtered set.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import QueryParams

from registry.errors import InvalidFilterValue, QueryExecutionError
from registry.filters import CompiledFilter, FilterCompiler, PredicateBuilder, coerce_integer
from registry.monitoring import query_timer
from registry.scope import Scope, ScopeKind, ScopeResolver

logger = logging.getLogger(__name__)

ALLOWED_PAGE_SIZES = (10, 25, 50, 100)
DEFAULT_PAGE_SIZE = 25
PAGE_PARAM = "page"
PAGE_SIZE_PARAM = "limit"


# ============================================
# QUERY SHAPE
# ============================================

@dataclass(frozen=True)
class Join:
    """
    A named join of a query shape.

    Joins must be many-to-one from the base table so that they never change
    the row count.
    """
    alias: str
    clause: str
    depends: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QueryShape:
    """Everything the executor needs to know about one list view."""
    name: str
    select: str
    base_from: str
    filters: FilterCompiler
    sort_columns: Mapping[str, str]
    default_sort: str
    key_column: str
    default_direction: str = "desc"
    joins: Tuple[Join, ...] = ()
    select_joins: Tuple[str, ...] = ()
    scope_column: Optional[str] = None
    scope_kind: str = ScopeKind.GN
    scope_requires: Tuple[str, ...] = ()
    jurisdiction_param: Optional[str] = "jurisdiction_id"

    def __post_init__(self):
        if self.default_sort not in self.sort_columns:
            raise ValueError(f"{self.name}: default sort {self.default_sort!r} not in allow-list")

    def resolve_sort(self, sort: Optional[str], direction: Optional[str]) -> Tuple[str, str]:
        """Fall back to the default sort for anything outside the allow-list."""
        if sort not in self.sort_columns:
            if sort:
                logger.debug(f"{self.name}: unknown sort {sort!r}, using {self.default_sort}")
            sort = self.default_sort
        direction = (direction or "").lower()
        if direction not in ("asc", "desc"):
            direction = self.default_direction
        return sort, direction

    def join_sql(self, aliases: Sequence[str]) -> str:
        """Render the joins for ``aliases`` and their dependencies, in declared order."""
        by_alias = {j.alias: j for j in self.joins}
        needed = set()
        pending = list(aliases)
        while pending:
            alias = pending.pop()
            if alias in needed:
                continue
            if alias not in by_alias:
                raise ValueError(f"{self.name}: unknown join alias {alias!r}")
            needed.add(alias)
            pending.extend(by_alias[alias].depends)
        return "".join(f" {j.clause}" for j in self.joins if j.alias in needed)


# ============================================
# PAGE REQUEST / RESULT
# ============================================

@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort: Optional[str] = None
    direction: Optional[str] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        allowed_sizes: Sequence[int] = ALLOWED_PAGE_SIZES,
        default_size: int = DEFAULT_PAGE_SIZE
    ) -> 'PageRequest':
        """
        Parse page, limit, sort and dir from query parameters.

        A non-numeric or non-positive page becomes 1; a page size outside
        the allow-list becomes the default. Large pages are kept as given so
        links echo the requested page; the executor returns them empty.
        """
        try:
            page = coerce_integer(params.get(PAGE_PARAM))
        except InvalidFilterValue:
            page = 1
        if page < 1:
            page = 1

        try:
            page_size = coerce_integer(params.get(PAGE_SIZE_PARAM))
        except InvalidFilterValue:
            page_size = default_size
        if page_size not in allowed_sizes:
            page_size = default_size

        return cls(
            page=page,
            page_size=page_size,
            sort=params.get("sort") or None,
            direction=params.get("dir") or None,
        )


@dataclass
class Page:
    rows: List[Dict[str, Any]]
    total_count: int
    page: int
    page_size: int
    sort: str = ""
    direction: str = ""
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def first_item(self) -> int:
        return (self.page - 1) * self.page_size + 1 if self.rows else 0

    @property
    def last_item(self) -> int:
        return (self.page - 1) * self.page_size + len(self.rows) if self.rows else 0

    def page_window(self, radius: int = 2) -> List[int]:
        """Page numbers to show around the current page."""
        if self.total_pages == 0:
            return []
        start = max(1, self.page - radius)
        end = min(self.total_pages, self.page + radius)
        return list(range(start, end + 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rows': self.rows,
            'total_count': self.total_count,
            'total_pages': self.total_pages,
            'page': self.page,
            'page_size': self.page_size,
            'sort': self.sort,
            'direction': self.direction,
            'has_previous': self.has_previous,
            'has_next': self.has_next,
            'first_item': self.first_item,
            'last_item': self.last_item,
            'filters': dict(self.filters),
        }


# ============================================
# EXECUTOR
# ============================================

class PaginatedQueryExecutor:
    """
    Executes a QueryShape for one principal.

    Usage:
        executor = PaginatedQueryExecutor(session, AUDIT_LOG_SHAPE, resolver)
        page = executor.execute(scope, request.query_params, PageRequest.from_params(...))
    """

    def __init__(self, session: Session, shape: QueryShape, resolver: ScopeResolver):
        self.session = session
        self.shape = shape
        self.resolver = resolver

    def _requested_jurisdiction(self, values: Mapping[str, Any]) -> Optional[int]:
        if not self.shape.jurisdiction_param:
            return None
        try:
            return coerce_integer(values.get(self.shape.jurisdiction_param))
        except InvalidFilterValue:
            return None

    def compile(self, scope: Scope, values: Mapping[str, Any]) -> Optional[CompiledFilter]:
        """
        Build the scope fragment followed by the request filters.

        Returns:
            None when the scope leaves nothing visible

        Raises:
            AccessDenied: requested jurisdiction is outside the scope
        """
        shape = self.shape
        builder = PredicateBuilder()
        joins: List[str] = []
        requested = self._requested_jurisdiction(values)

        if shape.scope_column:
            if not scope.unrestricted or requested is not None:
                visible = self.resolver.restrict(scope, requested, shape.scope_kind)
                if not visible:
                    return None
                builder.add_in(shape.scope_column, visible)
                joins.extend(shape.scope_requires)

        compiled = shape.filters.compile(values, builder=builder, joins=joins)
        if requested is not None and shape.scope_column:
            compiled = replace(compiled, active={shape.jurisdiction_param: str(requested), **compiled.active})
        return compiled

    def count_sql(self, compiled: CompiledFilter) -> str:
        shape = self.shape
        return (
            f"SELECT COUNT(*) FROM {shape.base_from}"
            f"{shape.join_sql(compiled.joins)}{compiled.where_clause()}"
        )

    def page_sql(self, compiled: CompiledFilter, sort: str, direction: str) -> str:
        shape = self.shape
        aliases = list(shape.select_joins) + [a for a in compiled.joins if a not in shape.select_joins]
        order = f"{shape.sort_columns[sort]} {direction.upper()}"
        if shape.sort_columns[sort] != shape.key_column:
            order += f", {shape.key_column} {direction.upper()}"
        return (
            f"SELECT {shape.select} FROM {shape.base_from}"
            f"{shape.join_sql(aliases)}{compiled.where_clause()}"
            f" ORDER BY {order} LIMIT :page_limit OFFSET :page_offset"
        )

    def execute(self, scope: Scope, values: Mapping[str, Any], request: PageRequest) -> Page:
        """
        Run the count and page queries.

        A page past the end yields no rows with the true total; the page
        query is skipped for it.

        Raises:
            AccessDenied: requested jurisdiction is outside the scope
            QueryExecutionError: storage failure in either query
        """
        shape = self.shape
        sort, direction = shape.resolve_sort(request.sort, request.direction)

        compiled = self.compile(scope, values)
        if compiled is None:
            return Page(rows=[], total_count=0, page=request.page, page_size=request.page_size,
                        sort=sort, direction=direction)

        try:
            with query_timer(f"{shape.name}.count"):
                total = self.session.execute(compiled.bind_to(self.count_sql(compiled))).scalar() or 0

            rows = []
            if request.offset < total:
                with query_timer(f"{shape.name}.page"):
                    result = self.session.execute(
                        compiled.bind_to(self.page_sql(compiled, sort, direction)),
                        {"page_limit": request.page_size, "page_offset": request.offset}
                    )
                    rows = [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            logger.error(f"{shape.name} list query failed: {e}")
            raise QueryExecutionError(shape.name) from e

        return Page(
            rows=rows,
            total_count=total,
            page=request.page,
            page_size=request.page_size,
            sort=sort,
            direction=direction,
            filters=compiled.active,
        )


# ============================================
# PAGE LINKS
# ============================================

ParamSource = Union[str, Mapping[str, Any], QueryParams, Sequence[Tuple[str, str]]]


def _items(params: ParamSource) -> List[Tuple[str, str]]:
    if isinstance(params, QueryParams):
        items = params.multi_items()
    elif isinstance(params, str):
        items = QueryParams(params.lstrip("?")).multi_items()
    elif isinstance(params, Mapping):
        items = [(k, "" if v is None else str(v)) for k, v in params.items()]
    else:
        items = list(params)
    return [(k, v) for k, v in items if v != ""]


def _render(items: List[Tuple[str, str]], base_path: str) -> str:
    query = str(QueryParams(items))
    return f"{base_path}?{query}" if query else base_path


def page_link(params: ParamSource, page: int, base_path: str = "") -> str:
    """
    Link to ``page`` with every other parameter preserved in place.
    Empty parameters are dropped.
    """
    items = []
    replaced = False
    for key, value in _items(params):
        if key == PAGE_PARAM:
            if replaced:
                continue
            value = str(page)
            replaced = True
        items.append((key, value))
    if not replaced:
        items.append((PAGE_PARAM, str(page)))
    return _render(items, base_path)


def remove_filter_link(params: ParamSource, key: str, base_path: str = "") -> str:
    """Link that drops one filter, keeps the rest, and returns to page 1."""
    remaining = [(k, v) for k, v in _items(params) if k != key]
    return page_link(remaining, 1, base_path)


def navigation_links(page: Page, params: ParamSource, base_path: str = "") -> Dict[str, Any]:
    """Previous/next/first/last links plus one removal link per active filter."""
    links: Dict[str, Any] = {
        'first': page_link(params, 1, base_path) if page.total_pages else None,
        'last': page_link(params, page.total_pages, base_path) if page.total_pages else None,
        'previous': page_link(params, page.page - 1, base_path) if page.has_previous else None,
        'next': page_link(params, page.page + 1, base_path) if page.has_next else None,
        'remove': {
            key: remove_filter_link(params, key, base_path) for key in page.filters
        },
    }
    return links
