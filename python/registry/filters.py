"""
Filter Compiler

Turns a sparse mapping of optional, user-supplied filter values into a
parameterized SQL predicate for ``sqlalchemy.text()``.

Every fragment is appended together with the values it binds, as a single
unit, through PredicateBuilder. Placeholder names are allocated
sequentially (``:f0``, ``:f1``, ...) in the order fragments appear in the
final SQL, so bind order can never drift from fragment order.

Values that are missing, empty, or fail type coercion are dropped
silently; an invalid filter never narrows a result to "always false".
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Boolean, Date, DateTime, Integer, String, bindparam, text
from sqlalchemy.sql.elements import BindParameter, TextClause

from log_utils import sanitize_for_logging
from registry.errors import InvalidFilterValue

logger = logging.getLogger(__name__)


# ============================================
# BIND TYPES
# ============================================

class BindType:
    STRING = "string"
    INTEGER = "integer"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"


SQL_TYPES = {
    BindType.STRING: String(),
    BindType.INTEGER: Integer(),
    BindType.DATE: Date(),
    BindType.DATETIME: DateTime(),
    BindType.BOOLEAN: Boolean(),
}

LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards in user input."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def contains_pattern(value: str) -> str:
    return f"%{escape_like(value)}%"


# ============================================
# COERCION
# ============================================

def _as_text(raw: Any) -> str:
    if raw is None:
        raise InvalidFilterValue("missing")
    value = str(raw).strip()
    if not value:
        raise InvalidFilterValue("empty")
    return value


def coerce_string(raw: Any) -> str:
    return _as_text(raw)


def coerce_integer(raw: Any) -> int:
    if isinstance(raw, bool):
        raise InvalidFilterValue(f"not an integer: {raw!r}")
    if isinstance(raw, int):
        return raw
    value = _as_text(raw)
    try:
        return int(value)
    except ValueError:
        raise InvalidFilterValue(f"not an integer: {value!r}")


def coerce_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    value = _as_text(raw)
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidFilterValue(f"not a date: {value!r}")


def coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    value = _as_text(raw).lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise InvalidFilterValue(f"not a boolean: {value!r}")


COERCERS = {
    BindType.STRING: coerce_string,
    BindType.INTEGER: coerce_integer,
    BindType.DATE: coerce_date,
    BindType.DATETIME: coerce_date,
    BindType.BOOLEAN: coerce_boolean,
}


# ============================================
# PREDICATE BUILDER
# ============================================

@dataclass(frozen=True)
class BoundValue:
    name: str
    value: Any
    bind_type: str
    expanding: bool = False

    def to_bindparam(self) -> BindParameter:
        if self.expanding:
            return bindparam(self.name, value=list(self.value), type_=SQL_TYPES[self.bind_type],
                             expanding=True)
        return bindparam(self.name, value=self.value, type_=SQL_TYPES[self.bind_type])


class PredicateBuilder:
    """
    Accumulates ``(fragment, bound values)`` units.

    A fragment template marks each placeholder with ``{}``; add() allocates
    the names and records the values in the same call.

    Usage:
        builder = PredicateBuilder()
        builder.add("al.action_type = {}", ("login", BindType.STRING))
        builder.add("(a LIKE {} OR b LIKE {})", (p, BindType.STRING), (p, BindType.STRING))
    """

    def __init__(self, prefix: str = "f"):
        self._prefix = prefix
        self._fragments: List[str] = []
        self._binds: List[BoundValue] = []

    def _next_name(self) -> str:
        return f"{self._prefix}{len(self._binds)}"

    def add(self, template: str, *values: Tuple[Any, str]) -> 'PredicateBuilder':
        names = []
        new_binds = []
        for offset, (value, bind_type) in enumerate(values):
            name = f"{self._prefix}{len(self._binds) + offset}"
            names.append(f":{name}")
            new_binds.append(BoundValue(name, value, bind_type))

        fragment = template.format(*names)
        self._fragments.append(fragment)
        self._binds.extend(new_binds)
        return self

    def add_in(self, column: str, values: Iterable[Any], bind_type: str = BindType.INTEGER) -> 'PredicateBuilder':
        """Append ``column IN (...)`` as one expanding parameter."""
        name = self._next_name()
        self._fragments.append(f"{column} IN :{name}")
        self._binds.append(BoundValue(name, tuple(sorted(values)), bind_type, expanding=True))
        return self

    def add_literal(self, fragment: str) -> 'PredicateBuilder':
        """Append a fragment that binds nothing."""
        self._fragments.append(fragment)
        return self

    def build(self, joins: Sequence[str] = (), active: Optional[Dict[str, Any]] = None) -> 'CompiledFilter':
        return CompiledFilter(
            fragments=tuple(self._fragments),
            binds=tuple(self._binds),
            joins=tuple(joins),
            active=dict(active or {}),
        )


@dataclass(frozen=True)
class CompiledFilter:
    """Predicate plus its ordered binds, ready for ``text()``."""
    fragments: Tuple[str, ...] = ()
    binds: Tuple[BoundValue, ...] = ()
    joins: Tuple[str, ...] = ()
    active: Dict[str, Any] = field(default_factory=dict)

    @property
    def predicate(self) -> str:
        return " AND ".join(self.fragments)

    @property
    def bind_values(self) -> List[Any]:
        return [b.value for b in self.binds]

    @property
    def bind_types(self) -> List[str]:
        return [b.bind_type for b in self.binds]

    @property
    def params(self) -> Dict[str, Any]:
        return {b.name: (list(b.value) if b.expanding else b.value) for b in self.binds}

    @property
    def is_empty(self) -> bool:
        return not self.fragments

    def where_clause(self) -> str:
        return f" WHERE {self.predicate}" if self.fragments else ""

    def bind_to(self, sql: str) -> TextClause:
        """Wrap ``sql`` in text() with this filter's typed bind parameters."""
        stmt = text(sql)
        if self.binds:
            stmt = stmt.bindparams(*(b.to_bindparam() for b in self.binds))
        return stmt


# ============================================
# FILTER SCHEMA
# ============================================

class Operator:
    EQ = "="
    CONTAINS = "contains"
    DATE_FROM = "date_from"
    DATE_TO = "date_to"


@dataclass(frozen=True)
class FilterField:
    """
    One optional filter: request key -> SQL column + operator + bind type.

    ``requires`` names join aliases of the query shape that must be present
    when this filter is active.
    """
    name: str
    column: str
    operator: str = Operator.EQ
    bind_type: str = BindType.STRING
    requires: Tuple[str, ...] = ()
    choices: Optional[Tuple[str, ...]] = None

    def coerce(self, raw: Any) -> Any:
        value = COERCERS[self.bind_type](raw)
        if self.choices is not None and value not in self.choices:
            raise InvalidFilterValue(f"unknown choice: {value!r}")
        return value

    def apply(self, builder: PredicateBuilder, value: Any) -> None:
        if self.operator == Operator.EQ:
            builder.add(f"{self.column} = {{}}", (value, self.bind_type))
        elif self.operator == Operator.CONTAINS:
            builder.add(
                f"{self.column} LIKE {{}} ESCAPE '{LIKE_ESCAPE}'",
                (contains_pattern(value), BindType.STRING)
            )
        elif self.operator == Operator.DATE_FROM:
            builder.add(
                f"{self.column} >= {{}}",
                (datetime.combine(value, time.min), BindType.DATETIME)
            )
        elif self.operator == Operator.DATE_TO:
            # Inclusive end date: everything before the following midnight
            builder.add(
                f"{self.column} < {{}}",
                (datetime.combine(value + timedelta(days=1), time.min), BindType.DATETIME)
            )
        else:
            raise ValueError(f"Unsupported operator: {self.operator}")


@dataclass(frozen=True)
class SearchField:
    """
    Free-text search across several columns.

    Produces one fragment of N OR'd LIKE comparisons with the same pattern
    bound N times. Matching is case-insensitive.
    """
    name: str
    columns: Tuple[str, ...]
    requires: Tuple[str, ...] = ()

    def coerce(self, raw: Any) -> str:
        return coerce_string(raw)

    def apply(self, builder: PredicateBuilder, value: str) -> None:
        pattern = contains_pattern(value.lower())
        template = " OR ".join(
            f"LOWER({column}) LIKE {{}} ESCAPE '{LIKE_ESCAPE}'" for column in self.columns
        )
        builder.add(f"({template})", *((pattern, BindType.STRING) for _ in self.columns))


@dataclass(frozen=True)
class ChoiceField:
    """
    Named state filter, e.g. ``status=pending``.

    Each choice maps to column/value conditions that are ANDed into a single
    fragment.
    """
    name: str
    choices: Mapping[str, Tuple[Tuple[str, Any, str], ...]]
    requires: Tuple[str, ...] = ()

    def coerce(self, raw: Any) -> str:
        value = coerce_string(raw).lower()
        if value not in self.choices:
            raise InvalidFilterValue(f"unknown choice: {value!r}")
        return value

    def apply(self, builder: PredicateBuilder, value: str) -> None:
        conditions = self.choices[value]
        template = " AND ".join(f"{column} = {{}}" for column, _, _ in conditions)
        if len(conditions) > 1:
            template = f"({template})"
        builder.add(template, *((v, t) for _, v, t in conditions))


# ============================================
# COMPILER
# ============================================

class FilterCompiler:
    """
    Compiles request filter values against a declared schema.

    Fields are emitted in schema declaration order, independent of the
    order of keys in the request.
    """

    def __init__(self, schema: Sequence[Any]):
        names = [f.name for f in schema]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate filter names in schema: {names}")
        self.schema = tuple(schema)

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.schema)

    def compile(
        self,
        values: Mapping[str, Any],
        builder: Optional[PredicateBuilder] = None,
        joins: Sequence[str] = ()
    ) -> CompiledFilter:
        """
        Compile filter values.

        Args:
            values: Raw request values keyed by filter name
            builder: Builder already holding leading fragments (e.g. scope)
            joins: Join aliases already required by those fragments

        Returns:
            CompiledFilter with fragments in schema order after any
            fragments already in ``builder``
        """
        builder = builder or PredicateBuilder()
        required = list(joins)
        active: Dict[str, Any] = {}

        for spec in self.schema:
            raw = values.get(spec.name)
            if raw is None:
                continue
            try:
                value = spec.coerce(raw)
            except InvalidFilterValue as e:
                if str(raw).strip():
                    logger.debug(
                        f"Dropping filter {spec.name}={sanitize_for_logging(raw)!r}: {e}"
                    )
                continue

            spec.apply(builder, value)
            active[spec.name] = str(raw).strip()
            for alias in spec.requires:
                if alias not in required:
                    required.append(alias)

        return builder.build(joins=required, active=active)
