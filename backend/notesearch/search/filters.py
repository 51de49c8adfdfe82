"""Search filter model and validation.

Filters are equality/range predicates ANDed with the query: category,
person, department, a single-record scope and a creation date range,
plus the result ``limit``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError


class InvalidFilterError(ValueError):
    """Raised when caller-supplied search filters are malformed."""


class SearchFilters(BaseModel):
    """Optional predicates narrowing a search.

    Attributes:
        category: Exact work-note category.
        person_id: Only notes involving this person.
        department_name: Only notes involving someone currently in this department.
        record_id: Restrict results to one work note.
        date_from: Lower bound (inclusive) on ``created_at``.
        date_to: Upper bound (inclusive) on ``created_at``.
        limit: Maximum number of results; defaults to ``SEARCH_DEFAULT_LIMIT``.
    """

    category: str | None = None
    person_id: str | None = None
    department_name: str | None = None
    record_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int | None = None


_TEXT_FIELDS = ("category", "person_id", "department_name", "record_id")


def normalize_filters(
    filters: SearchFilters | dict[str, Any] | None,
    default_limit: int,
    max_limit: int,
) -> SearchFilters:
    """Validate *filters* and return a copy with ``limit`` resolved.

    Raises:
        InvalidFilterError: On unknown/ill-typed fields, blank text
            predicates, a limit outside ``1..max_limit`` or an inverted
            date range.
    """
    if filters is None:
        filters = SearchFilters()
    elif isinstance(filters, dict):
        unknown = set(filters) - set(SearchFilters.model_fields)
        if unknown:
            raise InvalidFilterError(f"Unknown filter field(s): {', '.join(sorted(unknown))}")
        try:
            filters = SearchFilters.model_validate(filters)
        except ValidationError as exc:
            raise InvalidFilterError(str(exc)) from exc

    updates: dict[str, Any] = {}
    for name in _TEXT_FIELDS:
        value = getattr(filters, name)
        if value is None:
            continue
        stripped = value.strip()
        if not stripped:
            raise InvalidFilterError(f"Filter '{name}' must not be blank")
        updates[name] = stripped

    limit = filters.limit if filters.limit is not None else default_limit
    if limit < 1 or limit > max_limit:
        raise InvalidFilterError(f"limit must be between 1 and {max_limit}, got {limit}")
    updates["limit"] = limit

    if filters.date_from and filters.date_to:
        try:
            inverted = filters.date_from > filters.date_to
        except TypeError as exc:  # naive vs aware
            raise InvalidFilterError("date_from and date_to must both carry a timezone or neither") from exc
        if inverted:
            raise InvalidFilterError("date_from must not be later than date_to")

    return filters.model_copy(update=updates)
