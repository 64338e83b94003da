"""Pagination and sorting contract for purchase listings."""
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel

from .entities import PageInfo
from .errors import ValidationError

T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
DEFAULT_SORT = "date"
DEFAULT_ORDER = "desc"

ALLOWED_SORT_KEYS = ("date", "order")
ALLOWED_ORDERS = ("asc", "desc")


class Pagination(BaseModel):
    """Page request. Unknown sort keys and orders fall back to the defaults."""
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    sort: str = DEFAULT_SORT
    order: str = DEFAULT_ORDER

    @classmethod
    def normalized(
        cls,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
    ) -> "Pagination":
        """Build a pagination, replacing missing or unknown values by defaults."""
        return cls(
            page=page or DEFAULT_PAGE,
            limit=limit or DEFAULT_LIMIT,
            sort=sort if sort in ALLOWED_SORT_KEYS else DEFAULT_SORT,
            order=order if order in ALLOWED_ORDERS else DEFAULT_ORDER,
        )

    def validated(self) -> "Pagination":
        """Edge validation: page and limit are 1-based."""
        invalid = [name for name in ("page", "limit") if getattr(self, name) < 1]
        if invalid:
            raise ValidationError(
                f"{' and '.join(invalid)} must be greater than 0", fields=invalid
            )
        return Pagination.normalized(self.page, self.limit, self.sort, self.order)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def descending(self) -> bool:
        return self.order == "desc"


def build_page_info(total_count: int, page: int, limit: int) -> PageInfo:
    """Compute the page envelope over the full filtered set."""
    total_pages = math.ceil(total_count / limit) if limit > 0 else 0
    has_next_page = page < total_pages
    has_previous_page = page > 1
    return PageInfo(
        total_count=total_count,
        total_pages=total_pages,
        current_page=page,
        has_next_page=has_next_page,
        has_previous_page=has_previous_page,
        next_page=page + 1 if has_next_page else None,
        previous_page=page - 1 if has_previous_page else None,
    )


def sort_and_slice(
    items: Sequence[T],
    pagination: Pagination,
    sort_keys: Dict[str, Callable[[T], Any]],
) -> Tuple[List[T], int]:
    """Stable sort by the declared key, then take one page.

    Returns the page and the total count before slicing.
    """
    key = sort_keys.get(pagination.sort, sort_keys[DEFAULT_SORT])
    ordered = sorted(items, key=key, reverse=pagination.descending)
    return ordered[pagination.offset:pagination.offset + pagination.limit], len(ordered)
