"""
Cursor pagination over integer-keyed records.

Pages run from the newest key downwards. A cursor is the key of the first
record on the page to fetch; the returned next_cursor is 0 once there are no
more pages.
"""

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from .errors import InvalidArgument


T = TypeVar("T")

END_OF_PAGES = 0


@dataclass
class Page(Generic[T]):
    """One page of search results"""
    items: List[T] = field(default_factory=list)
    next_cursor: int = END_OF_PAGES

    @property
    def has_more(self) -> bool:
        return self.next_cursor != END_OF_PAGES


def paginate(records: Iterable[T], key: Callable[[T], int],
             cursor: Optional[int], page_size: int) -> Page[T]:
    """
    Slice one descending page out of records.

    Args:
        records: Candidate records in any order
        key: Returns the integer key of a record
        cursor: Highest key to include, or None for the newest page
        page_size: Maximum number of records per page

    Raises:
        InvalidArgument: cursor is not a positive integer
    """
    if cursor is not None and cursor < 1:
        raise InvalidArgument("Cursor must be a positive integer")
    if page_size < 1:
        raise InvalidArgument("Page size must be a positive integer")

    candidates = [r for r in records if cursor is None or key(r) <= cursor]
    candidates.sort(key=key, reverse=True)

    window = candidates[:page_size + 1]
    next_cursor = key(window[page_size]) if len(window) > page_size else END_OF_PAGES
    return Page(items=window[:page_size], next_cursor=next_cursor)
