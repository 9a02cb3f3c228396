"""Pagination helpers shared by list operations."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from enrollcore.exceptions import ValidationError

T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass
class Page(Generic[T]):
    """One page of a listing.

    Attributes:
        items: Records on this page.
        total: Records matching the query across all pages.
        page: 1-based page number.
        limit: Page size.
    """

    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def page_offset(page: int, limit: int) -> int:
    """Row offset for a 1-based page.

    Raises:
        ValidationError: If page < 1 or limit is outside 1..100.
    """
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit
