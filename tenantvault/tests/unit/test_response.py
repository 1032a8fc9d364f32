from __future__ import annotations

from tenantvault.apps.api.response import Pagination


def test_pagination_for_empty_listing() -> None:
    page = Pagination.build(1, 20, 0)
    assert page.total_pages == 0
    assert not page.has_next
    assert not page.has_previous


def test_pagination_middle_page() -> None:
    page = Pagination.build(2, 10, 25)
    assert page.total_pages == 3
    assert page.has_next
    assert page.has_previous
