"""Checked HTML element wrapper for safe XPath/CSS querying.

This module provides CheckedHtmlElement, a wrapper around
lxml.html.HtmlElement that validates selector results against expected
counts. A count mismatch raises HTMLStructuralAssumptionException, which
the extraction pipeline records as a validation issue: the page layout
changed, or the strategy is looking in the wrong place.
"""

from __future__ import annotations

from typing import Any, overload

from cssselect import SelectorError
from lxml import etree
from lxml.html import HtmlElement

from trawl.common.exceptions import (
    HTMLStructuralAssumptionException,
)


class CheckedHtmlElement:
    """Wrapper around HtmlElement with validated selectors.

    Provides checked_xpath() and checked_css(), which compare the number of
    results with expected min/max counts.
    """

    def __init__(self, element: HtmlElement, request_url: str = "") -> None:
        """Initialize the checked element wrapper.

        Args:
            element: The lxml HtmlElement to wrap.
            request_url: Optional URL for error context.
        """
        self._element = element
        self._request_url = request_url

    @overload
    def checked_xpath(
        self,
        xpath: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
        *,
        type: type[str],
    ) -> list[str]: ...

    @overload
    def checked_xpath(
        self,
        xpath: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
    ) -> list[CheckedHtmlElement]: ...

    def checked_xpath(
        self,
        xpath: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
        *,
        type: type[str] | None = None,
    ) -> list[CheckedHtmlElement] | list[str]:
        """Execute XPath query with count validation.

        Args:
            xpath: XPath expression to execute.
            description: Human-readable description of what's being selected.
            min_count: Minimum number of elements expected (default: 1).
            max_count: Maximum number of elements expected (None = unlimited).
            type: Pass `str` to return only string results (text/attributes).
                If omitted, returns only CheckedHtmlElements.

        Returns:
            List of matching results filtered by type.

        Raises:
            HTMLStructuralAssumptionException: If count doesn't match expectations.

        Example::

            tree = CheckedHtmlElement(lxml.html.fromstring(html))
            rows = tree.checked_xpath("//tr[@class='product']", "products")
            prices = tree.checked_xpath(
                "//span[@itemprop='price']/text()", "price", 1, 1, type=str
            )
        """
        try:
            results = self._element.xpath(xpath)
        except etree.XPathError as e:
            raise self._mismatch(
                xpath, "xpath", description, min_count, max_count, 0
            ) from e

        if not isinstance(results, list):
            # Scalar XPath results (count(), string()) count as one string.
            results = [str(results)]

        filtered: list[Any]
        if type is str:
            filtered = [str(r) for r in results if isinstance(r, str)]
        else:
            filtered = [
                CheckedHtmlElement(r, self._request_url)
                for r in results
                if isinstance(r, HtmlElement)
            ]
        self._check_count(
            xpath, "xpath", description, min_count, max_count, len(filtered)
        )
        return filtered

    def checked_css(
        self,
        selector: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
    ) -> list[CheckedHtmlElement]:
        """Execute CSS selector query with count validation.

        Args:
            selector: CSS selector expression.
            description: Human-readable description of what's being selected.
            min_count: Minimum number of elements expected (default: 1).
            max_count: Maximum number of elements expected (None = unlimited).

        Returns:
            List of matching CheckedHtmlElements, wrapped to support nested
            checked queries.

        Raises:
            HTMLStructuralAssumptionException: If count doesn't match expectations.
        """
        try:
            results = self._element.cssselect(selector)
        except SelectorError as e:
            raise self._mismatch(
                selector, "css", description, min_count, max_count, 0
            ) from e

        self._check_count(
            selector, "css", description, min_count, max_count, len(results)
        )
        return [
            CheckedHtmlElement(result, self._request_url) for result in results
        ]

    def text(self) -> str:
        """Whitespace-normalized text content of the element."""
        return " ".join(self._element.text_content().split())

    def _check_count(
        self,
        selector: str,
        selector_type: str,
        description: str,
        min_count: int,
        max_count: int | None,
        actual_count: int,
    ) -> None:
        if actual_count < min_count or (
            max_count is not None and actual_count > max_count
        ):
            raise self._mismatch(
                selector,
                selector_type,
                description,
                min_count,
                max_count,
                actual_count,
            )

    def _mismatch(
        self,
        selector: str,
        selector_type: str,
        description: str,
        min_count: int,
        max_count: int | None,
        actual_count: int,
    ) -> HTMLStructuralAssumptionException:
        return HTMLStructuralAssumptionException(
            selector=selector,
            selector_type=selector_type,
            description=description,
            expected_min=min_count,
            expected_max=max_count,
            actual_count=actual_count,
            request_url=self._request_url,
        )

    def __getattr__(self, name: str):
        """Delegate all other attributes to the wrapped element."""
        return getattr(self._element, name)
