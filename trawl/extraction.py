"""Extraction pipeline: content to validated records, with bounded retries.

Each fetched page goes through an explicit state machine::

    FETCHED -> EXTRACTING -> VALID
                          -> RETRY_PENDING -> EXTRACTING -> ...
                          -> PERMANENTLY_FAILED

An extraction attempt asks the strategy for raw field values, then
validates them against the schema (a Pydantic model). Missing fields,
structural mismatches and values that fail coercion all become
ValidationIssues. While the retry budget lasts, the record goes to
RETRY_PENDING and the next attempt receives every issue seen so far as
corrective context. Once the budget is spent the record ends
PERMANENTLY_FAILED with one error set per attempt.

Every transition is reported to the observability sink, which feeds the
pattern-drift monitor.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from lxml import etree, html
from pydantic import BaseModel
from typing_extensions import assert_never

from trawl.common.checked_html import CheckedHtmlElement
from trawl.common.deferred_validation import (
    DeferredValidation,
    issues_from_errors,
)
from trawl.common.exceptions import (
    DataFormatAssumptionException,
    ScraperAssumptionException,
)
from trawl.common.urls import host_of
from trawl.data_types import (
    ExtractionRecord,
    ExtractionState,
    RecordStatus,
    ValidationIssue,
    content_digest,
    utcnow,
)
from trawl.observability import ObservabilitySink

logger = logging.getLogger(__name__)

ExtractResult = tuple[dict[str, Any], list[ValidationIssue]]


# =============================================================================
# Strategies
# =============================================================================


class ExtractionStrategy(ABC):
    """Turns raw content into field values for a schema.

    Implementations may be selector-based or model-based. ``extract_fields``
    may be a coroutine function; the pipeline awaits it if so.
    """

    @abstractmethod
    def extract_fields(
        self,
        content: bytes,
        schema: type[BaseModel],
        prior_errors: list[ValidationIssue],
    ) -> ExtractResult | Awaitable[ExtractResult]:
        """Extract raw field values.

        Args:
            content: Raw page bytes.
            schema: Model the fields will be validated against.
            prior_errors: Issues from earlier attempts on the same content,
                oldest first. Empty on the first attempt.

        Returns:
            (fields, issues). Fields are raw values, validated later.
        """
        ...


@dataclass(frozen=True)
class FieldSelector:
    """How to locate one field in an HTML page.

    Attributes:
        query: XPath expression or CSS selector.
        kind: "css" or "xpath".
        attribute: Read this attribute instead of the element text.
        many: Collect every match into a list instead of exactly one value.
        required: When False, zero matches yield None (or []).
        strings: The XPath yields strings (``text()``, ``@attr``) rather
            than elements.
    """

    query: str
    kind: Literal["css", "xpath"] = "css"
    attribute: str | None = None
    many: bool = False
    required: bool = True
    strings: bool = False


class SelectorExtractionStrategy(ExtractionStrategy):
    """Field extraction with lxml XPath/CSS selectors.

    Selector count mismatches are reported as "structure" issues rather
    than raised. A selector strategy is deterministic, so retries only help
    when the content itself differs; ``prior_errors`` is ignored.

    Example::

        strategy = SelectorExtractionStrategy({
            "name": FieldSelector("h1.product-name"),
            "price": FieldSelector("//span[@itemprop='price']/text()",
                                   kind="xpath", strings=True),
            "tags": FieldSelector("ul.tags li", many=True, required=False),
        })
    """

    def __init__(self, fields: dict[str, FieldSelector]) -> None:
        self.fields = fields

    def extract_fields(
        self,
        content: bytes,
        schema: type[BaseModel],
        prior_errors: list[ValidationIssue],
    ) -> ExtractResult:
        try:
            tree = CheckedHtmlElement(html.document_fromstring(content))
        except (etree.LxmlError, ValueError) as e:
            return {}, [
                ValidationIssue(
                    field="__root__",
                    message=f"unparseable document: {e}",
                    kind="structure",
                )
            ]

        values: dict[str, Any] = {}
        issues: list[ValidationIssue] = []
        for name, selector in self.fields.items():
            try:
                values[name] = self._select(tree, name, selector)
            except ScraperAssumptionException as e:
                issues.append(
                    ValidationIssue(
                        field=name, message=e.message, kind="structure"
                    )
                )
        return values, issues

    def _select(
        self, tree: CheckedHtmlElement, name: str, selector: FieldSelector
    ) -> Any:
        min_count = 1 if selector.required else 0
        max_count = None if selector.many else 1

        match selector.kind:
            case "xpath":
                if selector.strings:
                    matches: list[Any] = tree.checked_xpath(
                        selector.query, name, min_count, max_count, type=str
                    )
                else:
                    matches = tree.checked_xpath(
                        selector.query, name, min_count, max_count
                    )
            case "css":
                matches = tree.checked_css(
                    selector.query, name, min_count, max_count
                )
            case _:
                assert_never(selector.kind)

        values = [self._value(match, selector) for match in matches]
        if selector.many:
            return values
        return values[0] if values else None

    @staticmethod
    def _value(match: Any, selector: FieldSelector) -> Any:
        if isinstance(match, str):
            return " ".join(match.split())
        if selector.attribute is not None:
            return match.get(selector.attribute)
        return match.text()


class CallableExtractionStrategy(ExtractionStrategy):
    """Wraps any callable as a strategy.

    The callable receives ``(content, schema, prior_errors)`` and returns
    either a fields dict or a ``(fields, issues)`` tuple. Coroutine
    functions are supported, which is how model-backed extractors that use
    the prior errors as corrective context plug in.
    """

    def __init__(self, func: Callable[..., Any]) -> None:
        self.func = func

    def extract_fields(
        self,
        content: bytes,
        schema: type[BaseModel],
        prior_errors: list[ValidationIssue],
    ) -> ExtractResult | Awaitable[ExtractResult]:
        result = self.func(content, schema, prior_errors)
        if inspect.isawaitable(result):
            return self._normalize_async(result)
        return self._normalize(result)

    async def _normalize_async(self, result: Awaitable[Any]) -> ExtractResult:
        return self._normalize(await result)

    @staticmethod
    def _normalize(result: Any) -> ExtractResult:
        if isinstance(result, tuple):
            fields, issues = result
            return dict(fields), list(issues)
        return dict(result), []


# =============================================================================
# Pipeline
# =============================================================================


class ExtractionPipeline:
    """Drives ExtractionRecords through the extraction state machine.

    Args:
        strategy: Field extraction strategy.
        schema: Pydantic model the fields must satisfy.
        max_retries: Corrective retries after the first attempt, so a
            record gets at most ``max_retries + 1`` attempts.
        sink: Observability sink notified of every transition.
    """

    def __init__(
        self,
        strategy: ExtractionStrategy,
        schema: type[BaseModel],
        max_retries: int = 3,
        sink: ObservabilitySink | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.strategy = strategy
        self.schema = schema
        self.max_retries = max_retries
        self.sink = sink

    def start(
        self,
        source_url: str,
        content: bytes,
        depth: int = 0,
        fetch_retries: int = 0,
    ) -> ExtractionRecord:
        """Create the record for freshly fetched content."""
        record = ExtractionRecord(
            source_url=source_url,
            content_ref=content_digest(content),
            depth=depth,
            fetch_retries=fetch_retries,
        )
        self._report(record)
        return record

    async def step(self, record: ExtractionRecord, content: bytes) -> None:
        """Advance ``record`` by exactly one transition.

        Raises:
            ValueError: If the record is already terminal.
        """
        match record.state:
            case ExtractionState.FETCHED | ExtractionState.RETRY_PENDING:
                record.state = ExtractionState.EXTRACTING
            case ExtractionState.EXTRACTING:
                await self._attempt(record, content)
            case ExtractionState.VALID | ExtractionState.PERMANENTLY_FAILED:
                raise ValueError(
                    f"Record for {record.source_url} is already "
                    f"{record.state.value}"
                )
            case _:
                assert_never(record.state)
        self._report(record)

    async def run(
        self,
        source_url: str,
        content: bytes,
        depth: int = 0,
        fetch_retries: int = 0,
    ) -> ExtractionRecord:
        """Extract and validate until the record is terminal."""
        record = self.start(source_url, content, depth, fetch_retries)
        while not record.is_terminal:
            await self.step(record, content)
        return record

    async def _attempt(self, record: ExtractionRecord, content: bytes) -> None:
        prior_errors = [
            issue for issues in record.error_history for issue in issues
        ]
        try:
            result = self.strategy.extract_fields(
                content, self.schema, prior_errors
            )
            if inspect.isawaitable(result):
                result = await result
            fields, issues = result
        except ScraperAssumptionException as e:
            fields, issues = {}, [
                ValidationIssue(
                    field="__root__", message=e.message, kind="structure"
                )
            ]
        except Exception as e:
            # Any other strategy failure costs one attempt of the budget.
            logger.warning(
                f"Extraction strategy raised {type(e).__name__} on "
                f"{record.source_url}: {e}",
                extra={"url": record.source_url, "error": repr(e)},
            )
            fields, issues = {}, [
                ValidationIssue(
                    field="__root__",
                    message=f"{type(e).__name__}: {e}",
                    kind="strategy_error",
                )
            ]

        record.fields = dict(fields)
        issues = list(issues) + self._validate(record, fields, issues)

        if not issues:
            record.state = ExtractionState.VALID
            record.status = RecordStatus.VALID
            record.emitted_at = utcnow()
            return

        record.error_history.append(issues)
        attempts = len(record.error_history)
        if attempts > self.max_retries:
            record.state = ExtractionState.PERMANENTLY_FAILED
            record.status = RecordStatus.FAILED
            record.failure_reason = (
                f"validation failed after {attempts} attempts: "
                + "; ".join(str(issue) for issue in record.last_errors)
            )
            record.emitted_at = utcnow()
            logger.warning(
                f"Extraction for {record.source_url} permanently failed "
                f"after {attempts} attempts",
                extra={
                    "url": record.source_url,
                    "attempts": attempts,
                    "errors": [issue.model_dump() for issue in issues],
                },
            )
        else:
            record.state = ExtractionState.RETRY_PENDING
            record.retry_count += 1
            logger.info(
                f"Extraction for {record.source_url} failed validation "
                f"({len(issues)} issues), retry {record.retry_count}/"
                f"{self.max_retries}",
                extra={
                    "url": record.source_url,
                    "retry": record.retry_count,
                },
            )

    def _validate(
        self,
        record: ExtractionRecord,
        fields: dict[str, Any],
        reported: list[ValidationIssue],
    ) -> list[ValidationIssue]:
        """Validate fields, returning issues not already reported."""
        deferred = DeferredValidation(
            self.schema, record.source_url, **fields
        )
        try:
            validated = deferred.confirm()
        except DataFormatAssumptionException as e:
            already = {issue.field for issue in reported}
            return [
                issue
                for issue in issues_from_errors(e.errors)
                if issue.field.split(".", 1)[0] not in already
            ]
        if not reported:
            record.fields = validated.model_dump()
        return []

    def _report(self, record: ExtractionRecord) -> None:
        if self.sink is not None:
            self.sink.record_extraction(
                host_of(record.source_url), record.state
            )
