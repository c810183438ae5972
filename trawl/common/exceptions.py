"""Exception types for crawl errors.

This module defines the error taxonomy the coordinator uses to decide
between retrying, cooling down, failing a URL permanently, or degrading
checkpointing:

- TransientException: network trouble that may clear on retry.
- BlockedResponseException: the target pushed back (429/403/401/407).
- PermanentRequestException: the request can never succeed.
- ScraperAssumptionException: extracted content broke an assumption.
- CheckpointException: snapshot storage or integrity problems.
"""

from typing import Any


class ScraperAssumptionException(Exception):
    """Base class for extraction assumption violations.

    Extraction strategies make assumptions about page structure and data
    formats. When these assumptions are violated, they should raise clear,
    contextual exceptions that help diagnose the issue.
    """

    def __init__(
        self,
        message: str,
        request_url: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the assumption violation.
            request_url: The URL of the page that triggered this error.
            context: Optional dict of additional context (selector, counts, etc).
        """
        self.message = message
        self.request_url = request_url
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        parts.append(f"URL: {self.request_url}")

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


class HTMLStructuralAssumptionException(ScraperAssumptionException):
    """Raised when HTML structure doesn't match expectations.

    Raised when an XPath or CSS selector returns a different number of
    elements than expected. This usually indicates that the website's HTML
    structure has changed.

    Attributes:
        selector: The XPath or CSS selector that was used.
        selector_type: Type of selector ("xpath" or "css").
        description: What the selector was meant to find.
    """

    def __init__(
        self,
        selector: str,
        selector_type: str,
        description: str,
        expected_min: int,
        expected_max: int | None,
        actual_count: int,
        request_url: str,
    ) -> None:
        """Initialize the exception.

        Args:
            selector: The XPath or CSS selector that was used.
            selector_type: Type of selector ("xpath" or "css").
            description: Human-readable description of what was being selected.
            expected_min: Minimum number of elements expected.
            expected_max: Maximum number of elements expected (None = unlimited).
            actual_count: Actual number of elements found.
            request_url: The URL of the page that triggered this error.
        """
        self.selector = selector
        self.selector_type = selector_type
        self.description = description
        self.expected_min = expected_min
        self.expected_max = expected_max
        self.actual_count = actual_count

        if expected_max is None:
            expected_str = f"at least {expected_min}"
        elif expected_min == expected_max:
            expected_str = f"exactly {expected_min}"
        else:
            expected_str = f"between {expected_min} and {expected_max}"

        message = (
            f"HTML structure mismatch: Expected {expected_str} "
            f"elements for '{description}', but found {actual_count}"
        )

        context = {
            "selector": selector,
            "selector_type": selector_type,
            "expected_min": expected_min,
            "expected_max": expected_max
            if expected_max is not None
            else "unlimited",
            "actual_count": actual_count,
        }

        super().__init__(message, request_url, context)


class DataFormatAssumptionException(ScraperAssumptionException):
    """Raised when extracted fields don't match the expected schema.

    Raised during Pydantic validation when the extracted fields don't
    conform to the schema. Missing fields and values that fail type
    coercion both end up here.
    """

    def __init__(
        self,
        errors: list[dict[str, Any]],
        failed_doc: dict[str, Any],
        model_name: str,
        request_url: str,
    ) -> None:
        """Initialize the exception.

        Args:
            errors: List of Pydantic validation errors.
            failed_doc: The document that failed validation.
            model_name: Name of the Pydantic model that was being validated against.
            request_url: The URL of the page that produced this data.
        """
        self.errors = errors
        self.failed_doc = failed_doc
        self.model_name = model_name

        error_summary = ", ".join(
            f"{err['loc'][0] if err['loc'] else '__root__'}: {err['msg']}"
            for err in errors
        )

        message = (
            f"Data validation failed for model '{model_name}': {error_summary}"
        )

        context = {
            "model": model_name,
            "error_count": len(errors),
            "errors": errors,
        }

        super().__init__(message, request_url, context)


# =============================================================================
# Fetch errors
# =============================================================================


class TransientException(Exception):
    """Base class for transient errors that might resolve on retry.

    Transient exceptions represent temporary failures like network issues,
    server errors (5xx), or timeouts. Retrying the request may succeed.

    The coordinator is responsible for retry logic and strategy.
    """

    pass


class TransientNetworkException(TransientException):
    """Raised when the connection fails (reset, refused, DNS, protocol).

    Attributes:
        url: The URL being fetched.
        message: Human-readable error message.
    """

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.message = f"Network error fetching {url}: {reason}"
        super().__init__(self.message)


class RequestTimeoutException(TransientException):
    """Raised when a request times out.

    Attributes:
        url: The URL that timed out.
        timeout_seconds: The timeout duration in seconds.
        message: Human-readable error message.
    """

    def __init__(self, url: str, timeout_seconds: float | None) -> None:
        """Initialize the exception.

        Args:
            url: The URL that timed out.
            timeout_seconds: The timeout duration in seconds.
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.message = f"Request to {url} timed out after {timeout_seconds}s"
        super().__init__(self.message)


class HTTPStatusException(TransientException):
    """Raised when the server answers with a retryable error status (5xx, 408).

    Attributes:
        status_code: The actual HTTP status code received.
        url: The URL that returned the unexpected status.
        message: Human-readable error message.
    """

    def __init__(self, status_code: int, url: str) -> None:
        self.status_code = status_code
        self.url = url
        self.message = f"HTTP {status_code} from {url}"
        super().__init__(self.message)


class BlockedResponseException(Exception):
    """Raised when the target refuses service to the current identity.

    Covers rate limiting (429), forbidden (403) and authentication
    challenges (401, 407). The identity/host pair goes into cooldown and the
    URL is retried later rather than immediately.

    Attributes:
        status_code: The HTTP status code received.
        url: The URL that was refused.
        identity: Name of the proxy identity that was refused.
    """

    def __init__(self, status_code: int, url: str, identity: str) -> None:
        self.status_code = status_code
        self.url = url
        self.identity = identity
        self.message = (
            f"HTTP {status_code} from {url} via identity '{identity}'"
        )
        super().__init__(self.message)


class PermanentRequestException(Exception):
    """Raised when a request can never succeed (client error).

    The URL is marked failed immediately, with no retry.

    Attributes:
        url: The offending URL.
        reason: Why the request is permanently failing.
        status_code: The HTTP status, if the failure came from a response.
    """

    def __init__(
        self, url: str, reason: str, status_code: int | None = None
    ) -> None:
        self.url = url
        self.reason = reason
        self.status_code = status_code
        self.message = f"Permanent failure for {url}: {reason}"
        super().__init__(self.message)


class InvalidURLException(PermanentRequestException):
    """Raised for malformed URLs and unsupported schemes."""

    pass


# =============================================================================
# Checkpoint errors
# =============================================================================


class CheckpointException(Exception):
    """Base class for checkpoint problems."""

    pass


class CheckpointCorruptionException(CheckpointException):
    """Raised when a snapshot fails its integrity check on restore.

    Attributes:
        sequence: Sequence number of the rejected snapshot.
        reason: What made the snapshot unusable.
    """

    def __init__(self, sequence: int, reason: str) -> None:
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"Checkpoint {sequence} is unusable: {reason}")


class IncompatibleCheckpointException(CheckpointCorruptionException):
    """Raised when a snapshot was written with an unsupported schema version."""

    def __init__(self, sequence: int, found: Any, expected: int) -> None:
        self.found = found
        self.expected = expected
        super().__init__(
            sequence,
            f"schema version {found!r} is not supported (expected {expected})",
        )


class CheckpointStorageException(CheckpointException):
    """Raised when the checkpoint store cannot write or read a snapshot."""

    pass
