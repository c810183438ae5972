"""Deferred validation for extracted data.

This module provides DeferredValidation, a wrapper that delays Pydantic
validation until the pipeline explicitly calls confirm(). Extraction
strategies hand back raw field values; the pipeline decides when to
validate and turns validation errors into corrective context for the
next attempt.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from trawl.common.exceptions import (
    DataFormatAssumptionException,
)
from trawl.data_types import ValidationIssue

T = TypeVar("T", bound=BaseModel)


class DeferredValidation(Generic[T]):
    """Wrapper for unvalidated data that validates on confirm().

    Example:
        deferred = Product.raw(request_url=url, name=name, price="$12.50")
        product = deferred.confirm()  # Raises if invalid
    """

    def __init__(
        self,
        model_class: type[T],
        request_url: str = "",
        **data: Any,
    ) -> None:
        """Initialize deferred validation.

        Args:
            model_class: The Pydantic model class to validate against.
            request_url: Optional URL for error reporting.
            **data: Raw field values (not validated).
        """
        self._model_class = model_class
        self._request_url = request_url
        self._data = data

    def confirm(self) -> T:
        """Validate the data and return the validated model instance.

        Returns:
            Validated instance of the model class.

        Raises:
            DataFormatAssumptionException: If validation fails.
        """
        try:
            return self._model_class.model_validate(self._data)
        except ValidationError as e:
            errors_list = [dict(err) for err in e.errors()]
            raise DataFormatAssumptionException(
                errors=errors_list,
                failed_doc=self._data,
                model_name=self._model_class.__name__,
                request_url=self._request_url,
            ) from e

    @property
    def raw_data(self) -> dict:
        return self._data.copy()

    @property
    def model_name(self) -> str:
        return self._model_class.__name__


def issues_from_errors(errors: list[dict[str, Any]]) -> list[ValidationIssue]:
    """Convert Pydantic error dicts into ValidationIssues.

    Args:
        errors: Errors as produced by ``ValidationError.errors()``.

    Returns:
        One issue per error, keyed by the dotted error location.
    """
    issues = []
    for err in errors:
        loc = err.get("loc") or ()
        field = ".".join(str(part) for part in loc) or "__root__"
        issues.append(
            ValidationIssue(
                field=field,
                message=str(err.get("msg", "invalid value")),
                kind=str(err.get("type", "value_error")),
            )
        )
    return issues
