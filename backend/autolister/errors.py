"""Typed failures raised by the listing and job pipeline.

Services raise these; routers translate them into HTTP responses.
"""

from typing import Any, Dict, List, Optional, Sequence


class ListingValidationError(ValueError):
    """Caller supplied a bad product id, price, quantity or condition."""

    def to_detail(self) -> Dict[str, Any]:
        return {"error": "validation_error", "message": str(self)}


class InvalidConditionError(ListingValidationError):
    def __init__(self, condition: str, category_id: str, allowed: Sequence[str]):
        self.condition = condition
        self.category_id = category_id
        self.allowed = sorted(allowed)
        super().__init__(
            f"Invalid condition for category {category_id}: {condition} "
            f"(allowed: {', '.join(self.allowed)})"
        )

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": "invalid_condition",
            "message": str(self),
            "condition": self.condition,
            "categoryId": self.category_id,
            "allowedConditions": self.allowed,
        }


class NonLeafCategoryError(Exception):
    """The taxonomy service suggested a branch node; listings need a leaf."""

    def __init__(self, category_id: str, category_name: Optional[str] = None):
        self.category_id = category_id
        self.category_name = category_name
        super().__init__(f"Category {category_id} ({category_name or 'unknown'}) is not a leaf category")


class ProductNotFoundError(LookupError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ProductProviderError(RuntimeError):
    """Product data provider failed for a reason other than not-found."""


class EbayAuthError(RuntimeError):
    """No usable eBay bearer token could be obtained."""


class EbayApiError(RuntimeError):
    """Non-2xx response from the eBay Inventory API."""

    def __init__(self, status_code: Optional[int], message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.status_code = status_code
        self.errors = errors or []
        super().__init__(message)


class ListingStepError(RuntimeError):
    """A step of the inventory -> offer -> publish sequence failed.

    ``step`` is one of ``inventory``, ``offer`` or ``publish``. By the time
    the caller sees this error, compensation has already run; what it did is
    listed in ``compensation``.
    """

    def __init__(
        self,
        step: str,
        message: str,
        *,
        sku: Optional[str] = None,
        offer_id: Optional[str] = None,
        status_code: Optional[int] = None,
        upstream_errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.step = step
        self.sku = sku
        self.offer_id = offer_id
        self.status_code = status_code
        self.upstream_errors = upstream_errors or []
        self.compensation: List[Dict[str, Any]] = []
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": "listing_step_failed",
            "step": self.step,
            "message": str(self)[:2000],
            "sku": self.sku,
            "offerId": self.offer_id,
            "upstreamStatus": self.status_code,
            "upstreamErrors": self.upstream_errors,
            "compensation": self.compensation,
        }


class MissingAspectsError(ListingStepError):
    """eBay refused to publish because required item specifics are missing."""

    def __init__(self, missing_aspects: Sequence[str], message: str, **kwargs: Any):
        self.missing_aspects = list(missing_aspects)
        super().__init__("publish", message, **kwargs)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["error"] = "missing_required_aspects"
        detail["missingAspects"] = self.missing_aspects
        return detail


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class CorrelationNotFoundError(LookupError):
    pass


class JobTriggerError(RuntimeError):
    """The background worker could not be triggered; the job is now ``error``."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(message)


class InvalidJobTransitionError(RuntimeError):
    def __init__(self, job_id: str, current: str, new: str):
        self.job_id = job_id
        self.current = current
        self.new = new
        super().__init__(f"Invalid job status transition {current} -> {new} for job {job_id}")


class InferenceError(RuntimeError):
    """Inference service unavailable or returned an unusable response."""
