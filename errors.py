"""
errors.py
=========
Exception types raised by the catalog and usage layers.

Ineligibility is not an error: the eligibility filter reports it as a reason
code and the engine carries on.
"""

from typing import List, Optional


class PromotionError(Exception):
    """Base class for promotion engine errors."""


class ConfigurationError(PromotionError):
    """A promotion definition is structurally invalid."""

    def __init__(self, problems: List[str], promotion_id: Optional[str] = None):
        self.problems = list(problems)
        self.promotion_id = promotion_id
        prefix = f"Promotion {promotion_id}: " if promotion_id else ""
        super().__init__(prefix + "; ".join(self.problems))


class PromotionNotFound(PromotionError):
    def __init__(self, promotion_id: str):
        self.promotion_id = promotion_id
        super().__init__(f"Promotion with id={promotion_id} not found")


class UsageLimitExceeded(PromotionError):
    """The aggregate usage cap was hit while recording usage."""

    def __init__(self, promotion_id: str, usage_limit: Optional[int] = None):
        self.promotion_id = promotion_id
        self.usage_limit = usage_limit
        super().__init__(
            f"Promotion {promotion_id} has reached its usage limit ({usage_limit})"
        )
