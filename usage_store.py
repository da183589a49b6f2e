"""
usage_store.py
==============
SQLAlchemy-backed counter store for promotion usage.

The engine only produces usage drafts; this store owns the shared counters.
One order's drafts are applied in one transaction:
  - (order, promotion) pairs already recorded are skipped, so replays are harmless
  - the aggregate counter is bumped with a guarded UPDATE that refuses to pass
    usage_limit; a refused bump rolls the whole order back
  - a uniqueness violation from a concurrent writer rolls back and the order
    is applied once more: pairs that writer recorded are reported as already
    recorded, a customer counter row it created is updated instead of inserted
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
from errors import PromotionNotFound, UsageLimitExceeded
from promotion_engine import round_money
from schemas import CustomerIdentity, PromotionAnalytics, UsageDrafts, ZERO

logger = logging.getLogger(__name__)


@dataclass
class UsageApplyResult:
    recorded: List[str] = field(default_factory=list)
    already_recorded: List[str] = field(default_factory=list)


class UsageStore:
    def __init__(self, db: Session):
        self.db = db

    # ─────────────── Reads ───────────────

    def customer_usage(
        self,
        tenant_id: str,
        customer: CustomerIdentity,
        promotion_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, int]:
        """promotion id -> how many times this customer has used it."""
        if not customer.key:
            return {}
        query = self.db.query(models.CustomerPromotionUsage).filter(
            models.CustomerPromotionUsage.tenant_id == tenant_id,
            models.CustomerPromotionUsage.customer_key == customer.key,
        )
        if promotion_ids is not None:
            query = query.filter(models.CustomerPromotionUsage.promotion_id.in_(list(promotion_ids)))
        return {row.promotion_id: row.usage_count for row in query.all()}

    def recorded_promotions(self, order_id: str) -> Set[str]:
        rows = (
            self.db.query(models.OrderPromotion.promotion_id)
            .filter(models.OrderPromotion.order_id == order_id)
            .all()
        )
        return {row.promotion_id for row in rows}

    # ─────────────── Writes ───────────────

    def _bump_promotion(self, promotion_id: str, increment: int) -> None:
        promotion = self.db.get(models.Promotion, promotion_id)
        if promotion is None:
            raise PromotionNotFound(promotion_id)

        stmt = (
            update(models.Promotion)
            .where(models.Promotion.id == promotion_id)
            .where(or_(
                models.Promotion.usage_limit.is_(None),
                models.Promotion.usage_count + increment <= models.Promotion.usage_limit,
            ))
            .values(usage_count=models.Promotion.usage_count + increment)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            raise UsageLimitExceeded(promotion_id, promotion.usage_limit)

    def _bump_customer(self, increment) -> None:
        table = models.CustomerPromotionUsage
        stmt = (
            update(table)
            .where(
                table.tenant_id == increment.tenant_id,
                table.promotion_id == increment.promotion_id,
                table.customer_key == increment.customer_key,
            )
            .values(usage_count=table.usage_count + increment.increment, last_used=increment.last_used)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            self.db.add(table(
                tenant_id=increment.tenant_id,
                promotion_id=increment.promotion_id,
                customer_key=increment.customer_key,
                customer_id=increment.customer_id,
                customer_phone=increment.customer_phone,
                usage_count=increment.increment,
                last_used=increment.last_used,
            ))

    def apply(self, drafts: UsageDrafts) -> UsageApplyResult:
        # A uniqueness violation means a concurrent writer got there first:
        # either it recorded the same order (found on the second pass) or it
        # created the customer's counter row (updated on the second pass).
        for attempt in range(2):
            try:
                return self._apply_once(drafts)
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                logger.warning("Concurrent usage recording for order %s; retrying", drafts.order_id)
            except Exception:
                self.db.rollback()
                raise

    def _apply_once(self, drafts: UsageDrafts) -> UsageApplyResult:
        existing = self.recorded_promotions(drafts.order_id)
        fresh = [d.promotion_id for d in drafts.order_promotions if d.promotion_id not in existing]
        result = UsageApplyResult(already_recorded=sorted(existing & {d.promotion_id for d in drafts.order_promotions}))
        if not fresh:
            logger.info("Usage for order %s already recorded", drafts.order_id)
            return result

        for draft in drafts.order_promotions:
            if draft.promotion_id in fresh:
                self.db.add(models.OrderPromotion(**draft.model_dump()))
        for usage in drafts.usages:
            if usage.promotion_id in fresh:
                data = usage.model_dump()
                data["affected_items"] = [a.model_dump(mode="json") for a in usage.affected_items]
                self.db.add(models.PromotionUsage(**data))
        for increment in drafts.promotion_increments:
            if increment.promotion_id in fresh:
                self._bump_promotion(increment.promotion_id, increment.increment)
        for increment in drafts.customer_increments:
            if increment.promotion_id in fresh:
                self._bump_customer(increment)
        self.db.commit()

        result.recorded = fresh
        logger.info("Recorded usage of %s on order %s", ", ".join(fresh), drafts.order_id)
        return result


# ─────────────── Analytics ───────────────

def promotion_analytics(db: Session, tenant_id: str, start: datetime, end: datetime) -> List[PromotionAnalytics]:
    usage = models.PromotionUsage
    rows = (
        db.query(
            models.Promotion.id,
            models.Promotion.name,
            models.Promotion.type,
            models.Promotion.discount_type,
            func.count(usage.id).label("total_uses"),
            func.coalesce(func.sum(usage.discount_amount), 0).label("total_discount_given"),
            func.coalesce(func.sum(usage.original_amount), 0).label("total_original_amount"),
        )
        .outerjoin(usage, (usage.promotion_id == models.Promotion.id)
                   & (usage.applied_at >= start) & (usage.applied_at <= end))
        .filter(models.Promotion.tenant_id == tenant_id)
        .group_by(models.Promotion.id, models.Promotion.name, models.Promotion.type, models.Promotion.discount_type)
        .order_by(func.count(usage.id).desc(), models.Promotion.id)
        .all()
    )

    analytics = []
    for row in rows:
        given = round_money(row.total_discount_given)
        analytics.append(PromotionAnalytics(
            promotion_id=row.id,
            name=row.name,
            type=row.type,
            discount_type=row.discount_type,
            total_uses=row.total_uses,
            total_discount_given=given,
            total_original_amount=round_money(row.total_original_amount),
            avg_discount_per_use=round_money(given / row.total_uses) if row.total_uses else ZERO,
        ))
    return analytics
