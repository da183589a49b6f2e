"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /tenants/{tenant_id}/promotions                          - Create a promotion
  GET    /tenants/{tenant_id}/promotions                          - List promotions
  POST   /tenants/{tenant_id}/promotions/evaluate                 - Evaluate promotions for a cart
  POST   /tenants/{tenant_id}/promotions/validate-code            - Check a promo code against a cart
  GET    /tenants/{tenant_id}/promotions/analytics                - Usage totals per promotion
  GET    /tenants/{tenant_id}/promotions/{id}                     - Get promotion by ID
  PUT    /tenants/{tenant_id}/promotions/{id}                     - Update promotion
  DELETE /tenants/{tenant_id}/promotions/{id}                     - Delete promotion
  POST   /tenants/{tenant_id}/orders/{order_id}/promotion-usage   - Record usage for a finalized order
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Depends, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

import catalog
import models
import promotion_engine
import schemas
import usage_recorder
from database import engine, get_db
from errors import ConfigurationError, PromotionNotFound, UsageLimitExceeded
from usage_store import UsageStore, promotion_analytics

logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Restaurant Promotions API",
    description="Promotion catalog management and discount evaluation for restaurant orders.",
    version="1.0.0",
)

# Columns that cannot hold NULL; an explicit null in an update leaves them unchanged.
NON_NULLABLE_FIELDS = {
    "name", "type", "discount_type", "requires_code", "auto_apply",
    "priority", "can_combine_with_others", "is_active",
}


# ═══════════════════════════════════════════════════
#  HELPERS
# ═══════════════════════════════════════════════════

def _new_promotion_id() -> str:
    return f"promo_{uuid4().hex[:12]}"


def _column_value(value):
    return value.value if isinstance(value, Enum) else value


def _get_promotion_or_404(db: Session, tenant_id: str, promotion_id: str) -> models.Promotion:
    promotion = (
        db.query(models.Promotion)
        .filter(models.Promotion.tenant_id == tenant_id, models.Promotion.id == promotion_id)
        .first()
    )
    if not promotion:
        raise HTTPException(status_code=404, detail=f"Promotion with id={promotion_id} not found")
    return promotion


def _ensure_code_free(db: Session, tenant_id: str, promo_code: Optional[str], exclude_id: Optional[str] = None):
    if not promo_code:
        return
    query = db.query(models.Promotion).filter(
        models.Promotion.tenant_id == tenant_id, models.Promotion.promo_code == promo_code
    )
    if exclude_id:
        query = query.filter(models.Promotion.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=409, detail=f"Promo code {promo_code} already exists")


def _validate_or_422(promotion) -> None:
    try:
        catalog.validate_promotion(promotion)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.problems)


def _prepare_context(db: Session, tenant_id: str, context: schemas.EvaluationContext) -> schemas.EvaluationContext:
    """Pin the tenant and replace client-sent usage counts with stored ones."""
    usage = UsageStore(db).customer_usage(tenant_id, context.customer)
    return context.model_copy(update={"tenant_id": tenant_id, "customer_usage": usage})


# ═══════════════════════════════════════════════════
#  PROMOTION CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/tenants/{tenant_id}/promotions",
    response_model=schemas.PromotionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Promotions"],
    summary="Create a new promotion",
)
def create_promotion(tenant_id: str, promotion: schemas.PromotionCreate, db: Session = Depends(get_db)):
    """
    Create a promotion. Structurally invalid definitions are rejected with 422,
    e.g. a BOGO without a free item or a coupon without a code.
    """
    _validate_or_422(promotion)
    _ensure_code_free(db, tenant_id, promotion.promo_code)
    if promotion.id and db.get(models.Promotion, promotion.id):
        raise HTTPException(status_code=409, detail=f"Promotion with id={promotion.id} already exists")

    data = {k: _column_value(v) for k, v in promotion.model_dump(exclude={"id", "items"}).items()}
    db_promotion = models.Promotion(id=promotion.id or _new_promotion_id(), tenant_id=tenant_id, **data)
    db_promotion.items = [
        models.PromotionItem(**item.model_dump(exclude={"id"})) for item in promotion.items
    ]
    db.add(db_promotion)
    db.commit()
    db.refresh(db_promotion)
    logger.info("Promotion %s created for tenant %s", db_promotion.id, tenant_id)
    return db_promotion


@app.get(
    "/tenants/{tenant_id}/promotions",
    response_model=List[schemas.PromotionResponse],
    tags=["Promotions"],
    summary="Get all promotions",
)
def get_all_promotions(tenant_id: str, active_only: bool = False, db: Session = Depends(get_db)):
    """Retrieve the tenant's promotions, highest priority first."""
    query = db.query(models.Promotion).filter(models.Promotion.tenant_id == tenant_id)
    if active_only:
        query = query.filter(models.Promotion.is_active == True)
    return query.order_by(models.Promotion.priority.desc(), models.Promotion.id).all()


# ═══════════════════════════════════════════════════
#  EVALUATION
# ═══════════════════════════════════════════════════

@app.post(
    "/tenants/{tenant_id}/promotions/evaluate",
    response_model=schemas.EvaluationResult,
    tags=["Evaluate"],
    summary="Evaluate the tenant's promotions for a cart",
)
def evaluate_cart(tenant_id: str, request: schemas.EvaluateRequest, db: Session = Depends(get_db)):
    """
    Runs the full pipeline (eligibility, discount calculation, stacking) over
    the tenant's active promotions and returns what applies.
    """
    rows = (
        db.query(models.Promotion)
        .filter(models.Promotion.tenant_id == tenant_id, models.Promotion.is_active == True)
        .all()
    )
    context = _prepare_context(db, tenant_id, request.context)
    return promotion_engine.evaluate(catalog.load_catalog(rows), request.cart, context)


@app.post(
    "/tenants/{tenant_id}/promotions/validate-code",
    response_model=schemas.ValidateCodeResponse,
    tags=["Evaluate"],
    summary="Validate a promo code for a cart",
)
def validate_code(tenant_id: str, request: schemas.ValidateCodeRequest, db: Session = Depends(get_db)):
    """Checks a single code on its own and returns its estimated discount or the reason it fails."""
    rows = (
        db.query(models.Promotion)
        .filter(models.Promotion.tenant_id == tenant_id, models.Promotion.promo_code == request.code)
        .all()
    )
    context = _prepare_context(db, tenant_id, request.context)
    return promotion_engine.check_promo_code(request.code, catalog.load_catalog(rows), request.cart, context)


@app.get(
    "/tenants/{tenant_id}/promotions/analytics",
    response_model=schemas.PromotionAnalyticsResponse,
    tags=["Usage"],
    summary="Usage totals per promotion",
)
def get_promotion_analytics(
    tenant_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Defaults to the last 30 days."""
    end = end or datetime.now()
    start = start or end - timedelta(days=30)
    return schemas.PromotionAnalyticsResponse(
        start=start, end=end, analytics=promotion_analytics(db, tenant_id, start, end)
    )


# ═══════════════════════════════════════════════════
#  SINGLE PROMOTION
# ═══════════════════════════════════════════════════

@app.get(
    "/tenants/{tenant_id}/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Get a promotion by ID",
)
def get_promotion(tenant_id: str, promotion_id: str, db: Session = Depends(get_db)):
    return _get_promotion_or_404(db, tenant_id, promotion_id)


@app.put(
    "/tenants/{tenant_id}/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Update a promotion",
)
def update_promotion(
    tenant_id: str,
    promotion_id: str,
    update_data: schemas.PromotionUpdate,
    db: Session = Depends(get_db),
):
    """
    Update a promotion. Only provided fields change; `items`, when given,
    replaces the whole item list. The result must still be a valid definition.
    """
    promotion = _get_promotion_or_404(db, tenant_id, promotion_id)

    for key, value in update_data.model_dump(exclude_unset=True, exclude={"items"}).items():
        if value is None and key in NON_NULLABLE_FIELDS:
            continue
        setattr(promotion, key, _column_value(value))
    if update_data.items is not None:
        promotion.items = [
            models.PromotionItem(**item.model_dump(exclude={"id"})) for item in update_data.items
        ]

    try:
        catalog.validate_promotion(schemas.PromotionDefinition.model_validate(promotion))
    except ConfigurationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=e.problems)
    except ValidationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=[err["msg"] for err in e.errors()])
    if "promo_code" in update_data.model_fields_set:
        _ensure_code_free(db, tenant_id, promotion.promo_code, exclude_id=promotion_id)

    db.commit()
    db.refresh(promotion)
    return promotion


@app.delete(
    "/tenants/{tenant_id}/promotions/{promotion_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Promotions"],
    summary="Delete a promotion",
)
def delete_promotion(tenant_id: str, promotion_id: str, db: Session = Depends(get_db)):
    promotion = _get_promotion_or_404(db, tenant_id, promotion_id)
    db.delete(promotion)
    db.commit()
    return None


# ═══════════════════════════════════════════════════
#  USAGE RECORDING
# ═══════════════════════════════════════════════════

@app.post(
    "/tenants/{tenant_id}/orders/{order_id}/promotion-usage",
    response_model=schemas.RecordUsageResponse,
    tags=["Usage"],
    summary="Record promotion usage for a finalized order",
)
def record_promotion_usage(
    tenant_id: str,
    order_id: str,
    request: schemas.RecordUsageRequest,
    db: Session = Depends(get_db),
):
    """
    Records the promotions an order actually used. Safe to call more than once
    for the same order: pairs already recorded are reported, not counted again.
    """
    for applied in request.applied_promotions:
        _get_promotion_or_404(db, tenant_id, applied.promotion_id)

    drafts = usage_recorder.record_usage(
        request.applied_promotions,
        order_id,
        schemas.CustomerIdentity(customer_id=request.customer_id, phone=request.customer_phone),
        tenant_id=tenant_id,
        original_amount=request.original_amount,
        applied_at=request.applied_at,
    )
    try:
        outcome = UsageStore(db).apply(drafts)
    except UsageLimitExceeded as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PromotionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return schemas.RecordUsageResponse(
        order_id=order_id,
        recorded=outcome.recorded,
        already_recorded=outcome.already_recorded,
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Restaurant Promotions API is running"}
