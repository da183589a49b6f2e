"""
targeting.py
============
Resolves which cart lines a promotion targets.

A target descriptor selects lines by:
  - ALL:      every line
  - CATEGORY: lines whose category_id equals the descriptor's
  - PRODUCTS: lines whose menu_item_id is in the descriptor's id set

Resolution never fails; a descriptor that matches nothing yields an empty list.
"""

from typing import Iterable, List

from schemas import LineItem, PromotionItem, TargetDescriptor, TargetType


def usable_lines(items: Iterable[LineItem]) -> List[LineItem]:
    """Lines the engine can price. Anything else is silently ignored."""
    return [item for item in items if item.quantity > 0 and item.unit_price >= 0]


def matches(descriptor: TargetDescriptor, item: LineItem) -> bool:
    if descriptor.type == TargetType.all:
        return True
    if descriptor.type == TargetType.category:
        return descriptor.category_id is not None and item.category_id == descriptor.category_id
    if descriptor.type == TargetType.products:
        return item.menu_item_id in descriptor.product_ids
    return False


def resolve_targets(descriptor: TargetDescriptor, items: Iterable[LineItem]) -> List[LineItem]:
    return [item for item in usable_lines(items) if matches(descriptor, item)]


def descriptor_for(promotion_item: PromotionItem) -> TargetDescriptor:
    if promotion_item.menu_item_id:
        return TargetDescriptor(type=TargetType.products, product_ids=[promotion_item.menu_item_id])
    if promotion_item.category_id:
        return TargetDescriptor(type=TargetType.category, category_id=promotion_item.category_id)
    return TargetDescriptor(type=TargetType.all)


def resolve_any(descriptors: Iterable[TargetDescriptor], items: Iterable[LineItem]) -> List[LineItem]:
    """Cart-ordered union of several descriptors; each line appears at most once."""
    descriptors = list(descriptors)
    return [
        item for item in usable_lines(items)
        if any(matches(d, item) for d in descriptors)
    ]


def first_matching(promotion_items: Iterable[PromotionItem], item: LineItem):
    """The first promotion item whose descriptor selects this line, or None."""
    for promotion_item in promotion_items:
        if matches(descriptor_for(promotion_item), item):
            return promotion_item
    return None
