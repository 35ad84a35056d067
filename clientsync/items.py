"""
Saved-item identity and normalization helpers.

Every item must resolve to exactly one stable id. Server records carry a
primary key, but items coming from external sources or generated on the
fly may not, so the id is derived in priority order:

1. `_id` (primary key)
2. `id` / `itemId` (alternate id)
3. `sourceId` (external-source id), prefixed with the source
4. slug of name + source
5. prefix + generation timestamp (last resort, not stable)
"""
import re
import time
from typing import Any, Callable, Dict, Optional, Union

from .models import Item, utcnow

ItemLike = Union[str, int, Item, Dict[str, Any]]

_SLUG_RE = re.compile(r"[^a-z0-9]+")

# Keys that map onto Item fields rather than metadata
_RESERVED_KEYS = {
    "_id", "id", "itemId", "name", "title", "itemName",
    "image", "imageRef", "source", "sourceType", "sourceId",
    "addedAt", "_removed",
}


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim dashes."""
    return _SLUG_RE.sub("-", text.lower()).strip("-")


def _source_of(data: Dict[str, Any]) -> Optional[str]:
    return data.get("source") or data.get("sourceType")


def extract_item_id(
    data: Optional[Dict[str, Any]],
    fallback_prefix: str = "item",
    clock: Callable[[], float] = time.time,
) -> Optional[str]:
    """
    Resolve the stable id of a raw item payload.

    Args:
        data: Raw item dict
        fallback_prefix: Prefix for the timestamped last-resort id
        clock: Wall-clock source for the last-resort id

    Returns:
        The id, or None when no data was given
    """
    if not data:
        return None

    for key in ("_id", "id", "itemId"):
        value = data.get(key)
        if value not in (None, ""):
            return str(value)

    source = _source_of(data)
    source_id = data.get("sourceId")
    if source_id not in (None, ""):
        return f"{source}-{source_id}" if source else str(source_id)

    name = data.get("name") or data.get("title")
    if name:
        return f"{slugify(source or fallback_prefix)}-{slugify(name)}"

    return f"{fallback_prefix}-{int(clock() * 1000)}"


def resolve_id(item: ItemLike) -> Optional[str]:
    """Resolve an id from a bare id, an Item or a raw payload."""
    if item is None:
        return None
    if isinstance(item, Item):
        return item.id
    if isinstance(item, (str, int)):
        text = str(item)
        return text or None
    return extract_item_id(item)


def format_item(data: Dict[str, Any], item_id: Optional[str] = None) -> Item:
    """Normalize a raw payload into an Item."""
    item_id = item_id or extract_item_id(data)
    source = _source_of(data)
    source_id = data.get("sourceId")
    return Item(
        id=item_id,
        display_name=(
            data.get("name") or data.get("title") or data.get("itemName")
            or "Unnamed item"
        ),
        image_ref=data.get("image") or data.get("imageRef"),
        metadata={k: v for k, v in data.items() if k not in _RESERVED_KEYS},
        added_at=utcnow(),
        source=source,
        source_id=str(source_id) if source_id not in (None, "") else None,
    )


def placeholder_item(item_id: str) -> Item:
    """Minimal renderable item for an id we have no data for."""
    return Item(id=item_id, display_name=f"Item {item_id}", placeholder=True)


def items_equivalent(first: ItemLike, second: ItemLike) -> bool:
    """
    Check whether two items refer to the same entity.

    Same extracted id, or same `(source, sourceId)` pair.
    """
    if first is None or second is None:
        return False

    first_id, second_id = resolve_id(first), resolve_id(second)
    if first_id and second_id and first_id == second_id:
        return True

    first_key, second_key = _source_key(first), _source_key(second)
    return first_key is not None and first_key == second_key


def _source_key(item: ItemLike):
    if isinstance(item, Item):
        source, source_id = item.source, item.source_id
    elif isinstance(item, dict):
        source, source_id = _source_of(item), item.get("sourceId")
    else:
        return None
    if source_id in (None, ""):
        return None
    return (source, str(source_id))
