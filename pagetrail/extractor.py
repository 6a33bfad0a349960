import hashlib
import json
import logging
from typing import Any

from pagetrail.models import ExtractedItem

log = logging.getLogger(__name__)

# Wrapper keys to try when the body is a dict rather than a bare list
WRAPPER_KEYS: tuple[str, ...] = ("data", "items", "orders")

# Identifier fields, highest priority first
ID_FIELDS: tuple[str, ...] = (
    "id", "Id", "ID", "_id", "pin_id", "board_id", "order_id", "product_id",
)

# Pagination tokens and links echoed back per item; never part of the payload
TRANSPORT_FIELDS: frozenset[str] = frozenset({"bookmark", "url"})


def unwrap(body: Any) -> list[Any]:
    """Extract the list of raw items from a page body."""
    if body is None or body == "" or body == {}:
        return []
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in WRAPPER_KEYS:
            if isinstance(body.get(key), list):
                return body[key]
    return [body]


def _canonical(item: Any) -> str:
    return json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)


def generated_id(item: Any) -> str:
    """Content-derived identifier: identical items always map to the same id."""
    digest = hashlib.sha1(_canonical(item).encode("utf-8")).hexdigest()
    return f"generated_{digest[:20]}"


def original_id(item: Any) -> Any:
    """First identifier field present on the item, unconverted, or None."""
    if not isinstance(item, dict):
        return None
    for key in ID_FIELDS:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def resolve_id(item: Any) -> str:
    """Resolve a stable string identifier for item. Always returns a value."""
    value = original_id(item)
    if value is None:
        return generated_id(item)
    return str(value)


def clean_payload(item: Any) -> Any:
    """Strip transport-only fields; coerce a numeric id to a string."""
    if not isinstance(item, dict):
        return item
    cleaned = {k: v for k, v in item.items() if k not in TRANSPORT_FIELDS}
    if isinstance(cleaned.get("id"), (int, float)) and not isinstance(cleaned["id"], bool):
        cleaned["id"] = str(cleaned["id"])
    return cleaned


def extract_items(body: Any) -> list[ExtractedItem]:
    items = [
        ExtractedItem(item_id=resolve_id(raw), payload=clean_payload(raw), original_id=original_id(raw))
        for raw in unwrap(body)
    ]
    log.debug("extracted %d items", len(items))
    return items
