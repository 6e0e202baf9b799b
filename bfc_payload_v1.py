"""
Beckn Flow Conformance (BFC) - Payload Access Layer
Version: 1.0.0

Safe, read-only access to loosely-typed beckn payloads and extracted
snapshots. Nothing here raises on a missing or oddly-shaped field: absence
is reported as None so that rules can skip instead of guessing a default.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import math
import re

# ============================================
# PATH TRAVERSAL
# ============================================

def dig(obj: Any, *path: Any) -> Any:
    """Walk nested dicts/lists; return None on the first miss."""
    current = obj
    for step in path:
        if current is None:
            return None
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
    return current

def dig_path(obj: Any, dotted: str) -> Any:
    """dig() with a dotted path; numeric segments index into lists."""
    steps: List[Any] = []
    for part in dotted.split('.'):
        steps.append(int(part) if part.lstrip('-').isdigit() else part)
    return dig(obj, *steps)

def as_list(value: Any) -> List[Any]:
    """Normalize a snapshot value to a list (wildcards collapse single matches)."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]

def is_present(value: Any) -> bool:
    """Presence in the protocol sense: not None, not blank, not an empty container."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True

# ============================================
# NUMBERS
# ============================================

def parse_number(value: Any) -> Optional[float]:
    """Parse a protocol amount (usually a string) into a float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number

def round2(n: float) -> float:
    """Round to 2 decimals, halves toward +infinity."""
    return math.floor(n * 100 + 0.5) / 100

def format_number(n: Optional[float]) -> str:
    """Render amounts for ledger messages without float noise (20.0 -> '20')."""
    if n is None:
        return "None"
    text = f"{n:.10f}".rstrip('0').rstrip('.')
    return "0" if text in ("-0", "") else text

def decimal_places(value: Any) -> Optional[int]:
    """Count decimals as written in the payload; None if not numeric."""
    if parse_number(value) is None:
        return None
    text = str(value).strip()
    if 'e' in text.lower():
        return None
    if '.' not in text:
        return 0
    return len(text.split('.', 1)[1])

_FRACTION = re.compile(r'\.(\d+)')

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp ('...Z', any fraction length); naive means UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    try:
        stamp = datetime.fromisoformat(text)
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp

# ============================================
# TAGS
# ============================================

def get_tag_value(tags: Any, tag_code: str, item_code: str) -> Optional[str]:
    """Return tags[code=tag_code].list[code=item_code].value, if declared."""
    if not isinstance(tags, list):
        return None
    for tag in tags:
        if dig(tag, 'descriptor', 'code') != tag_code:
            continue
        entries = dig(tag, 'list')
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if dig(entry, 'descriptor', 'code') == item_code:
                return dig(entry, 'value')
    return None

def first_tag_value(payments: Iterable[Any], tag_code: str, item_code: str) -> Optional[str]:
    """First non-empty tag value across a list of payments."""
    for payment in payments:
        value = get_tag_value(dig(payment, 'tags'), tag_code, item_code)
        if is_present(value):
            return value
    return None

# ============================================
# ENTITY HELPERS
# ============================================

def entity_id(entity: Any) -> Optional[str]:
    """Id of a dict entity, or the entity itself when it is already an id."""
    if isinstance(entity, dict):
        raw = entity.get('id')
    else:
        raw = entity
    if raw is None or isinstance(raw, (dict, list, bool)):
        return None
    text = str(raw)
    return text if text else None

def ids_of(entities: Any) -> List[str]:
    """Ordered unique ids of a list of entities."""
    seen: List[str] = []
    for entity in as_list(entities):
        eid = entity_id(entity)
        if eid is not None and eid not in seen:
            seen.append(eid)
    return seen

def index_by_id(entities: Any) -> Dict[str, Dict[str, Any]]:
    """Map id -> entity; later duplicates do not override earlier ones."""
    indexed: Dict[str, Dict[str, Any]] = {}
    for entity in as_list(entities):
        if not isinstance(entity, dict):
            continue
        eid = entity_id(entity)
        if eid is not None and eid not in indexed:
            indexed[eid] = entity
    return indexed

def selected_quantity(item: Any) -> Optional[float]:
    """item.quantity.selected.count, falling back to item.quantity.count."""
    count = dig(item, 'quantity', 'selected', 'count')
    if count is None:
        count = dig(item, 'quantity', 'count')
    return parse_number(count)

def fulfillment_state(fulfillment: Any) -> Optional[str]:
    code = dig(fulfillment, 'state', 'descriptor', 'code')
    return code if isinstance(code, str) and code else None

# ============================================
# QUOTE BREAKUP ROWS
# ============================================

def breakup_label(row: Any) -> str:
    label = dig(row, 'title') or dig(row, '@ondc/org/title_type') or ""
    return str(label)

def breakup_labels(row: Any) -> List[str]:
    """Both label fields, since domains disagree on which one carries the type."""
    labels = []
    for key in ('title', '@ondc/org/title_type'):
        value = dig(row, key)
        if isinstance(value, str) and value:
            labels.append(value)
    return labels

def breakup_price_raw(row: Any) -> Any:
    value = dig(row, 'price', 'value')
    if value is None:
        value = dig(row, 'item', 'price', 'value')
    return value

def breakup_item_id(row: Any) -> Optional[str]:
    raw = dig(row, '@ondc/org/item_id') or dig(row, 'item', 'id')
    return entity_id(raw)

def breakup_quantity(row: Any) -> Optional[float]:
    return parse_number(dig(row, 'item', 'quantity', 'selected', 'count'))

def breakup_currency(row: Any) -> Optional[str]:
    return dig(row, 'price', 'currency')

# ============================================
# PAYLOAD WRAPPER
# ============================================

class Payload:
    """Read-only view of one beckn message ({context, message})."""

    def __init__(self, raw: Any):
        self.raw = raw if isinstance(raw, dict) else {}

    @property
    def context(self) -> Dict[str, Any]:
        ctx = self.raw.get('context')
        return ctx if isinstance(ctx, dict) else {}

    @property
    def message(self) -> Dict[str, Any]:
        msg = self.raw.get('message')
        return msg if isinstance(msg, dict) else {}

    @property
    def order(self) -> Dict[str, Any]:
        order = self.message.get('order')
        return order if isinstance(order, dict) else {}

    @property
    def action(self) -> Optional[str]:
        return self.context.get('action')

    @property
    def domain(self) -> Optional[str]:
        return self.context.get('domain')

    @property
    def version(self) -> Optional[str]:
        return self.context.get('version') or self.context.get('core_version')

    @property
    def transaction_id(self) -> Optional[str]:
        return self.context.get('transaction_id')

    @property
    def message_id(self) -> Optional[str]:
        return self.context.get('message_id')

    @property
    def order_id(self) -> Optional[str]:
        """order.id, or message.order_id for cancel/status requests."""
        return entity_id(self.order.get('id')) or entity_id(self.message.get('order_id'))

    def items(self) -> List[Any]:
        return as_list(self.order.get('items'))

    def fulfillments(self) -> List[Any]:
        return as_list(self.order.get('fulfillments'))

    def payments(self) -> List[Any]:
        return as_list(self.order.get('payments'))

    def offers(self) -> List[Any]:
        return as_list(self.order.get('offers'))

    def quote(self) -> Dict[str, Any]:
        quote = self.order.get('quote')
        return quote if isinstance(quote, dict) else {}

    def breakup(self) -> List[Any]:
        return as_list(self.quote().get('breakup'))

    def get(self, dotted: str) -> Any:
        return dig_path(self.raw, dotted)

    def __repr__(self):
        return f"Payload(action={self.action!r}, transaction_id={self.transaction_id!r})"
