"""Build commerce-platform order payloads from payment-intent metadata."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "company",
    "address1",
    "address2",
    "city",
    "province",
    "province_code",
    "zip",
    "country",
    "country_code",
    "phone",
)

ACH_COMPLETED_NOTE = "ACH payment has been successfully completed and cleared."


@dataclass
class OrderContext:
    """Order data recovered from a payment intent's metadata."""
    payment_intent_id: str
    amount: int
    currency: str
    customer_email: str
    items: List[Dict[str, Any]]
    customer_first_name: str = ""
    customer_last_name: str = ""
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_price: int = 0
    tax_amount: int = 0
    store_domain: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


def cents_to_decimal_string(cents: Any) -> str:
    """1000 -> "10.00"."""
    value = Decimal(int(cents or 0)) / Decimal(100)
    return f"{value:.2f}"


def _parse_json(value: Any, expected: type) -> Any:
    if isinstance(value, expected):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, expected) else None


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def extract_order_context(obj: Dict[str, Any], payment_intent_id: str) -> Optional[OrderContext]:
    """Return the order context, or None when required metadata is missing."""
    metadata = obj.get("metadata") or {}
    email = (metadata.get("customer_email") or "").strip()
    items = _parse_json(metadata.get("items"), list)
    if not email or not items:
        return None

    address = _parse_json(metadata.get("shipping_address"), dict)
    return OrderContext(
        payment_intent_id=payment_intent_id,
        amount=_int(obj.get("amount")),
        currency=(obj.get("currency") or "usd").upper(),
        customer_email=email,
        items=[item for item in items if isinstance(item, dict)],
        customer_first_name=metadata.get("customer_first_name", ""),
        customer_last_name=metadata.get("customer_last_name", ""),
        shipping_address={k: v for k, v in address.items() if k in ADDRESS_FIELDS} if address else None,
        shipping_price=_int(metadata.get("shipping_price")),
        tax_amount=_int(metadata.get("tax_amount")),
        store_domain=metadata.get("store_domain") or metadata.get("domain") or "",
        metadata=dict(metadata),
    )


def _variant_id(value: Any) -> Optional[int]:
    # accepts 123, "123" and "gid://shopify/ProductVariant/123"
    text = str(value or "").rsplit("/", 1)[-1]
    return int(text) if text.isdigit() else None


def build_line_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    line_items = []
    for item in items:
        quantity = max(1, _int(item.get("quantity") or 1))
        variant_id = _variant_id(item.get("variant_id") or item.get("variantId") or item.get("id"))
        if variant_id is not None:
            line_items.append({"variant_id": variant_id, "quantity": quantity})
        else:
            line_items.append({
                "title": str(item.get("title") or "Item"),
                "price": cents_to_decimal_string(item.get("price")),
                "quantity": quantity,
            })
    return line_items


def build_tags(payment_intent_id: str, *extra: str) -> List[str]:
    return ["stripe", payment_intent_id, *extra]


def replace_tag(tags: List[str], old: str, new: str) -> List[str]:
    """Swap ``old`` for ``new``; append ``new`` if ``old`` was absent."""
    result = [new if t == old else t for t in tags]
    if new not in result:
        result.append(new)
    return list(dict.fromkeys(result))


def ach_pending_note(payment_intent_id: str) -> str:
    return (
        f"ACH PAYMENT (Pending Bank Verification) - Stripe Payment ID: {payment_intent_id}\n"
        "This ACH payment is pending bank clearance (1-3 business days). "
        "DO NOT fulfill until payment status is confirmed."
    )


def ach_failed_note(payment_intent_id: str, failure_code: Optional[str], failure_message: Optional[str]) -> str:
    return (
        f"ACH PAYMENT FAILED - Stripe Payment ID: {payment_intent_id}\n"
        f"Failure code: {failure_code or 'unknown'}\n"
        f"Failure message: {failure_message or 'No message provided'}\n"
        "DO NOT fulfill this order."
    )


def payment_note(payment_intent_id: str, environment: str) -> str:
    return f"Stripe Payment ID: {payment_intent_id} ({environment})"


def review_note(payment_intent_id: str) -> str:
    return (
        f"MANUAL REVIEW - Stripe Payment ID: {payment_intent_id}\n"
        "Production payment received in test mode. Verify before fulfilling."
    )


def _customer(ctx: OrderContext) -> Dict[str, Any]:
    customer: Dict[str, Any] = {"email": ctx.customer_email}
    if ctx.customer_first_name:
        customer["first_name"] = ctx.customer_first_name
    if ctx.customer_last_name:
        customer["last_name"] = ctx.customer_last_name
    return customer


def build_draft_order(ctx: OrderContext, tags: List[str], note: str) -> Dict[str, Any]:
    draft: Dict[str, Any] = {
        "line_items": build_line_items(ctx.items),
        "email": ctx.customer_email,
        "customer": _customer(ctx),
        "tags": ",".join(tags),
        "note": note,
        "note_attributes": [
            {"name": "stripe_payment_intent", "value": ctx.payment_intent_id},
        ],
        "use_customer_default_address": False,
        "taxes_included": False,
    }
    if ctx.shipping_address:
        draft["shipping_address"] = ctx.shipping_address
        draft["billing_address"] = ctx.shipping_address
    if ctx.shipping_price:
        draft["shipping_line"] = {
            "title": "Shipping",
            "price": cents_to_decimal_string(ctx.shipping_price),
            "custom": True,
        }
    if ctx.tax_amount:
        draft["tax_lines"] = [{"title": "Sales Tax", "price": cents_to_decimal_string(ctx.tax_amount)}]
    return draft


def build_order(ctx: OrderContext, tags: List[str], note: str) -> Dict[str, Any]:
    order: Dict[str, Any] = {
        "line_items": build_line_items(ctx.items),
        "email": ctx.customer_email,
        "customer": _customer(ctx),
        "financial_status": "paid",
        "currency": ctx.currency,
        "tags": ",".join(tags),
        "note": note,
        "note_attributes": [
            {"name": "stripe_payment_intent", "value": ctx.payment_intent_id},
        ],
        "transactions": [{
            "kind": "sale",
            "status": "success",
            "amount": cents_to_decimal_string(ctx.amount),
            "gateway": "stripe",
            "authorization": ctx.payment_intent_id,
        }],
        "send_receipt": True,
    }
    if ctx.shipping_address:
        order["shipping_address"] = ctx.shipping_address
        order["billing_address"] = ctx.shipping_address
    if ctx.shipping_price:
        order["shipping_lines"] = [{
            "title": "Shipping",
            "price": cents_to_decimal_string(ctx.shipping_price),
        }]
    if ctx.tax_amount:
        order["tax_lines"] = [{"title": "Sales Tax", "price": cents_to_decimal_string(ctx.tax_amount)}]
    return order


def is_ach_object(obj: Dict[str, Any]) -> bool:
    """True for payment intents or charges on the ACH rail."""
    if "us_bank_account" in (obj.get("payment_method_types") or []):
        return True
    details = obj.get("payment_method_details") or {}
    if details.get("type") in ("us_bank_account", "ach_debit"):
        return True
    # payment_rail is stamped server-side; client-supplied keys never decide the rail
    return (obj.get("metadata") or {}).get("payment_rail") == "ach"


def is_draft_for_payment_intent(draft: Dict[str, Any], payment_intent_id: str) -> bool:
    """Match a draft order to its payment intent by the note attribute we set on creation."""
    for attribute in draft.get("note_attributes") or []:
        if attribute.get("name") == "stripe_payment_intent" and attribute.get("value") == payment_intent_id:
            return True
    return False
