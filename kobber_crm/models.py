"""Opportunity record, enumerations and currency helpers."""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

STATES: tuple[str, ...] = ("RS", "SC", "PR", "SP", "Other")
DEFAULT_STATE = "RS"

CUSTOMER_END_CONSUMER = "End consumer"
CUSTOMER_REPAIR_SHOP = "Repair shop"
CUSTOMER_TYPES: tuple[str, ...] = (CUSTOMER_END_CONSUMER, CUSTOMER_REPAIR_SHOP)

SOURCES: tuple[str, ...] = (
    "Social media (Instagram/Facebook)",
    "Google Search",
    "Google Maps (Business Profile)",
    "OLX / Marketplace",
    "Referral",
    "Existing customer",
    "Walk-in (storefront)",
    "WhatsApp",
)

LOSS_OUT_OF_STOCK = "Out of stock"
LOSS_REASONS: tuple[str, ...] = (
    LOSS_OUT_OF_STOCK,
    "Price (competition)",
    "Lead time / shipping",
    "Just browsing",
    "Customer will think about it",
)

PAYMENT_METHODS: tuple[str, ...] = (
    "Pix",
    "Credit card",
    "Debit card",
    "Cash",
    "Bank slip",
)

SALES_CHANNELS: tuple[str, ...] = (
    "In-store counter",
    "Phone",
    "WhatsApp",
    "Website",
    "Marketplace",
)

ANONYMOUS_SALESPERSON = "anonymous@system.local"

MAX_AMOUNT = Decimal("999999999.99")
MAX_AMOUNT_DIGITS = 11


class OpportunityValidationError(ValueError):
    """Raised when a submitted form cannot become an opportunity."""


class OpportunityNotFoundError(LookupError):
    """Raised when an opportunity id does not exist."""


@dataclass(frozen=True)
class Opportunity:
    """A recorded customer inquiry and its outcome."""

    customer_name: str
    sale_made: bool
    customer_phone: str = ""
    customer_email: str = ""
    customer_city: str = ""
    customer_state: str = DEFAULT_STATE
    customer_type: str = CUSTOMER_END_CONSUMER
    shop_name: str = ""
    shop_focus: str = ""
    part_sought: str = ""
    vehicle_model: str = ""
    source: str = ""
    sale_amount: str = ""
    payment_method: str = ""
    sales_channel: str = ""
    loss_reason: str = ""
    missing_part: str = ""
    notes: str = ""
    salesperson_email: str = ""
    salesperson_id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    id: Optional[str] = None

    @property
    def outcome_label(self) -> str:
        return "SALE" if self.sale_made else "LOSS"

    @property
    def amount(self) -> Decimal:
        if not self.sale_made:
            return Decimal("0")
        return parse_brl(self.sale_amount)

    @property
    def created_month(self) -> str:
        return self.created_at[:7]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Opportunity":
        names = {f.name for f in fields(cls)}
        data = {key: row[key] for key in row.keys() if key in names}
        data["sale_made"] = bool(data.get("sale_made"))
        for key, value in list(data.items()):
            if value is None and key not in {"salesperson_id", "id"}:
                data[key] = ""
        return cls(**data)


FORM_FIELDS: tuple[str, ...] = (
    "customer_name",
    "customer_phone",
    "customer_email",
    "customer_city",
    "customer_state",
    "customer_type",
    "shop_name",
    "shop_focus",
    "part_sought",
    "vehicle_model",
    "source",
    "sale_made",
    "sale_amount",
    "payment_method",
    "sales_channel",
    "loss_reason",
    "missing_part",
    "notes",
)


def empty_form() -> dict[str, Any]:
    """Return the initial form state for a new record."""

    form: dict[str, Any] = {name: "" for name in FORM_FIELDS}
    form["customer_state"] = DEFAULT_STATE
    form["customer_type"] = CUSTOMER_END_CONSUMER
    form["sale_made"] = None
    return form


def form_from_opportunity(opportunity: Opportunity) -> dict[str, Any]:
    data = opportunity.to_dict()
    return {name: data[name] for name in FORM_FIELDS}


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_opportunity(
    form: Mapping[str, Any],
    salesperson_email: Optional[str],
    salesperson_id: Optional[int],
    *,
    now: Optional[datetime] = None,
) -> Opportunity:
    """Validate ``form`` and normalise it into an :class:`Opportunity`.

    Only the path selected by the outcome flag survives: a sale keeps the
    amount and payment method, a loss keeps the reason and, for stock-outs,
    the missing part. Shop details are dropped for end consumers.
    """

    name = clean_text(form.get("customer_name"))
    sale_made = form.get("sale_made")
    if not name or sale_made is None:
        raise OpportunityValidationError("Fill in the customer name and the sale outcome.")
    sale_made = bool(sale_made)

    customer_type = clean_text(form.get("customer_type")) or CUSTOMER_END_CONSUMER
    if customer_type not in CUSTOMER_TYPES:
        raise OpportunityValidationError(f"Unknown customer type: {customer_type}")
    state = clean_text(form.get("customer_state")) or DEFAULT_STATE
    if state not in STATES:
        raise OpportunityValidationError(f"Unknown state: {state}")
    source = clean_text(form.get("source"))
    if source and source not in SOURCES:
        raise OpportunityValidationError(f"Unknown source: {source}")
    channel = clean_text(form.get("sales_channel"))
    if channel and channel not in SALES_CHANNELS:
        raise OpportunityValidationError(f"Unknown sales channel: {channel}")

    sale_amount = payment_method = loss_reason = missing_part = ""
    if sale_made:
        sale_amount = clean_text(form.get("sale_amount"))
        if not sale_amount:
            raise OpportunityValidationError("Enter the sale amount.")
        try:
            parse_brl(sale_amount)
        except ValueError as exc:
            raise OpportunityValidationError(str(exc)) from exc
        payment_method = clean_text(form.get("payment_method"))
        if payment_method and payment_method not in PAYMENT_METHODS:
            raise OpportunityValidationError(f"Unknown payment method: {payment_method}")
    else:
        loss_reason = clean_text(form.get("loss_reason"))
        if not loss_reason:
            raise OpportunityValidationError("Choose the reason the sale was lost.")
        if loss_reason not in LOSS_REASONS:
            raise OpportunityValidationError(f"Unknown loss reason: {loss_reason}")
        if loss_reason == LOSS_OUT_OF_STOCK:
            missing_part = clean_text(form.get("missing_part"))

    is_shop = customer_type == CUSTOMER_REPAIR_SHOP
    timestamp = (now or datetime.now()).isoformat(timespec="seconds")
    return Opportunity(
        customer_name=name,
        sale_made=sale_made,
        customer_phone=clean_text(form.get("customer_phone")),
        customer_email=clean_text(form.get("customer_email")),
        customer_city=clean_text(form.get("customer_city")),
        customer_state=state,
        customer_type=customer_type,
        shop_name=clean_text(form.get("shop_name")) if is_shop else "",
        shop_focus=clean_text(form.get("shop_focus")) if is_shop else "",
        part_sought=clean_text(form.get("part_sought")),
        vehicle_model=clean_text(form.get("vehicle_model")),
        source=source,
        sale_amount=sale_amount,
        payment_method=payment_method,
        sales_channel=channel,
        loss_reason=loss_reason,
        missing_part=missing_part,
        notes=clean_text(form.get("notes")),
        salesperson_email=clean_text(salesperson_email) or ANONYMOUS_SALESPERSON,
        salesperson_id=salesperson_id,
        created_at=timestamp,
    )


def apply_edit(original: Opportunity, edited: Opportunity, *, now: Optional[datetime] = None) -> Opportunity:
    """Carry identity and authorship from ``original`` onto an edited record."""

    return replace(
        edited,
        id=original.id,
        created_at=original.created_at,
        salesperson_email=original.salesperson_email,
        salesperson_id=original.salesperson_id,
        updated_at=(now or datetime.now()).isoformat(timespec="seconds"),
    )


# ---------------------------------------------------------------------------
# Currency helpers (pt-BR)
# ---------------------------------------------------------------------------


def digits_only(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def format_brl(amount: Decimal | float | int, *, symbol: bool = False) -> str:
    """Format ``amount`` as ``1.234,56`` (or ``R$ 1.234,56``)."""

    quantized = Decimal(str(amount)).quantize(Decimal("0.01"))
    text = f"{quantized:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {text}" if symbol else text


def format_brl_input(raw: Any) -> str:
    """Treat typed input as cents, the way the amount field behaves."""

    digits = digits_only(raw)
    if not digits:
        return ""
    digits = digits.lstrip("0")[:MAX_AMOUNT_DIGITS] or "0"
    return format_brl(Decimal(digits) / 100)


def parse_brl(value: Any) -> Decimal:
    """Parse a pt-BR currency string such as ``R$ 1.234,56``."""

    text = clean_text(value).replace("R$", "").replace(" ", "")
    if not text:
        return Decimal("0")
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif re.fullmatch(r"-?\d{1,3}(\.\d{3})+", text):
        text = text.replace(".", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value}") from None
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid amount: {value}")
    if amount > MAX_AMOUNT:
        raise ValueError(f"Amount too large: {value}")
    return amount
