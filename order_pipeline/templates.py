"""
Message bodies for order notifications.

Every renderer is a pure function of an order (with its items loaded) and a
``TemplateContext``; nothing here touches the database or the network.
User-supplied values are HTML-escaped before they reach an email body.
"""

from dataclasses import dataclass
from html import escape
from typing import Optional

from .config import Settings
from .models import JobType


@dataclass(frozen=True)
class TemplateContext:
    store_name: str = "DankDeals"
    support_email: str = "support@dankdealsmn.com"
    support_phone: str = "763-247-5378"
    admin_dashboard_url: str = "https://dankdealsmn.com/admin/orders"

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemplateContext":
        return cls(
            store_name=settings.store_name,
            support_email=settings.support_email,
            support_phone=settings.support_phone,
            admin_dashboard_url=settings.admin_dashboard_url,
        )


def format_currency(amount) -> str:
    return f"${float(amount or 0):,.2f}"


def format_percentage(value) -> str:
    return f"{float(value):g}%"


def _e(value) -> str:
    return escape(str(value)) if value is not None else ""


def _humanize(status: str) -> str:
    return (status or "").replace("_", " ")


# --- Fragments ---

def _page(title: str, header: str, body: str, ctx: TemplateContext) -> str:
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<head>\n"
        '  <meta charset="utf-8">\n'
        f"  <title>{_e(title)} - {_e(ctx.store_name)}</title>\n"
        "</head>\n<body>\n"
        '  <div class="container">\n'
        f'    <div class="header">{header}</div>\n'
        f'    <div class="content">\n{body}\n    </div>\n'
        f'    <div class="footer"><p>&copy; {_e(ctx.store_name)} | 21+ Only</p></div>\n'
        "  </div>\n</body>\n</html>"
    )


def _item_details(item) -> str:
    lines = []
    kind = " &bull; ".join(_e(v) for v in (item.product_strain_type, item.product_category) if v)
    if kind:
        lines.append(f'<div class="item-kind">{kind}</div>')
    potency = []
    if item.product_thc_percentage:
        potency.append(f"THC: {format_percentage(item.product_thc_percentage)}")
    if item.product_cbd_percentage:
        potency.append(f"CBD: {format_percentage(item.product_cbd_percentage)}")
    if potency:
        lines.append(f'<div class="item-potency">{" &bull; ".join(potency)}</div>')
    return "".join(lines)


def _items_table(order) -> str:
    rows = []
    for item in order.items:
        rows.append(
            '<div class="item">'
            f"<strong>{_e(item.product_name)}</strong>"
            f"{_item_details(item)}"
            f"<div>{item.quantity} &times; {format_currency(item.unit_price)}</div>"
            f'<div class="line-total">{format_currency(item.total_price)}</div>'
            "</div>"
        )
    return "\n".join(rows)


def _totals(order) -> str:
    return (
        '<div class="totals">'
        f"<div>Subtotal: {format_currency(order.subtotal)}</div>"
        f"<div>Tax: {format_currency(order.tax_amount)}</div>"
        f"<div>Delivery Fee: {format_currency(order.delivery_fee)}</div>"
        f'<div class="total">Total: {format_currency(order.total_amount)}</div>'
        "</div>"
    )


def _street_line(order) -> str:
    street = _e(order.delivery_street_address)
    if order.delivery_apartment:
        street += f", {_e(order.delivery_apartment)}"
    return street


def _delivery_block(order) -> str:
    parts = [
        '<div class="address">',
        "<h3>Delivery Information</h3>",
        f"<strong>{_e(order.delivery_first_name)} {_e(order.delivery_last_name)}</strong><br>",
        f"{_street_line(order)}<br>",
        f"{_e(order.delivery_city)}, {_e(order.delivery_state)} {_e(order.delivery_zip_code)}",
    ]
    phone = order.delivery_phone or order.customer_phone_number
    if phone:
        parts.append(f"<div>Phone: {_e(phone)}</div>")
    if order.delivery_instructions:
        parts.append(f"<div><strong>Instructions:</strong> {_e(order.delivery_instructions)}</div>")
    parts.append("</div>")
    return "\n".join(parts)


def _support_block(ctx: TemplateContext) -> str:
    return (
        '<div class="support"><p><strong>Questions?</strong></p>'
        f"<p>{_e(ctx.support_email)}</p><p>{_e(ctx.support_phone)}</p></div>"
    )


# --- Email bodies ---

def render_customer_confirmation(order, ctx: TemplateContext) -> str:
    payment_note = (
        f"<p>Please have {format_currency(order.total_amount)} in cash ready at delivery.</p>"
        if order.confirms_at_checkout
        else "<p>Your payment has been received.</p>"
    )
    body = "\n".join([
        f"<p>Hi {_e(order.delivery_first_name)},</p>",
        "<p>Thank you for your order! A team member will contact you shortly "
        "to confirm your delivery details.</p>",
        '<div class="order-info"><h2>Order Summary</h2>',
        _items_table(order),
        _totals(order),
        "</div>",
        _delivery_block(order),
        payment_note,
        '<div class="warning"><strong>Valid ID required.</strong> '
        "You must be 21+ and present a government-issued ID at delivery.</div>",
        _support_block(ctx),
    ])
    header = f"<h1>Order Confirmed!</h1><p>Order #{_e(order.order_number)}</p>"
    return _page("Order Confirmation", header, body, ctx)


ADMIN_CHECKLIST = (
    "Call customer to confirm the order",
    "Confirm delivery address and time window",
    "Verify customer is 21+ and remind about the ID requirement",
    "Confirm payment of {total}",
    "Assign driver and update order status",
)


def render_admin_alert(order, ctx: TemplateContext) -> str:
    placed_at = order.created_at.strftime("%Y-%m-%d %H:%M UTC") if order.created_at else ""
    checklist = "".join(
        f"<li>{_e(step.format(total=format_currency(order.total_amount)))}</li>"
        for step in ADMIN_CHECKLIST
    )
    body = "\n".join([
        '<div class="order-info"><h2>Order Details</h2>',
        f"<p>Order #: <strong>{_e(order.order_number)}</strong></p>",
        f"<p>Placed: {placed_at}</p>",
        f"<p>Payment: {_e(order.payment_method)} ({_e(order.payment_status)})</p>",
        f"<p>Customer: {_e(order.customer_name)} &lt;{_e(order.customer_email)}&gt;</p>",
        "</div>",
        _delivery_block(order),
        '<div class="order-info"><h2>Items</h2>',
        _items_table(order),
        _totals(order),
        "</div>",
        f'<div class="actions"><h3>Required Actions:</h3><ol>{checklist}</ol></div>',
        f'<p><a class="button" href="{_e(ctx.admin_dashboard_url)}">Open admin dashboard</a></p>',
    ])
    header = (
        f"<h1>New Order #{_e(order.order_number)}</h1>"
        f"<p>{format_currency(order.total_amount)} &bull; Immediate Action Required</p>"
    )
    return _page("New Order", header, body, ctx)


def render_status_update(order, update_type: str, message: str, ctx: TemplateContext) -> str:
    status = order.status or ""
    body = "\n".join([
        f"<p>Hi {_e(order.delivery_first_name)},</p>",
        '<div class="update-box">',
        f"<h2>{_e(update_type)}</h2>",
        f'<p><span class="status status-{_e(status)}">{_e(_humanize(status))}</span></p>',
        f"<p>{_e(message)}</p>",
        "</div>",
        _support_block(ctx),
    ])
    header = f"<h1>Order Update</h1><p>Order #{_e(order.order_number)}</p>"
    return _page("Order Update", header, body, ctx)


# --- SMS bodies (plain text) ---

def render_sms_confirmation(order, ctx: TemplateContext) -> str:
    return (
        f"{ctx.store_name}: Order {order.order_number} confirmed! "
        f"Total {format_currency(order.total_amount)}. "
        f"We'll call you shortly to arrange delivery. Questions? {ctx.support_phone}"
    )


def render_sms_status_update(order, message: str, ctx: TemplateContext) -> str:
    return f"{ctx.store_name}: Order {order.order_number} is {_humanize(order.status)}. {message}"


def subject_for(job_type, order, ctx: TemplateContext, update_type: Optional[str] = None) -> str:
    job_type = JobType(job_type)
    if job_type == JobType.ORDER_CONFIRMATION:
        return f"Order Confirmed - {order.order_number}"
    if job_type == JobType.ADMIN_NOTIFICATION:
        return f"NEW ORDER - {order.order_number} - {format_currency(order.total_amount)}"
    return f"{update_type or 'Order Update'} - {order.order_number}"
