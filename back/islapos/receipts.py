"""Customer receipt emails."""

import re
from dataclasses import dataclass
from html import escape

from .models import Order, OrderItem, Restaurant, as_utc

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DEFAULT_RESTAURANT_NAME = "IslaPOS"
RECEIPT_ITEM_LIMIT = 200


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def money(amount: float | None) -> str:
    return f"${float(amount or 0):.2f}"


@dataclass
class Receipt:
    subject: str
    text: str
    html: str


def build_receipt(restaurant: Restaurant | None, order: Order, items: list[OrderItem]) -> Receipt:
    name = restaurant.name if restaurant and restaurant.name else DEFAULT_RESTAURANT_NAME
    phone = restaurant.phone if restaurant else None
    email = restaurant.email if restaurant else None
    heading = f"Ticket #{order.ticket_no}" if order.ticket_no is not None else "Receipt"
    created = f"{as_utc(order.created_at):%Y-%m-%d %H:%M} UTC"
    payment = order.payment_method.replace("_", " ") if order.payment_method else None
    discount = order.discount_amount if order.discount_amount and order.discount_amount > 0 else None

    item_lines = [(f"{item.qty} x {item.name}", money(item.qty * item.price)) for item in items]

    text_lines = [
        name,
        f"Phone: {phone}" if phone else None,
        f"Email: {email}" if email else None,
        "",
        heading,
        f"Date: {created}",
        f"Payment: {payment}" if payment else None,
        "",
        "Items:",
        *([f"• {label} - {amount}" for label, amount in item_lines] or ["(No items)"]),
        "",
        f"Subtotal: {money(order.subtotal)}",
        f"Discount: -{money(discount)}" if discount else None,
        f"Tax: {money(order.tax)}",
        f"Total: {money(order.total)}",
    ]
    text = "\n".join(line for line in text_lines if line is not None)

    def div(content: str, style: str = "font-size:12px;") -> str:
        return f'<div style="{style}">{content}</div>'

    def total_row(label: str, amount: str, bold: bool = False) -> str:
        weight = " font-weight:700;" if bold else ""
        return div(f"<span>{label}</span><span>{amount}</span>", f"display:flex; justify-content:space-between;{weight}")

    header = [f'<h2 style="margin:0 0 6px;">{escape(name)}</h2>']
    if phone:
        header.append(div(f"Phone: {escape(phone)}"))
    if email:
        header.append(div(f"Email: {escape(email)}"))
    header.append(div(heading, "margin-top:12px; font-size:13px;"))
    header.append(div(created, "font-size:12px; color:#444;"))
    if payment:
        header.append(div(f"Payment: {escape(payment)}", "font-size:12px; color:#444;"))

    rows = "".join(
        f'<tr><td style="padding:6px 0;">{escape(label)}</td>'
        f'<td style="padding:6px 0; text-align:right;">{amount}</td></tr>'
        for label, amount in item_lines
    ) or "<tr><td>(No items)</td><td></td></tr>"

    totals = [total_row("Subtotal", money(order.subtotal))]
    if discount:
        totals.append(total_row("Discount", f"-{money(discount)}"))
    totals.append(total_row("Tax", money(order.tax)))
    totals.append(total_row("Total", money(order.total), bold=True))

    html = (
        '<div style="font-family: Arial, sans-serif; color: #111;">'
        + "".join(header)
        + '<table style="width:100%; margin-top:14px; border-collapse:collapse; font-size:13px;">'
        + f"<tbody>{rows}</tbody></table>"
        + '<div style="margin-top:12px; border-top:1px solid #eee; padding-top:10px; font-size:13px;">'
        + "".join(totals)
        + "</div></div>"
    )
    return Receipt(subject=f"Your receipt from {name}", text=text, html=html)
