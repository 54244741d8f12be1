"""
Notification Service — メールテンプレート
"""

from html import escape

from .sender import EmailMessage

WELCOME = "welcome"
ORDER_PLACED = "order_placed"
ORDER_CANCELLED = "order_cancelled"
PAYMENT_COMPLETED = "payment_completed"
PAYMENT_FAILED = "payment_failed"

_SIGNATURE = "<p>Best regards,<br/>The Team</p>"

# テンプレート名 → (件名, テキスト本文, HTML 本文)
_TEMPLATES: dict[str, tuple[str, str, str]] = {
    WELCOME: (
        "Welcome to our service!",
        "Thank you for registering with us!",
        "<h1>Welcome to our service!</h1>"
        "<p>Dear {name},</p>"
        "<p>Thank you for registering with us. We're excited to have you on board.</p>",
    ),
    ORDER_PLACED: (
        "Order Placed!",
        "Your order {order_id} has been placed.",
        "<h1>Order Placed!</h1>"
        "<p>Dear {name},</p>"
        "<p>We have received your order {order_id} "
        "for a total of {currency} {amount}.</p>"
        "<p>We will let you know once your payment has been processed.</p>",
    ),
    ORDER_CANCELLED: (
        "Order Cancelled",
        "Your order {order_id} has been cancelled.",
        "<h1>Order Cancelled</h1>"
        "<p>Dear {name},</p>"
        "<p>Your order {order_id} ({currency} {amount}) has been cancelled.</p>",
    ),
    PAYMENT_COMPLETED: (
        "Payment Successful!",
        "Your payment has been successfully processed.",
        "<h1>Payment Successful!</h1>"
        "<p>Dear {name},</p>"
        "<p>We have received your payment of {currency} {amount} "
        "for the orderId {order_id}.</p>"
        "<p>Your payment has been successfully processed.</p>",
    ),
    PAYMENT_FAILED: (
        "Payment Failed!",
        "Your payment has failed. Please try again.",
        "<h1>Payment Failed!</h1>"
        "<p>Dear {name},</p>"
        "<p>We regret to inform you that your payment for the orderId "
        "{order_id} has failed.</p>"
        "<p>Please try again or contact our support team for assistance.</p>",
    ),
}


def render(template: str, email: str, name: str, context: dict) -> EmailMessage:
    subject, text, html = _TEMPLATES[template]
    values = {key: escape(str(value)) for key, value in context.items()}
    values["name"] = escape(name)
    return EmailMessage(
        to=email,
        subject=subject,
        text=text.format(**values),
        html=html.format(**values) + _SIGNATURE,
    )
