"""
Notification message templates.

Every notification type has a template with four renderings:
- title: short heading used by push and in-app
- message: one or two sentences for push, in-app and SMS
- email subject and email body

Design decisions:
- Templates are plain strings with {variable} placeholders
- Missing variables render as empty strings instead of raising, so a partial
  payload (e.g. a tracking update without a location) still produces a message
- Amounts are formatted before rendering (see format_amount); templates carry
  no format specs
"""

from dataclasses import dataclass
from typing import Optional

from shared.models import NotificationChannel, NotificationType


class _BlankMissing(dict):
    def __missing__(self, key):
        return ""


def _fill(text: str, context: dict) -> str:
    return text.format_map(_BlankMissing(context))


@dataclass
class NotificationTemplate:
    """A notification template with short and email variants."""
    notification_type: NotificationType
    title: str
    message: str
    email_subject: str
    email_body: str

    def render_email(self, **kwargs) -> tuple[str, str]:
        """Returns (subject, body)."""
        return _fill(self.email_subject, kwargs), _fill(self.email_body, kwargs)

    def render_short(self, **kwargs) -> tuple[str, str]:
        """Returns (title, message) for push and in-app."""
        return _fill(self.title, kwargs), _fill(self.message, kwargs)

    def render_sms(self, **kwargs) -> str:
        return _fill(self.message, kwargs)


# =============================================================================
# Template Definitions
# =============================================================================

_SIGN_OFF = "\nThanks for shopping with us!\n"

TEMPLATES: dict[NotificationType, NotificationTemplate] = {

    # -------------------------------------------------------------------------
    # Order Lifecycle
    # -------------------------------------------------------------------------

    NotificationType.ORDER_CONFIRMATION: NotificationTemplate(
        notification_type=NotificationType.ORDER_CONFIRMATION,
        title="Order confirmed",
        message="Order #{order_id} is confirmed. Total: {total_amount}. We'll notify you when it ships.",
        email_subject="Order Confirmed - #{order_id}",
        email_body="""Hi {customer_name},

We've received the payment for order #{order_id} and are preparing it now.

Order Total: {total_amount}
{item_list}

We'll send you another notification when your order ships.
""" + _SIGN_OFF,
    ),

    NotificationType.ORDER_SHIPPED: NotificationTemplate(
        notification_type=NotificationType.ORDER_SHIPPED,
        title="Your order has shipped",
        message="Order #{order_id} shipped with {carrier_name}. Tracking ID: {tracking_id}.",
        email_subject="Your Order Has Shipped! - #{order_id}",
        email_body="""Hi {customer_name},

Great news! Your order #{order_id} has shipped with {carrier_name}.

Tracking ID: {tracking_id}
Track it here: {tracking_url}
""" + _SIGN_OFF,
    ),

    NotificationType.ORDER_OUT_FOR_DELIVERY: NotificationTemplate(
        notification_type=NotificationType.ORDER_OUT_FOR_DELIVERY,
        title="Out for delivery",
        message="Order #{order_id} is out for delivery and arrives today.",
        email_subject="Out for Delivery - #{order_id}",
        email_body="""Hi {customer_name},

Your order #{order_id} is out for delivery and should reach you today.

Tracking ID: {tracking_id}
""" + _SIGN_OFF,
    ),

    NotificationType.ORDER_DELIVERED: NotificationTemplate(
        notification_type=NotificationType.ORDER_DELIVERED,
        title="Delivered",
        message="Order #{order_id} has been delivered. Enjoy!",
        email_subject="Your Order Has Been Delivered - #{order_id}",
        email_body="""Hi {customer_name},

Your order #{order_id} has been delivered!

If anything is wrong with your purchase, you can request a refund from your orders page.
""" + _SIGN_OFF,
    ),

    NotificationType.ORDER_CANCELLED: NotificationTemplate(
        notification_type=NotificationType.ORDER_CANCELLED,
        title="Order cancelled",
        message="Order #{order_id} has been cancelled. {reason}",
        email_subject="Order Cancelled - #{order_id}",
        email_body="""Hi {customer_name},

Your order #{order_id} has been cancelled.
{reason}

Any amount you paid will be returned to your original payment method.
""",
    ),

    NotificationType.REFUND_UPDATE: NotificationTemplate(
        notification_type=NotificationType.REFUND_UPDATE,
        title="Refund update",
        message="Refund for order #{order_id}: {refund_status}.",
        email_subject="Refund Update - Order #{order_id}",
        email_body="""Hi {customer_name},

Your refund for order #{order_id} is now: {refund_status}.

Order Total: {total_amount}
""",
    ),

    NotificationType.DELIVERY_EXCEPTION: NotificationTemplate(
        notification_type=NotificationType.DELIVERY_EXCEPTION,
        title="Delivery problem",
        message="There is a problem delivering order #{order_id}: {tracking_status}. {remarks}",
        email_subject="Delivery Problem - Order #{order_id}",
        email_body="""Hi {customer_name},

{carrier_name} reported a problem with order #{order_id}.

Status: {tracking_status}
Location: {location}
{remarks}

We'll keep you posted as the carrier updates the shipment.
""",
    ),

    # -------------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------------

    NotificationType.PAYMENT_SUCCESS: NotificationTemplate(
        notification_type=NotificationType.PAYMENT_SUCCESS,
        title="Payment received",
        message="Payment of {amount} received for order #{order_id}. Thank you!",
        email_subject="Payment Received - Order #{order_id}",
        email_body="""Hi {customer_name},

We've successfully processed your payment of {amount} for order #{order_id}.
""",
    ),

    NotificationType.PAYMENT_FAILED: NotificationTemplate(
        notification_type=NotificationType.PAYMENT_FAILED,
        title="Payment failed",
        message="Payment of {amount} failed for order #{order_id}. Please update your payment method.",
        email_subject="Payment Issue - Action Required for Order #{order_id}",
        email_body="""Hi {customer_name},

We were unable to process your payment of {amount} for order #{order_id}.

Reason: {failure_reason}

Please update your payment method or try again to avoid delays with your order.
""",
    ),

    # -------------------------------------------------------------------------
    # Marketing and Account
    # -------------------------------------------------------------------------

    NotificationType.PRICE_DROP: NotificationTemplate(
        notification_type=NotificationType.PRICE_DROP,
        title="Price drop",
        message="{product_name} dropped to {new_price}.",
        email_subject="Price Drop: {product_name} is now {new_price}",
        email_body="""Hi {customer_name},

{product_name} just dropped in price.

Was: {old_price}
Now: {new_price}
""",
    ),

    NotificationType.PROMOTIONAL: NotificationTemplate(
        notification_type=NotificationType.PROMOTIONAL,
        title="{promotion_name}",
        message="{promotion_name}: use code {promo_code}.",
        email_subject="Special Offer: {promotion_name}",
        email_body="""Hi {customer_name},

{promotion_name}
{promotion_description}

Use code: {promo_code}
""",
    ),

    NotificationType.SECURITY_ALERT: NotificationTemplate(
        notification_type=NotificationType.SECURITY_ALERT,
        title="Security alert",
        message="{alert_message}",
        email_subject="Security Alert on Your Account",
        email_body="""Hi {customer_name},

{alert_message}

If this wasn't you, reset your password right away.
""",
    ),

    NotificationType.ACCOUNT_UPDATE: NotificationTemplate(
        notification_type=NotificationType.ACCOUNT_UPDATE,
        title="Account updated",
        message="{update_message}",
        email_subject="Your Account Was Updated",
        email_body="""Hi {customer_name},

{update_message}
""",
    ),
}


# =============================================================================
# Template Access Functions
# =============================================================================

def get_template(notification_type: NotificationType) -> Optional[NotificationTemplate]:
    return TEMPLATES.get(NotificationType(notification_type))


def render_notification(
    notification_type: NotificationType,
    channel: NotificationChannel,
    **context
) -> tuple[Optional[str], str]:
    """
    Render a notification for a specific channel.

    Returns:
        Email: (subject, body)
        Push / in-app: (title, message)
        SMS: (None, message)

    Raises:
        ValueError: If no template exists for the type
    """
    template = get_template(notification_type)
    if not template:
        raise ValueError(f"No template found for notification type: {notification_type}")

    channel = NotificationChannel(channel)
    if channel == NotificationChannel.EMAIL:
        return template.render_email(**context)
    if channel == NotificationChannel.SMS:
        return (None, template.render_sms(**context))
    return template.render_short(**context)


def format_amount(amount: float, currency: str = "INR") -> str:
    symbol = {"INR": "₹", "USD": "$", "EUR": "€"}.get(currency, f"{currency} ")
    return f"{symbol}{amount:,.2f}"


def format_item_list(items: list[dict]) -> str:
    """
    Format line items for an email body.

    Args:
        items: dicts with 'name', 'quantity' and optionally 'price'
    """
    lines = []
    for item in items:
        if "price" in item:
            lines.append(f"  - {item['name']} (x{item['quantity']}) - {item['price']}")
        else:
            lines.append(f"  - {item['name']} (x{item['quantity']})")
    return "\n".join(lines)
