"""
Outbound notifications (order confirmation, password reset, payment success).

Services only talk to a Notifier through dispatch(), which never raises:
a failed email must not fail the operation that triggered it.
"""

import logging

import config

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
PASSWORD_RESET = "password_reset"
PAYMENT_SUCCESS = "payment_success"

SUBJECTS = {
    ORDER_CONFIRMATION: "Order Confirmation - Atom Drops",
    PASSWORD_RESET: "Password Reset - Atom Drops",
    PAYMENT_SUCCESS: "Payment Successful - Atom Drops",
}


class Notifier:
    def send(self, recipient: str, template: str, data: dict) -> None:
        raise NotImplementedError


class EmailNotifier(Notifier):
    """Renders the email and logs it instead of handing it to an SMTP relay."""

    def render(self, template: str, data: dict) -> str:
        if template == ORDER_CONFIRMATION:
            return (
                f"Thank you for your order! Order ID: {data['order_id']} "
                f"Total: {data['total_amount'] / 100:.2f} Status: {data['status']}"
            )
        if template == PASSWORD_RESET:
            reset_url = f"{config.FRONTEND_URL}/reset-password?token={data['token']}"
            return f"Reset your password: {reset_url} (expires in {config.RESET_TOKEN_TTL_MINUTES} minutes)"
        if template == PAYMENT_SUCCESS:
            return f"Payment received for order {data['order_id']}: {data['amount'] / 100:.2f}"
        raise ValueError(f"Unknown email template: {template}")

    def send(self, recipient: str, template: str, data: dict) -> None:
        body = self.render(template, data)
        logger.info("Email would be sent to=%s subject=%r (%d chars)", recipient, SUBJECTS[template], len(body))


def dispatch(notifier: Notifier, recipient: str, template: str, data: dict) -> bool:
    if notifier is None or not recipient:
        return False
    try:
        notifier.send(recipient, template, data)
        return True
    except Exception:
        logger.exception("Failed to send %s notification to %s", template, recipient)
        return False
