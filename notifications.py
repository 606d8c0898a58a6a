"""
SMS (SNS) and email (SES) delivery plus the order notification messages.

Every sender returns a bool and logs failures instead of raising; callers
treat notifications as best effort.
"""
import logging
import re
from functools import lru_cache
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config
from security import PHONE_RE

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

STATUS_TEXT = {
    "pending": "is being processed",
    "confirmed": "has been confirmed",
    "processing": "is being prepared",
    "shipped": "has been shipped",
    "delivered": "has been delivered",
    "cancelled": "has been cancelled",
}


@lru_cache(maxsize=None)
def aws_client(service: str):
    return boto3.client(
        service,
        region_name=config.AWS_REGION,
        aws_access_key_id=config.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
    )


# ----------------------- Transports -----------------------
def send_sms(phone_number: Optional[str], message: str) -> bool:
    if not config.sms_enabled():
        logger.warning("SMS is not enabled - AWS credentials not configured")
        return False
    if not phone_number or not PHONE_RE.match(phone_number):
        logger.error("Invalid phone number format: %s", phone_number)
        return False
    if not message or not message.strip():
        logger.error("SMS message is empty or invalid")
        return False
    target = phone_number if phone_number.startswith("+") else f"+{phone_number}"
    try:
        aws_client("sns").publish(
            PhoneNumber=target,
            Message=message,
            MessageAttributes={
                "AWS.SNS.SMS.SenderID": {"DataType": "String", "StringValue": config.SMS_SENDER_ID},
                "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
            },
        )
    except (BotoCoreError, ClientError) as e:
        logger.error("SMS send failed: %s", e)
        return False
    logger.info("SMS sent successfully to %s", target)
    return True


def send_email(to: Optional[str], subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
    if not config.email_enabled():
        logger.warning("Email is not enabled - AWS SES credentials not configured")
        return False
    if not to or not EMAIL_RE.match(to):
        logger.error("Invalid recipient email format: %s", to)
        return False
    if not subject or not subject.strip() or not html_body or not html_body.strip():
        logger.error("Email subject or body is empty")
        return False
    body = {"Html": {"Data": html_body, "Charset": "UTF-8"}}
    if text_body:
        body["Text"] = {"Data": text_body, "Charset": "UTF-8"}
    try:
        aws_client("ses").send_email(
            Source=config.AWS_SES_FROM_EMAIL,
            Destination={"ToAddresses": [to]},
            Message={"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": body},
        )
    except (BotoCoreError, ClientError) as e:
        logger.error("Email send failed: %s", e)
        return False
    logger.info("Email sent successfully to %s", to)
    return True


def send_password_reset_email(to: str, reset_token: str) -> bool:
    subject = "Your password reset token (valid for 10 minutes)"
    text = f"Use this token to reset your password: {reset_token}. It expires in 10 minutes."
    html = f"<p>Use this token to reset your password:</p><p><strong>{reset_token}</strong></p>" \
           f"<p>It expires in 10 minutes. If you didn't request this, ignore this email.</p>"
    return send_email(to, subject, html, text)


# ----------------------- Order messages -----------------------
def _order_number(order: dict) -> str:
    return order.get("order_number") or str(order.get("_id", ""))[-8:]


def _money(amount) -> str:
    return f"${amount:.2f}" if amount else "TBD"


def order_confirmation_message(order: dict, customer: dict) -> str:
    return (f"Hi {customer.get('first_name') or 'Customer'}! Your order #{_order_number(order)} has been confirmed. "
            f"Total: {_money(order.get('total_amount'))} ({len(order.get('items') or [])} items). "
            f"Status: {order.get('status') or 'Pending'}. Thank you for choosing us!")


def status_update_message(order: dict, customer: dict, status: str) -> str:
    text = STATUS_TEXT.get(status.lower(), f"status is now {status}")
    return (f"Hi {customer.get('first_name') or 'Customer'}! Your order #{_order_number(order)} {text}. "
            f"Track your order for updates.")


def cancellation_message(order: dict, customer: dict, reason: str) -> str:
    return (f"Hi {customer.get('first_name') or 'Customer'}! Your order #{_order_number(order)} has been cancelled. "
            f"Reason: {reason}. Refund will be processed within 3-5 business days.")


def admin_order_message(order: dict, customer: dict) -> str:
    return (f"NEW ORDER ALERT! Order #{_order_number(order)} from {customer.get('first_name')} "
            f"{customer.get('last_name')} ({customer.get('email')}). Total: {_money(order.get('total_amount'))}. "
            f"Check admin panel for details.")


def _notify_customer(customer: dict, message: str, kind: str) -> bool:
    phone = customer.get("phone_number")
    if not phone:
        logger.warning("Customer %s has no phone number for %s SMS", customer.get("_id"), kind)
        return False
    sent = send_sms(phone, message)
    if not sent:
        logger.warning("Failed to send %s SMS to %s", kind, phone)
    return sent


def notify_order_confirmation(order: dict, customer: dict) -> bool:
    return _notify_customer(customer, order_confirmation_message(order, customer), "order confirmation")


def notify_status_update(order: dict, customer: dict, status: str) -> bool:
    return _notify_customer(customer, status_update_message(order, customer, status), "status update")


def notify_cancellation(order: dict, customer: dict, reason: Optional[str] = None) -> bool:
    message = cancellation_message(order, customer, reason or "No reason provided")
    return _notify_customer(customer, message, "cancellation")


def notify_admin_new_order(order: dict, customer: dict) -> bool:
    if not config.ADMIN_PHONE_NUMBER:
        logger.warning("Admin phone number not configured for order notifications")
        return False
    return send_sms(config.ADMIN_PHONE_NUMBER, admin_order_message(order, customer))


def notify_new_order(order: dict, customer: dict):
    notify_order_confirmation(order, customer)
    notify_admin_new_order(order, customer)
