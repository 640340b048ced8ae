"""
Outgoing email

Invoices and quotes are mailed to the client's address on file over plain
SMTP. A send that fails raises DeliveryFailed so callers can keep the
document in its previous state.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict

import config
from errors import DeliveryFailed, ValidationFailed

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, host: str = None, port: int = None, user: str = None, password: str = None,
                 from_address: str = None, use_tls: bool = None):
        self.host = host if host is not None else config.SMTP_HOST
        self.port = port if port is not None else config.SMTP_PORT
        self.user = user if user is not None else config.SMTP_USER
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.from_address = from_address or config.SMTP_FROM
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls

    def send(self, to_address: str, subject: str, body_text: str, body_html: str) -> None:
        if not to_address:
            raise ValidationFailed("Client has no email address")
        if not self.host:
            raise DeliveryFailed("SMTP is not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg.attach(MIMEText(body_text, "plain"))
        msg.attach(MIMEText(body_html, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.sendmail(self.from_address, [to_address], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.exception("Failed to send %r to %s", subject, to_address)
            raise DeliveryFailed(f"Email could not be sent: {e}")
        logger.info("Email %r sent to %s", subject, to_address)

    def send_invoice(self, invoice: Dict[str, Any], client: Dict[str, Any]) -> None:
        link = f"{config.FRONTEND_URL}/public/invoices/{invoice['_id']}"
        due = invoice["due_date"].strftime("%d %b %Y")
        total = f"{invoice.get('total', 0):.2f} {invoice.get('currency', '')}".strip()
        subject = f"Invoice #{invoice['number']}"
        text = (
            f"Hi {client.get('name', '')},\n\n"
            f"Here is your invoice for {total}.\nDue date: {due}\n\nView it online: {link}\n"
        )
        html = (
            f"<div style='font-family: Arial, sans-serif; padding: 20px;'>"
            f"<h2>Invoice #{invoice['number']}</h2>"
            f"<p>Hi {client.get('name', '')},</p>"
            f"<p>Here is your invoice for <strong>{total}</strong>.</p>"
            f"<p><strong>Due date:</strong> {due}</p>"
            f"<a href='{link}'>View invoice</a></div>"
        )
        self.send(client.get("email"), subject, text, html)

    def send_quote(self, quote: Dict[str, Any], client: Dict[str, Any]) -> None:
        total = f"{quote.get('total', 0):.2f} {quote.get('currency', '')}".strip()
        subject = f"Quote #{quote['number']} - {quote.get('title', '')}"
        text = (
            f"Hi {client.get('name', '')},\n\n"
            f"Here is the estimate for {quote.get('title', '')}.\nTotal: {total}\n\n"
            "Please reply to this email to approve or reject this quote.\n"
        )
        html = (
            f"<div style='font-family: Arial, sans-serif; padding: 20px;'>"
            f"<h2>Quote #{quote['number']}</h2>"
            f"<p>Hi {client.get('name', '')},</p>"
            f"<p>Here is the estimate for <strong>{quote.get('title', '')}</strong>.</p>"
            f"<p><strong>Total:</strong> {total}</p>"
            f"<p>Please reply to this email to approve or reject this quote.</p></div>"
        )
        self.send(client.get("email"), subject, text, html)


def get_mailer() -> Mailer:
    return Mailer()
