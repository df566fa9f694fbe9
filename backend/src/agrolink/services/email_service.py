"""SendGrid email service for contract and payment notices.

Uses asyncio.to_thread to wrap the synchronous SendGrid client. Every public
send returns True/False and never raises: mail is a best-effort side effect.
"""

import asyncio
import html
import logging
from dataclasses import dataclass

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailConfig:
    api_key: str
    from_email: str
    admin_email: str
    from_name: str = "AgroLink"


def _format_currency(value) -> str:
    """Format a number as Rs. XX,XXX.XX."""
    try:
        return f"Rs. {float(value):,.2f}"
    except (ValueError, TypeError):
        return "Rs. 0.00"


def _build_html(heading: str, rows: list[tuple[str, str]], footer: str = "") -> str:
    """Build a simple notice email body with a key/value table."""
    row_html = "".join(
        f'<tr><td style="font-weight:600; width:160px;">{html.escape(label)}:</td>'
        f"<td>{html.escape(str(value))}</td></tr>"
        for label, value in rows
    )
    footer_html = (
        f'<p style="font-size: 13px; color: #6b7280; margin-top: 24px;">{html.escape(footer)}</p>'
        if footer
        else ""
    )
    return f"""
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"></head>
<body style="margin: 0; padding: 20px; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #f3f4f6;">
    <table width="600" cellpadding="0" cellspacing="0" style="background: #fff; border-radius: 8px; padding: 32px; margin: 0 auto;">
        <tr>
            <td>
                <h2 style="color: #166534; margin-top: 0;">{html.escape(heading)}</h2>
                <table width="100%" cellpadding="6" cellspacing="0" style="font-size: 14px; color: #374151;">
                    {row_html}
                </table>
                {footer_html}
            </td>
        </tr>
    </table>
</body>
</html>
"""


class Mailer:
    """Sends transactional email through SendGrid."""

    def __init__(self, config: MailConfig):
        self.config = config

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key)

    def _send_mail(self, mail: Mail) -> bool:
        """Synchronous send via SendGrid. Returns True on success."""
        client = sendgrid.SendGridAPIClient(api_key=self.config.api_key)
        response = client.send(mail)
        if response.status_code in (200, 201, 202):
            return True
        logger.error(
            "SendGrid returned status %s: %s",
            response.status_code,
            response.body,
        )
        return False

    async def send(self, to_email: str, subject: str, html_body: str) -> bool:
        """Send one HTML email. Returns True on success, False on failure."""
        if not self.configured:
            logger.warning("SENDGRID_API_KEY not set, skipping email to %s", to_email)
            return False
        if not to_email:
            logger.warning("No recipient address, skipping email '%s'", subject)
            return False

        try:
            mail = Mail(
                from_email=Email(self.config.from_email, self.config.from_name),
                to_emails=To(to_email),
                subject=subject,
                html_content=HtmlContent(html_body),
            )
            result = await asyncio.to_thread(self._send_mail, mail)
            if result:
                logger.info("Email '%s' sent to %s", subject, to_email)
            return result
        except Exception:
            logger.exception("Failed to send email '%s' to %s", subject, to_email)
            return False

    # ------------------------------------------------------------------
    # Contract notices
    # ------------------------------------------------------------------

    async def send_contract_notice(
        self,
        to_email: str,
        recipient_name: str,
        subject: str,
        contract,
        detail: str,
    ) -> bool:
        """Notify a contract party about a request, offer or status change."""
        crop_name = contract.crop.name if contract.crop is not None else "crop"
        body = _build_html(
            subject,
            [
                ("Hello", recipient_name),
                ("Contract", contract.id),
                ("Crop", crop_name),
                ("Quantity", f"{contract.quantity:g} {contract.unit}"),
                ("Price per unit", _format_currency(contract.price_per_unit)),
                ("Total amount", _format_currency(contract.total_amount)),
                ("Status", contract.status),
            ],
            footer=detail,
        )
        return await self.send(to_email, f"[AgroLink] {subject}", body)

    # ------------------------------------------------------------------
    # Payment notices
    # ------------------------------------------------------------------

    async def send_payment_received(self, to_email: str, payment, contract) -> bool:
        """Tell the farmer or admin a stage payment has been received."""
        body = _build_html(
            "Payment received",
            [
                ("Contract", contract.id),
                ("Stage", payment.stage),
                ("Amount", _format_currency(payment.amount)),
                ("Gateway payment id", payment.gateway_payment_id or "-"),
                ("Contract status", contract.status),
            ],
            footer="Funds will be disbursed to the farmer after admin review.",
        )
        return await self.send(
            to_email, f"[AgroLink] {payment.stage.title()} payment received for contract {contract.id}", body
        )

    async def send_payment_disbursed(self, to_email: str, payment) -> bool:
        """Tell the farmer or admin a completed payment has been disbursed."""
        body = _build_html(
            "Payment disbursed",
            [
                ("Contract", payment.contract_id),
                ("Stage", payment.stage),
                ("Amount", _format_currency(payment.amount)),
                ("Notes", payment.admin_notes or "-"),
            ],
        )
        return await self.send(to_email, f"[AgroLink] {payment.stage.title()} payment disbursed", body)
