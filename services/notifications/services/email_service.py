"""Servicio de envío de emails usando Resend"""
import asyncio
import base64
import html
import io
import logging
from typing import Dict, List, Optional, Union

import qrcode
import resend

from app.core.config import settings
from services.checkout.services.pricing import format_price

logger = logging.getLogger(__name__)


class EmailService:
    """Servicio para enviar emails usando Resend (desarrollo y producción)"""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.resend_api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL

        if not self.resend_api_key:
            logger.warning("RESEND_API_KEY no configurado. Los emails no se enviarán.")
            self.resend_configured = False
        else:
            resend.api_key = self.resend_api_key
            self.resend_configured = True
            logger.info(f"EmailService (Resend) inicializado con from: {self.from_email}")

    def _generate_qr_image_base64(self, qr_data: str) -> str:
        """
        Generar imagen QR como base64 para incluir en el email

        Args:
            qr_data: Payload del QR (código del ticket)

        Returns:
            String base64 de la imagen PNG, vacío si falla
        """
        if not qr_data:
            logger.warning("qr_data está vacío, no se puede generar QR")
            return ""

        try:
            qr = qrcode.QRCode(
                version=1,
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=8,
                border=4,
            )
            qr.add_data(qr_data)
            qr.make(fit=True)

            img = qr.make_image(fill_color="black", back_color="white")
            img_buffer = io.BytesIO()
            img.save(img_buffer, format="PNG")
            return base64.b64encode(img_buffer.getvalue()).decode("utf-8")
        except Exception as e:
            logger.error(f"Error generando QR code para {qr_data}: {e}", exc_info=True)
            return ""

    async def send_email(
        self,
        to_email: Union[str, List[str]],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        """
        Enviar email usando Resend

        Returns:
            True si se envió (o se simuló sin API key), False si Resend lo rechazó
        """
        if not self.resend_configured:
            logger.warning(f"Resend no configurado. Email simulado a {to_email}: {subject}")
            return True

        to_emails = [to_email] if isinstance(to_email, str) else to_email
        params = {
            "from": self.from_email,
            "to": to_emails,
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            params["text"] = text_content

        # Resend SDK es síncrono: se ejecuta en el thread pool
        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(None, resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Error enviando email a {to_emails}: {e}", exc_info=True)
            return False

        logger.info(f"Email enviado exitosamente a {to_emails}: {subject} (ID: {result.get('id', 'N/A')})")
        return True

    def render_order_confirmation(self, payload: Dict) -> Dict[str, str]:
        """Asunto, HTML y texto plano de la confirmación de orden"""
        event = payload.get("event") or {}
        customer = payload.get("customer") or {}
        tickets = payload.get("tickets") or []
        order_number = payload.get("order_number", "")
        event_name = html.escape(event.get("name") or "")
        total = format_price(payload.get("total") or 0, payload.get("currency"))

        details = [d for d in (event.get("venue_name"), event.get("date_start"), event.get("doors_time")) if d]
        details_html = " &middot; ".join(html.escape(str(d)) for d in details)

        ticket_blocks = []
        text_lines = []
        for ticket in tickets:
            code = ticket["ticket_code"]
            label = html.escape(ticket.get("ticket_type") or "Ticket")
            merch = ""
            if ticket.get("merch_size"):
                merch_name = ticket.get("merch_name") or "Merch"
                merch = f"<p style=\"margin: 4px 0; color: #6b7280;\">{html.escape(merch_name)} &mdash; size {html.escape(ticket['merch_size'])}</p>"
            qr_base64 = self._generate_qr_image_base64(code)
            qr_img = (
                f'<img src="data:image/png;base64,{qr_base64}" alt="{code}" width="200" height="200" '
                f'style="display: block; margin: 12px auto;" />'
                if qr_base64 else ""
            )
            ticket_blocks.append(
                f'<div style="background: white; border-radius: 8px; padding: 16px; margin: 16px 0; text-align: center;">'
                f'<h3 style="margin: 0;">{label}</h3>{merch}{qr_img}'
                f'<p style="font-family: monospace; font-size: 16px; letter-spacing: 2px;">{code}</p></div>'
            )
            text_lines.append(f"- {ticket.get('ticket_type') or 'Ticket'}: {code}"
                              + (f" (size {ticket['merch_size']})" if ticket.get("merch_size") else ""))

        first_name = html.escape(customer.get("first_name") or "")
        html_content = f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="UTF-8"></head>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
            <div style="background-color: #111827; color: white; padding: 20px; text-align: center; border-radius: 8px 8px 0 0;">
                <h1 style="margin: 0;">You're going to {event_name}</h1>
            </div>
            <div style="background-color: #f9fafb; padding: 24px; border-radius: 0 0 8px 8px;">
                <p>Hi <strong>{first_name}</strong>,</p>
                <p>Your order <strong>{order_number}</strong> is confirmed. Total paid: <strong>{total}</strong>.</p>
                <p style="color: #6b7280;">{details_html}</p>
                {''.join(ticket_blocks)}
                <p style="font-size: 12px; color: #6b7280; text-align: center;">Show each QR code at the door.</p>
            </div>
        </body>
        </html>
        """

        text_content = "\n".join([
            f"Hi {customer.get('first_name') or ''},",
            f"Your order {order_number} for {event.get('name') or ''} is confirmed. Total paid: {total}.",
            "",
            *text_lines,
        ])

        return {
            "subject": f"Your tickets for {event.get('name') or 'your event'} ({order_number})",
            "html": html_content,
            "text": text_content,
        }

    async def send_order_confirmation_email(self, payload: Dict) -> bool:
        """Enviar la confirmación de orden con un QR por ticket"""
        to_email = (payload.get("customer") or {}).get("email")
        if not to_email:
            logger.error(f"[EMAIL] Orden {payload.get('order_number')} sin email de cliente")
            return False

        rendered = self.render_order_confirmation(payload)
        return await self.send_email(
            to_email=to_email,
            subject=rendered["subject"],
            html_content=rendered["html"],
            text_content=rendered["text"],
        )
