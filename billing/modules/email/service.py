import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List, Optional, Dict, Any
from pathlib import Path
import logging
from jinja2 import Environment, FileSystemLoader, select_autoescape
from billing.core.config import settings

logger = logging.getLogger(__name__)

# Textos por idioma; {document_label} y {document_number} se completan al enviar
SUBJECTS = {
    "es": {
        "document": "{document_label} {document_number} - {client_name}",
        "document_message": (
            "Estimado cliente,\n\nLe enviamos la {document_label_lower} {document_number}.\n\n"
            "Gracias por su preferencia."
        ),
        "signature_request": "Firma requerida: {document_label} {document_number}",
        "signature_confirmation": "Confirmación: {document_label} {document_number} firmada",
        "signature_owner_notice": "Firmada: {document_label} {document_number} por {signer_name}",
        "invoice": "Factura",
        "quote": "Proforma",
    },
    "en": {
        "document": "{document_label} {document_number} - {client_name}",
        "document_message": (
            "Dear customer,\n\nPlease find the details of {document_label_lower} {document_number} below.\n\n"
            "Thank you for your business."
        ),
        "signature_request": "Signature Required: {document_label} {document_number}",
        "signature_confirmation": "Confirmation: {document_label} {document_number} Signed",
        "signature_owner_notice": "Signed: {document_label} {document_number} by {signer_name}",
        "invoice": "Invoice",
        "quote": "Quote",
    },
}


class EmailDeliveryError(Exception):
    pass


class EmailService:
    """
    Servicio de correo electrónico con soporte para templates Jinja2.
    """

    def __init__(self):
        self.smtp_server = settings.EMAIL_SMTP_SERVER
        self.smtp_port = settings.EMAIL_SMTP_PORT
        self.username = settings.EMAIL_USERNAME
        self.password = settings.EMAIL_PASSWORD
        self.use_tls = settings.EMAIL_USE_TLS
        self.from_email = settings.EMAIL_FROM
        self.from_name = settings.EMAIL_FROM_NAME
        self.frontend_url = settings.FRONTEND_URL
        self.locale = settings.SIGNATURE_EMAIL_LOCALE if settings.SIGNATURE_EMAIL_LOCALE in SUBJECTS else "es"

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def _create_smtp_connection(self):
        """Crear conexión SMTP segura."""
        if self.use_tls:
            context = ssl.create_default_context()
            server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, timeout=30)

        if self.username:
            server.login(self.username, self.password)
        return server

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        template = self.jinja_env.get_template(template_name)
        params = {"locale": self.locale}
        params.update(context)
        return template.render(**params)

    def resolve_locale(self, locale: Optional[str]) -> str:
        return locale if locale in SUBJECTS else self.locale

    def subject(self, key: str, document_type: str, document_number: str, **extra: Any) -> str:
        texts = SUBJECTS[self.locale]
        return texts[key].format(
            document_label=texts.get(document_type, document_type),
            document_number=document_number,
            **extra
        )

    def signing_url(self, token: str) -> str:
        return f"{self.frontend_url.rstrip('/')}/sign/{token}"

    def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None
    ) -> None:
        """
        Enviar correo electrónico.

        Raises:
            EmailDeliveryError: si el servidor SMTP rechaza o no responde;
                la tarea que llama decide si reintentar.
        """
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = ', '.join(to_emails)

        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        if html_content:
            msg.attach(MIMEText(html_content, 'html', 'utf-8'))

        try:
            with self._create_smtp_connection() as server:
                server.sendmail(self.from_email, to_emails, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {', '.join(to_emails)}: {str(e)}")
            raise EmailDeliveryError(str(e)) from e

        logger.info(f"Email sent successfully to {', '.join(to_emails)}")

    def send_template_email(
        self,
        to_emails: List[str],
        subject: str,
        template_name: str,
        context: Dict[str, Any]
    ) -> None:
        """Enviar correo usando template (ej: "signature_request.html")"""
        html_content = self.render_template(template_name, context)
        self.send_email(to_emails=to_emails, subject=subject, html_content=html_content)

    def send_document(self, context: Dict[str, Any]) -> None:
        """
        Enviar una factura o proforma al destinatario indicado.

        El contexto trae to, document_type, document_number, client_name,
        company_name, fechas, total y currency. subject, message y locale son
        opcionales; sin ellos se usan los textos por defecto del idioma.
        """
        locale = self.resolve_locale(context.get("locale"))
        texts = SUBJECTS[locale]
        label = texts[context["document_type"]]
        subject = context.get("subject") or texts["document"].format(
            document_label=label,
            document_number=context["document_number"],
            client_name=context.get("client_name") or ""
        ).rstrip(" -")
        message = context.get("message") or texts["document_message"].format(
            document_label_lower=label.lower(),
            document_number=context["document_number"]
        )
        context = dict(context, locale=locale, subject=subject, message=message, document_label=label)
        html_content = self.render_template(f"{context['document_type']}_email.html", context)
        self.send_email(
            to_emails=[context["to"]],
            subject=subject,
            html_content=html_content,
            text_content=message
        )

    def send_invoice(self, context: Dict[str, Any]) -> None:
        self.send_document(dict(context, document_type="invoice"))

    def send_quote(self, context: Dict[str, Any]) -> None:
        self.send_document(dict(context, document_type="quote"))

    def send_signature_request(self, context: Dict[str, Any]) -> None:
        """
        Invitación a firmar.

        El contexto trae signer_email, signer_name, token, document_type,
        document_number, company_name, total, currency y expires_at.
        """
        context = dict(context, signing_url=self.signing_url(context["token"]))
        self.send_template_email(
            to_emails=[context["signer_email"]],
            subject=self.subject("signature_request", context["document_type"], context["document_number"]),
            template_name="signature_request.html",
            context=context
        )

    def send_signature_confirmation(self, context: Dict[str, Any]) -> None:
        """Confirmación al firmante y aviso a la empresa (si tiene correo)"""
        self.send_template_email(
            to_emails=[context["signer_email"]],
            subject=self.subject("signature_confirmation", context["document_type"], context["document_number"]),
            template_name="signature_confirmation.html",
            context=dict(context, recipient="signer")
        )
        if context.get("company_email"):
            self.send_template_email(
                to_emails=[context["company_email"]],
                subject=self.subject(
                    "signature_owner_notice", context["document_type"], context["document_number"],
                    signer_name=context.get("signer_name") or context["signer_email"]
                ),
                template_name="signature_confirmation.html",
                context=dict(context, recipient="owner")
            )


# Singleton instance
email_service = EmailService()
