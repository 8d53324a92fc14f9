"""
OTP delivery over email (SMTP) and SMS (Twilio, then carrier email gateways).
"""

import logging
import smtplib
from email.message import EmailMessage

from fastapi import Request
from twilio.rest import Client as TwilioClient

import config

logger = logging.getLogger(__name__)

CARRIER_GATEWAYS = {
    "verizon": "@vtext.com",
    "att": "@txt.att.net",
    "tmobile": "@tmomail.net",
    "sprint": "@messaging.sprintpcs.com",
    "boost": "@myboostmobile.com",
    "cricket": "@sms.cricketwireless.net",
    "metro": "@mymetropcs.com",
    "uscellular": "@email.uscc.net",
}


class DeliveryError(Exception):
    pass


class Notifier:
    def __init__(
        self,
        smtp_host=None,
        smtp_port=587,
        smtp_email=None,
        smtp_password=None,
        twilio_sid=None,
        twilio_token=None,
        twilio_from=None,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_email = smtp_email
        self.smtp_password = smtp_password
        self.twilio_from = twilio_from
        self._twilio = TwilioClient(twilio_sid, twilio_token) if twilio_sid and twilio_token else None

    @classmethod
    def from_config(cls):
        return cls(
            smtp_host=config.SMTP_HOST,
            smtp_port=config.SMTP_PORT,
            smtp_email=config.SMTP_EMAIL,
            smtp_password=config.SMTP_PASSWORD,
            twilio_sid=config.TWILIO_ACCOUNT_SID,
            twilio_token=config.TWILIO_AUTH_TOKEN,
            twilio_from=config.TWILIO_PHONE_NUMBER,
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_email and self.smtp_password)

    def send_email_code(self, to: str, code: str) -> None:
        if not self.email_configured:
            logger.info("SMTP not configured, OTP for %s not emailed", to)
            return
        msg = EmailMessage()
        msg["Subject"] = "Your OTP Code for Edustore"
        msg["From"] = f"Edustore <{self.smtp_email}>"
        msg["To"] = to
        msg.set_content(f"Your OTP is: {code}\nIt will expire in 5 minutes.")
        msg.add_alternative(
            f"<p>Your OTP is:</p><h2>{code}</h2><p>It will expire in 5 minutes.</p>",
            subtype="html",
        )
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as smtp:
                smtp.starttls()
                smtp.login(self.smtp_email, self.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Failed to email {to}") from e

    def send_sms_code(self, phone: str, code: str) -> None:
        try:
            self._send_twilio(phone, code)
            return
        except DeliveryError:
            logger.warning("Primary SMS failed for %s, trying carrier gateways", phone)
        self._send_via_gateways(phone, code)

    def _send_twilio(self, phone: str, code: str) -> None:
        if self._twilio is None or not self.twilio_from:
            raise DeliveryError("Twilio not configured")
        try:
            self._twilio.messages.create(
                body=f"Your Edustore OTP code is: {code}. Valid for 5 minutes.",
                from_=self.twilio_from,
                to=phone,
            )
        except Exception as e:
            raise DeliveryError(f"Twilio rejected message to {phone}") from e
        logger.info("SMS OTP sent to %s", phone)

    def _send_via_gateways(self, phone: str, code: str) -> None:
        if not self.email_configured:
            raise DeliveryError("No SMS gateway available")
        digits = "".join(ch for ch in phone if ch.isdigit())
        for carrier, gateway in CARRIER_GATEWAYS.items():
            try:
                self.send_email_code(digits + gateway, code)
            except DeliveryError:
                logger.info("Failed %s gateway for %s", carrier, phone)
                continue
            logger.info("SMS OTP sent via %s gateway to %s", carrier, phone)
            return
        raise DeliveryError("No SMS gateway available")


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier
