"""Registration confirmation emails with an inline QR code"""

import base64
import logging
from html import escape as html_escape
from io import BytesIO

import qrcode
from flask import current_app
from flask_mail import Mail, Message

logger = logging.getLogger(__name__)

mail = Mail()


def generate_qr_code(data_string):
    """Generate QR code and return as base64 encoded string"""
    try:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(data_string)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode()
    except Exception as e:
        logger.error(f"QR code generation error: {e}")
        return None


def send_registration_email(registration):
    """Send the confirmation email; returns True only if it went out"""
    if not current_app.config.get('MAIL_ENABLED'):
        return False
    try:
        society = current_app.config.get('SOCIETY_NAME', 'Tech Ascend')
        msg = Message(
            subject=f"Registration Confirmation - {registration['eventName']}",
            recipients=[registration['email']]
        )

        # Escape user-provided data to prevent XSS
        safe_name = html_escape(registration['name'])
        safe_event_name = html_escape(registration['eventName'])
        safe_registration_id = html_escape(registration['id'])
        safe_society = html_escape(society)

        msg.body = (
            f"Dear {registration['name']},\n\n"
            f"You are registered for {registration['eventName']}.\n"
            f"Registration ID: {registration['id']}\n\n"
            f"{society}"
        )
        msg.html = f"""
        <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <h1>Registration Successful!</h1>
                <p>Dear {safe_name},</p>
                <p>Thank you for registering for <strong>{safe_event_name}</strong>!</p>
                <p>Registration ID: <strong>{safe_registration_id}</strong></p>
                <p>Please keep this QR code, you may need to present it at the event:</p>
                <img src="cid:qrcode" alt="QR Code" style="max-width: 250px;"/>
                <p style="font-size: 12px; color: #999;">This is an automated email. Please do not reply.<br>{safe_society}</p>
            </body>
        </html>
        """

        qr_code_base64 = generate_qr_code(registration['id'])
        if qr_code_base64:
            msg.attach(
                filename='qrcode.png',
                content_type='image/png',
                data=base64.b64decode(qr_code_base64),
                disposition='inline',
                headers={'Content-ID': '<qrcode>'}
            )

        mail.send(msg)
        return True
    except Exception as e:
        logger.error(f"Email sending error: {e}")
        return False
