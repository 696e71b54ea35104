"""
Email service for sending transactional emails
"""
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.config import get_settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when SES rejects or cannot accept a message"""


def send_file_deleted_email(
    email: str,
    filename: str,
    retention_days: int
) -> bool:
    """
    Tell a file owner that a file was removed by the retention policy

    Args:
        email: Owner email address
        filename: Stored name of the deleted file
        retention_days: Retention window that expired

    Returns:
        True if the email was sent, False if email is disabled

    Raises:
        EmailDeliveryError: If sending failed
    """
    settings = get_settings()

    if not settings.EMAIL_ENABLED:
        logger.warning(
            f"Email disabled. Would notify {email} that {filename} was deleted"
        )
        return False

    subject = "File Deleted"
    body = f"""
Hello,

Your file {filename} has been deleted after {retention_days} days.

This is an automated message from the {settings.FROM_NAME}.
"""

    _send_email(email, subject, body)
    logger.info(f"File deletion email sent to {email}")
    return True


def _send_email(to_email: str, subject: str, body: str) -> None:
    """
    Internal function to send email using AWS SES

    Args:
        to_email: Recipient email address
        subject: Email subject
        body: Email body (plain text)

    Raises:
        EmailDeliveryError: If email sending fails
    """
    settings = get_settings()

    try:
        ses_client = boto3.client(
            'ses',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY
        )

        response = ses_client.send_email(
            Source=f"{settings.FROM_NAME} <{settings.FROM_EMAIL}>",
            Destination={'ToAddresses': [to_email]},
            Message={
                'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                'Body': {
                    'Text': {'Data': body, 'Charset': 'UTF-8'}
                }
            }
        )

        logger.debug(f"Email sent. Message ID: {response['MessageId']}")

    except ClientError as e:
        error_code = e.response['Error']['Code']
        error_message = e.response['Error']['Message']
        logger.error(f"SES error {error_code}: {error_message}")
        raise EmailDeliveryError(f"Failed to send email: {error_message}") from e
    except BotoCoreError as e:
        logger.error(f"Unexpected error sending email: {e}")
        raise EmailDeliveryError(f"Failed to send email: {e}") from e
