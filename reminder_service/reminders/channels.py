"""
Channel senders: one per delivery medium (email / sms / app push).

A sender never raises for an expected delivery problem. It returns a
``SendResult`` whose failure kind tells the scanner whether the same
occurrence is worth retrying (transient) or the reminder should be
closed (permanent).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol
import html
import json
import logging
import os
import re
import smtplib
import uuid

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from firebase_admin import credentials, exceptions as firebase_exceptions, initialize_app, messaging, _apps  # type: ignore
from kombu.exceptions import OperationalError as BrokerError

from .config import ReminderSettings
from .errors import ChannelConfigurationError
from .outbound import OutboundQueue
from .schemas import Channel, ReminderRead

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")

# SNS error codes that will not succeed on retry
PERMANENT_SNS_ERRORS = {"InvalidParameter", "InvalidParameterValue", "EndpointDisabled"}


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class SendResult:
    ok: bool
    failure: Optional[FailureKind] = None
    detail: str = ""
    attempted: bool = True  # False when the send never reached the channel

    @classmethod
    def success(cls, detail: str = "") -> "SendResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def transient(cls, detail: str, attempted: bool = True) -> "SendResult":
        return cls(ok=False, failure=FailureKind.TRANSIENT, detail=detail, attempted=attempted)

    @classmethod
    def permanent(cls, detail: str) -> "SendResult":
        return cls(ok=False, failure=FailureKind.PERMANENT, detail=detail)


class ChannelSender(Protocol):
    channel: Channel

    def send(self, reminder: ReminderRead) -> SendResult:
        ...


def render_email(reminder: ReminderRead) -> Dict[str, str]:
    subject = "⏰ Reminder" if not reminder.goal_id else "⏰ Reminder about your goal"
    text = f"{reminder.message}\n\nYou are receiving this because you scheduled a reminder."
    body = (
        "<!DOCTYPE html><html><body>"
        "<h1>⏰ Reminder</h1>"
        f"<div style=\"border-left: 4px solid #4ade80; padding: 12px;\">{html.escape(reminder.message)}</div>"
        "</body></html>"
    )
    return {
        "to": reminder.recipient or "",
        "subject": subject,
        "text": text,
        "html": body,
        "reminder_id": reminder.id,
        "user_id": reminder.user_id,
    }


class EmailSender:
    channel = Channel.EMAIL

    def __init__(self, outbound: OutboundQueue):
        self.outbound = outbound

    def send(self, reminder: ReminderRead) -> SendResult:
        to = (reminder.recipient or "").strip()
        if not EMAIL_RE.match(to):
            return SendResult.permanent(f"invalid email address: {to!r}")
        try:
            self.outbound.submit_email(render_email(reminder))
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult.permanent(f"recipient refused: {e.recipients}")
        except ChannelConfigurationError as e:
            return SendResult.transient(f"email channel not configured: {e}")
        except (smtplib.SMTPException, BrokerError, OSError) as e:
            return SendResult.transient(f"email delivery failed: {e!r}")
        return SendResult.success(self.outbound.name)


class SmsSender:
    channel = Channel.SMS

    def __init__(self, sns_client=None, region: str = "us-east-1", sender_id: Optional[str] = None):
        self.region = region
        self.sender_id = sender_id
        self._client = sns_client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("sns", region_name=self.region)
        return self._client

    def send(self, reminder: ReminderRead) -> SendResult:
        phone = (reminder.recipient or "").strip()
        if not E164_RE.match(phone):
            return SendResult.permanent(f"invalid phone number: {phone!r}")

        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        if self.sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {"DataType": "String", "StringValue": self.sender_id}
        try:
            response = self.client.publish(
                PhoneNumber=phone,
                Message=f"⏰ {reminder.message}",
                MessageAttributes=attributes,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in PERMANENT_SNS_ERRORS:
                return SendResult.permanent(f"SNS rejected message: {code}")
            return SendResult.transient(f"SNS error: {code or e!r}")
        except BotoCoreError as e:
            return SendResult.transient(f"SNS unreachable: {e!r}")
        return SendResult.success(response.get("MessageId", ""))


def _ensure_firebase_initialized(project_id: Optional[str], credentials_json: Optional[str]) -> bool:
    if _apps:
        return True

    creds_json = credentials_json or os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    options = {"projectId": project_id} if project_id else None
    try:
        if creds_json and creds_json.strip().startswith("{"):
            initialize_app(credentials.Certificate(json.loads(creds_json)), options=options)
            logger.info("✅ [FCM] Firebase app initialized (inline JSON)")
        elif creds_json and os.path.exists(creds_json):
            initialize_app(credentials.Certificate(creds_json), options=options)
            logger.info("✅ [FCM] Firebase app initialized (file)")
        elif project_id:
            initialize_app(options=options)
            logger.info("✅ [FCM] Firebase app initialized (projectId only)")
        else:
            logger.warning("⚠️  [FCM] No credentials provided - push notifications disabled")
            return False
    except (ValueError, OSError) as e:
        logger.error(f"❌ [FCM] Failed to initialize Firebase: {e!r}")
        return False
    return True


class AppPushSender:
    channel = Channel.APP

    def __init__(self, project_id: Optional[str] = None, credentials_json: Optional[str] = None):
        self.project_id = project_id
        self.credentials_json = credentials_json

    def send(self, reminder: ReminderRead) -> SendResult:
        token = (reminder.recipient or "").strip()
        if not token:
            return SendResult.permanent("no device token")
        if not _ensure_firebase_initialized(self.project_id, self.credentials_json):
            return SendResult.transient("FCM not configured")

        # Unique id so iOS does not collapse repeated occurrences
        notification_id = str(uuid.uuid4())
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title="Reminder", body=reminder.message),
            data={
                "reminder_id": reminder.id,
                "goal_id": reminder.goal_id or "",
                "timestamp_utc": reminder.next_fire_at.isoformat(),
                "notification_id": notification_id,
            },
            apns=messaging.APNSConfig(
                headers={
                    "apns-push-type": "alert",
                    "apns-priority": "10",
                    "apns-collapse-id": notification_id,
                }
            ),
        )
        try:
            result = messaging.send(message)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            return SendResult.permanent(f"device token rejected: {e}")
        except firebase_exceptions.InvalidArgumentError as e:
            return SendResult.permanent(f"invalid push message: {e}")
        except firebase_exceptions.FirebaseError as e:
            return SendResult.transient(f"FCM error: {e}")
        except ValueError as e:
            return SendResult.permanent(f"malformed push message: {e}")
        return SendResult.success(result)


def build_channel_senders(settings: ReminderSettings, outbound: OutboundQueue) -> Dict[Channel, ChannelSender]:
    return {
        Channel.EMAIL: EmailSender(outbound),
        Channel.SMS: SmsSender(region=settings.AWS_REGION, sender_id=settings.SMS_SENDER_ID),
        Channel.APP: AppPushSender(settings.FCM_PROJECT_ID, settings.FCM_CREDENTIALS_JSON),
    }
