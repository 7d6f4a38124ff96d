"""Notification decoder - turns a push envelope into a LifecycleEvent.

Pushes are authenticated first (shared verification token and/or a Google
OIDC bearer token), then the base64 DeveloperNotification carried in
message.data is parsed and checked against the configured application.
Unknown subscription notification codes decode to UnknownLifecycleEvent so
they reach the reconciler and get logged.
"""

import base64
import binascii
import hmac
from typing import Any, Callable, Dict, Optional, Union

import google.auth.exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import ValidationError

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.events import (
    DeveloperNotification,
    LifecycleEvent,
    NotificationType,
    PushEnvelope,
    SubscriptionLifecycleEvent,
    UnknownLifecycleEvent,
)
from iap_reconciler.models.settings import WebhookConfig
from iap_reconciler.models.signals import NotificationSignal
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)

OidcVerifier = Callable[[str, str], Dict[str, Any]]


class DecodeError(Exception):
    """Base exception for push decoding errors."""

    retryable = False


class MalformedEnvelope(DecodeError):
    """Raised when the envelope or its payload cannot be parsed."""

    pass


class Unauthenticated(DecodeError):
    """Raised when the push does not carry valid credentials."""

    pass


class PackageMismatch(DecodeError):
    """Raised when the notification is for another application."""

    pass


class UnsupportedNotification(DecodeError):
    """Raised for notifications that carry no subscription lifecycle (test, one-time)."""

    pass


class GoogleOidcVerifier:
    """Verifies Google-signed OIDC tokens through one reused HTTP session.

    Blocking: google-auth fetches the signing certificates with requests.
    """

    def __init__(self, request: Optional[google_requests.Request] = None):
        self._request = request or google_requests.Request()

    def __call__(self, token: str, audience: str) -> Dict[str, Any]:
        return id_token.verify_oauth2_token(token, self._request, audience=audience)


class PushAuthenticator:
    """Checks push credentials according to the webhook configuration."""

    def __init__(self, config: WebhookConfig, oidc_verifier: Optional[OidcVerifier] = None):
        """Initialize the authenticator.

        Args:
            config: Webhook settings
            oidc_verifier: Callable(token, audience) -> claims; defaults to google-auth
        """
        self._config = config
        self._oidc_verifier = oidc_verifier or GoogleOidcVerifier()

    def authenticate(self, query_token: Optional[str] = None, authorization: Optional[str] = None) -> None:
        """Authenticate a push.

        Raises:
            Unauthenticated: If a configured check fails, or none is configured
                and unauthenticated pushes are not allowed
        """
        checked = False

        if self._config.verification_token:
            expected = self._config.verification_token.encode()
            if not query_token or not hmac.compare_digest(query_token.encode(), expected):
                raise Unauthenticated("Missing or invalid verification token")
            checked = True

        if self._config.oidc_audience:
            self._check_bearer(authorization)
            checked = True

        if not checked and not self._config.allow_unauthenticated:
            raise Unauthenticated("No push authentication configured")

    def _check_bearer(self, authorization: Optional[str]) -> None:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise Unauthenticated("Missing bearer token")

        try:
            claims = self._oidc_verifier(token, self._config.oidc_audience)
        except (ValueError, google.auth.exceptions.GoogleAuthError) as e:
            logger.warning("push_oidc_rejected", error=str(e))
            raise Unauthenticated(f"Invalid bearer token: {e}") from e

        expected_account = self._config.oidc_service_account
        if expected_account:
            if claims.get("email") != expected_account or not claims.get("email_verified", False):
                logger.warning("push_oidc_wrong_account", email=claims.get("email"))
                raise Unauthenticated("Bearer token was not issued to the push service account")


class NotificationDecoder:
    """Decodes and authenticates lifecycle notification pushes."""

    def __init__(self, package_name: str, authenticator: PushAuthenticator):
        self._package_name = package_name
        self._authenticator = authenticator

    def decode(
        self,
        envelope: Union[PushEnvelope, Dict[str, Any], bytes, str],
        authorization: Optional[str] = None,
        query_token: Optional[str] = None,
    ) -> LifecycleEvent:
        """Authenticate and decode a push.

        Blocks while OIDC certificates are fetched; async callers run it in a
        worker thread.

        Args:
            envelope: Push body (model, parsed JSON or raw bytes)
            authorization: Authorization header of the push request
            query_token: Value of the ?token= query parameter

        Returns:
            SubscriptionLifecycleEvent, or UnknownLifecycleEvent for unknown codes

        Raises:
            Unauthenticated: Push credentials are missing or invalid
            MalformedEnvelope: Envelope, base64 or notification JSON is invalid
            PackageMismatch: Notification is for another application
            UnsupportedNotification: Test or one-time product notification
        """
        self._authenticator.authenticate(query_token=query_token, authorization=authorization)

        push = self._parse_envelope(envelope)
        notification = self._parse_notification(push.message.data)

        if notification.package_name != self._package_name:
            logger.warning(
                "notification_package_mismatch",
                package_name=notification.package_name,
                expected=self._package_name,
                message_id=push.message.message_id,
            )
            raise PackageMismatch(f"Notification is for package '{notification.package_name}'")

        if notification.test_notification is not None:
            logger.info("test_notification_received", message_id=push.message.message_id)
            raise UnsupportedNotification("Test notification")
        if notification.one_time_product_notification is not None:
            logger.info("one_time_product_notification_ignored", message_id=push.message.message_id)
            raise UnsupportedNotification("One-time product notifications carry no subscription lifecycle")

        sub = notification.subscription_notification
        if sub is None:
            raise MalformedEnvelope("Notification carries no payload")

        try:
            kind = NotificationType(sub.notification_type)
        except ValueError:
            logger.warning(
                "unknown_notification_type_decoded",
                raw_notification_type=sub.notification_type,
                message_id=push.message.message_id,
            )
            return UnknownLifecycleEvent(
                raw_notification_type=sub.notification_type,
                lineage_token=sub.purchase_token,
                product_id=sub.subscription_id,
                package_name=notification.package_name,
                event_time_millis=notification.event_time_millis,
                message_id=push.message.message_id,
            )

        event = SubscriptionLifecycleEvent(
            notification_type=kind,
            lineage_token=sub.purchase_token,
            product_id=sub.subscription_id,
            package_name=notification.package_name,
            event_time_millis=notification.event_time_millis,
            message_id=push.message.message_id,
            new_expiry_time_millis=sub.new_expiry_time_millis,
            auto_resume_time_millis=sub.auto_resume_time_millis,
        )
        logger.debug(
            "notification_decoded",
            notification_type=kind.name,
            token=mask_token(sub.purchase_token),
            message_id=event.message_id,
        )
        return event

    @staticmethod
    def to_signal(event: LifecycleEvent) -> NotificationSignal:
        """Wrap a decoded event in a signal keyed by the push message ID."""
        return NotificationSignal(
            signal_id=event.message_id,
            event_time_millis=event.event_time_millis,
            token=event.lineage_token,
            event=event,
        )

    @staticmethod
    def _parse_envelope(envelope: Union[PushEnvelope, Dict[str, Any], bytes, str]) -> PushEnvelope:
        if isinstance(envelope, PushEnvelope):
            return envelope
        try:
            if isinstance(envelope, (bytes, str)):
                return PushEnvelope.model_validate_json(envelope)
            return PushEnvelope.model_validate(envelope)
        except ValidationError as e:
            raise MalformedEnvelope(f"Invalid push envelope: {e.error_count()} error(s)") from e

    @staticmethod
    def _parse_notification(data: str) -> DeveloperNotification:
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEnvelope("message.data is not valid base64") from e
        try:
            return DeveloperNotification.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedEnvelope(f"Invalid developer notification: {e.error_count()} error(s)") from e
