"""Android Publisher API client (purchases and acknowledgment).

Thin async client over the AuthoritySession. Responses are parsed into the
models in models/authority.py; anything other than a 2xx answer becomes a
PublisherApiError carrying the status code and, for 429, the Retry-After
hint. Transport failures are reported with status_code None.
"""

from typing import Optional
from urllib.parse import quote

import google.auth.exceptions
import httpx
from pydantic import ValidationError

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.authority import AuthorityErrorBody, ProductPurchase, SubscriptionPurchase
from iap_reconciler.models.purchase import PurchaseKind
from iap_reconciler.services.authority_session import AuthoritySession, SessionUnavailable
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)

API_PREFIX = "/androidpublisher/v3/applications"
NOT_FOUND_STATUSES = (404, 410)


class PublisherApiError(Exception):
    """Non-success answer or transport failure talking to the Publisher API."""

    def __init__(self, status_code: Optional[int], message: str, retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.retry_after_seconds = retry_after_seconds

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500

    @property
    def token_not_found(self) -> bool:
        if self.status_code in NOT_FOUND_STATUSES:
            return True
        return self.status_code == 400 and "token" in self.message.lower()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form is not used by Google APIs
        return None


class PublisherApiClient:
    """Purchases API calls used by the verifier and the acknowledgment scheduler."""

    def __init__(self, session: AuthoritySession):
        self._session = session

    @property
    def session(self) -> AuthoritySession:
        return self._session

    async def get_subscription(self, package_name: str, subscription_id: str, token: str) -> SubscriptionPurchase:
        """Fetch a subscription purchase.

        Raises:
            PublisherApiError: On a non-2xx answer, transport failure or bad body
        """
        path = self._path(package_name, PurchaseKind.SUBSCRIPTION, subscription_id, token)
        response = await self._request("GET", path)
        return self._parse(SubscriptionPurchase, response)

    async def get_product(self, package_name: str, product_id: str, token: str) -> ProductPurchase:
        """Fetch a one-time product purchase.

        Raises:
            PublisherApiError: On a non-2xx answer, transport failure or bad body
        """
        path = self._path(package_name, PurchaseKind.ONE_TIME, product_id, token)
        response = await self._request("GET", path)
        return self._parse(ProductPurchase, response)

    async def acknowledge(
        self,
        package_name: str,
        product_id: str,
        token: str,
        kind: PurchaseKind = PurchaseKind.SUBSCRIPTION,
        developer_payload: Optional[str] = None,
    ) -> None:
        """Acknowledge a purchase. Acknowledging twice is accepted by the platform.

        Raises:
            PublisherApiError: On a non-2xx answer or transport failure
        """
        path = self._path(package_name, kind, product_id, token) + ":acknowledge"
        body = {"developerPayload": developer_payload} if developer_payload else {}
        await self._request("POST", path, json=body)
        logger.info("purchase_acknowledged_upstream", product_id=product_id, token=mask_token(token))

    @staticmethod
    def _path(package_name: str, kind: PurchaseKind, product_id: str, token: str) -> str:
        collection = "subscriptions" if kind == PurchaseKind.SUBSCRIPTION else "products"
        return (
            f"{API_PREFIX}/{quote(package_name, safe='')}/purchases/{collection}/"
            f"{quote(product_id, safe='')}/tokens/{quote(token, safe='')}"
        )

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        try:
            client = await self._session.client()
        except SessionUnavailable as e:
            raise PublisherApiError(None, str(e)) from e

        try:
            response = await client.request(method, path, json=json)
        except httpx.TransportError as e:
            await self._session.mark_dropped(e)
            logger.warning("publisher_api_transport_error", method=method, error=str(e))
            raise PublisherApiError(None, f"Transport error: {e}") from e
        except google.auth.exceptions.GoogleAuthError as e:
            logger.error("publisher_api_credentials_error", method=method, error=str(e))
            status_code = None if isinstance(e, google.auth.exceptions.TransportError) else 401
            raise PublisherApiError(status_code, f"Credentials refresh failed: {e}") from e

        self._session.mark_healthy()
        if response.is_success:
            return response

        error = PublisherApiError(
            response.status_code,
            self._error_message(response),
            retry_after_seconds=_parse_retry_after(response.headers.get("Retry-After")),
        )
        logger.warning(
            "publisher_api_error",
            method=method,
            status_code=response.status_code,
            message=error.message,
            retryable=error.retryable,
        )
        raise error

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(payload, dict):
            nested = payload.get("detail")
            detail = payload.get("error") or (nested.get("error") if isinstance(nested, dict) else None) or payload
            if isinstance(detail, dict):
                body = AuthorityErrorBody.model_validate(detail)
                if body.message:
                    return body.message
        return response.reason_phrase

    @staticmethod
    def _parse(model, response: httpx.Response):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PublisherApiError(response.status_code, f"Unexpected response body: {e}") from e
