"""Token verifier - asks the verification authority about a purchase token.

The authority's answer is normalized into a VerificationResult. The
verifier never writes state; callers wrap the result in a
VerificationSignal and hand it to the reconciler.

Error mapping:
- MismatchedContext: package name is not the configured application
- InvalidVerificationRequest: empty token or product ID
- TokenNotFound: 404/410, or 400 about the token (permanent)
- RateLimited: 429, with the Retry-After hint (retryable)
- AuthorityUnreachable: transport failure, 5xx or unreadable answer (retryable)
"""

from typing import Optional

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.authority import ProductPurchase, SubscriptionPurchase
from iap_reconciler.models.purchase import PaymentState, PurchaseKind
from iap_reconciler.models.settings import ApplicationConfig
from iap_reconciler.models.signals import VerificationResult
from iap_reconciler.services.clock import Clock
from iap_reconciler.services.publisher_api import PublisherApiClient, PublisherApiError
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)

# One-time product purchaseState values
PRODUCT_PURCHASED = 0
PRODUCT_CANCELED = 1
PRODUCT_PENDING = 2


class VerificationError(Exception):
    """Base exception for verification errors."""

    retryable = False


class MismatchedContext(VerificationError):
    """Raised when the token is presented for another application."""

    pass


class InvalidVerificationRequest(VerificationError):
    """Raised when the request is missing the token or product."""

    pass


class TokenNotFound(VerificationError):
    """Raised when the authority does not know the token."""

    pass


class AuthorityUnreachable(VerificationError):
    """Raised on transport errors, timeouts and 5xx answers."""

    retryable = True


class RateLimited(VerificationError):
    """Raised when the authority throttles us."""

    retryable = True

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


def _millis(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def normalize_subscription(purchase: SubscriptionPurchase, now_millis: int) -> VerificationResult:
    """Normalize a subscription purchase.

    Valid iff the expiry is in the future and the payment state is a known value.
    """
    expiry = _millis(purchase.expiryTimeMillis)
    try:
        payment_state = PaymentState(purchase.paymentState)
        payment_known = True
    except ValueError:
        # Lapsed subscriptions omit paymentState
        payment_state = PaymentState.PENDING
        payment_known = False

    return VerificationResult(
        is_valid=payment_known and expiry is not None and expiry > now_millis,
        purchase_kind=PurchaseKind.SUBSCRIPTION,
        expiry_time_millis=expiry,
        auto_renewing=purchase.autoRenewing,
        payment_state=payment_state,
        order_id=purchase.orderId,
        linked_purchase_token=purchase.linkedPurchaseToken,
        acknowledged_upstream=purchase.acknowledgementState == 1,
        start_time_millis=_millis(purchase.startTimeMillis),
        cancel_reason=purchase.cancelReason,
        auto_resume_time_millis=_millis(purchase.autoResumeTimeMillis),
        verified_at_millis=now_millis,
    )


def normalize_product(purchase: ProductPurchase, now_millis: int) -> VerificationResult:
    """Normalize a one-time product purchase (no expiry, never auto-renewing)."""
    if purchase.purchaseState == PRODUCT_PENDING:
        payment_state = PaymentState.PENDING
    else:
        payment_state = PaymentState.RECEIVED

    return VerificationResult(
        is_valid=purchase.purchaseState in (PRODUCT_PURCHASED, PRODUCT_PENDING),
        purchase_kind=PurchaseKind.ONE_TIME,
        expiry_time_millis=None,
        auto_renewing=False,
        payment_state=payment_state,
        order_id=purchase.orderId,
        acknowledged_upstream=purchase.acknowledgementState == 1,
        start_time_millis=_millis(purchase.purchaseTimeMillis),
        purchase_state=purchase.purchaseState,
        verified_at_millis=now_millis,
    )


class TokenVerifier:
    """Verifies purchase tokens against the authority."""

    def __init__(self, api: PublisherApiClient, clock: Clock, application: ApplicationConfig):
        """Initialize the verifier.

        Args:
            api: Publisher API client
            clock: Time source for validity checks
            application: Application identity and one-time product list
        """
        self._api = api
        self._clock = clock
        self._application = application

    def kind_of(self, product_id: str) -> PurchaseKind:
        """Purchase kind of a product, from the configured one-time product list."""
        if product_id in self._application.one_time_products:
            return PurchaseKind.ONE_TIME
        return PurchaseKind.SUBSCRIPTION

    async def verify(
        self,
        token: str,
        product_id: str,
        package_name: str,
        kind: Optional[PurchaseKind] = None,
    ) -> VerificationResult:
        """Verify a purchase token.

        Args:
            token: Opaque purchase token
            product_id: Catalog product ID
            package_name: Package the purchase was made in
            kind: Purchase kind, defaults to the configured kind of the product

        Returns:
            Normalized VerificationResult

        Raises:
            VerificationError: One of the subclasses described in the module docstring
        """
        if not token or not product_id:
            raise InvalidVerificationRequest("Both token and product ID are required")
        if package_name != self._application.package_name:
            logger.warning(
                "verification_package_mismatch",
                package_name=package_name,
                expected=self._application.package_name,
            )
            raise MismatchedContext(
                f"Package '{package_name}' does not match '{self._application.package_name}'"
            )

        kind = kind or self.kind_of(product_id)
        try:
            if kind == PurchaseKind.ONE_TIME:
                purchase = await self._api.get_product(package_name, product_id, token)
                result = normalize_product(purchase, self._clock.now_millis())
            else:
                purchase = await self._api.get_subscription(package_name, product_id, token)
                result = normalize_subscription(purchase, self._clock.now_millis())
        except PublisherApiError as e:
            raise self._map_error(e, token) from e

        logger.info(
            "token_verified",
            token=mask_token(token),
            product_id=product_id,
            purchase_kind=kind.value,
            is_valid=result.is_valid,
            payment_state=result.payment_state.name,
            expiry_time_millis=result.expiry_time_millis,
        )
        return result

    @staticmethod
    def _map_error(error: PublisherApiError, token: str) -> VerificationError:
        if error.token_not_found:
            logger.info("verification_token_not_found", token=mask_token(token), status_code=error.status_code)
            return TokenNotFound(error.message)
        if error.status_code == 429:
            logger.warning("verification_rate_limited", retry_after_seconds=error.retry_after_seconds)
            return RateLimited(error.message, error.retry_after_seconds)
        if error.status_code in (401, 403):
            logger.error("verification_authority_auth_failed", status_code=error.status_code, error=error.message)
            return AuthorityUnreachable(error.message)
        if error.retryable or (error.status_code is not None and error.status_code < 300):
            logger.warning("verification_authority_unreachable", status_code=error.status_code, error=error.message)
            return AuthorityUnreachable(error.message)
        # Any other 4xx is a request the authority will never accept
        logger.warning("verification_rejected_by_authority", status_code=error.status_code, error=error.message)
        return InvalidVerificationRequest(error.message)
