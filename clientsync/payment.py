"""
Confirmation of payments completed on an external payment page.

The user leaves the client to pay and comes back through a redirect. The
engine keeps a durable PendingConfirmation record across that round trip
and drives it through CREATED -> VERIFYING -> CONFIRMED | FAILED:

- begin_checkout(): create the order, persist the record, hand out the link
- record_redirect(): merge the redirect parameters into the record
- verify(): confirm with the server (coalesced, retried with backoff)
- resume(): one automatic verification pass after a reload
- dismiss(): user clears a FAILED record
"""
import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from config.settings import Settings, settings as default_settings
from .cache import DataCategory, RequestCoalescer, TimedCache, get_ttl_for_category
from .entitlement import EntitlementStore
from .errors import AuthenticationError, BusinessRejection, SyncError, TransientNetworkError
from .models import (
    CheckoutResult,
    ConfirmationState,
    PendingConfirmation,
    VerificationOutcome,
)
from .notifications import LoggingNotifier, Notifier
from .schemas import VerifyPaymentResponse
from .storage import PaymentReturnMarker, PendingConfirmationRepository
from .transport import AuthorityClient

logger = logging.getLogger("sync.payment")

# Reason codes reported in VerificationOutcome.error_code / CheckoutResult.error_code
MISSING_PARAMETERS = "MISSING_PARAMETERS"
NOT_FOUND = "NOT_FOUND"
UNAUTHORIZED = "UNAUTHORIZED"
CONNECTION_ERROR = "CONNECTION_ERROR"
REJECTED = "REJECTED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
ALREADY_SUBSCRIBED = "ALREADY_SUBSCRIBED"
INVALID_RESPONSE = "INVALID_RESPONSE"


def confirmation_backoff(attempt: int, base: float = 1.0) -> float:
    """
    Delay before retry number `attempt` (0-based): base * 2^attempt.

    With base=1.0 the retries wait 1s, 2s, 4s.
    """
    return base * (2 ** attempt)


def _is_already_subscribed(error: BusinessRejection) -> bool:
    if error.code == ALREADY_SUBSCRIBED:
        return True
    return "already subscribed" in (error.message or "").lower()


class PaymentConfirmationEngine:
    """
    State machine over the single persisted PendingConfirmation record.

    verify() and begin_checkout() never raise; they return result objects.
    At most one verify-payment call per external reference is in flight,
    and a success is remembered briefly so a duplicate caller right after
    it gets the same outcome without another call.
    """

    def __init__(
        self,
        client: AuthorityClient,
        coalescer: RequestCoalescer,
        repository: PendingConfirmationRepository,
        entitlements: EntitlementStore,
        cache: TimedCache,
        return_marker: Optional[PaymentReturnMarker] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the engine.

        Args:
            client: Authority server client
            coalescer: Shared request coalescer
            repository: Persisted PendingConfirmation record
            entitlements: Store refreshed once a payment is confirmed
            cache: Cache for recent successful outcomes
            return_marker: Flag set when the payment redirect lands
            notifier: Where user-facing notifications go
            config: Settings (defaults to module settings)
            sleep: Coroutine function used for backoff delays
        """
        self._client = client
        self._coalescer = coalescer
        self._repository = repository
        self._entitlements = entitlements
        self._cache = cache
        self._return_marker = return_marker
        self._notifier = notifier or LoggingNotifier()
        self._config = config or default_settings
        self._sleep = sleep
        self._resumed = False

    @property
    def pending(self) -> Optional[PendingConfirmation]:
        """The persisted record, if any (drives the pending-payment indicator)."""
        return self._repository.load()

    # =========================================================================
    # Checkout
    # =========================================================================

    async def begin_checkout(self, plan_id: str) -> CheckoutResult:
        """
        Create a payment order and persist the record before the user leaves.

        Args:
            plan_id: Plan the user selected

        Returns:
            CheckoutResult carrying the payment link on success
        """
        self._repository.remember_selected_plan(plan_id)
        logger.info(f"Creating payment order for plan {plan_id}")

        try:
            order = await self._client.create_payment_order(plan_id)
        except BusinessRejection as e:
            logger.warning(f"Payment order rejected [{e.code}]: {e.message}")
            if _is_already_subscribed(e):
                await self._refresh_entitlements()
                self._notifier.notify("info", "You already have an active subscription")
                return CheckoutResult(ok=False, reason=e.message, error_code=ALREADY_SUBSCRIBED)
            self._notifier.notify("error", e.message)
            return CheckoutResult(ok=False, reason=e.message, error_code=e.code)
        except AuthenticationError as e:
            logger.warning(f"Payment order rejected, session expired: {e}")
            self._notifier.notify("error", "Please log in again to subscribe")
            return CheckoutResult(ok=False, reason=str(e), error_code=UNAUTHORIZED)
        except TransientNetworkError as e:
            logger.warning(f"Payment order failed: {e}")
            self._notifier.notify("error", "Connection to server failed. Please try again.")
            return CheckoutResult(ok=False, reason=str(e), error_code=CONNECTION_ERROR)
        except Exception as e:
            logger.exception(f"Unexpected error creating payment order for {plan_id}")
            self._notifier.notify("error", "Failed to create payment order")
            return CheckoutResult(ok=False, reason=str(e), error_code=UNEXPECTED_ERROR)

        if not order.payment_link or not (order.order_id or order.link_id):
            logger.error(f"Payment order for {plan_id} came back without a link or order id")
            self._notifier.notify("error", "Failed to create payment order")
            return CheckoutResult(
                ok=False, reason="Invalid payment order response", error_code=INVALID_RESPONSE
            )

        record = PendingConfirmation(
            plan_ref=order.plan_id or plan_id,
            order_id=order.order_id,
            link_id=order.link_id,
            payment_ref=order.payment_ref,
        )
        self._repository.save(record)
        logger.info(f"Payment order {record.external_ref} created, awaiting payment")
        return CheckoutResult(ok=True, payment_link=order.payment_link, record=record)

    def record_redirect(
        self,
        order_id: Optional[str] = None,
        link_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
        plan_ref: Optional[str] = None,
    ) -> PendingConfirmation:
        """
        Merge the redirect's URL parameters into the persisted record.

        Values already on the record are kept. Without a record, one is
        created from the parameters and the last selected plan. Also sets
        the "returned from payment" marker.

        Returns:
            The persisted record
        """
        record = self._repository.load()
        if record is None:
            record = PendingConfirmation(
                plan_ref=plan_ref or self._repository.last_selected_plan()
            )
            logger.info("Payment redirect without a pending record, creating one")

        record.order_id = record.order_id or order_id
        record.link_id = record.link_id or link_id
        record.payment_ref = record.payment_ref or payment_ref
        record.plan_ref = record.plan_ref or plan_ref

        self._repository.save(record)
        if self._return_marker is not None:
            self._return_marker.mark()
        return record

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify(self, record: Optional[PendingConfirmation] = None) -> VerificationOutcome:
        """
        Confirm a payment with the server.

        Args:
            record: Record to verify (defaults to the persisted one)

        Returns:
            VerificationOutcome; never raises
        """
        if record is None:
            record = self._repository.load()
        if record is None:
            return VerificationOutcome(
                ok=False,
                state=ConfirmationState.FAILED,
                reason="No pending payment to verify",
                error_code=MISSING_PARAMETERS,
            )

        if record.state is ConfirmationState.CONFIRMED:
            return VerificationOutcome(
                ok=True, state=ConfirmationState.CONFIRMED, attempts=record.attempts
            )

        missing = record.missing_parameters
        if missing:
            reason = f"Missing {', '.join(missing)}"
            logger.error(f"Payment verification failed: {reason}")
            return VerificationOutcome(
                ok=False,
                state=ConfirmationState.FAILED,
                reason=reason,
                error_code=MISSING_PARAMETERS,
            )

        ref = record.external_ref
        outcome_key = f"confirmation:{ref}"
        hit = self._cache.get(outcome_key)
        if hit is not None and hit.fresh:
            logger.debug(f"Payment {ref} already confirmed, reusing outcome")
            return replace(hit.value, from_cache=True)

        return await self._coalescer.run(
            f"verify-payment:{ref}", lambda: self._run_verification(record)
        )

    async def _run_verification(self, record: PendingConfirmation) -> VerificationOutcome:
        ref = record.external_ref
        record.state = ConfirmationState.VERIFYING
        record.last_error = None
        self._repository.save(record)
        logger.info(f"Verifying payment {ref} for plan {record.plan_ref}")

        try:
            response = await self._call_with_retry(record)
        except TransientNetworkError as e:
            return self._fail(
                record, CONNECTION_ERROR, "Connection to server failed. Please try again.", e
            )
        except AuthenticationError as e:
            return self._fail(record, UNAUTHORIZED, "Unauthorized. Please log in again.", e)
        except BusinessRejection as e:
            return self._fail(record, e.code, e.message, e)
        except Exception as e:
            logger.exception(f"Unexpected error verifying payment {ref}")
            return self._fail(record, UNEXPECTED_ERROR, "An unexpected error occurred", e)

        if not response.ok:
            return self._fail(
                record,
                response.error_code or REJECTED,
                response.reason or "Payment could not be verified",
            )

        return await self._confirm(record)

    async def _call_with_retry(self, record: PendingConfirmation) -> VerifyPaymentResponse:
        """verify-payment with exponential backoff on transient failures only."""
        base = self._config.confirmation_backoff_base_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.confirmation_max_retries + 1),
            wait=lambda retry_state: confirmation_backoff(retry_state.attempt_number - 1, base),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=lambda retry_state: logger.warning(
                f"verify-payment attempt {retry_state.attempt_number} for "
                f"{record.external_ref} failed, retrying"
            ),
            sleep=self._sleep,
            reraise=True,
        )

        response = None
        async for attempt in retrying:
            with attempt:
                record.attempts += 1
                self._repository.save(record)
                response = await self._client.verify_payment(
                    record.plan_ref,
                    order_id=record.order_id,
                    link_id=record.link_id,
                    payment_ref=record.payment_ref,
                )
        return response

    async def _confirm(self, record: PendingConfirmation) -> VerificationOutcome:
        record.state = ConfirmationState.CONFIRMED
        self._repository.delete()

        outcome = VerificationOutcome(
            ok=True, state=ConfirmationState.CONFIRMED, attempts=record.attempts
        )
        self._cache.set(
            f"confirmation:{record.external_ref}",
            outcome,
            ttl=get_ttl_for_category(DataCategory.CONFIRMATION_OUTCOME, self._config),
        )
        logger.info(f"Payment {record.external_ref} confirmed after {record.attempts} attempt(s)")

        await self._refresh_entitlements()
        self._notifier.notify("success", "Subscription activated")
        return outcome

    def _fail(
        self,
        record: PendingConfirmation,
        code: str,
        reason: str,
        error: Optional[Exception] = None,
    ) -> VerificationOutcome:
        """Mark FAILED and keep the record so the user can see and dismiss it."""
        record.state = ConfirmationState.FAILED
        record.last_error = code
        self._repository.save(record)
        logger.warning(
            f"Payment {record.external_ref} verification failed [{code}]: {error or reason}"
        )
        self._notifier.notify("error", reason)
        return VerificationOutcome(
            ok=False,
            state=ConfirmationState.FAILED,
            reason=reason,
            error_code=code,
            attempts=record.attempts,
        )

    async def _refresh_entitlements(self) -> None:
        try:
            await self._entitlements.refresh(force=True)
        except SyncError as e:
            logger.warning(f"Entitlement refresh after payment failed: {e}")

    # =========================================================================
    # Reload and dismissal
    # =========================================================================

    async def resume(self) -> Optional[VerificationOutcome]:
        """
        One automatic verification pass for a record left by a previous run.

        Only the first call per engine does anything.

        Returns:
            The outcome, or None if nothing needed resuming
        """
        if self._resumed:
            return None
        self._resumed = True

        record = self._repository.load()
        if record is None:
            return None
        if record.state is ConfirmationState.CONFIRMED:
            self._repository.delete()
            return None

        logger.info(
            f"Resuming verification of payment {record.external_ref} "
            f"[state={record.state.value}]"
        )
        return await self.verify(record)

    def dismiss(self) -> bool:
        """
        Clear a FAILED record (user dismissed the pending-payment indicator).

        Returns:
            True if a record was removed
        """
        record = self._repository.load()
        if record is None or record.state is not ConfirmationState.FAILED:
            return False
        self._repository.delete()
        logger.info(f"Dismissed failed payment {record.external_ref}")
        return True
