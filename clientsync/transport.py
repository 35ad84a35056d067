"""
Authority server client interface and requests-based implementation.

The stores and engines depend only on the AuthorityClient protocol. The
concrete client maps transport failures and HTTP statuses onto the error
taxonomy in clientsync.errors, so nothing above this layer ever sees a
requests exception.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests
from pydantic import ValidationError

from config.settings import settings
from .errors import AuthenticationError, BusinessRejection, TransientNetworkError
from .models import PlanRef
from .schemas import (
    Envelope,
    EntitlementStatusPayload,
    PaymentOrderResponse,
    PlanCatalogPayload,
    SavedItemsPayload,
    ToggleItemResponse,
    VerifyPaymentResponse,
)

logger = logging.getLogger("sync.transport")


class AuthorityClient(Protocol):
    """
    Interface to the authority server.

    Implementations:
    - RequestsAuthorityClient: HTTP via requests (default)
    - Test doubles in tests/conftest.py
    """

    async def get_entitlement_status(self) -> EntitlementStatusPayload:
        """GET entitlement-status"""
        ...

    async def get_plan_catalog(self) -> List[PlanRef]:
        """GET plan-catalog"""
        ...

    async def get_saved_items(self) -> SavedItemsPayload:
        """GET saved-items"""
        ...

    async def toggle_item(
        self,
        item_id: str,
        desired_state: bool,
        item_data: Optional[Dict[str, Any]] = None,
    ) -> ToggleItemResponse:
        """POST toggle-item"""
        ...

    async def create_payment_order(self, plan_id: str) -> PaymentOrderResponse:
        """POST create-payment-order"""
        ...

    async def verify_payment(
        self,
        plan_ref: str,
        order_id: Optional[str] = None,
        link_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
    ) -> VerifyPaymentResponse:
        """POST verify-payment"""
        ...


class RequestsAuthorityClient:
    """
    HTTP implementation of AuthorityClient on a requests.Session.

    requests is blocking, so each call runs in the default thread pool via
    asyncio.to_thread and the event loop never blocks on the network.
    """

    ENTITLEMENT_STATUS_PATH = "/api/subscriptions/subscription-status"
    PLAN_CATALOG_PATH = "/api/subscriptions/plans"
    SAVED_ITEMS_PATH = "/api/users/favorites"
    TOGGLE_ITEM_PATH = "/api/recipes/favorites"
    CREATE_ORDER_PATH = "/api/subscriptions/create-order"
    VERIFY_PAYMENT_PATH = "/api/subscriptions/verify-payment"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Server root URL (defaults to settings.api_base_url)
            token_provider: Returns the current bearer token, or None
            timeout: Per-request timeout in seconds
            session: Pre-configured requests session
        """
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._token_provider = token_provider or (lambda: None)
        self._timeout = timeout or settings.request_timeout_seconds
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Envelope:
        """Blocking request; returns the decoded envelope or raises a SyncError."""
        url = f"{self._base_url}{path}"
        logger.info(f"{method} {path}")

        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=payload,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"Connection failed for {method} {path}: {e}")
            raise TransientNetworkError(f"Connection to server failed: {e}") from e
        except requests.RequestException as e:
            logger.warning(f"Request failed for {method} {path}: {e}")
            raise TransientNetworkError(str(e)) from e

        body = self._decode(response)
        status = response.status_code

        if status == 429 or status >= 500:
            raise TransientNetworkError(f"Server returned HTTP {status} for {path}")

        if status >= 400:
            message = body.get("message") or f"HTTP {status}"
            if body.get("limitReached"):
                raise BusinessRejection(
                    message, code="LIMIT_REACHED", limit_reached=True, status_code=status
                )
            if status in (401, 403):
                raise AuthenticationError(message)
            code = body.get("errorCode") or ("NOT_FOUND" if status == 404 else "REJECTED")
            raise BusinessRejection(message, code=code, status_code=status)

        try:
            return Envelope.model_validate(body)
        except ValidationError as e:
            raise BusinessRejection(
                f"Malformed response from {path}", code="INVALID_RESPONSE", status_code=status
            ) from e

    @staticmethod
    def _decode(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Envelope:
        return await asyncio.to_thread(self._send, method, path, params, payload)

    @staticmethod
    def _parse(model, data: Any, path: str):
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as e:
            raise BusinessRejection(
                f"Malformed payload from {path}", code="INVALID_RESPONSE"
            ) from e

    # ===== ENTITLEMENTS =====

    async def get_entitlement_status(self) -> EntitlementStatusPayload:
        # Timestamp defeats intermediary caches
        envelope = await self._request(
            "GET", self.ENTITLEMENT_STATUS_PATH, params={"t": int(time.time() * 1000)}
        )
        if not envelope.success:
            raise BusinessRejection(
                envelope.message or "Failed to check entitlement status",
                code=envelope.error_code or "REJECTED",
            )
        return self._parse(EntitlementStatusPayload, envelope.data, self.ENTITLEMENT_STATUS_PATH)

    async def get_plan_catalog(self) -> List[PlanRef]:
        envelope = await self._request("GET", self.PLAN_CATALOG_PATH)
        if not envelope.success:
            raise BusinessRejection(
                envelope.message or "Failed to fetch plan catalog",
                code=envelope.error_code or "REJECTED",
            )
        data = envelope.data
        if isinstance(data, list):
            data = {"plans": data}
        return self._parse(PlanCatalogPayload, data, self.PLAN_CATALOG_PATH).to_plans()

    # ===== SAVED ITEMS =====

    async def get_saved_items(self) -> SavedItemsPayload:
        envelope = await self._request("GET", self.SAVED_ITEMS_PATH)
        if not envelope.success:
            raise BusinessRejection(
                envelope.message or "Failed to fetch saved items",
                code=envelope.error_code or "REJECTED",
            )
        data = envelope.data
        if isinstance(data, list):
            data = {"items": data}
        return self._parse(SavedItemsPayload, data, self.SAVED_ITEMS_PATH)

    async def toggle_item(
        self,
        item_id: str,
        desired_state: bool,
        item_data: Optional[Dict[str, Any]] = None,
    ) -> ToggleItemResponse:
        payload: Dict[str, Any] = {"id": item_id, "desiredState": desired_state}
        if item_data is not None:
            payload["itemData"] = item_data

        envelope = await self._request("POST", self.TOGGLE_ITEM_PATH, payload=payload)
        data = envelope.data if isinstance(envelope.data, dict) else {}
        return ToggleItemResponse(
            ok=envelope.success,
            reason=envelope.message,
            limit_reached=envelope.limit_reached,
            updated_item=data.get("item"),
            limits=data.get("limits"),
        )

    # ===== PAYMENTS =====

    async def create_payment_order(self, plan_id: str) -> PaymentOrderResponse:
        envelope = await self._request(
            "POST", self.CREATE_ORDER_PATH, payload={"planId": plan_id}
        )
        if not envelope.success:
            raise BusinessRejection(
                envelope.message or "Failed to create order",
                code=envelope.error_code or "REJECTED",
            )
        return self._parse(PaymentOrderResponse, envelope.data, self.CREATE_ORDER_PATH)

    async def verify_payment(
        self,
        plan_ref: str,
        order_id: Optional[str] = None,
        link_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
    ) -> VerifyPaymentResponse:
        payload: Dict[str, Any] = {"planRef": plan_ref}
        if order_id:
            payload["orderId"] = order_id
        if link_id:
            payload["linkId"] = link_id
        if payment_ref:
            payload["paymentRef"] = payment_ref

        envelope = await self._request("POST", self.VERIFY_PAYMENT_PATH, payload=payload)
        return VerifyPaymentResponse(
            ok=envelope.success,
            reason=envelope.message,
            error_code=envelope.error_code,
        )
