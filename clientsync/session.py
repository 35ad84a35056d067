"""
Per-session wiring of the sync components.

ClientSession builds the shared cache, coalescer and storage once and
passes them to every component, then binds the scheduler and the stores to
the authentication lifecycle.
"""
import logging
import time
from datetime import date
from typing import Callable, Optional

from config.settings import Settings, settings as default_settings
from .cache import RequestCoalescer, TimedCache
from .collection import OptimisticCollection
from .entitlement import EntitlementStore
from .models import VerificationOutcome
from .notifications import LoggingNotifier, Notifier
from .payment import PaymentConfirmationEngine
from .scheduler import RefreshScheduler
from .storage import PaymentReturnMarker, PendingConfirmationRepository, PersistentStorage
from .transport import AuthorityClient, RequestsAuthorityClient

logger = logging.getLogger("sync.session")


class ClientSession:
    """
    Owner of one client session's sync state.

    Usage:
        session = ClientSession(token_provider=lambda: token)
        await session.login()
        await session.collection.toggle(item)
        session.navigate("/subscription")
        await session.logout()
    """

    def __init__(
        self,
        client: Optional[AuthorityClient] = None,
        storage: Optional[PersistentStorage] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
        sleep=None,
    ):
        """
        Initialize the session.

        Args:
            client: Authority client (defaults to RequestsAuthorityClient)
            storage: Persistent storage (defaults to settings.storage_path)
            notifier: Where user-facing notifications go
            config: Settings (defaults to module settings)
            token_provider: Bearer token source for the default client
            clock: Monotonic time source for caches and rate limiting
            today: Current calendar date, for daily usage resets
            sleep: Backoff sleep for payment verification
        """
        self.config = config or default_settings
        self.client = client or RequestsAuthorityClient(
            base_url=self.config.api_base_url,
            token_provider=token_provider,
            timeout=self.config.request_timeout_seconds,
        )
        self.storage = storage or PersistentStorage(self.config.storage_path)
        self.notifier = notifier or LoggingNotifier()
        self.authenticated = False

        self.cache = TimedCache(default_ttl=self.config.entitlement_ttl_seconds, clock=clock)
        self.coalescer = RequestCoalescer()
        self.return_marker = PaymentReturnMarker(self.storage)

        self.entitlements = EntitlementStore(
            self.client,
            self.cache,
            self.coalescer,
            storage=self.storage,
            config=self.config,
            today=today,
        )
        self.collection = OptimisticCollection(
            self.client,
            self.coalescer,
            cache=self.cache,
            entitlements=self.entitlements,
            notifier=self.notifier,
            is_authenticated=lambda: self.authenticated,
            on_auth_required=self._on_auth_required,
            config=self.config,
        )

        payment_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.payments = PaymentConfirmationEngine(
            self.client,
            self.coalescer,
            PendingConfirmationRepository(self.storage),
            self.entitlements,
            self.cache,
            return_marker=self.return_marker,
            notifier=self.notifier,
            config=self.config,
            **payment_kwargs,
        )
        self.scheduler = RefreshScheduler(
            self.entitlements.refresh,
            return_marker=self.return_marker,
            config=self.config,
            clock=clock,
        )

    async def login(self) -> Optional[VerificationOutcome]:
        """
        Session became authenticated.

        Starts the scheduler, resumes any pending payment confirmation and
        loads the saved-item list.

        Returns:
            The resumed verification outcome, if there was one
        """
        self.authenticated = True
        self.scheduler.start()
        outcome = await self.payments.resume()
        await self.collection.refresh()
        logger.info("Session started")
        return outcome

    async def logout(self) -> None:
        """Session ended: stop timers and forget user state."""
        self.authenticated = False
        self.scheduler.stop()
        self.entitlements.reset()
        self.collection.reset()
        self.cache.invalidate()
        logger.info("Session ended")

    def navigate(self, route: str) -> None:
        """Current route changed."""
        self.scheduler.on_navigation(route)

    def _on_auth_required(self) -> None:
        logger.warning("Server rejected the session, logging out")
        self.authenticated = False
        self.scheduler.stop()
