"""
FleetTrack Credential Manager

Acquires, caches and refreshes provider credentials.

A stored credential is reused until it is within the refresh buffer
(2 minutes) of its expiry. Refresh-then-persist is serialized twice:

    1. an in-process ``asyncio.Lock`` per token type, so concurrent
       coroutines in one worker trigger a single refresh
    2. a store lease (``SET NX PX`` on Redis), so several workers
       sharing one store do not refresh in parallel

After taking the lock the stored credential is re-read, and a refresh
that another writer finished in the meantime is reused. A worker that
finds the lease taken waits a bounded time for a fresh credential to
appear and refreshes on its own if it does not.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Any
import logging

from ..exceptions import FleetTrackError, ProviderAuthError, StoreError
from ..models import Credential, TokenType, utcnow
from ..store.base import TrackingStore


logger = logging.getLogger(__name__)

Refresher = Callable[[], Awaitable[Credential]]

REFRESH_BUFFER = timedelta(minutes=2)


class CredentialManager:
    """
    Cache-through access to provider tokens.

    Example:
        manager = CredentialManager(store, {
            TokenType.AUTHENTICATION: sim_client.login,
            TokenType.ACCESS: sim_client.oauth_token,
        })
        token = await manager.get_token(TokenType.AUTHENTICATION)
    """

    def __init__(
        self,
        store: TrackingStore,
        refreshers: Dict[TokenType, Refresher],
        lease_seconds: float = 30.0,
        lease_wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
    ):
        """
        Args:
            store: Where credentials and leases live
            refreshers: Refresh flow per token type; a type without one
                cannot be refreshed
            lease_seconds: Lease expiry, bounds a crashed refresher
            lease_wait_seconds: How long to wait on another worker's lease
            poll_interval_seconds: Poll period while waiting
        """
        self._store = store
        self._refreshers = dict(refreshers)
        self._lease_seconds = lease_seconds
        self._lease_wait_seconds = lease_wait_seconds
        self._poll_interval = poll_interval_seconds
        self._locks: Dict[TokenType, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _is_fresh(credential: Optional[Credential], now: Optional[datetime] = None) -> bool:
        if credential is None:
            return False
        return credential.expires_at - REFRESH_BUFFER > (now or utcnow())

    async def get_token(self, token_type: TokenType) -> str:
        """
        Return a usable token, refreshing it first if needed.

        Raises:
            ProviderAuthError: no refresh path, or the provider rejected it
            ProviderUnavailableError: the refresh call failed on the network
        """
        credential = await self._store.get_credential(token_type)
        if self._is_fresh(credential):
            return credential.value

        async with self._locks[token_type]:
            # Double-check after acquiring lock
            credential = await self._store.get_credential(token_type)
            if self._is_fresh(credential):
                return credential.value

            lease = await self._store.acquire_lease(
                f"credential:{token_type.value}", self._lease_seconds,
            )
            if lease is None:
                credential = await self._wait_for_fresh(token_type)
                if credential is not None:
                    return credential.value
                logger.warning(
                    f"Timed out waiting for another worker to refresh {token_type.value} token, "
                    f"refreshing locally"
                )

            try:
                credential = await self._refresh_and_store(token_type)
            finally:
                if lease is not None:
                    await self._release(token_type, lease)
            return credential.value

    async def _wait_for_fresh(self, token_type: TokenType) -> Optional[Credential]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lease_wait_seconds
        while loop.time() < deadline:
            await asyncio.sleep(self._poll_interval)
            credential = await self._store.get_credential(token_type)
            if self._is_fresh(credential):
                return credential
        return None

    async def _release(self, token_type: TokenType, lease: str) -> None:
        try:
            await self._store.release_lease(f"credential:{token_type.value}", lease)
        except StoreError as e:
            # The lease expires on its own
            logger.warning(f"Failed to release {token_type.value} credential lease: {e}")

    async def _refresh_and_store(self, token_type: TokenType) -> Credential:
        refresher = self._refreshers.get(token_type)
        if refresher is None:
            raise ProviderAuthError(f"No refresh path configured for {token_type.value} token")

        logger.info(f"Refreshing {token_type.value} token")
        credential = await refresher()

        try:
            await self._store.save_credential(credential)
        except StoreError as e:
            logger.error(f"Refreshed {token_type.value} token but failed to persist it: {e}")
        return credential

    async def refresh(self, token_type: TokenType) -> Credential:
        """Force a refresh regardless of the stored expiry."""
        async with self._locks[token_type]:
            return await self._refresh_and_store(token_type)

    async def refresh_all(self) -> Dict[str, Dict[str, Any]]:
        """
        Force-refresh every configured token type.

        Returns:
            Per token type: success flag, expiry or error message
        """
        results: Dict[str, Dict[str, Any]] = {}
        for token_type in self._refreshers:
            try:
                credential = await self.refresh(token_type)
                results[token_type.value] = {
                    "success": True,
                    "expires_at": credential.expires_at.isoformat(),
                }
            except FleetTrackError as e:
                logger.warning(f"Failed to refresh {token_type.value} token: {e}")
                results[token_type.value] = {"success": False, "error": str(e)}
            except Exception as e:
                logger.error(f"Unexpected error refreshing {token_type.value} token: {e}")
                results[token_type.value] = {"success": False, "error": str(e)}
        return results

    async def token_status(self) -> List[Dict[str, Any]]:
        """Stored tokens with expiry and validity."""
        now = utcnow()
        return [
            {
                "type": credential.token_type.value,
                "expires_at": credential.expires_at.isoformat(),
                "updated_at": credential.updated_at.isoformat(),
                "is_valid": credential.is_valid(now),
            }
            for credential in await self._store.list_credentials()
        ]
