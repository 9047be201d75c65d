"""
Revocation of refresh tokens by jti, and of whole refresh-token families.

A refresh token is revoked by writing its jti with a TTL equal to the
token's remaining lifetime: once the token would have expired anyway the
entry is useless, so it expires too and the store never needs a sweep.

Families: every refresh token issued from one authorization code shares a
family id (the `fam` claim). When a revoked refresh token is presented again
(replay, which usually means it was stolen) the whole family is revoked, so
neither the thief nor the legitimate client can keep refreshing from that
chain. A family entry lives for a full refresh-token lifetime, which covers
every descendant issued before the revocation.

Access tokens are never looked up here. They are short-lived by design.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from mcp_oauth.store import KeySpace, KVStore

logger = logging.getLogger(__name__)


class RevocationStore:
    """
    Revocation lists for refresh token ids and refresh-token families.

    Args:
        store: Shared KV store holding the revocation entries
        keys: Key builder for the deployment's namespace
        family_ttl: Seconds a family entry lives (the refresh-token lifetime)
        clock: Wall clock returning epoch seconds

    Every method raises StorageUnavailableError when the store cannot be
    reached. None of them treat an outage as "not revoked".
    """

    def __init__(
        self,
        store: KVStore,
        keys: KeySpace,
        family_ttl: int,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._keys = keys
        self._family_ttl = family_ttl
        self._clock = clock

    async def is_revoked(self, jti: str) -> bool:
        """True if this refresh token id has been revoked or rotated."""
        return await self._store.get(self._keys.revoked_refresh(jti)) is not None

    async def revoke(self, jti: str, expires_at: float) -> bool:
        """
        Revoke a refresh token id until its natural expiry.

        Returns True iff this call performed the revocation. Rotation relies
        on that: of two concurrent refreshes of the same token, only the one
        that gets True may issue new tokens.
        """
        now = self._clock()
        ttl = max(expires_at - now, 1)
        return await self._store.set_if_absent(
            self._keys.revoked_refresh(jti), str(int(now)), ttl
        )

    async def is_family_revoked(self, family_id: str) -> bool:
        """True if the family this refresh token belongs to has been revoked."""
        return await self._store.get(self._keys.refresh_family(family_id)) is not None

    async def revoke_family(self, family_id: str) -> bool:
        """
        Revoke every refresh token carrying this family id.

        Returns:
            True if this call created the family entry, False if the family
            was already revoked
        """
        revoked = await self._store.set_if_absent(
            self._keys.refresh_family(family_id),
            str(int(self._clock())),
            self._family_ttl,
        )
        if revoked:
            logger.warning(
                "Refresh token family revoked",
                extra={"auth_data": {"family_id": family_id, "decision": "family_revoked"}},
            )
        return revoked
