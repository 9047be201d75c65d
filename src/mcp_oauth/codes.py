"""Single-use authorization code records."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, replace

from mcp_oauth.store import KeySpace, KVStore


@dataclass(frozen=True)
class AuthorizationCodeRecord:
    """
    Everything bound to an authorization code at the moment it was minted.

    `consumed` flips to True exactly once, when the code is exchanged.
    `family_id` is filled in at that moment with the refresh-token family the
    exchange created, so a later replay of the code can revoke that family.
    """

    code: str
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    subject: str
    expires_at: int
    consumed: bool = False
    family_id: str | None = None

    def to_json(self) -> str:
        # Deterministic encoding: compare_and_swap compares serialized values.
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> AuthorizationCodeRecord:
        return cls(**json.loads(raw))


class AuthorizationCodeStore:
    """
    Persists authorization code records in the shared KV store.

    Records are written once with set_if_absent and changed only by
    `consume`, a compare_and_swap from the exact serialized record that was
    read. Store failures surface as StorageUnavailableError.

    Args:
        store: Shared KV store
        keys: Key builder for the deployment's namespace
    """

    def __init__(self, store: KVStore, keys: KeySpace):
        self._store = store
        self._keys = keys

    async def create(self, record: AuthorizationCodeRecord, ttl: float) -> bool:
        """Store a fresh record. False on a (practically impossible) code collision."""
        return await self._store.set_if_absent(self._keys.code(record.code), record.to_json(), ttl)

    async def get(self, code: str) -> AuthorizationCodeRecord | None:
        """
        Look up a code.

        Returns:
            The record, consumed or not, or None if the code is unknown or
            has expired from the store
        """
        raw = await self._store.get(self._keys.code(code))
        if raw is None:
            return None
        return AuthorizationCodeRecord.from_json(raw)

    async def consume(self, record: AuthorizationCodeRecord, family_id: str) -> bool:
        """
        Atomically mark an unconsumed record as consumed.

        Args:
            record: The record exactly as it was read
            family_id: Refresh-token family created by this exchange

        Returns False if another exchange got there first (or the record
        changed or expired since it was read).
        """
        if record.consumed:
            return False
        consumed = replace(record, consumed=True, family_id=family_id)
        return await self._store.compare_and_swap(
            self._keys.code(record.code), record.to_json(), consumed.to_json()
        )
