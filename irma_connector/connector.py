"""
IRMA Connector
==============

Public facade: configure, getName, getDidOfClaim, getLatestClaim, claim,
get, observe and newIdentity over a claim store, plus the bridge that turns
a completed IRMA session into a claim.

Claims of one issuer form a chain. Callers must serialize claim() calls for
the same did; concurrent calls race at the store, whose conflict policy
decides.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .access import AccessControlMessage, AllowRule, classify, is_visible
from .claim import Claim, build_claim, equals_existing
from .errors import ConnectorNotImplemented, MalformedIdentifier, NotFound, SigningFailed
from .key_manager import KeyManager
from .reference import (
    Reference,
    did_from_reference,
    link_from_reference,
    reference_from_did,
    reference_from_link,
)
from .session import SessionStatus, VerificationSession
from .store import ClaimStore, ClaimStream, open_store


@dataclass(frozen=True)
class Ssid:
    """Self-sovereign identity of a reader or claimant"""
    did: str
    privkey: str


def _empty_result() -> Dict[str, Any]:
    return {"data": "", "previous": None}


def _claim_view(claim: Claim) -> Dict[str, Any]:
    return {
        "data": claim.message,
        "previous": link_from_reference(claim.previous) if claim.previous else None
    }


class ClaimSubscription:
    """
    Live feed of new claims visible to one reader

    Yields {"did", "link", "claim": {"data", "previous"}} dicts.
    """

    def __init__(self, connector: "IRMAConnector", store: ClaimStore,
                 stream: ClaimStream, requester: Optional[Reference]):
        self._connector = connector
        self._store = store
        self._stream = stream
        self._requester = requester

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        async for reference, claim in self._stream:
            rules = await self._connector._rules(self._store, claim.issuer)
            if is_visible(rules, claim.issuer, self._requester, reference):
                return {
                    "did": did_from_reference(claim.issuer),
                    "link": link_from_reference(reference),
                    "claim": _claim_view(claim)
                }
        raise StopAsyncIteration

    def close(self):
        self._stream.close()


class IRMAConnector:
    """
    Claim connector backed by a content-addressed claim store

    Features:
    - Express claims, deduplicated per chain position
    - Resolve links and dids
    - Read claims through DISCIPL_ALLOW access rules
    - Record IRMA-certified attributes as claims
    """

    def __init__(
        self,
        store_endpoint: Union[str, ClaimStore] = "memory://",
        caching: Any = None,
        key_manager: Optional[KeyManager] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.key_manager = key_manager or KeyManager()
        self.logger = logger or logging.getLogger(__name__)
        self.store_endpoint: Union[str, ClaimStore, None] = None
        self.store: Optional[ClaimStore] = None
        self.caching: Any = None
        self.configure(store_endpoint, caching)

    def configure(self, store_endpoint: Union[str, ClaimStore], caching: Any = None):
        """
        Bind the connector to a claim store

        Args:
            store_endpoint: ``memory://``, an http(s) URL or a ClaimStore
            caching: Opaque caching policy handed to the store as is
        """
        if isinstance(store_endpoint, ClaimStore):
            store = store_endpoint
        else:
            store = open_store(store_endpoint, caching=caching, key_manager=self.key_manager, logger=self.logger)

        # Replace, never merge: in-flight calls keep the store they started with
        self.store_endpoint = store_endpoint
        self.caching = caching
        self.store = store

    def get_name(self) -> str:
        return "IRMA"

    async def aclose(self):
        await self.store.aclose()

    # ==================== LOOKUPS ====================

    async def get_did_of_claim(self, link: str) -> str:
        """
        Look up the did that made the claim behind link

        Raises:
            MalformedLink, NotFound
        """
        reference = reference_from_link(link)
        claim = await self.store.get_by_reference(reference)
        if claim is None:
            raise NotFound(f"No claim for {link}")
        return did_from_reference(claim.issuer)

    async def get_latest_claim(self, did: str) -> str:
        """
        Link to the last claim made by did

        Raises:
            MalformedIdentifier, NotFound
        """
        issuer = reference_from_did(did)
        claim = await self.store.get_latest_by_issuer(issuer)
        if claim is None:
            raise NotFound(f"No claims made by {did}")
        return link_from_reference(claim.reference())

    async def new_identity(self):
        raise ConnectorNotImplemented("Method not implemented.")

    # ==================== CLAIMS ====================

    async def claim(self, did: str, privkey: str, data: Any) -> str:
        """
        Expresses a claim

        The data is serialized with sorted keys, so only the data itself and
        not the insertion order of attributes matters. If the issuer's latest
        claim is this exact claim, its link is returned and nothing is
        stored.

        Args:
            did: Identity that expresses the claim
            privkey: Private key belonging to did
            data: Arbitrary JSON data; {"DISCIPL_ALLOW": {...}} manages access

        Returns:
            Link to the (new or existing) claim
        """
        self.logger.info("Making a claim")
        store = self.store

        issuer = reference_from_did(did)
        identity = self.key_manager.from_did(did, privkey)

        head = await store.get_latest_by_issuer(issuer)
        if head is not None:
            candidate = Claim(message=data, signature=b"", issuer=issuer, previous=head.previous)
            if equals_existing(candidate, head):
                self.logger.debug("Claim already exists for %s", did)
                return link_from_reference(head.reference())

        previous = head.reference() if head is not None else None
        claim = build_claim(issuer, previous, data, identity)
        reference = await store.put(claim)
        return link_from_reference(reference)

    async def get(self, link: str, ssid: Optional[Ssid] = None) -> Dict[str, Any]:
        """
        Read a claim as ssid

        Denied and missing claims both give {"data": "", "previous": None}.
        """
        store = self.store
        target = reference_from_link(link)

        claim = await store.get_by_reference(target)
        if claim is None:
            return _empty_result()

        requester = self._requester(ssid)
        rules = await self._rules(store, claim.issuer)
        if not is_visible(rules, claim.issuer, requester, target):
            return _empty_result()
        return _claim_view(claim)

    async def observe(self, ssid: Optional[Ssid] = None, did: Optional[str] = None):
        """
        Subscribe to new claims visible to ssid, optionally from one did

        Returns:
            ClaimSubscription, or False when the store cannot subscribe
        """
        store = self.store
        if not store.supports_subscriptions:
            return False

        issuer = reference_from_did(did) if did else None
        requester = self._requester(ssid)
        stream = store.subscribe(
            (lambda reference, claim: claim.issuer == issuer) if issuer else None
        )
        return ClaimSubscription(self, store, stream, requester)

    # ==================== IRMA ====================

    async def claim_session_result(self, did: str, privkey: str, session: VerificationSession) -> str:
        """
        Record the attributes certified by an IRMA session as a claim

        The identity is checked before the holder is involved. Only a Done
        session produces a claim; every other outcome raises its session
        error and writes nothing.
        """
        self.key_manager.from_did(did, privkey)

        if session.status is SessionStatus.INITIALIZED:
            result = await session.run()
        else:
            result = await session.wait()
        return await self.claim(did, privkey, result.attributes)

    # ==================== ACCESS ====================

    def _requester(self, ssid: Optional[Ssid]) -> Optional[Reference]:
        if ssid is None:
            return None
        try:
            return self.key_manager.from_did(ssid.did, ssid.privkey).public_key_reference()
        except (MalformedIdentifier, SigningFailed) as e:
            self.logger.debug("Reading anonymously, ssid rejected: %s", e)
            return None

    async def _rules(self, store: ClaimStore, issuer: Reference) -> List[AllowRule]:
        """Access rules found in the issuer's chain"""
        rules = []
        claim = await store.get_latest_by_issuer(issuer)
        while claim is not None:
            message = classify(claim.message)
            if isinstance(message, AccessControlMessage):
                rules.append(message.rule)
            claim = await store.get_by_reference(claim.previous) if claim.previous else None
        return rules
