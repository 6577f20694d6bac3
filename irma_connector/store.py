"""
Claim Stores
============

Boundary to the append-only log that persists claims.

- MemoryClaimStore: in-process log with live subscriptions
- HttpClaimStore: httpx client for a remote store speaking

      POST /claims                  -> {"reference": "<b64url>"}
      GET  /claims/{reference}      -> claim json | 404
      GET  /issuers/{reference}/latest -> claim json | 404
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .claim import Claim, verify_claim
from .errors import ChainConflict, StoreError
from .reference import Reference


ClaimFilter = Callable[[Reference, Claim], bool]

DEFAULT_CACHE_ENTRIES = 1024
DEFAULT_STREAM_SIZE = 1024


class ClaimStream:
    """
    Live stream of claims appended to a store

    Iterate with ``async for reference, claim in stream``; close() ends the
    iteration. At most maxsize claims wait for a slow reader, older ones
    are dropped and counted in ``dropped``.
    """

    _CLOSED = object()

    def __init__(
        self,
        on_close: Optional[Callable[["ClaimStream"], None]] = None,
        maxsize: int = DEFAULT_STREAM_SIZE,
        logger: Optional[logging.Logger] = None
    ):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._on_close = on_close
        self.logger = logger or logging.getLogger(__name__)
        self.closed = False
        self.dropped = 0

    def _make_room(self):
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            self.logger.warning("Subscriber lagging, dropped %d claims so far", self.dropped)

    def push(self, reference: Reference, claim: Claim):
        if not self.closed:
            self._make_room()
            self._queue.put_nowait((reference, claim))

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._make_room()
        self._queue.put_nowait(self._CLOSED)
        if self._on_close:
            self._on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Tuple[Reference, Claim]:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


class ClaimStore(ABC):
    """Contract consumed by the connector"""

    supports_subscriptions = False

    @abstractmethod
    async def put(self, claim: Claim) -> Reference:
        """Append claim and return its content reference"""

    @abstractmethod
    async def get_by_reference(self, reference: Reference) -> Optional[Claim]:
        """Claim stored under reference, or None"""

    @abstractmethod
    async def get_latest_by_issuer(self, issuer: Reference) -> Optional[Claim]:
        """Head of the issuer's chain, or None"""

    def subscribe(self, claim_filter: Optional[ClaimFilter] = None) -> ClaimStream:
        raise NotImplementedError(f"{type(self).__name__} does not support subscriptions")

    async def aclose(self):
        pass


class MemoryClaimStore(ClaimStore):
    """
    In-memory append-only claim log

    Conflict policy: a new claim must link to its issuer's current head,
    otherwise ChainConflict is raised. Re-putting stored content returns the
    existing reference.
    """

    supports_subscriptions = True

    def __init__(self, key_manager=None, logger: Optional[logging.Logger] = None):
        self.key_manager = key_manager
        self.logger = logger or logging.getLogger(__name__)
        self._claims: Dict[Reference, Claim] = {}
        self._heads: Dict[Reference, Reference] = {}
        self._subscribers: List[Tuple[ClaimStream, Optional[ClaimFilter]]] = []

    async def put(self, claim: Claim) -> Reference:
        reference = claim.reference()
        if reference in self._claims:
            self.logger.debug("Claim %s already stored", reference)
            return reference

        if self.key_manager is not None and not verify_claim(claim, self.key_manager):
            raise StoreError(f"Invalid signature on claim from {claim.issuer}")

        head = self._heads.get(claim.issuer)
        if claim.previous != head:
            raise ChainConflict(
                f"Claim links to {claim.previous}, head of {claim.issuer} is {head}"
            )

        self._claims[reference] = claim
        self._heads[claim.issuer] = reference
        self.logger.debug("Stored claim %s for issuer %s", reference, claim.issuer)

        for stream, claim_filter in list(self._subscribers):
            if claim_filter is None or claim_filter(reference, claim):
                stream.push(reference, claim)
        return reference

    async def get_by_reference(self, reference: Reference) -> Optional[Claim]:
        return self._claims.get(reference)

    async def get_latest_by_issuer(self, issuer: Reference) -> Optional[Claim]:
        head = self._heads.get(issuer)
        return self._claims[head] if head else None

    def subscribe(self, claim_filter: Optional[ClaimFilter] = None) -> ClaimStream:
        stream = ClaimStream(on_close=self._unsubscribe, logger=self.logger)
        self._subscribers.append((stream, claim_filter))
        return stream

    def _unsubscribe(self, stream: ClaimStream):
        self._subscribers = [(s, f) for s, f in self._subscribers if s is not stream]

    def __len__(self) -> int:
        return len(self._claims)


class HttpClaimStore(ClaimStore):
    """
    Async HTTP client for a remote claim store

    Claims are immutable, so lookups by reference may be cached when a
    caching policy is configured.
    """

    def __init__(
        self,
        base_url: str,
        caching: Any = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        self._base_url = base_url.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport
        )
        self._cache: Optional[Dict[Reference, Claim]] = None
        self._max_entries = DEFAULT_CACHE_ENTRIES
        if caching:
            self._cache = {}
            if isinstance(caching, dict):
                self._max_entries = int(caching.get("max_entries", DEFAULT_CACHE_ENTRIES))

    async def _request(self, method: str, path: str, **kwargs) -> Optional[httpx.Response]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(f"Claim store unreachable at {self._base_url}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code == 409:
            raise ChainConflict(response.text)
        if response.is_error:
            raise StoreError(f"Claim store answered {response.status_code} for {method} {path}")
        return response

    def _parse_claim(self, response: httpx.Response) -> Claim:
        try:
            return Claim.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed claim from store: {e}") from e

    async def put(self, claim: Claim) -> Reference:
        response = await self._request("POST", "/claims", json=claim.to_dict())
        if response is None:
            raise StoreError("Claim store has no /claims endpoint")
        try:
            return Reference.decode(response.json()["reference"])
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed put response from store: {e}") from e

    async def get_by_reference(self, reference: Reference) -> Optional[Claim]:
        if self._cache is not None and reference in self._cache:
            self.logger.debug("Claim cache hit for %s", reference)
            return self._cache[reference]

        response = await self._request("GET", f"/claims/{reference.encode()}")
        if response is None:
            return None
        claim = self._parse_claim(response)

        if self._cache is not None:
            # Evict oldest if full
            if len(self._cache) >= self._max_entries:
                del self._cache[next(iter(self._cache))]
            self._cache[reference] = claim
        return claim

    async def get_latest_by_issuer(self, issuer: Reference) -> Optional[Claim]:
        response = await self._request("GET", f"/issuers/{issuer.encode()}/latest")
        if response is None:
            return None
        return self._parse_claim(response)

    async def aclose(self):
        await self._client.aclose()


def open_store(
    endpoint: str,
    caching: Any = None,
    key_manager=None,
    logger: Optional[logging.Logger] = None
) -> ClaimStore:
    """
    Open the claim store behind endpoint

    Args:
        endpoint: ``memory:`` / ``memory://...`` or an http(s) URL
        caching: Passed to stores that cache, ignored by the others
    """
    if endpoint.startswith("memory:"):
        return MemoryClaimStore(key_manager=key_manager, logger=logger)
    if endpoint.startswith(("http://", "https://")):
        return HttpClaimStore(endpoint, caching=caching, logger=logger)
    raise ValueError(f"Unsupported claim store endpoint: {endpoint}")
