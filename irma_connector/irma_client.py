"""
IRMA Server Client
==================

Async HTTP client for the IRMA server (the attribute-verification authority).

Endpoints used:
- POST   /session                 start a session, returns token + sessionPtr
- GET    /session/{token}/status  INITIALIZED, PAIRING, CONNECTED, DONE, CANCELLED, TIMEOUT
- GET    /session/{token}/result  session result once DONE
- DELETE /session/{token}         abort the session

Reference: https://irma.app/docs/api-irma-server/
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import jwt

from .errors import SessionProtocolError, SessionRegistrationFailed


ISSUANCE_CONTEXT = "https://irma.app/ld/request/issuance/v2"
DISCLOSURE_CONTEXT = "https://irma.app/ld/request/disclosure/v2"

AUTH_METHODS = ("none", "token", "hmac", "publickey")

# JWT subject and request field per session type
_JWT_SUBJECTS = {"issuing": "issue_request", "disclosing": "verification_request"}
_JWT_FIELDS = {"issuing": "iprequest", "disclosing": "sprequest"}
_JWT_ALGORITHMS = {"hmac": "HS256", "publickey": "RS256"}


@dataclass
class IssuanceRequest:
    """Issue one credential with the given attribute values"""
    credential: str
    attributes: Dict[str, Any]
    validity: Optional[int] = None  # unix timestamp

    session_type = "issuing"

    def to_irma(self) -> Dict[str, Any]:
        credential = {
            "credential": self.credential,
            # IRMA attribute values are strings on the wire
            "attributes": {name: str(value) for name, value in self.attributes.items()}
        }
        if self.validity is not None:
            credential["validity"] = self.validity
        return {"@context": ISSUANCE_CONTEXT, "credentials": [credential]}


@dataclass
class DisclosureRequest:
    """Ask the holder to disclose the given attribute identifiers"""
    attributes: List[str] = field(default_factory=list)

    session_type = "disclosing"

    def to_irma(self) -> Dict[str, Any]:
        return {"@context": DISCLOSURE_CONTEXT, "disclose": [[list(self.attributes)]]}


@dataclass
class SessionPackage:
    """What the IRMA server returns for a new session"""
    token: str
    session_ptr: Dict[str, Any]
    frontend_request: Optional[Dict[str, Any]] = None


class IrmaClient:
    """
    Async HTTP client for an IRMA server

    Registration failures raise SessionRegistrationFailed, every later
    failure raises SessionProtocolError. Nothing is retried here.
    """

    def __init__(
        self,
        server_url: str,
        auth_method: str = "none",
        key: str = "",
        requestor_name: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        if auth_method not in AUTH_METHODS:
            raise ValueError(f"Unsupported IRMA auth method: {auth_method}")

        self.server_url = server_url.rstrip("/")
        self.auth_method = auth_method
        self.key = key
        self.requestor_name = requestor_name
        self.logger = logger or logging.getLogger(__name__)
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport
        )

    async def __aenter__(self) -> "IrmaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    # ==================== SESSION START ====================

    def _session_jwt(self, request) -> str:
        session_type = request.session_type
        payload = {
            "iat": int(time.time()),
            "iss": self.requestor_name,
            "sub": _JWT_SUBJECTS[session_type],
            _JWT_FIELDS[session_type]: {"request": request.to_irma()}
        }
        return jwt.encode(payload, self.key, algorithm=_JWT_ALGORITHMS[self.auth_method])

    def _start_kwargs(self, request) -> Dict[str, Any]:
        if self.auth_method in ("none", "token"):
            kwargs: Dict[str, Any] = {"json": request.to_irma()}
            if self.auth_method == "token":
                kwargs["headers"] = {"Authorization": self.key}
            return kwargs

        return {
            "content": self._session_jwt(request),
            "headers": {"Content-Type": "text/plain"}
        }

    async def start_session(self, request) -> SessionPackage:
        """
        Register a session request with the IRMA server

        Args:
            request: IssuanceRequest or DisclosureRequest

        Returns:
            SessionPackage with token and session pointer

        Raises:
            SessionRegistrationFailed: server unreachable, rejected or answered garbage
        """
        try:
            kwargs = self._start_kwargs(request)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise SessionRegistrationFailed(f"Could not sign session request: {e}") from e

        try:
            response = await self._client.post("/session", **kwargs)
        except httpx.HTTPError as e:
            raise SessionRegistrationFailed(f"IRMA server unreachable at {self.server_url}: {e}") from e

        if response.is_error:
            raise SessionRegistrationFailed(
                f"IRMA server rejected session ({response.status_code}): {response.text}"
            )

        try:
            data = response.json()
            package = SessionPackage(
                token=data["token"],
                session_ptr=data["sessionPtr"],
                frontend_request=data.get("frontendRequest")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SessionRegistrationFailed(f"Malformed session package from IRMA server: {e}") from e

        self.logger.info("Started %s session %s", request.session_type, package.token)
        return package

    # ==================== SESSION FOLLOW-UP ====================

    async def _get(self, token: str, path: str) -> Any:
        try:
            response = await self._client.get(f"/session/{token}{path}")
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SessionProtocolError(f"GET /session/{token}{path} failed: {e}", token=token) from e

    async def get_status(self, token: str) -> str:
        data = await self._get(token, "/status")
        if isinstance(data, dict):
            data = data.get("status")
        if not isinstance(data, str):
            raise SessionProtocolError(f"Unexpected status payload: {data!r}", token=token)
        return data

    async def get_result(self, token: str) -> Dict[str, Any]:
        data = await self._get(token, "/result")
        if not isinstance(data, dict):
            raise SessionProtocolError(f"Unexpected result payload: {data!r}", token=token)
        return data

    async def cancel(self, token: str):
        """Abort the session at the server"""
        try:
            response = await self._client.delete(f"/session/{token}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SessionProtocolError(f"DELETE /session/{token} failed: {e}", token=token) from e
        self.logger.info("Aborted session %s", token)
