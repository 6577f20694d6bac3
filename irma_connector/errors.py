"""
Connector Errors
================

Exception hierarchy shared by the claim connector and the IRMA session engine.

- Input errors (MalformedIdentifier, MalformedLink) are local and never retried
- NotFound is raised only where a result is required
- Session errors keep cancellation, timeout and protocol failures apart
"""

from typing import Optional


class ConnectorError(Exception):
    """Base exception for connector operations"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MalformedIdentifier(ConnectorError, ValueError):
    """A did does not match did:discipl:irma:<reference>"""

    def __init__(self, did: str, reason: str = "does not match the did grammar"):
        self.did = did
        super().__init__(f"Malformed did {did!r}: {reason}")


class MalformedLink(ConnectorError, ValueError):
    """A link could not be decoded into a reference"""

    def __init__(self, link: str, reason: str = "does not match the link grammar"):
        self.link = link
        super().__init__(f"Malformed link {link!r}: {reason}")


class NotFound(ConnectorError):
    """No claim exists for the requested reference or issuer"""


class SigningFailed(ConnectorError):
    """The identity provider refused to sign (wrong or unusable key)"""


class ConnectorNotImplemented(ConnectorError, NotImplementedError):
    """Operation intentionally not offered by this connector"""


# ==================== SESSION ERRORS ====================

class SessionError(ConnectorError):
    """Base exception for IRMA session failures"""

    def __init__(self, message: str, token: Optional[str] = None):
        self.token = token
        super().__init__(message)


class SessionRegistrationFailed(SessionError):
    """The IRMA server rejected the session request or was unreachable"""


class SessionCancelled(SessionError):
    """The holder, the IRMA app or the local caller aborted the session"""


class SessionTimedOut(SessionError):
    """No terminal event arrived within the waiting period"""


class SessionProtocolError(SessionError):
    """Transport or response-shape failure while a session was running"""


class SessionStateError(SessionError):
    """A transition was attempted that the session state machine forbids"""


# ==================== STORE ERRORS ====================

class StoreError(ConnectorError):
    """The claim store failed or answered with an unexpected shape"""


class ChainConflict(StoreError):
    """A claim's previous link is not the issuer's current head"""
