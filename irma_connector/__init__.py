"""
IRMA Claim Connector
====================

Ghi nhận các khai báo (claims) có chữ ký vào nhật ký chỉ-thêm, định địa chỉ
theo nội dung, và xác thực thuộc tính qua IRMA.

Components:
- IRMAConnector: Facade cho claim / get / observe
- Reference codec: did / link <-> Reference
- Claim model: Claim, canonicalize, build_claim
- Access control: DISCIPL_ALLOW rules
- VerificationSession: IRMA session state machine
- KeyManager: Ed25519 / secp256k1 identities

Reference: https://irma.app/docs/
"""

from .access import AccessControlMessage, AllowRule, PlainMessage, allow_message, classify, evaluate, parse_allow
from .claim import Claim, build_claim, canonicalize, equals_existing
from .config import ConnectorSettings
from .connector import ClaimSubscription, IRMAConnector, Ssid
from .errors import (
    ChainConflict,
    ConnectorError,
    ConnectorNotImplemented,
    MalformedIdentifier,
    MalformedLink,
    NotFound,
    SessionCancelled,
    SessionError,
    SessionProtocolError,
    SessionRegistrationFailed,
    SessionStateError,
    SessionTimedOut,
    SigningFailed,
    StoreError,
)
from .irma_client import DisclosureRequest, IrmaClient, IssuanceRequest, SessionPackage
from .key_manager import Identity, KeyManager, KeyPair
from .reference import (
    Reference,
    did_from_reference,
    link_from_reference,
    reference_from_did,
    reference_from_link,
)
from .session import SessionPolicy, SessionResult, SessionStatus, VerificationSession
from .store import ClaimStore, HttpClaimStore, MemoryClaimStore, open_store

__version__ = "1.0.0"
__all__ = [
    # Connector
    "IRMAConnector",
    "ClaimSubscription",
    "Ssid",
    "ConnectorSettings",

    # References
    "Reference",
    "reference_from_did",
    "reference_from_link",
    "link_from_reference",
    "did_from_reference",

    # Claims
    "Claim",
    "canonicalize",
    "build_claim",
    "equals_existing",

    # Access control
    "AllowRule",
    "PlainMessage",
    "AccessControlMessage",
    "parse_allow",
    "classify",
    "evaluate",
    "allow_message",

    # Keys
    "KeyManager",
    "KeyPair",
    "Identity",

    # Stores
    "ClaimStore",
    "MemoryClaimStore",
    "HttpClaimStore",
    "open_store",

    # IRMA sessions
    "IrmaClient",
    "IssuanceRequest",
    "DisclosureRequest",
    "SessionPackage",
    "SessionPolicy",
    "SessionResult",
    "SessionStatus",
    "VerificationSession",

    # Errors
    "ConnectorError",
    "MalformedIdentifier",
    "MalformedLink",
    "NotFound",
    "SigningFailed",
    "ConnectorNotImplemented",
    "StoreError",
    "ChainConflict",
    "SessionError",
    "SessionRegistrationFailed",
    "SessionCancelled",
    "SessionTimedOut",
    "SessionProtocolError",
    "SessionStateError",
]
