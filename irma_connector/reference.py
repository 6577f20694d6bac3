"""
Reference Codec
===============

Chuyển đổi giữa DID / link và Reference nội bộ.

DID format:  did:discipl:irma:<base64url reference>
Link format: link:discipl:irma:<base64url reference>

The ``irma`` segment names the channel a reference belongs to, so a link
handed to another party can be resolved back through this connector.
"""

import base64
import binascii
import re
from dataclasses import dataclass

from .errors import MalformedIdentifier, MalformedLink


CONNECTOR_NAME = "irma"
DID_PREFIX = f"did:discipl:{CONNECTOR_NAME}:"
LINK_PREFIX = f"link:discipl:{CONNECTOR_NAME}:"

_B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class Reference:
    """
    Opaque identifier for an actor (public key) or a stored claim (content hash)

    Two references are equal iff their bytes are equal.
    """
    value: bytes

    def __post_init__(self):
        if not isinstance(self.value, bytes) or not self.value:
            raise ValueError("Reference requires non-empty bytes")

    def encode(self) -> str:
        """Unpadded base64url text form"""
        return base64.urlsafe_b64encode(self.value).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, text: str) -> "Reference":
        if not text or not _B64URL.match(text) or len(text) % 4 == 1:
            raise ValueError(f"Not an unpadded base64url string: {text!r}")
        try:
            raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
        except (binascii.Error, ValueError) as e:
            raise ValueError(str(e)) from e

        # Trailing bits must be zero, one text form per reference
        reference = cls(raw)
        if reference.encode() != text:
            raise ValueError(f"Non-canonical base64url string: {text!r}")
        return reference

    def __str__(self) -> str:
        return self.encode()


def _decode_payload(text: str, prefix: str) -> Reference:
    if not isinstance(text, str) or not text.startswith(prefix):
        raise ValueError(f"expected prefix {prefix!r}")
    return Reference.decode(text[len(prefix):])


def reference_from_did(did: str) -> Reference:
    """
    Extract the actor reference from a did

    Raises:
        MalformedIdentifier: did does not match the grammar
    """
    try:
        return _decode_payload(did, DID_PREFIX)
    except ValueError as e:
        raise MalformedIdentifier(str(did), str(e)) from e


def reference_from_link(link: str) -> Reference:
    """
    Extract the claim reference from a link

    Raises:
        MalformedLink: link does not decode
    """
    try:
        return _decode_payload(link, LINK_PREFIX)
    except ValueError as e:
        raise MalformedLink(str(link), str(e)) from e


def link_from_reference(reference: Reference) -> str:
    return LINK_PREFIX + reference.encode()


def did_from_reference(reference: Reference) -> str:
    return DID_PREFIX + reference.encode()
