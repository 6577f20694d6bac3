"""
Claim Model
===========

A claim is a signed statement appended to its issuer's log:

    {message, signature, issuer, previous}

``previous`` points at the issuer's prior claim, forming a per-issuer hash
chain. The claim's own reference is the SHA-256 of the canonical
(message, issuer, previous) triple, so identical submissions at the same
chain position share one reference.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .reference import Reference


def canonicalize(message: Any) -> bytes:
    """
    Deterministic serialization of a claim message

    Object keys are sorted at every level, so construction order never
    changes the result.
    """
    return json.dumps(
        message, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


@dataclass(frozen=True)
class Claim:
    """Immutable claim record"""
    message: Any
    signature: bytes
    issuer: Reference
    previous: Optional[Reference] = None

    def canonical_content(self) -> bytes:
        """Canonical bytes of the (message, issuer, previous) triple"""
        return canonicalize({
            "message": self.message,
            "issuer": self.issuer.encode(),
            "previous": self.previous.encode() if self.previous else None
        })

    def reference(self) -> Reference:
        return Reference(hashlib.sha256(self.canonical_content()).digest())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "signature": base64.urlsafe_b64encode(self.signature).decode("ascii").rstrip("="),
            "issuer": self.issuer.encode(),
            "previous": self.previous.encode() if self.previous else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Claim":
        signature = data["signature"]
        previous = data.get("previous")
        return cls(
            message=data["message"],
            signature=base64.urlsafe_b64decode(signature + "=" * (-len(signature) % 4)),
            issuer=Reference.decode(data["issuer"]),
            previous=Reference.decode(previous) if previous else None
        )


def claim_reference(claim: Claim) -> Reference:
    return claim.reference()


def build_claim(issuer: Reference, previous: Optional[Reference], message: Any, signer) -> Claim:
    """
    Sign message and assemble the claim

    Args:
        issuer: Actor reference of the claimant
        previous: Reference of the issuer's current head claim, or None
        message: Claim payload
        signer: Object with sign(bytes) -> bytes (an Identity)

    Raises:
        SigningFailed: propagated unchanged from the signer
    """
    signature = signer.sign(canonicalize(message))
    return Claim(message=message, signature=signature, issuer=issuer, previous=previous)


def equals_existing(candidate: Claim, stored: Claim) -> bool:
    """True iff canonical message, issuer and previous all match"""
    return (
        canonicalize(candidate.message) == canonicalize(stored.message)
        and candidate.issuer == stored.issuer
        and candidate.previous == stored.previous
    )


def verify_claim(claim: Claim, key_manager) -> bool:
    """Check the claim signature against its issuer reference"""
    return key_manager.verify(claim.issuer, canonicalize(claim.message), claim.signature)
