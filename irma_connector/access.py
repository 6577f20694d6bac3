"""
Access Control Extension
========================

A claim whose message is ``{"DISCIPL_ALLOW": {"scope": <link>, "did": <did>}}``
restricts who may read the issuer's claims. Both fields are optional:

- scope absent: the rule covers the whole log of the issuer
- did absent: everyone is allowed

Rules are an overlay for readers. The write path stores them as ordinary
claims.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from .errors import MalformedIdentifier, MalformedLink
from .reference import (
    Reference,
    reference_from_did,
    reference_from_link,
)


ALLOW_MARKER = "DISCIPL_ALLOW"


@dataclass(frozen=True)
class AllowRule:
    scope: Optional[Reference] = None
    did: Optional[Reference] = None


@dataclass(frozen=True)
class PlainMessage:
    data: Any


@dataclass(frozen=True)
class AccessControlMessage:
    rule: AllowRule
    data: Any


Message = Union[PlainMessage, AccessControlMessage]


def parse_allow(message: Any) -> Optional[AllowRule]:
    """
    Recognize the reserved marker

    Malformed shapes are ordinary claims, so this never raises.
    """
    if not isinstance(message, dict) or set(message) != {ALLOW_MARKER}:
        return None

    body = message[ALLOW_MARKER]
    if body is None:
        body = {}
    if not isinstance(body, dict) or not set(body) <= {"scope", "did"}:
        return None

    try:
        scope = reference_from_link(body["scope"]) if body.get("scope") else None
        did = reference_from_did(body["did"]) if body.get("did") else None
    except (MalformedLink, MalformedIdentifier):
        return None

    return AllowRule(scope=scope, did=did)


def classify(data: Any) -> Message:
    """Discriminate a claim message into its tagged variant"""
    rule = parse_allow(data)
    if rule is None:
        return PlainMessage(data)
    return AccessControlMessage(rule, data)


def allow_message(scope: Optional[str] = None, did: Optional[str] = None) -> Dict[str, Any]:
    """Build the wire form of an access-control claim"""
    body = {}
    if scope is not None:
        body["scope"] = scope
    if did is not None:
        body["did"] = did
    return {ALLOW_MARKER: body}


def evaluate(rule: AllowRule, requester: Optional[Reference], target: Reference) -> bool:
    """Grant when the rule names no did or the requester, and covers target"""
    did_ok = rule.did is None or rule.did == requester
    scope_ok = rule.scope is None or rule.scope == target
    return did_ok and scope_ok


def applies_to(rule: AllowRule, target: Reference) -> bool:
    return rule.scope is None or rule.scope == target


def is_visible(
    rules: Iterable[AllowRule],
    issuer: Reference,
    requester: Optional[Reference],
    target: Reference
) -> bool:
    """
    Decide visibility of target for requester

    No applicable rule means public. The issuer always sees its own claims.
    """
    if requester is not None and requester == issuer:
        return True

    applicable = [rule for rule in rules if applies_to(rule, target)]
    if not applicable:
        return True
    return any(evaluate(rule, requester, target) for rule in applicable)
