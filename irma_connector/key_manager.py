"""
Key Manager - Quản lý khóa và chữ ký cho danh tính người khai báo

Identity provider for the claim connector.

Supports:
- Ed25519: default claimant keys, the did carries the raw public key
- secp256k1: Ethereum accounts, the did carries the 20-byte address
"""

import base64
from typing import Callable, Dict, Optional
from dataclasses import dataclass
from datetime import datetime, timezone

# Cryptography imports
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

# Ethereum compatibility
from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import SigningFailed
from .reference import Reference, did_from_reference, reference_from_did


ED25519 = "Ed25519VerificationKey2020"
SECP256K1 = "EcdsaSecp256k1VerificationKey2019"

ED25519_REFERENCE_SIZE = 32
ETH_ADDRESS_SIZE = 20


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def key_type_for(reference: Reference) -> str:
    """Key type implied by the length of an actor reference"""
    if len(reference.value) == ED25519_REFERENCE_SIZE:
        return ED25519
    if len(reference.value) == ETH_ADDRESS_SIZE:
        return SECP256K1
    raise ValueError(f"No key type for a {len(reference.value)}-byte reference")


@dataclass
class KeyPair:
    """A claimant key pair together with the did derived from it"""
    did: str
    key_type: str
    public_key: str  # base64url raw key (Ed25519) or 0x address (secp256k1)
    private_key: Optional[str] = None  # Only stored locally, never shared
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()


class Identity:
    """
    Signing capability for one did

    Obtained from KeyManager.from_did once the private key has been
    checked against the did.
    """

    def __init__(self, did: str, key_type: str, reference: Reference,
                 signer: Callable[[bytes], bytes]):
        self.did = did
        self.key_type = key_type
        self._reference = reference
        self._signer = signer

    def sign(self, message: bytes) -> bytes:
        try:
            return self._signer(message)
        except Exception as e:
            raise SigningFailed(f"Signing failed for {self.did}: {e}") from e

    def public_key_reference(self) -> Reference:
        return self._reference


class KeyManager:
    """
    Manages claimant keys

    Features:
    - Generate Ed25519 and secp256k1 key pairs with their did
    - Resolve a (did, private key) pair into a signing Identity
    - Verify signatures against an actor reference
    """

    def __init__(self):
        self._keys: Dict[str, KeyPair] = {}

    # ==================== KEY GENERATION ====================

    def generate_ed25519(self) -> KeyPair:
        """
        Generate an Ed25519 key pair

        Returns:
            KeyPair whose did embeds the raw public key
        """
        private_key = ed25519.Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

        keypair = KeyPair(
            did=did_from_reference(Reference(public_bytes)),
            key_type=ED25519,
            public_key=_b64encode(public_bytes),
            private_key=_b64encode(private_bytes)
        )
        self._keys[keypair.did] = keypair
        return keypair

    def generate_secp256k1(self) -> KeyPair:
        """
        Generate a secp256k1 key pair (Ethereum compatible)

        Returns:
            KeyPair whose did embeds the account address
        """
        account = Account.create()
        return self.from_ethereum_key(account.key.hex())

    def from_ethereum_key(self, private_key: str) -> KeyPair:
        """
        Create KeyPair from an existing Ethereum private key

        Args:
            private_key: hex string, with or without 0x prefix
        """
        account = Account.from_key(private_key)
        address = bytes.fromhex(account.address[2:])

        keypair = KeyPair(
            did=did_from_reference(Reference(address)),
            key_type=SECP256K1,
            public_key=account.address,
            private_key=private_key
        )
        self._keys[keypair.did] = keypair
        return keypair

    def get_key(self, did: str) -> Optional[KeyPair]:
        return self._keys.get(did)

    # ==================== IDENTITY ====================

    def from_did(self, did: str, private_key: str) -> Identity:
        """
        Build a signing identity for did

        Args:
            did: Claimant did
            private_key: base64url Ed25519 seed or hex Ethereum key

        Returns:
            Identity able to sign for did

        Raises:
            MalformedIdentifier: did does not parse
            SigningFailed: key is unusable or does not belong to did
        """
        reference = reference_from_did(did)
        try:
            key_type = key_type_for(reference)
        except ValueError as e:
            raise SigningFailed(str(e)) from e

        if key_type == ED25519:
            try:
                key = ed25519.Ed25519PrivateKey.from_private_bytes(_b64decode(private_key))
            except Exception as e:
                raise SigningFailed(f"Unusable Ed25519 key for {did}") from e
            public_bytes = key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            )
            signer = key.sign
        else:
            try:
                account = Account.from_key(private_key)
            except Exception as e:
                raise SigningFailed(f"Unusable secp256k1 key for {did}") from e
            public_bytes = bytes.fromhex(account.address[2:])

            def signer(message: bytes) -> bytes:
                signed = account.sign_message(encode_defunct(primitive=message))
                return bytes(signed.signature)

        if public_bytes != reference.value:
            raise SigningFailed(f"Private key does not belong to {did}")

        return Identity(did, key_type, reference, signer)

    # ==================== VERIFICATION ====================

    def verify(self, reference: Reference, message: bytes, signature: bytes) -> bool:
        """
        Verify a signature made by the actor behind reference

        Returns:
            True if signature is valid
        """
        try:
            key_type = key_type_for(reference)
        except ValueError:
            return False

        if key_type == ED25519:
            try:
                pub_key = ed25519.Ed25519PublicKey.from_public_bytes(reference.value)
                pub_key.verify(signature, message)
                return True
            except (InvalidSignature, ValueError):
                return False

        try:
            recovered = Account.recover_message(encode_defunct(primitive=message), signature=signature)
        except Exception:
            return False
        return bytes.fromhex(recovered[2:]) == reference.value
