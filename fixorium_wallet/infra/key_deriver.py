"""
Deterministic wallet derivation

A verified identity credential plus the application secret salt always
yields the same Ed25519 keypair. Nothing is stored: determinism replaces
key storage.
"""

from __future__ import annotations

import hashlib
import re

from solders.keypair import Keypair

from ..errors import InvalidCredential, SignerError
from ..types import IdentityKind, SigningKeypair

SEED_LENGTH = 32
SECRET_KEY_LENGTH = 64

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_GMAIL_RE = re.compile(r"^[^\s@]+@gmail\.com$", re.IGNORECASE)
_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_FORMATTING_RE = re.compile(r"[\s\-\(\)]")


def derive_seed(identity: str, salt: str, domain_tag: str) -> bytes:
    """SHA-256 over identity || salt || domain_tag"""
    _check_credential(identity, salt)
    return hashlib.sha256((identity + salt + domain_tag).encode("utf-8")).digest()


def keypair_from_seed(seed: bytes) -> SigningKeypair:
    """
    Build a SigningKeypair from a 32-byte Ed25519 seed

    Raises:
        SignerError: If the seed is not exactly 32 bytes
    """
    if len(seed) != SEED_LENGTH:
        raise SignerError.bad_seed_length(len(seed), SEED_LENGTH)

    keypair = Keypair.from_seed(seed)
    secret = bytearray(bytes(keypair))
    if len(secret) != SECRET_KEY_LENGTH:
        raise SignerError.failed(f"unexpected secret key length {len(secret)}")

    return SigningKeypair(
        public_address=str(keypair.pubkey()),
        secret_material=secret,
    )


def derive(identity: str, salt: str, domain_tag: str = IdentityKind.USER_ID.domain_tag) -> SigningKeypair:
    """
    Derive the signing keypair for an identity credential

    Pure and deterministic: the same (identity, salt, domain_tag) produces
    the same address and secret on every platform. The identity is used
    exactly as given; call normalize_identity() first when the credential
    comes from user input.

    Args:
        identity: Verified identity credential (email, phone, user id)
        salt: Application-wide secret salt
        domain_tag: Domain-separation tag

    Returns:
        SigningKeypair

    Raises:
        InvalidCredential: If identity or salt is empty or not a string
    """
    return keypair_from_seed(derive_seed(identity, salt, domain_tag))


def derive_for(identity: str, salt: str, kind: IdentityKind) -> SigningKeypair:
    """Derive with the domain tag belonging to an identity kind"""
    return derive(identity, salt, kind.domain_tag)


def normalize_identity(identity: str, kind: IdentityKind) -> str:
    """
    Canonical form of a credential for its kind

    Emails are trimmed and lowercased; phone numbers lose spaces, dashes
    and parentheses. User ids are used as-is.
    """
    if not isinstance(identity, str):
        raise InvalidCredential.malformed("identity must be a string")
    if kind == IdentityKind.EMAIL:
        return identity.strip().lower()
    if kind == IdentityKind.MOBILE:
        return _PHONE_FORMATTING_RE.sub("", identity)
    return identity


def validate_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email.strip().lower()))


def validate_gmail_address(email: str) -> bool:
    return bool(_GMAIL_RE.match(email.strip().lower()))


def validate_phone_number(phone_number: str) -> bool:
    return bool(_PHONE_RE.match(_PHONE_FORMATTING_RE.sub("", phone_number)))


def validate_identity(identity: str, kind: IdentityKind) -> None:
    """
    Check a normalized credential has the right shape for its kind

    Raises:
        InvalidCredential: With a message that does not echo the credential
    """
    _check_credential(identity, "-")
    if kind == IdentityKind.EMAIL and not validate_email(identity):
        raise InvalidCredential.malformed("not a valid email address")
    if kind == IdentityKind.MOBILE and not validate_phone_number(identity):
        raise InvalidCredential.malformed("not a valid phone number")


def _check_credential(identity: str, salt: str) -> None:
    if not isinstance(identity, str) or not isinstance(salt, str):
        raise InvalidCredential.malformed("identity and salt must be strings")
    if not identity:
        raise InvalidCredential.missing("identity")
    if not salt:
        raise InvalidCredential.missing("salt")
