"""
Identity and key material types
"""

from dataclasses import dataclass, field
from enum import Enum


class IdentityKind(Enum):
    """
    Kind of verified identity a wallet is derived from

    The value is the domain-separation tag mixed into the key seed.
    Changing a tag changes every wallet address derived with it.
    """
    EMAIL = "solana-gmail-wallet"
    MOBILE = "solana-mobile-wallet"
    USER_ID = "solana-wallet"

    @property
    def domain_tag(self) -> str:
        return self.value


@dataclass(eq=False)
class SigningKeypair:
    """
    Ed25519 keypair derived for one identity

    Attributes:
        public_address: Public key (base58, 32 bytes decoded)
        secret_material: 64-byte secret key (seed || public key)

    The secret is held in a bytearray so it can be zeroed in place by wipe().
    It is excluded from repr and never serialized.
    """
    public_address: str
    secret_material: bytearray = field(repr=False)

    @property
    def is_wiped(self) -> bool:
        return not any(self.secret_material)

    def secret_bytes(self) -> bytes:
        """Copy of the secret for handing to the signing library"""
        return bytes(self.secret_material)

    def wipe(self) -> None:
        """Zero the secret material in place"""
        for i in range(len(self.secret_material)):
            self.secret_material[i] = 0

    def same_key_as(self, other: "SigningKeypair") -> bool:
        """Byte-for-byte comparison of address and secret"""
        return (
            self.public_address == other.public_address
            and bytes(self.secret_material) == bytes(other.secret_material)
        )

    def __str__(self) -> str:
        return f"SigningKeypair({self.public_address})"
