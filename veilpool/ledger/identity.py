"""
Ledger identities and authenticated calls.

Provides:
1. `Address` - 32-byte account address (Ed25519 public key or derived key)
2. `Keypair` - Ed25519 signing identity
3. `derive_address` - deterministic composite-key derivation for escrows/records
4. `CallContext` - the set of verified identities a call carries

Security:
- Signatures are verified with the `cryptography` library, never simulated
- Derived addresses have no private key; only ledger logic can move their funds
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import ErrorCode, ledger_error

ADDRESS_LEN = 32
_DERIVATION_DOMAIN = b"veilpool.ledger.v1"


# =============================================================================
# Addresses
# =============================================================================

@dataclass(frozen=True, order=True)
class Address:
    """
    32-byte account address.

    Invariants:
    - raw is exactly 32 bytes
    """
    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != ADDRESS_LEN:
            raise ledger_error(ErrorCode.INVALID_ADDRESS, f"expected {ADDRESS_LEN} bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    def __str__(self) -> str:
        return self.raw.hex()

    def __repr__(self) -> str:
        return f"Address({self.raw.hex()[:16]}...)"

    def short(self) -> str:
        return self.raw.hex()[:12]

    @classmethod
    def from_hex(cls, value: str) -> "Address":
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ledger_error(ErrorCode.INVALID_ADDRESS, "not hex") from exc
        return cls(raw)


Seed = Union[bytes, str, int, Address]


def _seed_bytes(seed: Seed) -> bytes:
    if isinstance(seed, Address):
        return seed.raw
    if isinstance(seed, bool):
        raise TypeError("bool is not a valid derivation seed")
    if isinstance(seed, int):
        # u64 little-endian, like pool ids
        if not 0 <= seed < 2 ** 64:
            raise ledger_error(ErrorCode.INVALID_ADDRESS, f"integer seed out of u64 range: {seed}")
        return seed.to_bytes(8, "little")
    if isinstance(seed, str):
        return seed.encode("utf-8")
    return bytes(seed)


def derive_address(namespace: str, *seeds: Seed) -> Address:
    """
    Derive a deterministic address from a namespace and seeds.

    Each seed is length-prefixed so that ("ab", "c") and ("a", "bc") never
    collide.
    """
    h = hashlib.sha256()
    h.update(_DERIVATION_DOMAIN)
    for part in (namespace.encode("utf-8"), *(_seed_bytes(s) for s in seeds)):
        h.update(len(part).to_bytes(2, "little"))
        h.update(part)
    return Address(h.digest())


# =============================================================================
# Keypairs
# =============================================================================

class Keypair:
    """
    Ed25519 identity able to sign call payloads.

    Invariants:
    - address is the raw 32-byte public key
    - private key is never exposed through repr or serialization
    """

    def __init__(self, private_key: Optional[bytes] = None):
        if private_key is not None:
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key)
        else:
            self._private_key = ed25519.Ed25519PrivateKey.generate()
        public_bytes = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._address = Address(public_bytes)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls()

    @classmethod
    def from_seed(cls, label: str) -> "Keypair":
        """Deterministic keypair for tests and demos."""
        return cls(hashlib.sha256(label.encode("utf-8")).digest())

    @property
    def address(self) -> Address:
        return self._address

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def __repr__(self) -> str:
        return f"Keypair({self._address.short()})"


def verify_signature(address: Address, message: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature made by the key behind `address`."""
    try:
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(address.raw)
        public_key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


# =============================================================================
# Authenticated calls
# =============================================================================

@dataclass(frozen=True)
class CallContext:
    """
    Verified identities attached to one ledger call.

    The first signer is the fee payer and the default actor of operations that
    act "as the caller" (operator, owner, sponsor, beneficiary, requester).
    """
    signers: Tuple[Address, ...]

    def __post_init__(self) -> None:
        if not self.signers:
            raise ledger_error(ErrorCode.MISSING_SIGNER)

    @classmethod
    def of(cls, *identities: Union[Address, Keypair]) -> "CallContext":
        """Context for identities the substrate has already authenticated."""
        return cls(tuple(i.address if isinstance(i, Keypair) else i for i in identities))

    @classmethod
    def from_signatures(
        cls,
        message: bytes,
        signatures: Sequence[Tuple[Address, bytes]],
    ) -> "CallContext":
        """
        Build a context by verifying each (address, signature) over `message`.

        Raises:
            AuthorizationError: INVALID_SIGNATURE if any signature fails
        """
        verified = []
        for address, signature in signatures:
            if not verify_signature(address, message, signature):
                raise ledger_error(ErrorCode.INVALID_SIGNATURE, address.short())
            verified.append(address)
        return cls(tuple(verified))

    @classmethod
    def signed(cls, message: bytes, *keypairs: Keypair) -> "CallContext":
        """Sign `message` with every keypair and verify the result."""
        return cls.from_signatures(message, [(kp.address, kp.sign(message)) for kp in keypairs])

    @property
    def signer(self) -> Address:
        return self.signers[0]

    def is_signed_by(self, address: Address) -> bool:
        return address in self.signers

    def require_signer(self, address: Address, code: ErrorCode = ErrorCode.UNAUTHORIZED) -> None:
        if address not in self.signers:
            raise ledger_error(code, f"missing signature of {address.short()}")

    def require_any(self, addresses: Iterable[Address]) -> Address:
        for address in addresses:
            if address in self.signers:
                return address
        raise ledger_error(ErrorCode.UNAUTHORIZED)
