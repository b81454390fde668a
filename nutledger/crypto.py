"""Cashu cryptographic primitives for BDHKE (Blind Diffie-Hellmann Key Exchange) and NUT-13 deterministic secrets."""

from __future__ import annotations

import base64
import hashlib
from typing import Mapping

from bip32 import BIP32
from coincurve import PrivateKey, PublicKey

from .types import BlindedMessage, BlindedSignature, CryptoError, MintProof

# secp256k1 field prime, used to negate points
SECP256K1_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

# NUT-13 purpose and coin type
DERIVATION_PURPOSE = 129372
DERIVATION_COIN_TYPE = 0
KEYSET_INT_MODULUS = 2**31 - 1


def hash_to_curve(message: bytes) -> PublicKey:
    """Hash a message to a point on the secp256k1 curve.

    The message is hashed with SHA-256 and the digest is tried as the x
    coordinate of a compressed point with even y (``02`` prefix). If that is
    not a point on the curve, the message itself is replaced by its hash and
    the procedure repeats.
    """
    msg = message
    while True:
        digest = hashlib.sha256(msg).digest()
        try:
            return PublicKey(b"\x02" + digest)
        except ValueError:
            msg = hashlib.sha256(msg).digest()


def encode_secret(secret: bytes) -> str:
    """Encode raw secret bytes the way they travel inside a proof."""
    return base64.b64encode(secret).decode("ascii")


def compute_y(secret: str) -> str:
    """Return the hex encoded ``Y`` point used by the mint to track a proof (NUT-07)."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


def _point_from_hex(value: str, what: str) -> PublicKey:
    try:
        return PublicKey(bytes.fromhex(value))
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid {what} point: {value!r}") from e


def _negate(point: PublicKey) -> PublicKey:
    # The negation of a point (x, y) is (x, p - y)
    raw = point.format(compressed=False)
    y = int.from_bytes(raw[33:65], "big")
    neg_y = ((SECP256K1_P - y) % SECP256K1_P).to_bytes(32, "big")
    return PublicKey(b"\x04" + raw[1:33] + neg_y)


def blind_message(secret: bytes, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a message for the mint.

    Args:
        secret: Raw secret bytes
        r: Optional blinding factor (will be generated if not provided)

    Returns:
        Tuple of (blinded_point, blinding_factor)
    """
    # Y is computed from the base64 form that ends up in the proof
    Y = hash_to_curve(encode_secret(secret).encode("ascii"))

    if r is None:
        r = PrivateKey().secret

    try:
        r_key = PrivateKey(r)
    except ValueError as e:
        raise CryptoError("Invalid blinding factor") from e

    # B' = Y + r*G
    B_ = PublicKey.combine_keys([Y, r_key.public_key])
    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a signature from the mint.

    Args:
        C_: Blinded signature from mint
        r: Blinding factor used
        K: Mint's public key for the signed amount

    Returns:
        Unblinded signature C = C' - r*K
    """
    try:
        rK = K.multiply(r)
        return PublicKey.combine_keys([C_, _negate(rK)])
    except ValueError as e:
        raise CryptoError("Failed to unblind signature") from e


def construct_proofs(
    signatures: list[BlindedSignature],
    rs: list[bytes],
    secrets: list[bytes],
    keys: Mapping[str, str],
) -> list[MintProof]:
    """Unblind mint signatures into proofs.

    ``signatures``, ``rs`` and ``secrets`` are index aligned. A single
    malformed point or missing key aborts the whole batch.
    """
    if not (len(signatures) == len(rs) == len(secrets)):
        raise CryptoError(
            f"Mismatched batch: {len(signatures)} signatures, "
            f"{len(rs)} blinding factors, {len(secrets)} secrets"
        )

    proofs: list[MintProof] = []
    for signature, r, secret in zip(signatures, rs, secrets):
        try:
            keyset_id = signature["id"]
            amount = int(signature["amount"])
            C_hex = signature["C_"]
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(f"Malformed blinded signature: {signature!r}") from e

        mint_key = keys.get(str(amount))
        if mint_key is None:
            raise CryptoError(f"No mint key for amount {amount} in keyset {keyset_id}")

        C_ = _point_from_hex(C_hex, "blinded signature")
        K = _point_from_hex(mint_key, "mint key")
        C = unblind_signature(C_, r, K)

        proofs.append(
            MintProof(
                id=keyset_id,
                amount=amount,
                secret=encode_secret(secret),
                C=C.format(compressed=True).hex(),
            )
        )
    return proofs


# ──────────────────────────────────────────────────────────────────────────────
# NUT-13 deterministic secrets
# ──────────────────────────────────────────────────────────────────────────────


def keyset_id_to_int(keyset_id: str) -> int:
    """Map a keyset ID to the integer used in the derivation path."""
    try:
        raw = bytes.fromhex(keyset_id)
    except ValueError:
        # legacy base64 keyset ids
        raw = base64.b64decode(keyset_id)
    return int.from_bytes(raw, "big") % KEYSET_INT_MODULUS


def _derivation_path(keyset_int: int, counter: int) -> str:
    return f"m/{DERIVATION_PURPOSE}'/{DERIVATION_COIN_TYPE}'/{keyset_int}'/{counter}'"


def derive_secret_and_r(seed: bytes, keyset_id: str, counter: int) -> tuple[bytes, bytes]:
    """Derive the secret and blinding factor for one counter index."""
    secrets, rs = _derive_range(BIP32.from_seed(seed), keyset_id, counter, 1)
    return secrets[0], rs[0]


def _derive_range(
    bip32: BIP32, keyset_id: str, counter_from: int, count: int
) -> tuple[list[bytes], list[bytes]]:
    keyset_int = keyset_id_to_int(keyset_id)
    secrets: list[bytes] = []
    rs: list[bytes] = []
    for counter in range(counter_from, counter_from + count):
        path = _derivation_path(keyset_int, counter)
        secrets.append(bip32.get_privkey_from_path(path + "/0"))
        rs.append(bip32.get_privkey_from_path(path + "/1"))
    return secrets, rs


def derive_blinded_messages(
    seed: bytes, keyset_id: str, amounts: list[int], counter_from: int
) -> tuple[list[BlindedMessage], list[bytes], list[bytes]]:
    """Derive blinded outputs for ``amounts`` starting at ``counter_from``.

    The same seed, keyset and counter range always yields the same outputs,
    which is what lets in-flight requests be restored from the mint.

    Returns:
        Tuple of (outputs, secrets, blinding_factors), index aligned
    """
    try:
        bip32 = BIP32.from_seed(seed)
    except ValueError as e:
        raise CryptoError("Invalid wallet seed") from e

    secrets, rs = _derive_range(bip32, keyset_id, counter_from, len(amounts))

    outputs: list[BlindedMessage] = []
    for amount, secret, r in zip(amounts, secrets, rs):
        B_, _ = blind_message(secret, r)
        outputs.append(
            BlindedMessage(
                amount=amount,
                B_=B_.format(compressed=True).hex(),
                id=keyset_id,
            )
        )
    return outputs, secrets, rs


def derive_keyset_id(keys: Mapping[str, str]) -> str:
    """Derive a version 00 keyset ID from its public keys (NUT-02)."""
    sorted_keys = sorted(keys.items(), key=lambda item: int(item[0]))
    pubkeys = b"".join(bytes.fromhex(pubkey) for _, pubkey in sorted_keys)
    return "00" + hashlib.sha256(pubkeys).hexdigest()[:14]
