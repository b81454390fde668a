"""
Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
import os
from typing import Any, Sequence, TypedDict, cast

import httpx

from .crypto import compute_y
from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    InvalidKeysetError,
    MintConnectionError,
    MintError,
    MintProof,
    Proof,
)

logger = logging.getLogger(__name__)

# Mints cap the number of Ys per checkstate request
CHECK_STATE_BATCH_SIZE = 100


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint.

        Network failures and timeouts raise :class:`MintConnectionError`,
        error responses raise :class:`MintError`.
        """
        if os.environ.get("MINT_DEBUG", "false").lower() == "true":
            logger.debug("MINT_DEBUG %s request to %s%s", method, self.url, path)
        try:
            response = await self.client.request(
                method,
                f"{self.url}{path}",
                json=json,
                params=params,
            )
        except httpx.TransportError as e:
            raise MintConnectionError(
                f"Could not reach mint {self.url}: {e.__class__.__name__}: {e}"
            ) from e

        if response.status_code >= 400:
            raise MintError(f"Mint returned {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise MintError(f"Mint returned invalid JSON for {path}") from e

    def _validate_keyset(self, keyset: dict[str, Any]) -> bool:
        """Validate keyset structure per NUT-01 specification."""
        required_fields = ["id", "unit", "keys"]
        if not all(field in keyset for field in required_fields):
            return False

        keys = keyset.get("keys", {})
        if not isinstance(keys, dict):
            return False

        for amount_str, pubkey in keys.items():
            try:
                if int(amount_str) <= 0:
                    return False
            except (ValueError, TypeError):
                return False
            if not self._is_valid_compressed_pubkey(pubkey):
                return False

        return True

    def _is_valid_compressed_pubkey(self, pubkey: str) -> bool:
        """Validate that pubkey is a hex encoded compressed secp256k1 public key."""
        try:
            # Compressed secp256k1 pubkeys are 33 bytes (66 hex chars)
            if len(pubkey) != 66:
                return False

            # Must start with 02 or 03 for compressed format
            if not pubkey.startswith(("02", "03")):
                return False

            bytes.fromhex(pubkey)
            return True
        except (ValueError, TypeError):
            return False

    def _validate_keys_response(self, response: dict[str, Any]) -> KeysResponse:
        """Validate and cast response to NUT-01 compliant KeysResponse.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01 specification
        """
        if "keysets" not in response:
            raise InvalidKeysetError("Response missing 'keysets' field")

        keysets = response["keysets"]
        if not isinstance(keysets, list):
            raise InvalidKeysetError("'keysets' must be a list")

        for i, keyset in enumerate(keysets):
            if not self._validate_keyset(keyset):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")

        return cast(KeysResponse, response)

    # ───────────────────────── Keys ─────────────────────────────────

    async def get_keys(self, keyset_id: str | None = None) -> list[KeysetKeys]:
        """Get mint public keys for one keyset, or for all active keysets.

        Implements NUT-01 specification for mint public key exchange.
        """
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path)
        return self._validate_keys_response(response)["keysets"]

    async def get_keysets(self) -> list[KeysetInfo]:
        """Get all keysets (active and inactive) with their fees."""
        response = await self._request("GET", "/v1/keysets")
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")
        return cast(list[KeysetInfo], keysets)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: CurrencyUnit = "sat",
        description: str | None = None,
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {
            "unit": unit,
            "amount": amount,
        }
        if description is not None:
            body["description"] = description

        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"),
        )

    async def mint(
        self,
        *,
        quote: str,
        outputs: list[BlindedMessage],
    ) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {
            "quote": quote,
            "outputs": outputs,
        }
        return cast(
            PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body)
        )

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(
        self,
        request: str,
        *,
        unit: CurrencyUnit = "sat",
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {
            "unit": unit,
            "request": request,
        }
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[MintProof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {
            "quote": quote,
            "inputs": inputs,
        }
        if outputs is not None:
            body["outputs"] = outputs

        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self,
        *,
        inputs: list[MintProof],
        outputs: list[BlindedMessage],
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {
            "inputs": inputs,
            "outputs": outputs,
        }
        return cast(
            PostSwapResponse, await self._request("POST", "/v1/swap", json=body)
        )

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        body: dict[str, Any] = {"Ys": Ys}
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json=body),
        )

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Restore signatures for previously submitted blinded messages (NUT-09)."""
        body: dict[str, Any] = {"outputs": outputs}
        response = cast(
            PostRestoreResponse, await self._request("POST", "/v1/restore", json=body)
        )
        # Older mints answer with "promises"
        if "signatures" not in response and "promises" in response:
            response["signatures"] = response["promises"]
        return response

    async def check_proof_states(
        self, proofs: Sequence[Proof | MintProof]
    ) -> tuple[list[Proof], list[Proof]]:
        """Partition proofs by the state the mint reports for them.

        Returns:
            Tuple of (spent, pending). Unspent proofs are in neither list; a
            proof the mint reports as spent is never also returned as pending.
        """
        ys = [compute_y(proof["secret"]) for proof in proofs]
        states: dict[str, str] = {}
        for start in range(0, len(ys), CHECK_STATE_BATCH_SIZE):
            batch = ys[start : start + CHECK_STATE_BATCH_SIZE]
            response = await self.check_state(Ys=batch)
            for entry in response.get("states", []):
                states[entry["Y"]] = entry["state"]

        spent: list[Proof] = []
        pending: list[Proof] = []
        for proof, y in zip(proofs, ys):
            state = states.get(y)
            if state == "SPENT":
                spent.append(cast(Proof, proof))
            elif state == "PENDING":
                pending.append(cast(Proof, proof))
        return spent, pending


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and OpenAPI spec
# ──────────────────────────────────────────────────────────────────────────────


class KeysetKeys(TypedDict):
    """Individual keyset per NUT-01 specification."""

    id: str  # keyset identifier
    unit: CurrencyUnit  # currency unit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey mapping


class KeysResponse(TypedDict):
    """NUT-01 compliant mint keys response from GET /v1/keys."""

    keysets: list[KeysetKeys]


class KeysetInfoRequired(TypedDict):
    """Required fields for keyset information."""

    id: str
    unit: CurrencyUnit
    active: bool


class KeysetInfoOptional(TypedDict, total=False):
    """Optional fields for keyset information."""

    input_fee_ppk: int  # input fee in parts per thousand


class KeysetInfo(KeysetInfoRequired, KeysetInfoOptional):
    """Extended keyset information for /v1/keysets endpoint."""

    pass


class PostMintQuoteResponse(TypedDict, total=False):
    """Mint quote response."""

    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: CurrencyUnit
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int
    paid: bool


class PostMintResponse(TypedDict):
    """Mint response with signatures."""

    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    request: str
    paid: bool
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int
    payment_preimage: str
    change: list[BlindedSignature]


class PostSwapResponse(TypedDict):
    """Swap response."""

    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    """Check state response."""

    states: list[dict[str, str]]  # {"Y": ..., "state": ..., "witness": ...}


class PostRestoreResponse(TypedDict, total=False):
    """Restore response."""

    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
    promises: list[BlindedSignature]  # deprecated
