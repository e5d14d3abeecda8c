# src/vine_award/services/signers.py
"""Signer secrets, encrypted credential storage and domain configuration."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.signing import SigningKey
from redis.asyncio import Redis

from vine_award.core.errors import CredentialError
from vine_award.core.settings import Settings

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "v1"
SEED_BYTES = 32
KEYPAIR_BYTES = 64
IV_BYTES = 12
TAG_BYTES = 16
_HEX_KEY = re.compile(r"^[a-fA-F0-9]{64}$")


# --- Keypairs ---------------------------------------------------------------------


@dataclass(frozen=True)
class Signer:
    """An Ed25519 signing identity."""

    signing_key: SigningKey

    @property
    def public_id(self) -> str:
        """Base58 public key, the identity the ledger knows this signer by."""
        return base58.b58encode(bytes(self.signing_key.verify_key)).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self.signing_key.sign(message).signature


def _signer_from_bytes(raw: bytes, label: str) -> Signer:
    if len(raw) not in (SEED_BYTES, KEYPAIR_BYTES):
        raise CredentialError(f"{label} must decode to 32 or 64 bytes, got {len(raw)}")
    return Signer(SigningKey(raw[:SEED_BYTES]))


def signer_from_secret(raw: str | None, label: str = "secret") -> Signer:
    """Parse a secret given as a JSON byte array, base58 or base64."""
    if not raw:
        raise CredentialError(f"Missing {label}")
    text = str(raw).strip()

    if text.startswith("[") and text.endswith("]"):
        try:
            values = json.loads(text)
        except ValueError as err:
            raise CredentialError(f"{label} JSON is malformed") from err
        if not isinstance(values, list):
            raise CredentialError(f"{label} JSON is not an array")
        try:
            return _signer_from_bytes(bytes(values), label)
        except (TypeError, ValueError) as err:
            raise CredentialError(f"{label} JSON array is not a byte array") from err

    try:
        return _signer_from_bytes(base58.b58decode(text), label)
    except (ValueError, CredentialError):
        pass

    try:
        return _signer_from_bytes(base64.b64decode(text, validate=True), label)
    except (binascii.Error, ValueError, CredentialError):
        pass

    raise CredentialError(f"{label} is not valid base58 / base64 / JSON-array secret.")


def is_public_id(value: str) -> bool:
    """Return True when ``value`` is a base58 string decoding to 32 bytes."""
    try:
        return len(base58.b58decode(value)) == SEED_BYTES
    except ValueError:
        return False


# --- Encryption ---------------------------------------------------------------------


class SecretCipher:
    """AES-256-GCM envelope: ``v1:<iv>:<tag>:<ciphertext>`` (base64 parts)."""

    def __init__(self, raw_key: str | None) -> None:
        self._key = self._decode_key(raw_key)

    @staticmethod
    def _decode_key(raw_key: str | None) -> bytes:
        if not raw_key:
            raise CredentialError("Missing VINE_SECRETS_ENC_KEY")
        raw = raw_key.strip()
        if _HEX_KEY.match(raw):
            return bytes.fromhex(raw)
        try:
            decoded = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) == SEED_BYTES:
            return decoded
        raise CredentialError(
            "VINE_SECRETS_ENC_KEY must be 32-byte key in hex (64 chars) or base64."
        )

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(IV_BYTES)
        sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(
            [
                PAYLOAD_VERSION,
                base64.b64encode(iv).decode(),
                base64.b64encode(tag).decode(),
                base64.b64encode(ciphertext).decode(),
            ]
        )

    def decrypt(self, payload: str) -> str:
        parts = str(payload or "").split(":")
        if len(parts) != 4 or parts[0] != PAYLOAD_VERSION:
            raise CredentialError("Invalid encrypted payload format.")
        try:
            iv, tag, ciphertext = (base64.b64decode(part) for part in parts[1:])
            plaintext = AESGCM(self._key).decrypt(iv, ciphertext + tag, None)
        except (binascii.Error, ValueError, InvalidTag) as err:
            raise CredentialError("Encrypted payload could not be decrypted") from err
        return plaintext.decode("utf-8")


# --- Stores --------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """Plaintext signer material for one domain."""

    authority_secret: str
    payer_secret: str | None = None
    endpoint: str | None = None


@dataclass(frozen=True)
class DomainConfig:
    """Per-domain ledger configuration."""

    external_ledger_id: str


def _credential_key(domain: str) -> str:
    return f"vine:signerByDomain:{str(domain).strip()}"


def _domain_config_key(domain: str) -> str:
    return f"vine:domainConfig:{str(domain).strip()}"


class SecretStore:
    """Redis-backed store of encrypted per-domain signer credentials."""

    def __init__(self, redis: Redis, *, enc_key: str | None = None) -> None:
        self._redis = redis
        self._enc_key = enc_key

    def _cipher(self) -> SecretCipher:
        return SecretCipher(self._enc_key)

    async def set_credential(
        self, domain: str, credential: Credential, *, updated_by: str | None = None
    ) -> dict[str, Any]:
        """Validate, encrypt and persist ``credential`` for ``domain``."""
        authority = signer_from_secret(credential.authority_secret, "authoritySecret")
        payer = (
            signer_from_secret(credential.payer_secret, "payerSecret")
            if credential.payer_secret
            else authority
        )
        cipher = self._cipher()
        record = {
            "v": 1,
            "authoritySecretEnc": cipher.encrypt(credential.authority_secret.strip()),
            "payerSecretEnc": (
                cipher.encrypt(credential.payer_secret.strip()) if credential.payer_secret else None
            ),
            "authorityPublicKey": authority.public_id,
            "payerPublicKey": payer.public_id,
            "rpcUrl": credential.endpoint.strip() if credential.endpoint else None,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
            "updatedBy": updated_by,
        }
        await self._redis.set(_credential_key(domain), json.dumps(record))
        logger.info("Stored signer for domain %s (%s)", domain, authority.public_id)
        return {
            key: record[key]
            for key in ("authorityPublicKey", "payerPublicKey", "rpcUrl", "updatedAt", "updatedBy")
        }

    async def _record(self, domain: str) -> dict[str, Any] | None:
        raw = await self._redis.get(_credential_key(domain))
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            logger.error("Signer record for domain %s is not valid JSON", domain)
            return None
        if not isinstance(record, dict) or not record.get("authoritySecretEnc"):
            return None
        return record

    async def get_credential(self, domain: str) -> Credential | None:
        """Return the decrypted credential for ``domain``, or None."""
        record = await self._record(domain)
        if record is None:
            return None
        cipher = self._cipher()
        payer_enc = record.get("payerSecretEnc")
        return Credential(
            authority_secret=cipher.decrypt(record["authoritySecretEnc"]),
            payer_secret=cipher.decrypt(payer_enc) if payer_enc else None,
            endpoint=record.get("rpcUrl") or None,
        )

    async def get_meta(self, domain: str) -> dict[str, Any] | None:
        """Return the non-secret part of the record for ``domain``."""
        record = await self._record(domain)
        if record is None:
            return None
        return {
            "authorityPublicKey": record.get("authorityPublicKey"),
            "payerPublicKey": record.get("payerPublicKey"),
            "rpcUrl": record.get("rpcUrl"),
            "updatedAt": record.get("updatedAt"),
            "updatedBy": record.get("updatedBy"),
        }

    async def clear_credential(self, domain: str) -> bool:
        return bool(await self._redis.delete(_credential_key(domain)))

    async def set_domain_config(self, domain: str, config: DomainConfig) -> None:
        await self._redis.set(
            _domain_config_key(domain),
            json.dumps({"externalLedgerId": config.external_ledger_id.strip()}),
        )

    async def get_domain_config(self, domain: str) -> DomainConfig | None:
        raw = await self._redis.get(_domain_config_key(domain))
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.error("Domain config for %s is not valid JSON", domain)
            return None
        ledger_id = payload.get("externalLedgerId") if isinstance(payload, dict) else None
        return DomainConfig(external_ledger_id=ledger_id) if ledger_id else None


# --- Resolution ---------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedSigners:
    """Signers and ledger target for one award run."""

    authority: Signer
    payer: Signer
    ledger_id: str
    endpoint: str | None = None

    @property
    def signers(self) -> list[Signer]:
        if self.payer.public_id == self.authority.public_id:
            return [self.authority]
        return [self.authority, self.payer]


async def resolve_signers(
    domain: str,
    *,
    settings: Settings,
    store: SecretStore | None = None,
    override: Credential | None = None,
) -> ResolvedSigners:
    """Resolve credentials: explicit override > per-domain store > global default."""
    credential = override
    if credential is None and store is not None:
        credential = await store.get_credential(domain)
    if credential is None and settings.default_authority_secret:
        credential = Credential(
            authority_secret=settings.default_authority_secret,
            payer_secret=settings.default_payer_secret,
        )
    if credential is None:
        raise CredentialError(f"No signer configured for domain {domain}")

    ledger_id: str | None = None
    if store is not None:
        config = await store.get_domain_config(domain)
        ledger_id = config.external_ledger_id if config else None
    ledger_id = ledger_id or settings.default_ledger_id
    if not ledger_id:
        raise CredentialError(f"No ledger id configured for domain {domain}")

    authority = signer_from_secret(credential.authority_secret, "authoritySecret")
    payer = (
        signer_from_secret(credential.payer_secret, "payerSecret")
        if credential.payer_secret
        else authority
    )
    return ResolvedSigners(
        authority=authority, payer=payer, ledger_id=ledger_id, endpoint=credential.endpoint
    )
