"""Encrypted credential vault gated by one master passphrase.

The vault keeps a map of identity name -> keystore secret. On disk the whole map
is one AES-256-GCM envelope whose key is derived with Argon2id from the master
passphrase and a salt that is written once and never rotated. While unlocked
the plaintext map lives only in this object's memory; `lock()` drops it.

Credential lookup is two-tier: an identity-specific secret first, then the
master passphrase itself as the vault-wide default. The default tier is a
convenience for keystores created with the master passphrase and is not a
security boundary: anyone who can unlock the vault can use it.
"""

from __future__ import annotations

import base64
import json
import logging
import pathlib
import re
import secrets
import threading
from typing import Any

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cadence_agent.errors import InvalidInput, InvalidPassphrase, VaultLocked, VaultStoreError
from cadence_agent.storage import (
    assert_secure_permissions,
    ensure_private_dir,
    read_json,
    write_bytes_atomic,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

VAULT_STORE_VERSION = 1
VAULT_STORE_NAME = "vault.json"
SALT_FILE_NAME = ".salt"
SALT_LEN = 16
NONCE_LEN = 12
ENVELOPE_AAD = b"cadence-vault-v1"

TIER_IDENTITY = "identity"
TIER_VAULT_DEFAULT = "vault_default"

DEFAULT_KDF_PARAMS = {
    "timeCost": 3,
    "memoryCost": 65536,
    "parallelism": 1,
    "hashLen": 32,
}


def _derive_key(passphrase: str, salt: bytes, params: dict[str, int]) -> bytes:
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=int(params["timeCost"]),
        memory_cost=int(params["memoryCost"]),
        parallelism=int(params["parallelism"]),
        hash_len=int(params["hashLen"]),
        type=Type.ID,
    )


def _encrypt_map(credentials: dict[str, str], key: bytes, params: dict[str, int]) -> dict[str, Any]:
    nonce = secrets.token_bytes(NONCE_LEN)
    plaintext = json.dumps(credentials, sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, ENVELOPE_AAD)
    return {
        "version": VAULT_STORE_VERSION,
        "enc": "aes-256-gcm",
        "kdf": "argon2id",
        "kdfParams": dict(params),
        "nonceB64": base64.b64encode(nonce).decode("ascii"),
        "ciphertextB64": base64.b64encode(ciphertext).decode("ascii"),
    }


def _validate_envelope(envelope: dict[str, Any]) -> tuple[dict[str, int], bytes, bytes]:
    if envelope.get("version") != VAULT_STORE_VERSION:
        raise VaultStoreError(f"Unsupported vault store version: {envelope.get('version')}")
    if envelope.get("enc") != "aes-256-gcm" or envelope.get("kdf") != "argon2id":
        raise VaultStoreError("Vault store crypto algorithm metadata is invalid.")
    params = envelope.get("kdfParams")
    if not isinstance(params, dict) or any(not isinstance(params.get(k), int) for k in DEFAULT_KDF_PARAMS):
        raise VaultStoreError("Vault store kdfParams are missing or invalid.")
    try:
        nonce = base64.b64decode(str(envelope.get("nonceB64", "")), validate=True)
        ciphertext = base64.b64decode(str(envelope.get("ciphertextB64", "")), validate=True)
    except Exception as exc:
        raise VaultStoreError("Vault store payload is not valid base64.") from exc
    if len(nonce) != NONCE_LEN or len(ciphertext) < 16:
        raise VaultStoreError("Vault store payload has invalid lengths.")
    return params, nonce, ciphertext


def _decrypt_map(envelope: dict[str, Any], passphrase: str, salt: bytes) -> tuple[dict[str, str], bytes, dict[str, int]]:
    params, nonce, ciphertext = _validate_envelope(envelope)
    key = _derive_key(passphrase, salt, params)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, ENVELOPE_AAD)
    except InvalidTag as exc:
        raise InvalidPassphrase("Invalid master passphrase.") from exc
    data = json.loads(plaintext.decode("utf-8"))
    if not isinstance(data, dict) or any(not isinstance(v, str) for v in data.values()):
        raise VaultStoreError("Decrypted vault payload must be a map of identity -> secret.")
    return data, key, params


def validate_identity_name(name: str) -> str:
    value = (name or "").strip()
    if not value or value.startswith(".") or not re.fullmatch(r"[A-Za-z0-9._@-]+", value):
        raise InvalidInput(f"Invalid identity name: '{name}'.", details={"identity": name})
    return value


class CredentialVault:
    def __init__(self, state_dir: pathlib.Path | str, *, kdf_params: dict[str, int] | None = None):
        self.state_dir = pathlib.Path(state_dir)
        self.store_file = self.state_dir / VAULT_STORE_NAME
        self.salt_file = self.state_dir / SALT_FILE_NAME
        self._kdf_params = dict(kdf_params or DEFAULT_KDF_PARAMS)
        self._mutex = threading.RLock()
        self._key: bytes | None = None
        self._active_params: dict[str, int] | None = None
        self._master_passphrase: str | None = None
        self._credentials: dict[str, str] = {}

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def is_setup(self) -> bool:
        return self.store_file.exists()

    def _check_permissions(self) -> None:
        assert_secure_permissions(self.state_dir, 0o700, "vault directory")
        assert_secure_permissions(self.store_file, 0o600, "vault store file")
        assert_secure_permissions(self.salt_file, 0o600, "vault salt file")

    def _read_salt(self) -> bytes:
        if not self.salt_file.exists():
            raise VaultStoreError(f"Vault salt file '{self.salt_file}' is missing.")
        salt = self.salt_file.read_bytes()
        if len(salt) != SALT_LEN:
            raise VaultStoreError("Vault salt file has an invalid length.")
        return salt

    def _ensure_salt(self) -> bytes:
        if self.salt_file.exists():
            return self._read_salt()
        salt = secrets.token_bytes(SALT_LEN)
        write_bytes_atomic(self.salt_file, salt)
        return salt

    def _persist(self, credentials: dict[str, str]) -> None:
        if self._key is None or self._active_params is None:
            raise VaultLocked("Vault is locked.")
        write_json_atomic(self.store_file, _encrypt_map(credentials, self._key, self._active_params))

    def _require_unlocked(self) -> None:
        if self._key is None:
            raise VaultLocked("Vault is locked.")

    def _activate(self, key: bytes, params: dict[str, int], passphrase: str, credentials: dict[str, str]) -> None:
        self._key = key
        self._active_params = dict(params)
        self._master_passphrase = passphrase
        self._credentials = dict(credentials)

    def setup(self, passphrase: str) -> dict[str, Any]:
        if not passphrase:
            raise InvalidPassphrase("Passphrase cannot be empty.")
        with self._mutex:
            ensure_private_dir(self.state_dir)
            self._check_permissions()
            if self.is_setup():
                raise VaultStoreError(
                    "Vault is already set up.",
                    code="vault_exists",
                    action_hint="Use unlock, or change_passphrase to rotate the master passphrase.",
                )
            salt = self._ensure_salt()
            key = _derive_key(passphrase, salt, self._kdf_params)
            self._activate(key, self._kdf_params, passphrase, {})
            self._persist({})
            logger.info("Vault initialized at %s", self.state_dir)
            return {"unlocked": True, "isNewSetup": True, "credentialCount": 0, "identities": []}

    def unlock(self, passphrase: str) -> dict[str, Any]:
        if not passphrase:
            raise InvalidPassphrase("Passphrase cannot be empty.")
        with self._mutex:
            if not self.is_setup():
                return self.setup(passphrase)
            self._check_permissions()
            envelope = read_json(self.store_file)
            credentials, key, params = _decrypt_map(envelope, passphrase, self._read_salt())
            self._activate(key, params, passphrase, credentials)
            logger.info("Vault unlocked (%d credentials)", len(credentials))
            return {
                "unlocked": True,
                "isNewSetup": False,
                "credentialCount": len(credentials),
                "identities": sorted(credentials),
            }

    def lock(self) -> dict[str, Any]:
        with self._mutex:
            was_unlocked = self._key is not None
            self._credentials.clear()
            self._credentials = {}
            self._key = None
            self._active_params = None
            self._master_passphrase = None
            if was_unlocked:
                logger.info("Vault locked")
            return {"locked": True, "wasUnlocked": was_unlocked}

    def change_passphrase(self, old_passphrase: str, new_passphrase: str) -> dict[str, Any]:
        if not new_passphrase:
            raise InvalidPassphrase("New passphrase cannot be empty.")
        with self._mutex:
            if not self.is_setup():
                raise VaultStoreError("Vault is not set up.", code="vault_missing", action_hint="Run setup first.")
            self._check_permissions()
            salt = self._read_salt()
            credentials, _, params = _decrypt_map(read_json(self.store_file), old_passphrase, salt)
            key = _derive_key(new_passphrase, salt, params)
            self._activate(key, params, new_passphrase, credentials)
            self._persist(credentials)
            logger.info("Vault master passphrase changed")
            return {"changed": True, "credentialCount": len(credentials)}

    def put_credential(self, identity: str, secret: str) -> dict[str, Any]:
        name = validate_identity_name(identity)
        if not isinstance(secret, str) or not secret:
            raise InvalidInput("Credential secret cannot be empty.", details={"identity": name})
        with self._mutex:
            self._require_unlocked()
            updated = dict(self._credentials)
            replaced = name in updated
            updated[name] = secret
            self._persist(updated)
            self._credentials = updated
            return {"identity": name, "replaced": replaced, "credentialCount": len(updated)}

    def get_credential(self, identity: str) -> str | None:
        with self._mutex:
            self._require_unlocked()
            return self._credentials.get(identity)

    def resolve_credential(self, identity: str) -> tuple[str | None, str | None]:
        """Return `(secret, tier)`; tier is `identity`, `vault_default` or None."""
        with self._mutex:
            self._require_unlocked()
            specific = self._credentials.get(identity)
            if specific:
                return specific, TIER_IDENTITY
            if self._master_passphrase:
                return self._master_passphrase, TIER_VAULT_DEFAULT
            return None, None

    def remove_credential(self, identity: str) -> dict[str, Any]:
        with self._mutex:
            self._require_unlocked()
            if identity not in self._credentials:
                return {"identity": identity, "removed": False, "credentialCount": len(self._credentials)}
            updated = dict(self._credentials)
            updated.pop(identity, None)
            self._persist(updated)
            self._credentials = updated
            return {"identity": identity, "removed": True, "credentialCount": len(updated)}

    def identities(self) -> list[str]:
        with self._mutex:
            self._require_unlocked()
            return sorted(self._credentials)

    def status(self) -> dict[str, Any]:
        with self._mutex:
            return {
                "isSetup": self.is_setup(),
                "isUnlocked": self.is_unlocked,
                "credentialCount": len(self._credentials) if self.is_unlocked else None,
            }
