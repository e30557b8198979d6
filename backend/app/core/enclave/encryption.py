############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# encryption.py: X25519 + AES-256-GCM envelope encryption of secrets
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Envelope encryption of environment secrets for the enclave.

The output format is a wire contract with the enclave's key manager and
must stay byte-compatible:

    hex( ephemeral_pubkey(32) | nonce(12) | ciphertext || tag(16) )

The AES-256 key is the raw X25519 shared secret. No KDF is applied.
"""

import json
import os
from typing import List, Sequence, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from backend.app.core.errors import EncryptionError

PUBKEY_LEN = 32
NONCE_LEN = 12


def _hex_to_bytes(value: str) -> bytes:
    clean = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(clean)


def _serialize_env(env_vars: Sequence[Tuple[str, str]]) -> bytes:
    payload = {"env": [{"key": key, "value": value} for key, value in env_vars]}
    # Compact separators match the enclave-side JSON exactly
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encrypt_env_vars(env_vars: Sequence[Tuple[str, str]], enclave_pubkey_hex: str) -> str:
    """
    Encrypt (key, value) pairs to the enclave's X25519 public key.

    Args:
        env_vars: Ordered (key, value) pairs
        enclave_pubkey_hex: Remote X25519 public key, hex (optional 0x prefix)

    Returns:
        Hex-encoded envelope

    Raises:
        EncryptionError: On a malformed key or any primitive failure
    """
    try:
        remote_pub = X25519PublicKey.from_public_bytes(_hex_to_bytes(enclave_pubkey_hex))

        ephemeral = X25519PrivateKey.generate()
        ephemeral_pub = ephemeral.public_key().public_bytes(
            encoding=Encoding.Raw, format=PublicFormat.Raw
        )
        shared_secret = ephemeral.exchange(remote_pub)

        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(shared_secret).encrypt(nonce, _serialize_env(env_vars), None)
    except (ValueError, TypeError) as e:
        raise EncryptionError("Failed to encrypt secrets for enclave", detail=str(e)) from e

    return (ephemeral_pub + nonce + ciphertext).hex()


def decrypt_env_vars(envelope_hex: str, private_key: X25519PrivateKey) -> List[Tuple[str, str]]:
    """
    Open an envelope produced by encrypt_env_vars.

    This is the enclave-side half of the scheme, used for verification
    tooling and tests.
    """
    try:
        raw = _hex_to_bytes(envelope_hex)
        if len(raw) < PUBKEY_LEN + NONCE_LEN:
            raise ValueError("envelope too short")
        ephemeral_pub = X25519PublicKey.from_public_bytes(raw[:PUBKEY_LEN])
        nonce = raw[PUBKEY_LEN:PUBKEY_LEN + NONCE_LEN]
        shared_secret = private_key.exchange(ephemeral_pub)
        plaintext = AESGCM(shared_secret).decrypt(nonce, raw[PUBKEY_LEN + NONCE_LEN:], None)
        payload = json.loads(plaintext.decode("utf-8"))
    except (ValueError, TypeError, InvalidTag) as e:
        raise EncryptionError("Failed to decrypt enclave envelope", detail=str(e)) from e

    return [(item["key"], item["value"]) for item in payload.get("env", [])]
