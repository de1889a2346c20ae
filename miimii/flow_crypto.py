"""
Flow Crypto Envelope
====================
Hybrid encryption used by WhatsApp Flows data-exchange requests:

- the AES key (and IV, when sent as ``encrypted_iv``) arrive RSA-OAEP/SHA-256
  wrapped with our public key
- the payload is AES-GCM encrypted with that key and IV
- responses are AES-GCM encrypted with the same key and the flipped IV
  (every byte inverted) and returned base64-encoded

Several private keys may be configured during a rotation window; they are
tried newest first.
"""

import json
import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from miimii.errors import DecryptionError

logger = logging.getLogger(__name__)

OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def flip_iv(iv: bytes) -> bytes:
    return bytes(b ^ 0xFF for b in iv)


@dataclass
class DecryptedRequest:
    payload: Dict[str, Any]
    aes_key: bytes
    iv: bytes


class FlowCrypto:

    def __init__(self, private_keys: Iterable[rsa.RSAPrivateKey]):
        self.private_keys: List[rsa.RSAPrivateKey] = list(private_keys)

    @classmethod
    def from_pem_files(cls, paths: Iterable[str], passphrase: str = "") -> "FlowCrypto":
        keys = []
        for path in paths:
            with open(path, "rb") as f:
                keys.append(load_private_key(f.read(), passphrase))
            logger.info(f"Loaded Flow private key {os.path.basename(path)}")
        return cls(keys)

    @property
    def key_count(self) -> int:
        return len(self.private_keys)

    def decrypt_request(self, body: Dict[str, Any]) -> DecryptedRequest:
        try:
            encrypted_data = base64.b64decode(body["encrypted_flow_data"])
            encrypted_key = base64.b64decode(body["encrypted_aes_key"])
            if body.get("encrypted_iv"):
                iv_field, iv_wrapped = base64.b64decode(body["encrypted_iv"]), True
            else:
                iv_field, iv_wrapped = base64.b64decode(body["initial_vector"]), False
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Malformed Flow request: {e}")

        for index, key in enumerate(self.private_keys):
            try:
                aes_key = key.decrypt(encrypted_key, OAEP)
            except ValueError:
                continue
            iv = self._unwrap_iv(key, iv_field) if iv_wrapped else iv_field
            try:
                plaintext = AESGCM(aes_key).decrypt(iv, encrypted_data, None)
            except (InvalidTag, ValueError) as e:
                raise DecryptionError(f"Flow payload failed authentication: {e}")
            if index:
                logger.info(f"Flow request decrypted with previous key #{index}")
            try:
                payload = json.loads(plaintext.decode("utf-8"))
            except ValueError as e:
                raise DecryptionError(f"Flow payload is not JSON: {e}")
            return DecryptedRequest(payload=payload, aes_key=aes_key, iv=iv)

        raise DecryptionError("No configured private key could decrypt the AES key")

    @staticmethod
    def _unwrap_iv(key: rsa.RSAPrivateKey, iv_field: bytes) -> bytes:
        # Clients that send a bare IV under encrypted_iv are tolerated.
        if len(iv_field) != key.key_size // 8:
            return iv_field
        try:
            return key.decrypt(iv_field, OAEP)
        except ValueError as e:
            raise DecryptionError(f"Could not decrypt IV: {e}")

    @staticmethod
    def encrypt_response(payload: Dict[str, Any], aes_key: bytes, iv: bytes) -> str:
        data = json.dumps(payload).encode("utf-8")
        encrypted = AESGCM(aes_key).encrypt(flip_iv(iv), data, None)
        return base64.b64encode(encrypted).decode("ascii")


# ============================================================================
# CLIENT SIDE & KEY MANAGEMENT
# ============================================================================

def encrypt_request(payload: Dict[str, Any], public_key: rsa.RSAPublicKey,
                    aes_key: bytes = None, iv: bytes = None,
                    wrap_iv: bool = True) -> Tuple[Dict[str, str], bytes, bytes]:
    """Build a request the way the platform does; used by the key self-check and tests."""
    aes_key = aes_key or AESGCM.generate_key(bit_length=128)
    iv = iv or os.urandom(16)
    body = {
        "encrypted_flow_data": base64.b64encode(
            AESGCM(aes_key).encrypt(iv, json.dumps(payload).encode("utf-8"), None)
        ).decode("ascii"),
        "encrypted_aes_key": base64.b64encode(public_key.encrypt(aes_key, OAEP)).decode("ascii"),
    }
    if wrap_iv:
        body["encrypted_iv"] = base64.b64encode(public_key.encrypt(iv, OAEP)).decode("ascii")
    else:
        body["initial_vector"] = base64.b64encode(iv).decode("ascii")
    return body, aes_key, iv


def decrypt_response(body: str, aes_key: bytes, iv: bytes) -> Dict[str, Any]:
    plaintext = AESGCM(aes_key).decrypt(flip_iv(iv), base64.b64decode(body), None)
    return json.loads(plaintext.decode("utf-8"))


def load_private_key(pem: bytes, passphrase: str = "") -> rsa.RSAPrivateKey:
    return serialization.load_pem_private_key(pem, password=passphrase.encode("utf-8") if passphrase else None)


def generate_keypair(passphrase: str = "") -> Tuple[bytes, bytes]:
    """RSA-2048 keypair as (private PEM, public PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase else serialization.NoEncryption()
    )
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    return private_pem, public_pem(key)


def public_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
