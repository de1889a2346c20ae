import base64
import os

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from miimii.errors import DecryptionError
from miimii.flow_crypto import (
    FlowCrypto, decrypt_response, encrypt_request, flip_iv, generate_keypair, load_private_key,
)


@pytest.fixture(scope="module")
def keys():
    old_pem, _ = generate_keypair()
    new_pem, _ = generate_keypair(passphrase="s3cret")
    return load_private_key(new_pem, "s3cret"), load_private_key(old_pem)


PAYLOAD = {"version": "3.0", "action": "data_exchange", "screen": "BVN_SCREEN",
           "data": {"bvn": "22222222222"}, "flow_token": "tok"}


class TestFlowCrypto:

    def test_flip_iv_is_bitwise_complement(self):
        iv = os.urandom(16)
        flipped = flip_iv(iv)
        assert all(a ^ b == 0xFF for a, b in zip(iv, flipped))
        assert flip_iv(flipped) == iv

    def test_round_trip(self, keys):
        new, _ = keys
        body, aes_key, iv = encrypt_request(PAYLOAD, new.public_key())
        decrypted = FlowCrypto([new]).decrypt_request(body)

        assert decrypted.payload == PAYLOAD
        assert decrypted.aes_key == aes_key
        assert decrypted.iv == iv

        response = {"screen": "PIN_SCREEN", "data": {}}
        encrypted = FlowCrypto.encrypt_response(response, decrypted.aes_key, decrypted.iv)
        assert decrypt_response(encrypted, aes_key, iv) == response

    def test_response_uses_flipped_iv(self, keys):
        new, _ = keys
        body, aes_key, iv = encrypt_request(PAYLOAD, new.public_key())
        decrypted = FlowCrypto([new]).decrypt_request(body)
        encrypted = base64.b64decode(FlowCrypto.encrypt_response({"ok": True}, aes_key, decrypted.iv))

        with pytest.raises(InvalidTag):
            AESGCM(aes_key).decrypt(iv, encrypted, None)
        assert AESGCM(aes_key).decrypt(flip_iv(iv), encrypted, None) == b'{"ok": true}'

    def test_plain_initial_vector_alias(self, keys):
        new, _ = keys
        body, _, _ = encrypt_request(PAYLOAD, new.public_key(), wrap_iv=False)
        assert "encrypted_iv" not in body
        assert FlowCrypto([new]).decrypt_request(body).payload == PAYLOAD

    def test_rotation_tries_keys_in_order(self, keys):
        new, old = keys
        body, _, _ = encrypt_request(PAYLOAD, old.public_key())
        assert FlowCrypto([new, old]).decrypt_request(body).payload == PAYLOAD

    def test_unknown_key_fails(self, keys):
        new, old = keys
        body, _, _ = encrypt_request(PAYLOAD, old.public_key())
        with pytest.raises(DecryptionError):
            FlowCrypto([new]).decrypt_request(body)

    def test_malformed_body(self, keys):
        with pytest.raises(DecryptionError):
            FlowCrypto(list(keys)).decrypt_request({"encrypted_flow_data": "x"})

    def test_no_keys_configured(self, keys):
        body, _, _ = encrypt_request(PAYLOAD, keys[0].public_key())
        with pytest.raises(DecryptionError):
            FlowCrypto([]).decrypt_request(body)
