"""
Generate the Flow endpoint keypair and register the public key.

    python setup_flow_keys.py keys/flow_private.pem

Writes <path> (passphrase protected with FLOW_PRIVATE_KEY_PASSPHRASE) and
<path>.pub, then uploads the public key for WHATSAPP_PHONE_NUMBER_ID.
Add the new path to the front of FLOW_PRIVATE_KEYS; keep the old one
listed until clients have picked up the new key.
"""

import os
import sys

from miimii.config import load_settings
from miimii.flow_crypto import generate_keypair
from miimii.whatsapp_client import PlatformClient, PlatformError


def main(argv):
    settings = load_settings()
    private_path = argv[1] if len(argv) > 1 else "flow_private.pem"
    if os.path.exists(private_path):
        print(f"{private_path} already exists; refusing to overwrite it.")
        return 1
    if not settings.flow_key_passphrase:
        print("Set FLOW_PRIVATE_KEY_PASSPHRASE before generating keys.")
        return 1

    private_pem, public_pem = generate_keypair(settings.flow_key_passphrase)
    directory = os.path.dirname(private_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(private_path, "wb") as f:
        f.write(private_pem)
    os.chmod(private_path, 0o600)
    with open(f"{private_path}.pub", "wb") as f:
        f.write(public_pem)
    print(f"Keypair written to {private_path} and {private_path}.pub")

    print("Uploading public key...")
    try:
        uploaded = PlatformClient(settings).upload_public_key(public_pem)
    except PlatformError as e:
        print(f"Failed to upload public key: {e}")
        return 1
    if not uploaded:
        print("The platform did not accept the public key.")
        return 1
    print("Public key registered successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
