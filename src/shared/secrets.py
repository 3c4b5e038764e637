"""
Secrets and keychain integration for the chat service API token.

The token is looked up in the system keychain (``secret-tool`` /
``libsecret``).  Deployments that cannot use a keychain may instead keep
the token in a Fernet-encrypted file whose key lives in the keychain; the
file is decrypted into memory only and the plaintext never touches disk.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Mapping

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

SERVICE_NAME = "chatsync"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = SERVICE_NAME) -> str:
    """Retrieve a secret from the system keychain.

    Runs::

        secret-tool lookup service chatsync key <key_name>

    and falls back to the ``CHATSYNC_<KEY_NAME>`` environment variable when
    ``secret-tool`` is unavailable or has no entry.

    Raises:
        RuntimeError: If the secret is in neither the keychain nor the env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except OSError:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = f"CHATSYNC_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


# ---------------------------------------------------------------------------
# Token file encryption (Fernet)
# ---------------------------------------------------------------------------


def encrypt_token_file(path: Path, key: str) -> None:
    """Encrypt a plaintext token file in place and restrict it to 0600."""
    f = Fernet(key.encode())
    ciphertext = f.encrypt(path.read_bytes())
    path.write_bytes(ciphertext)
    path.chmod(0o600)
    logger.info("Token file encrypted: %s", path)


def decrypt_token_file(path: Path, key: str) -> str:
    """Decrypt a token file and return the token **in memory**.

    Raises:
        FileNotFoundError: If the file does not exist.
        cryptography.fernet.InvalidToken: If the key is wrong or the file
            has been tampered with.
    """
    f = Fernet(key.encode())
    token = f.decrypt(path.read_bytes()).decode("utf-8").strip()
    logger.info("Token file decrypted in memory: %s", path)
    return token


def load_api_token(remote_config: Mapping[str, Any]) -> str:
    """Resolve the API token for the ``[remote]`` config section.

    With ``token_path`` set, the encrypted file is decrypted using the
    ``token_encryption_key`` secret; otherwise the ``api_token`` secret is
    used directly.
    """
    token_path = remote_config.get("token_path")
    if token_path:
        return decrypt_token_file(Path(token_path), get_secret("token_encryption_key"))
    return get_secret("api_token")


def generate_encryption_key() -> str:
    """Generate a new base64-encoded Fernet key."""
    return Fernet.generate_key().decode()
