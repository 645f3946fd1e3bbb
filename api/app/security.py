from __future__ import annotations

import hashlib
import hmac
import secrets


# -----------------------------------------------------------------------------
# Device token hashing
#
# Tokens are long random strings minted by enrollment (or chosen by an agent on
# first contact), so a single SHA-256 pass is enough to keep plaintext out of
# memory dumps and logs. The digest is deterministic: the same token always
# maps to the same hex string, which lets the registry compare digests only.
# -----------------------------------------------------------------------------


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_token(token: str | None, token_hash: str | None) -> bool:
    """Compare the digest of `token` against a stored digest.

    Fails closed on empty input on either side.
    """

    if not token or not token_hash:
        return False
    return hmac.compare_digest(hash_token(token), token_hash)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


# -----------------------------------------------------------------------------
# Credential resolution
# -----------------------------------------------------------------------------


DEVICE_ID_HEADER = "x-device-id"
AGENT_TOKEN_HEADER = "x-agent-token"


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def resolve_credentials(
    *,
    header_device_id: str | None,
    header_token: str | None,
    body: object | None = None,
) -> tuple[str, str]:
    """Pick the device id and token for a request.

    Headers win over the body fields `deviceId` / `agentToken` when both are
    present. Missing values come back as empty strings.
    """

    body_device_id = ""
    body_token = ""
    if isinstance(body, dict):
        body_device_id = _clean(body.get("deviceId"))
        body_token = _clean(body.get("agentToken"))

    device_id = _clean(header_device_id) or body_device_id
    token = _clean(header_token) or body_token
    return device_id, token
