"""
PKCE (Proof Key for Code Exchange) per RFC 7636

The proxy always uses S256 towards the upstream authorization server and
accepts S256 or plain from the clients it serves.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from models import PKCEChallenge

SUPPORTED_METHODS = ("S256", "plain")


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """32 random bytes, unpadded base64url: always 43 characters"""
    return _base64url(secrets.token_bytes(32))


def derive_challenge_s256(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding"""
    return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def create_pkce_challenge() -> PKCEChallenge:
    """Fresh S256 pair for one upstream authorization round trip"""
    verifier = generate_code_verifier()
    return PKCEChallenge(
        code_verifier=verifier,
        code_challenge=derive_challenge_s256(verifier),
        code_challenge_method="S256",
    )


def verify_code_verifier(method: Optional[str], verifier: str, challenge: str) -> bool:
    """
    Recompute the challenge from the verifier and compare.

    A missing method means "plain" (RFC 7636 section 4.3). Any method other
    than S256 or plain fails verification.
    """
    method = method or "plain"
    if method not in SUPPORTED_METHODS or not verifier or not challenge:
        return False

    if method == "S256":
        try:
            computed = derive_challenge_s256(verifier)
        except UnicodeEncodeError:
            # RFC 7636 verifiers are ASCII only
            return False
    else:
        computed = verifier

    return hmac.compare_digest(computed.encode("utf-8"), challenge.encode("utf-8"))
