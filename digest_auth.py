"""
HTTP Digest access authentication (RFC 2617) as an httpx client auth flow.

The request goes out unauthenticated first. A 401 carrying a Digest
challenge is answered exactly once; whatever comes back from that retry,
including a second 401, is handed to the caller.
"""

import hashlib
import logging
import re
import secrets
from typing import Dict, Generator, NamedTuple, Optional

import httpx

logger = logging.getLogger(__name__)

NONCE_COUNT = "00000001"
SUPPORTED_ALGORITHMS = ("MD5",)

_CHALLENGE_PARAM = re.compile(r'(\w+)=(?:"([^"]*)"|([^,\s]+))')


class DigestAuthenticationError(Exception):
    """The server's challenge cannot be answered with Digest MD5"""


class DigestChallenge(NamedTuple):
    realm: str
    nonce: str
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: Optional[str] = None


def _md5(data: str) -> str:
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def parse_digest_challenge(header: Optional[str]) -> DigestChallenge:
    """Parse a ``WWW-Authenticate: Digest ...`` header value"""
    if not header:
        raise DigestAuthenticationError("Server did not return a WWW-Authenticate challenge")

    scheme, _, params_str = header.strip().partition(" ")
    if scheme.lower() != "digest":
        raise DigestAuthenticationError(f"Server did not return a Digest authentication challenge ({scheme})")

    params: Dict[str, str] = {}
    for match in _CHALLENGE_PARAM.finditer(params_str):
        key, quoted, bare = match.groups()
        params[key.lower()] = quoted if quoted is not None else bare

    realm = params.get("realm")
    nonce = params.get("nonce")
    if realm is None or not nonce:
        raise DigestAuthenticationError("Digest challenge is missing realm or nonce")

    algorithm = params.get("algorithm")
    if algorithm and algorithm.upper() not in SUPPORTED_ALGORITHMS:
        raise DigestAuthenticationError(f"Unsupported digest algorithm: {algorithm}")

    qop = None
    if "qop" in params:
        # The server may offer several protections; only "auth" is implemented
        offered = [value.strip().lower() for value in params["qop"].split(",")]
        if "auth" not in offered:
            raise DigestAuthenticationError(f"Unsupported qop: {params['qop']}")
        qop = "auth"

    return DigestChallenge(realm=realm, nonce=nonce, qop=qop, opaque=params.get("opaque"), algorithm=algorithm)


def compute_digest_response(
    username: str,
    password: str,
    method: str,
    uri: str,
    challenge: DigestChallenge,
    cnonce: Optional[str] = None,
    nc: str = NONCE_COUNT,
) -> str:
    """
    Response digest per RFC 2617 section 3.2.2.1:

    - HA1 = MD5(username:realm:password)
    - HA2 = MD5(method:uri)
    - with qop: MD5(HA1:nonce:nc:cnonce:qop:HA2), otherwise MD5(HA1:nonce:HA2)
    """
    ha1 = _md5(f"{username}:{challenge.realm}:{password}")
    ha2 = _md5(f"{method.upper()}:{uri}")

    if challenge.qop:
        if not cnonce:
            raise ValueError("cnonce is required when qop is present")
        return _md5(f"{ha1}:{challenge.nonce}:{nc}:{cnonce}:{challenge.qop}:{ha2}")
    return _md5(f"{ha1}:{challenge.nonce}:{ha2}")


def build_authorization_header(
    username: str,
    password: str,
    method: str,
    uri: str,
    challenge: DigestChallenge,
    cnonce: Optional[str] = None,
    nc: str = NONCE_COUNT,
) -> str:
    """Full ``Authorization`` header value answering the challenge"""
    if challenge.qop and not cnonce:
        cnonce = secrets.token_hex(8)

    response = compute_digest_response(username, password, method, uri, challenge, cnonce, nc)

    header = (
        f'Digest username="{username}", realm="{challenge.realm}", '
        f'nonce="{challenge.nonce}", uri="{uri}", response="{response}"'
    )
    if challenge.qop:
        header += f', qop={challenge.qop}, nc={nc}, cnonce="{cnonce}"'
    if challenge.opaque:
        header += f', opaque="{challenge.opaque}"'
    if challenge.algorithm:
        header += f", algorithm={challenge.algorithm}"
    return header


class DigestAuth(httpx.Auth):
    """httpx auth flow answering a single Digest challenge per request"""

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        response = yield request

        if response.status_code != 401:
            return

        challenge = parse_digest_challenge(response.headers.get("WWW-Authenticate"))
        uri = request.url.raw_path.decode("ascii")

        request.headers["Authorization"] = build_authorization_header(
            self.username,
            self.password,
            request.method,
            uri,
            challenge,
            cnonce=secrets.token_hex(8),
        )
        logger.debug(f"Answering digest challenge for {request.method} {uri}")

        # Exactly one retry; a second 401 is returned as-is
        yield request
