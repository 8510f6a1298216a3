"""
AWS Signature Version 4 request signing.

Implements the signing protocol by hand (no vendor SDK):

    1. canonical request
    2. credential scope      DATE/REGION/SERVICE/aws4_request
    3. string-to-sign
    4. signing key           HMAC chain seeded with "AWS4" + secret
    5. signature             hex HMAC of the string-to-sign
    6. Authorization header

HARD GUARANTEES:
- Pure: no I/O, no clock reads. The timestamp is part of the request.
- Headers are sorted explicitly by lower-cased name. Input order never
  influences the signature.
- A credential that is expired at the request timestamp is refused.
- Temporary credentials are refused unless the request carries the
  X-Amz-Security-Token header, so the token is both signed and sent.
"""

from __future__ import annotations

import re
from typing import Dict, List, Tuple
from urllib.parse import quote

from verifier.app.schemas.aws import Credential, SignableRequest, Signature
from verifier.app.utils.hashing import hmac_sha256, hmac_sha256_hex, sha256_hex


ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"

SECURITY_TOKEN_HEADER = "x-amz-security-token"

# RFC 3986 unreserved characters are never percent-encoded
_UNRESERVED = "-_.~"

_WHITESPACE_RUN = re.compile(r"\s+")


class CredentialExpired(RuntimeError):
    """Raised when signing is attempted with an expired credential."""


# ---------------------------------------------------------------------------
# Canonicalization helpers
# ---------------------------------------------------------------------------

def canonical_uri(path: str) -> str:
    """
    URI-encode each path segment, keeping the "/" separators.

    Object keys are encoded exactly once (S3 semantics).
    """
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    return quote(path, safe="/" + _UNRESERVED)


def canonical_query(query: Tuple[Tuple[str, str], ...]) -> str:
    encoded = sorted(
        (quote(name, safe=_UNRESERVED), quote(value, safe=_UNRESERVED))
        for name, value in query
    )
    return "&".join(f"{name}={value}" for name, value in encoded)


def _canonical_header_value(value: str) -> str:
    return _WHITESPACE_RUN.sub(" ", value.strip())


def canonical_headers(
    headers: Tuple[Tuple[str, str], ...],
) -> Tuple[str, str]:
    """
    Return (canonical header block, signed header list).

    Tie-break: names are unique (enforced by SignableRequest), so sorting
    purely by lower-cased name is total.
    """
    normalized: List[Tuple[str, str]] = sorted(
        (name.strip().lower(), _canonical_header_value(value))
        for name, value in headers
    )

    block = "".join(f"{name}:{value}\n" for name, value in normalized)
    signed = ";".join(name for name, _ in normalized)
    return block, signed


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/{SCOPE_TERMINATOR}"


def derive_signing_key(
    secret_access_key: str,
    date_stamp: str,
    region: str,
    service: str,
) -> bytes:
    """
    Four-stage keyed-hash chain: date -> region -> service -> aws4_request.

    The key is valid for one day/region/service combination only.
    """
    k_date = hmac_sha256((KEY_PREFIX + secret_access_key).encode("utf-8"), date_stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, SCOPE_TERMINATOR)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

class RequestSigner:
    """
    Stateless SigV4 signer.

    Intermediate artifacts (canonical request, string-to-sign) are exposed
    as public methods so they can be verified against published vectors.
    """

    def canonical_request(self, request: SignableRequest) -> str:
        header_block, signed_headers = canonical_headers(request.headers)

        return "\n".join(
            [
                request.method,
                canonical_uri(request.path),
                canonical_query(request.query),
                header_block,
                signed_headers,
                sha256_hex(request.payload),
            ]
        )

    def string_to_sign(
        self,
        request: SignableRequest,
        *,
        region: str,
        service: str,
    ) -> str:
        canonical = self.canonical_request(request)

        return "\n".join(
            [
                ALGORITHM,
                request.amz_date,
                credential_scope(request.date_stamp, region, service),
                sha256_hex(canonical.encode("utf-8")),
            ]
        )

    def sign(
        self,
        request: SignableRequest,
        credential: Credential,
        *,
        region: str,
        service: str,
    ) -> Signature:
        if credential.is_expired(at=request.timestamp):
            raise CredentialExpired(
                "Refusing to sign with an expired credential"
            )

        if (
            credential.session_token is not None
            and request.header(SECURITY_TOKEN_HEADER) is None
        ):
            raise ValueError(
                "Temporary credential requires the X-Amz-Security-Token "
                "header to be part of the signed request"
            )

        scope = credential_scope(request.date_stamp, region, service)
        _, signed_headers = canonical_headers(request.headers)

        signing_key = derive_signing_key(
            credential.secret_access_key.get_secret_value(),
            request.date_stamp,
            region,
            service,
        )

        signature = hmac_sha256_hex(
            signing_key,
            self.string_to_sign(request, region=region, service=service),
        )

        return Signature(
            authorization=(
                f"{ALGORITHM} "
                f"Credential={credential.access_key_id}/{scope}, "
                f"SignedHeaders={signed_headers}, "
                f"Signature={signature}"
            ),
            credential_scope=scope,
            signed_headers=signed_headers,
            signature=signature,
        )


def authorized_headers(
    request: SignableRequest,
    signature: Signature,
) -> Dict[str, str]:
    """
    Headers to transmit: exactly the signed headers plus Authorization.
    """
    headers = {name: value for name, value in request.headers}
    headers["Authorization"] = signature.authorization
    return headers
