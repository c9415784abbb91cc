"""
Registry v2 digest resolution.

Resolves the manifest digest a tag currently points to with a single HEAD
request (no image bytes are transferred), performing the Bearer challenge
and token exchange when the registry asks for it:

    HEAD manifest -> 401 + WWW-Authenticate -> GET realm -> HEAD with token

Nothing is cached between calls; every cycle re-authenticates.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from isengard.credentials import credentials_for
from isengard.errors import RegistryError
from isengard.image_ref import ImageReference

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.oci.image.index.v1+json"
)
DIGEST_HEADER = 'Docker-Content-Digest'


@dataclass(frozen=True)
class AuthChallenge:
    """Parameters of a ``WWW-Authenticate: Bearer`` challenge."""
    realm: str
    service: str = ''
    scope: str = ''


def _split_challenge_parts(value: str) -> List[str]:
    """Split on commas that are not inside double quotes."""
    parts = []
    current = []
    in_quotes = False

    for ch in value:
        if ch == '"':
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == ',' and not in_quotes:
            parts.append(''.join(current))
            current = []
        else:
            current.append(ch)

    if current:
        parts.append(''.join(current))
    return parts


def parse_challenge_params(header: str) -> Dict[str, str]:
    """
    Parse a challenge header value into its key/value parameters.

    ``Bearer realm="https://auth.docker.io/token",service="registry.docker.io"``
    gives ``{'realm': 'https://auth.docker.io/token', 'service': 'registry.docker.io'}``.
    """
    header = header.strip()
    if header[:7].lower() == 'bearer ':
        header = header[7:]

    params = {}
    for part in _split_challenge_parts(header):
        key, sep, val = part.strip().partition('=')
        if not sep:
            continue
        val = val.strip()
        if len(val) >= 2 and val[0] == '"' and val[-1] == '"':
            val = val[1:-1]
        params[key.strip()] = val
    return params


def parse_challenge(header: str) -> AuthChallenge:
    """Parse a Bearer challenge; a challenge without a realm is a RegistryError."""
    params = parse_challenge_params(header)
    realm = params.get('realm', '')
    if not realm:
        raise RegistryError(f"No realm in challenge: {header}")
    return AuthChallenge(
        realm=realm,
        service=params.get('service', ''),
        scope=params.get('scope', ''),
    )


def _basic_auth(ref: ImageReference, credentials_path: Optional[str]):
    credential = credentials_for(ref.registry, credentials_path)
    if credential is None:
        return None
    return (credential.username, credential.password)


def exchange_token(challenge: AuthChallenge, ref: ImageReference,
                   credentials_path: Optional[str] = None) -> str:
    """
    Exchange a challenge for a Bearer token at the challenge realm.

    Anonymous for public images; Basic auth is attached when the credential
    store has an entry for the registry.

    Raises:
        RegistryError: on transport errors, non-200 responses or an empty token
    """
    params = {}
    if challenge.service:
        params['service'] = challenge.service
    params['scope'] = challenge.scope or f"repository:{ref.repository}:pull"

    try:
        response = requests.get(
            challenge.realm,
            params=params,
            auth=_basic_auth(ref, credentials_path),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        raise RegistryError(f"Token request to {challenge.realm} failed: {e}") from e

    if response.status_code != 200:
        raise RegistryError(f"Token endpoint returned {response.status_code}")

    try:
        body = response.json()
    except ValueError as e:
        raise RegistryError(f"Decoding token response: {e}") from e

    # Some registries use "token", others "access_token"
    token = ''
    if isinstance(body, dict):
        token = body.get('token') or body.get('access_token') or ''
    if not token:
        raise RegistryError("Empty token in response")
    return token


def _head_manifest(ref: ImageReference, headers: Dict[str, str], auth=None) -> requests.Response:
    try:
        return requests.head(
            ref.manifest_url,
            headers=headers,
            auth=auth,
            timeout=REQUEST_TIMEOUT,
            allow_redirects=True,
        )
    except requests.RequestException as e:
        raise RegistryError(f"HEAD {ref.manifest_url} failed: {e}") from e


def resolve_digest(ref: ImageReference, credentials_path: Optional[str] = None) -> str:
    """
    Get the remote manifest digest for a parsed image reference.

    Args:
        ref: Parsed image reference
        credentials_path: Credential store path (default: $DOCKER_CONFIG/config.json)

    Returns:
        The Docker-Content-Digest header value (e.g. 'sha256:abc...')

    Raises:
        RegistryError: when the registry does not yield a verifiable digest
    """
    logger.debug(f"Checking remote digest for {ref} at {ref.manifest_url}")

    headers = {'Accept': MANIFEST_ACCEPT_HEADER}
    response = _head_manifest(ref, headers, auth=_basic_auth(ref, credentials_path))

    if response.status_code == 200:
        digest = response.headers.get(DIGEST_HEADER)
        if digest:
            return digest
        raise RegistryError(f"200 OK but no {DIGEST_HEADER} header for {ref}")

    if response.status_code != 401:
        raise RegistryError(f"Unexpected status {response.status_code} from manifest HEAD for {ref}")

    challenge_header = response.headers.get('WWW-Authenticate')
    if not challenge_header:
        raise RegistryError(f"401 with no WWW-Authenticate header for {ref}")

    challenge = parse_challenge(challenge_header)
    token = exchange_token(challenge, ref, credentials_path)

    retry_headers = dict(headers)
    retry_headers['Authorization'] = f'Bearer {token}'
    response = _head_manifest(ref, retry_headers)

    if response.status_code != 200:
        raise RegistryError(f"Authenticated HEAD returned {response.status_code} for {ref}")

    digest = response.headers.get(DIGEST_HEADER)
    if not digest:
        raise RegistryError(f"Authenticated 200 OK but no {DIGEST_HEADER} header for {ref}")
    return digest
