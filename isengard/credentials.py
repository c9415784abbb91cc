"""
Registry credentials from the Docker client config file.

The file is re-read on every lookup so that credentials remounted by the
operator are picked up on the next cycle without a restart.
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import jsonschema

from isengard.image_ref import DEFAULT_REGISTRY, parse_image_ref

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_CONFIG_DIR = "/root/.docker"

# Only the parts we read; other keys (credsStore, HttpHeaders...) are allowed
CREDENTIAL_STORE_SCHEMA = {
    "type": "object",
    "properties": {
        "auths": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "auth": {"type": "string"}
                }
            }
        }
    }
}


@dataclass(frozen=True)
class Credential:
    """Username and password for one registry."""
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password='***')"


def default_credentials_path() -> str:
    """Path of the config file, honouring ``DOCKER_CONFIG`` like the docker CLI."""
    config_dir = os.environ.get('DOCKER_CONFIG') or DEFAULT_DOCKER_CONFIG_DIR
    return os.path.join(config_dir, 'config.json')


def registry_config_keys(registry: str) -> List[str]:
    """Keys under which credentials for ``registry`` may be stored."""
    keys = [
        registry,
        f"https://{registry}",
        f"https://{registry}/v1/",
        f"https://{registry}/v2/",
    ]

    # docker login writes Hub credentials under its historical names
    if registry == DEFAULT_REGISTRY:
        keys.extend([
            "docker.io",
            "https://docker.io",
            "index.docker.io",
            "https://index.docker.io",
            "https://index.docker.io/v1/",
            "https://index.docker.io/v2/",
        ])

    return keys


def _load_auths(path: str) -> dict:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.debug(f"No credential store at {path}")
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read credential store {path}: {e}")
        return {}

    try:
        jsonschema.validate(data, CREDENTIAL_STORE_SCHEMA)
    except jsonschema.ValidationError as e:
        logger.warning(f"Ignoring malformed credential store {path}: {e.message}")
        return {}

    return data.get('auths') or {}


def _decode_auth(blob: str) -> Optional[Credential]:
    try:
        decoded = base64.b64decode(blob, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, password = decoded.partition(':')
    if not sep:
        return None
    return Credential(username=username, password=password)


def credentials_for(registry: str, path: Optional[str] = None) -> Optional[Credential]:
    """
    Look up credentials for a registry host.

    Args:
        registry: Normalized registry hostname (e.g. 'ghcr.io')
        path: Credential store path, defaults to $DOCKER_CONFIG/config.json

    Returns:
        Credential, or None when the store or the entry is missing
    """
    path = path or default_credentials_path()
    auths = _load_auths(path)
    if not auths:
        return None

    for key in registry_config_keys(registry):
        entry = auths.get(key)
        if not entry or not entry.get('auth'):
            continue
        credential = _decode_auth(entry['auth'])
        if credential is None:
            logger.warning(f"Undecodable auth entry for {key} in {path}")
            continue
        logger.debug(f"Using credentials for {registry} from key {key}")
        return credential

    return None


def engine_auth_header(reference: str, path: Optional[str] = None) -> Optional[str]:
    """Return the ``X-Registry-Auth`` header value for pulling ``reference``."""
    ref = parse_image_ref(reference)
    credential = credentials_for(ref.registry, path)
    if credential is None:
        return None

    payload = json.dumps({
        'username': credential.username,
        'password': credential.password,
    })
    return base64.urlsafe_b64encode(payload.encode('utf-8')).decode('ascii')
