"""
Docker Engine API client over the Unix socket.

A thin layer over the engine's REST API: list, inspect, pull, stop, remove,
create, start, rename and network connect. Every HTTP failure is translated
into EngineError so callers deal with one exception type.
"""

import json
import logging
import os
import socket as _socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from isengard.errors import EngineError
from isengard.image_ref import split_repository_tag

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300  # image pulls can take a while


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


@dataclass(frozen=True)
class ContainerSnapshot:
    """A running container as listed at the start of a cycle."""
    id: str
    name: str
    image: str                  # reference as configured, e.g. "nginx:1.25"
    image_id: str               # resolved image id, "sha256:..."
    labels: Dict[str, str] = field(default_factory=dict)
    repo_digests: Tuple[str, ...] = ()
    state: str = ''

    @property
    def short_id(self) -> str:
        return self.id[:12]


def _strip_name(name: str) -> str:
    # The API reports names with a leading slash, e.g. "/mycontainer"
    return name[1:] if name.startswith('/') else name


def _error_message(response: Optional[requests.Response]) -> str:
    if response is None:
        return ''
    try:
        return response.json().get('message', '')
    except (ValueError, AttributeError):
        return response.text or ''


class DockerEngine:
    """Minimal Docker Engine API client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self.socket_path = socket_path
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def _request(self, method: str, path: str, timeout: float = REQUEST_TIMEOUT,
                 **kwargs) -> requests.Response:
        try:
            r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
            r.raise_for_status()
            return r
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            detail = _error_message(e.response) or str(e)
            raise EngineError(f"{method} {path}: {detail}", status_code=status) from e
        except requests.RequestException as e:
            raise EngineError(f"{method} {path}: {e}") from e

    def version(self) -> Dict[str, Any]:
        return self._request('GET', '/version').json()

    # -- containers ---------------------------------------------------------

    def list_running(self) -> List[ContainerSnapshot]:
        """
        List running containers, each enriched with the RepoDigests of its image.

        A failed image inspect leaves repo_digests empty, which the update
        check treats as "digest unknown" and answers with a pull.
        """
        containers = self._request('GET', '/containers/json').json()

        snapshots = []
        for c in containers:
            names = c.get('Names') or []
            image_id = c.get('ImageID', '')

            repo_digests: List[str] = []
            if image_id:
                try:
                    repo_digests = self.inspect_image(image_id).get('RepoDigests') or []
                except EngineError as e:
                    logger.debug(f"Could not inspect image {image_id[:19]}: {e}")

            snapshots.append(ContainerSnapshot(
                id=c.get('Id', ''),
                name=_strip_name(names[0]) if names else '',
                image=c.get('Image', ''),
                image_id=image_id,
                labels=dict(c.get('Labels') or {}),
                repo_digests=tuple(repo_digests),
                state=c.get('State', ''),
            ))

        return snapshots

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self._request('GET', f'/containers/{container_id}/json').json()

    def stop_container(self, container_id: str, timeout: int) -> None:
        # The HTTP call must outlive the engine's own grace period
        self._request('POST', f'/containers/{container_id}/stop',
                      params={'t': timeout}, timeout=timeout + REQUEST_TIMEOUT)

    def remove_container(self, container_id: str, force: bool = True) -> None:
        self._request('DELETE', f'/containers/{container_id}',
                      params={'force': 'true' if force else 'false'})

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        response = self._request('POST', '/containers/create',
                                 params={'name': name}, json=body)
        result = response.json()
        for warning in result.get('Warnings') or []:
            logger.warning(f"Engine warning creating {name}: {warning}")
        return result['Id']

    def start_container(self, container_id: str) -> None:
        self._request('POST', f'/containers/{container_id}/start')

    def rename_container(self, container_id: str, new_name: str) -> None:
        self._request('POST', f'/containers/{container_id}/rename',
                      params={'name': new_name})

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Dict[str, Any]) -> None:
        self._request('POST', f'/networks/{network}/connect',
                      json={'Container': container_id, 'EndpointConfig': endpoint_config})

    # -- images -------------------------------------------------------------

    def inspect_image(self, image: str) -> Dict[str, Any]:
        return self._request('GET', f'/images/{image}/json').json()

    def pull_image(self, reference: str, registry_auth: Optional[str] = None) -> str:
        """
        Pull an image and return the resulting local image id.

        Args:
            reference: Image reference to pull
            registry_auth: Optional X-Registry-Auth header value

        Raises:
            EngineError: when the pull fails or the event stream reports an error
        """
        repository, tag = split_repository_tag(reference)
        headers = {'X-Registry-Auth': registry_auth} if registry_auth else {}

        logger.debug(f"Pulling {repository}:{tag}")
        response = self._request('POST', '/images/create',
                                 timeout=PULL_TIMEOUT,
                                 params={'fromImage': repository, 'tag': tag},
                                 headers=headers, stream=True)

        # The pull only completes once the event stream is consumed
        try:
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise EngineError(f"Error pulling {reference}: {event['error']}")
        except requests.RequestException as e:
            raise EngineError(f"Error pulling {reference}: {e}") from e
        finally:
            response.close()

        return self.inspect_image(f"{repository}:{tag}")['Id']

    def remove_image(self, image_id: str) -> None:
        self._request('DELETE', f'/images/{image_id}')
