"""
Detection of the container this process runs in.

Each probe inspects one environment signal and returns the container id it
finds, or None. Probes run in order and the first hit wins; when none
matches, no container is ever treated as our own.
"""

import logging
import re
import socket
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

CPUSET_PATH = '/proc/1/cpuset'
MOUNTINFO_PATH = '/proc/self/mountinfo'

_SHORT_ID_RE = re.compile(r'[0-9a-f]{12}')
_CONTAINER_ID_RE = re.compile(r'[0-9a-f]{64}')

Probe = Callable[[], Optional[str]]


def id_from_hostname(hostname: Optional[str] = None) -> Optional[str]:
    """The engine sets the hostname to the short container id by default.

    Compose and other tools replace it with a service name, so only an
    exact 12-character lowercase hex hostname is accepted.
    """
    if hostname is None:
        hostname = socket.gethostname()
    if _SHORT_ID_RE.fullmatch(hostname):
        return hostname
    return None


def id_from_cpuset(path: str = CPUSET_PATH) -> Optional[str]:
    """cgroup v1: ``/proc/1/cpuset`` reads ``/docker/<id>``."""
    try:
        with open(path, 'r', errors='replace') as f:
            line = f.read().strip()
    except OSError:
        return None

    if line.startswith('/docker/'):
        return line[len('/docker/'):] or None
    return None


def id_from_mountinfo(path: str = MOUNTINFO_PATH) -> Optional[str]:
    """Per-container files (hostname, resolv.conf...) are bind-mounted from
    ``/var/lib/docker/containers/<id>/``; works on cgroup v1 and v2."""
    try:
        with open(path, 'r', errors='replace') as f:
            for line in f:
                if '/docker/containers/' not in line:
                    continue
                match = _CONTAINER_ID_RE.search(line)
                if match:
                    return match.group(0)
    except OSError:
        return None
    return None


DEFAULT_PROBES: Sequence[Probe] = (id_from_hostname, id_from_cpuset, id_from_mountinfo)


def detect_self_id(probes: Sequence[Probe] = DEFAULT_PROBES) -> Optional[str]:
    """Return our own container id (short or full), or None if undetermined."""
    for probe in probes:
        container_id = probe()
        if container_id:
            logger.debug(f"Detected own container id {container_id} via {probe.__name__}")
            return container_id
    return None


def is_self(container_id: str, self_id: Optional[str]) -> bool:
    """Match a full container id against a detected short or full id."""
    if not self_id:
        return False
    return container_id == self_id or container_id.startswith(self_id)
