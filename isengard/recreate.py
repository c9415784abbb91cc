"""
Container recreation against a new image.

``recreate`` replaces an ordinary container: stop, remove, create, start.
``recreate_self`` replaces the container this process runs in and therefore
reverses the order: rename, create, start, and only then remove the
original, which terminates the current process.

Both rebuild the container from its inspected configuration through a
RecreationPlan, repairing configurations the engine would reject on create.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set, Tuple

from isengard.docker_engine import DockerEngine
from isengard.errors import EngineError, RecreateError

logger = logging.getLogger(__name__)

SELF_RENAME_SUFFIX = '-old'


@dataclass
class RecreationPlan:
    """Working copy of a container's configuration, ready for create."""
    name: str
    config: Dict[str, Any]
    host_config: Dict[str, Any]
    networks: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    @property
    def image(self) -> str:
        return self.config.get('Image', '')

    @property
    def additional_networks(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Networks to connect after create; the engine takes one at create time."""
        return self.networks[1:]

    def create_body(self) -> Dict[str, Any]:
        """Engine API container-create request body."""
        body = dict(self.config)
        body['HostConfig'] = self.host_config
        if self.networks:
            network, endpoint = self.networks[0]
            body['NetworkingConfig'] = {'EndpointsConfig': {network: endpoint}}
        return body


def _bind_targets(binds: List[str]) -> Set[str]:
    # Binds are "source:dest" or "source:dest:opts"
    targets = set()
    for bind in binds:
        parts = bind.split(':', 2)
        if len(parts) >= 2:
            targets.add(parts[1])
    return targets


def deduplicate_mounts(host_config: Dict[str, Any]) -> None:
    """Drop explicit mounts whose target is already a bind.

    Inspect reports bind mounts both in HostConfig.Binds and in the
    top-level Mounts list; once the latter is copied into HostConfig.Mounts
    the engine refuses the create with "Duplicate mount point".
    """
    mounts = host_config.get('Mounts') or []
    binds = host_config.get('Binds') or []
    if not mounts or not binds:
        return

    targets = _bind_targets(binds)
    host_config['Mounts'] = [m for m in mounts if m.get('Target') not in targets]


def deduplicate_volumes(config: Dict[str, Any], host_config: Dict[str, Any]) -> None:
    """Drop declared volumes (image VOLUME directives) covered by a mount or bind."""
    volumes = config.get('Volumes')
    if not volumes:
        return

    covered = {m.get('Target') for m in host_config.get('Mounts') or []}
    covered |= _bind_targets(host_config.get('Binds') or [])

    config['Volumes'] = {path: v for path, v in volumes.items() if path not in covered}


def resolve_duplicate_targets(plan: RecreationPlan) -> None:
    """Make every mount target unique across volumes, binds and mounts.

    Binds win over explicit mounts, both win over declared volumes.
    Applying this more than once changes nothing.
    """
    deduplicate_mounts(plan.host_config)
    deduplicate_volumes(plan.config, plan.host_config)


def mounts_from_inspect(mount_points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert inspect mount points back into create-time mount specs."""
    mounts = []
    for mp in mount_points:
        mount_type = mp.get('Type', '')
        mount = {
            'Type': mount_type,
            'Target': mp.get('Destination', ''),
            'ReadOnly': not mp.get('RW', True),
        }
        if mount_type == 'volume':
            # Named and anonymous volumes are re-attached by name, not host path
            if mp.get('Name'):
                mount['Source'] = mp['Name']
        elif mount_type != 'tmpfs':
            mount['Source'] = mp.get('Source', '')
        mounts.append(mount)
    return mounts


def _endpoint_settings(settings: Dict[str, Any], old_short_id: str) -> Dict[str, Any]:
    endpoint: Dict[str, Any] = {}

    aliases = [a for a in settings.get('Aliases') or [] if a != old_short_id]
    if aliases:
        endpoint['Aliases'] = aliases

    ipam = settings.get('IPAMConfig') or {}
    ipam_config = {k: ipam[k] for k in ('IPv4Address', 'IPv6Address') if ipam.get(k)}
    if ipam_config:
        endpoint['IPAMConfig'] = ipam_config

    return endpoint


def _plan_networks(inspect: Dict[str, Any], network_mode: str) -> List[Tuple[str, Dict[str, Any]]]:
    # container:<x> shares another container's network stack entirely
    if network_mode.startswith('container:'):
        return []

    old_short_id = inspect.get('Id', '')[:12]
    networks = (inspect.get('NetworkSettings') or {}).get('Networks') or {}
    attachments = [
        (name, _endpoint_settings(settings or {}, old_short_id))
        for name, settings in networks.items()
    ]

    # The network named by NetworkMode goes first so it is the one given at create
    primary = 'bridge' if network_mode in ('', 'default') else network_mode
    attachments.sort(key=lambda a: a[0] != primary)
    return attachments


def build_plan(inspect: Dict[str, Any], new_image: str) -> RecreationPlan:
    """
    Build a RecreationPlan from a container inspect result.

    Args:
        inspect: Result of GET /containers/{id}/json
        new_image: Image reference the replacement runs

    Returns:
        Plan with the image replaced and duplicate mount targets resolved
    """
    name = inspect.get('Name', '')
    if name.startswith('/'):
        name = name[1:]

    config = copy.deepcopy(inspect.get('Config') or {})
    host_config = copy.deepcopy(inspect.get('HostConfig') or {})
    config['Image'] = new_image

    network_mode = host_config.get('NetworkMode', '') or ''
    shares_network_namespace = network_mode == 'host' or network_mode.startswith('container:')

    # An engine-assigned hostname is the old short id; the replacement gets its own
    hostname = config.get('Hostname')
    if hostname and (shares_network_namespace or hostname == inspect.get('Id', '')[:12]):
        del config['Hostname']

    mount_points = inspect.get('Mounts') or []
    if mount_points and not host_config.get('Mounts'):
        host_config['Mounts'] = mounts_from_inspect(mount_points)

    plan = RecreationPlan(
        name=name,
        config=config,
        host_config=host_config,
        networks=_plan_networks(inspect, network_mode),
    )
    resolve_duplicate_targets(plan)
    return plan


def _create(engine: DockerEngine, plan: RecreationPlan) -> str:
    """Create the container on its primary network, then attach the rest."""
    new_id = engine.create_container(plan.name, plan.create_body())

    for network, endpoint in plan.additional_networks:
        try:
            engine.connect_network(network, new_id, endpoint)
        except EngineError as e:
            logger.warning(f"Could not connect {plan.name} to network {network}: {e}")

    return new_id


def _inspect(engine: DockerEngine, container_id: str) -> Dict[str, Any]:
    try:
        return engine.inspect_container(container_id)
    except EngineError as e:
        raise RecreateError(f"Inspecting container {container_id[:12]}: {e}") from e


def recreate(engine: DockerEngine, container_id: str, new_image: str,
             stop_timeout: int) -> str:
    """
    Stop, remove, and recreate a container with the same config but a new image.

    Args:
        engine: Docker Engine client
        container_id: Container to replace
        new_image: Image reference for the replacement
        stop_timeout: Grace period in seconds before the engine kills the container

    Returns:
        The new container id

    Raises:
        RecreateError: if inspect, remove, create or start fails
    """
    inspect = _inspect(engine, container_id)
    plan = build_plan(inspect, new_image)
    name = plan.name

    logger.debug(f"Captured config of {name} (was {(inspect.get('Config') or {}).get('Image')})")

    logger.info(f"Stopping container {name}...")
    try:
        engine.stop_container(container_id, stop_timeout)
    except EngineError as e:
        logger.warning(f"Error stopping container {name}, forcing remove: {e}")

    try:
        engine.remove_container(container_id, force=True)
    except EngineError as e:
        raise RecreateError(f"Removing container {name}: {e}") from e

    logger.info(f"Creating new container {name} from {new_image}...")
    try:
        new_id = _create(engine, plan)
    except EngineError as e:
        raise RecreateError(f"Creating container {name}: {e}") from e

    try:
        engine.start_container(new_id)
    except EngineError as e:
        raise RecreateError(f"Starting container {name}: {e}") from e

    return new_id


def _restore_name(engine: DockerEngine, container_id: str, name: str) -> None:
    try:
        engine.rename_container(container_id, name)
    except EngineError as e:
        logger.error(f"Could not rename {container_id[:12]} back to {name}: {e}")


def recreate_self(engine: DockerEngine, container_id: str, new_image: str) -> str:
    """
    Recreate the container this process runs in.

    Sequence: rename self -> create replacement -> start replacement ->
    force-remove self. The replacement is running before the original is
    touched, so the update survives this process being killed by the final
    removal. A failed create or start restores the original name.

    Returning at all means this process outlived its own container.

    Raises:
        RecreateError: if inspect, rename, create or start fails
    """
    inspect = _inspect(engine, container_id)
    plan = build_plan(inspect, new_image)
    name = plan.name
    temp_name = f"{name}{SELF_RENAME_SUFFIX}"

    logger.debug(f"Self-update: renaming {name} to {temp_name}")
    try:
        engine.rename_container(container_id, temp_name)
    except EngineError as e:
        raise RecreateError(f"Renaming self: {e}") from e

    logger.debug(f"Self-update: creating replacement {name} from {new_image}")
    try:
        new_id = _create(engine, plan)
    except EngineError as e:
        _restore_name(engine, container_id, name)
        raise RecreateError(f"Creating replacement: {e}") from e

    logger.info(f"Self-update: starting replacement {name} ({new_id[:12]})")
    try:
        engine.start_container(new_id)
    except EngineError as e:
        try:
            engine.remove_container(new_id, force=True)
        except EngineError as rm_err:
            logger.error(f"Could not remove failed replacement {new_id[:12]}: {rm_err}")
        _restore_name(engine, container_id, name)
        raise RecreateError(f"Starting replacement: {e}") from e

    # Force-removal kills this process; the replacement is already running
    logger.info("Self-update: replacement started, removing old container")
    try:
        engine.remove_container(container_id, force=True)
    except EngineError as e:
        logger.error(f"Self-update: could not remove old container {temp_name}: {e}")

    return new_id
