"""
Container auto-update with hybrid digest checking.

Watches running containers for newer images behind their configured tag
and recreates them in place, preserving ports, volumes, networks, labels
and restart policies. Staleness is decided with a registry HEAD request
(cheap, no image bytes), falling back to pull-and-compare whenever the
registry cannot give a verifiable answer.
"""

import dataclasses
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from isengard import __version__
from isengard.config import Config, load_config
from isengard.credentials import engine_auth_header
from isengard.docker_engine import ContainerSnapshot, DockerEngine
from isengard.errors import EngineError, RecreateError, RegistryError, UpdateCheckError
from isengard.image_ref import is_pinned, parse_image_ref
from isengard.notify import EVENT_SELF_UPDATE, EVENT_UPDATED, build_payload, send_notifications
from isengard.recreate import recreate, recreate_self
from isengard.registry import resolve_digest
from isengard.self_id import detect_self_id, is_self

logger = logging.getLogger(__name__)

LABEL_ENABLE = 'isengard.enable'


class Status(Enum):
    SKIPPED = 'skipped'
    UP_TO_DATE = 'up_to_date'
    UPDATED = 'updated'
    FAILED = 'failed'


@dataclass
class UpdateOutcome:
    """Result of one container in one cycle."""
    status: Status
    reason: str = ''
    new_id: str = ''


@dataclass
class CycleReport:
    """Outcomes of one update cycle, keyed by container name."""
    outcomes: Dict[str, UpdateOutcome] = field(default_factory=dict)

    def record(self, container: ContainerSnapshot, status: Status,
               reason: str = '', new_id: str = '') -> None:
        self.outcomes[container.name] = UpdateOutcome(status, reason, new_id)

    def names(self, status: Status) -> List[str]:
        return [name for name, o in self.outcomes.items() if o.status == status]

    @property
    def updated(self) -> int:
        return len(self.names(Status.UPDATED))

    @property
    def failed(self) -> int:
        return len(self.names(Status.FAILED))


def extract_local_digest(snapshot: ContainerSnapshot) -> Optional[str]:
    """
    Pick the digest of the container's image out of its RepoDigests.

    Entries look like "nginx@sha256:abc..." or
    "docker.io/library/nginx@sha256:abc..."; only the "sha256:..." part is
    returned, for comparison with the registry's Docker-Content-Digest.
    Falls back to the first entry when no repository name matches.
    """
    if not snapshot.repo_digests:
        return None

    ref = parse_image_ref(snapshot.image)
    variants = {f"{ref.registry}/{ref.repository}", ref.repository}

    # Hub images are recorded as docker.io/library/nginx, library/nginx or nginx
    if ref.is_default_registry:
        variants.add(f"docker.io/{ref.repository}")
        if ref.repository.startswith('library/'):
            variants.add(ref.repository[len('library/'):])

    for repo_digest in snapshot.repo_digests:
        repo, sep, digest = repo_digest.rpartition('@')
        if sep and repo in variants:
            return digest

    repo, sep, digest = snapshot.repo_digests[0].rpartition('@')
    return digest if sep else None


class ContainerUpdater:
    """Runs update cycles against one Docker Engine."""

    def __init__(self, engine: DockerEngine, config: Config,
                 self_id: Optional[str] = None,
                 stop_event: Optional[threading.Event] = None):
        """
        Args:
            engine: Docker Engine client
            config: Runtime configuration
            self_id: Id of the container this process runs in, if any
            stop_event: Set to stop the cycle before the next container
        """
        self.engine = engine
        self.config = config
        self.self_id = self_id
        self.stop_event = stop_event or threading.Event()

    def _stopping(self) -> bool:
        return self.stop_event.is_set()

    def should_skip(self, container: ContainerSnapshot) -> bool:
        """
        Apply the watch policy to a container that is not our own.

        Watch-all mode (default): every container unless labeled
        isengard.enable=false. Opt-in mode: only containers labeled
        isengard.enable=true. Containers pinned to a digest are never
        watched since they can never be newer.
        """
        if is_pinned(container.image):
            logger.debug(f"Skipping {container.name}: no pullable tag ({container.image})")
            return True

        value = container.labels.get(LABEL_ENABLE)
        enabled = value is not None and value.lower() == 'true'
        disabled = value is not None and value.lower() == 'false'

        if self.config.watch_all:
            if disabled:
                logger.debug(f"Skipping {container.name}: disabled by label")
            return disabled

        if not enabled:
            logger.debug(f"Skipping {container.name}: opt-in mode, not enabled")
        return not enabled

    # -- update decision ----------------------------------------------------

    def _pull(self, container: ContainerSnapshot) -> str:
        auth = engine_auth_header(container.image, self.config.credentials_path)
        try:
            return self.engine.pull_image(container.image, auth)
        except EngineError as e:
            raise UpdateCheckError(f"Pulling {container.image}: {e}") from e

    def _pull_and_compare(self, container: ContainerSnapshot) -> bool:
        """Fallback check: pull the image and compare image ids."""
        logger.debug(f"Pulling {container.image} for {container.name}")
        new_image_id = self._pull(container)

        if new_image_id != container.image_id:
            logger.info(
                f"Update available for {container.name} (pull comparison): "
                f"{container.image_id[:19]} -> {new_image_id[:19]}"
            )
            return True

        logger.debug(f"{container.name} is up to date (pull comparison)")
        return False

    def needs_update(self, container: ContainerSnapshot) -> bool:
        """
        Decide whether a newer image exists for a container.

        Tries the registry digest first and falls back to pull-and-compare
        when the registry check fails or no local digest is recorded. When
        an update is found the new image has been pulled.

        Raises:
            UpdateCheckError: if pulling the image fails
        """
        ref = parse_image_ref(container.image)
        logger.debug(f"Checking digest of {container.name} ({ref})")

        try:
            remote_digest = resolve_digest(ref, self.config.credentials_path)
        except RegistryError as e:
            logger.debug(f"Digest check failed for {container.name}, falling back to pull: {e}")
            return self._pull_and_compare(container)

        local_digest = extract_local_digest(container)
        if not local_digest:
            logger.debug(f"No local digest for {container.name}, falling back to pull")
            return self._pull_and_compare(container)

        if remote_digest == local_digest:
            logger.debug(f"{container.name} is up to date (digest {remote_digest[:19]})")
            return False

        logger.info(
            f"Update available for {container.name} (digest mismatch): "
            f"{local_digest[:19]} -> {remote_digest[:19]}"
        )
        self._pull(container)
        return True

    # -- cycle --------------------------------------------------------------

    def _remove_image(self, image_id: str) -> None:
        try:
            self.engine.remove_image(image_id)
            logger.info(f"Removed old image {image_id[:19]}")
        except EngineError as e:
            # Usually still in use by another container
            logger.debug(f"Could not remove old image {image_id[:19]}: {e}")

    def run_cycle(self) -> CycleReport:
        """
        Run one update cycle.

        Containers are checked and recreated one at a time. Our own
        container, when self-update is enabled, is handled last.

        Raises:
            EngineError: if the running containers cannot be listed
        """
        report = CycleReport()
        containers = self.engine.list_running()
        logger.info(f"Starting update cycle: {len(containers)} running container(s)")

        candidates = []
        own_container = None
        for c in containers:
            if is_self(c.id, self.self_id):
                if self.config.self_update:
                    logger.debug(f"Found self ({c.name}), deferring update check")
                    own_container = c
                else:
                    logger.debug(f"Skipping self ({c.name})")
                    report.record(c, Status.SKIPPED, 'self')
                continue
            if self.should_skip(c):
                report.record(c, Status.SKIPPED, 'excluded by policy')
                continue
            candidates.append(c)

        logger.info(f"Checking {len(candidates)} container(s) for updates")

        to_update = []
        old_image_ids = {}
        for c in candidates:
            if self._stopping():
                report.record(c, Status.SKIPPED, 'shutting down')
                continue
            try:
                stale = self.needs_update(c)
            except UpdateCheckError as e:
                logger.warning(f"Update check failed for {c.name} ({c.image}): {e}")
                report.record(c, Status.FAILED, str(e))
                continue

            if stale:
                old_image_ids[c.id] = c.image_id
                to_update.append(c)
            else:
                report.record(c, Status.UP_TO_DATE)

        for c in to_update:
            if self._stopping():
                report.record(c, Status.SKIPPED, 'shutting down')
                continue

            logger.info(f"Updating container {c.name} ({c.image})")
            try:
                new_id = recreate(self.engine, c.id, c.image, self.config.stop_timeout)
            except RecreateError as e:
                logger.error(f"Failed to update container {c.name}: {e}")
                report.record(c, Status.FAILED, str(e))
                continue

            logger.info(f"Container {c.name} updated: {c.short_id} -> {new_id[:12]}")
            report.record(c, Status.UPDATED, new_id=new_id)

            if self.config.cleanup:
                self._remove_image(old_image_ids[c.id])

            send_notifications(self.config.notifications, build_payload(
                EVENT_UPDATED, c.name, c.image,
                old_image_id=old_image_ids[c.id], new_container_id=new_id,
            ))

        if to_update:
            logger.info(
                f"Update cycle complete: checked {len(candidates)}, "
                f"updated {report.updated}, failed {report.failed}"
            )
        else:
            logger.info("All containers up to date")

        # Last: a successful self-update ends this process
        if own_container is not None and not self._stopping():
            self._try_self_update(own_container, report)

        return report

    def _try_self_update(self, own: ContainerSnapshot, report: CycleReport) -> None:
        # The list API reports a bare image id once the tag has moved on;
        # the configured reference survives in Config.Image
        if own.image.startswith('sha256:'):
            try:
                configured = (self.engine.inspect_container(own.id).get('Config') or {}).get('Image', '')
            except EngineError as e:
                logger.debug(f"Self-update: could not inspect own container: {e}")
                configured = ''
            if configured and not configured.startswith('sha256:'):
                logger.debug(f"Self-update: recovered image reference {configured}")
                own = dataclasses.replace(own, image=configured)

        if is_pinned(own.image):
            logger.debug(f"Self-update: no pullable tag ({own.image})")
            report.record(own, Status.SKIPPED, 'no pullable tag')
            return

        try:
            stale = self.needs_update(own)
        except UpdateCheckError as e:
            logger.error(f"Self-update check failed: {e}")
            report.record(own, Status.FAILED, str(e))
            return

        if not stale:
            logger.debug(f"Self is up to date ({own.image})")
            report.record(own, Status.UP_TO_DATE)
            return

        logger.info(f"Self-update available, recreating {own.name} ({own.image})")
        send_notifications(self.config.notifications,
                           build_payload(EVENT_SELF_UPDATE, own.name, own.image,
                                         old_image_id=own.image_id))

        # Not interruptible: the stop event is not consulted from here on
        try:
            new_id = recreate_self(self.engine, own.id, own.image)
        except RecreateError as e:
            logger.error(f"Self-update failed: {e}")
            report.record(own, Status.FAILED, str(e))
            return

        logger.warning("Self-update: process still running after its container was removed")
        report.record(own, Status.FAILED, 'process survived removal of its own container',
                      new_id=new_id)


def setup_logging(level: str) -> logging.Logger:
    """Setup logging configuration."""
    logger = logging.getLogger('isengard')
    logger.setLevel(getattr(logging, level.upper()))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def run_scheduled(updater: ContainerUpdater, interval: int, run_once: bool) -> None:
    """Run a cycle now and then every ``interval`` seconds until stopped."""
    stop_event = updater.stop_event
    while not stop_event.is_set():
        try:
            report = updater.run_cycle()
            if report.updated:
                logger.info(f"Cycle finished, {report.updated} container(s) updated")
        except EngineError as e:
            logger.error(f"Update cycle failed: {e}")
        except Exception as e:
            logger.error(f"Error during update cycle: {e}")

        if run_once:
            logger.info("Run-once mode, exiting")
            return

        logger.info(f"Next check in {interval} seconds")
        stop_event.wait(interval)

    logger.info("Shutting down")


def main(argv: Optional[List[str]] = None) -> None:
    config = load_config(argv)
    log = setup_logging(config.log_level)

    log.info(
        f"Starting isengard {__version__}: interval={config.interval}s "
        f"run_once={config.run_once} cleanup={config.cleanup} "
        f"watch_all={config.watch_all} self_update={config.self_update} "
        f"stop_timeout={config.stop_timeout}s"
    )

    engine = DockerEngine(config.docker_socket)
    try:
        info = engine.version()
    except EngineError as e:
        log.error(f"Failed to connect to Docker at {config.docker_socket}: {e}")
        sys.exit(1)
    log.info(f"Connected to Docker {info.get('Version', 'unknown')} (API {info.get('ApiVersion', '?')})")

    self_id = detect_self_id()
    if self_id:
        log.info(f"Running in container {self_id[:12]}")
    else:
        log.info("Own container not detected, no container is treated as self")

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        log.info(f"Received signal {signal.Signals(signum).name}, shutting down gracefully")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    updater = ContainerUpdater(engine, config, self_id=self_id, stop_event=stop_event)
    run_scheduled(updater, config.interval, config.run_once)


if __name__ == '__main__':
    main()
