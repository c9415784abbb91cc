"""
Runtime configuration.

Every option can be given on the command line or through an environment
variable; the command line wins. Invalid environment values fall back to
the default instead of aborting startup.
"""

import argparse
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from isengard.credentials import DEFAULT_DOCKER_CONFIG_DIR

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30 * 60
DEFAULT_STOP_TIMEOUT = 30
DEFAULT_SOCKET = '/var/run/docker.sock'

_TRUE_VALUES = {'1', 't', 'T', 'TRUE', 'true', 'True'}
_FALSE_VALUES = {'0', 'f', 'F', 'FALSE', 'false', 'False'}

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)([hms])')
_DURATION_FULL_RE = re.compile(r'^(?:\d+(?:\.\d+)?[hms])+$')
_DURATION_UNITS = {'h': 3600, 'm': 60, 's': 1}

LOG_LEVELS = {
    'debug': 'DEBUG',
    'info': 'INFO',
    'warn': 'WARNING',
    'warning': 'WARNING',
    'error': 'ERROR',
}


@dataclass
class Config:
    """Effective runtime configuration."""
    interval: int = DEFAULT_INTERVAL
    run_once: bool = False
    cleanup: bool = True
    watch_all: bool = True
    self_update: bool = False
    stop_timeout: int = DEFAULT_STOP_TIMEOUT
    log_level: str = 'INFO'
    docker_socket: str = DEFAULT_SOCKET
    docker_config: str = DEFAULT_DOCKER_CONFIG_DIR
    ntfy_url: Optional[str] = None
    webhook_url: Optional[str] = None

    @property
    def credentials_path(self) -> str:
        return os.path.join(self.docker_config, 'config.json')

    @property
    def notifications(self) -> Dict[str, Dict[str, str]]:
        """Notification channel settings in the form notify.send_notifications takes."""
        channels = {}
        if self.ntfy_url:
            channels['ntfy'] = {'url': self.ntfy_url}
        if self.webhook_url:
            channels['webhook'] = {'url': self.webhook_url}
        return channels


def parse_bool(value: Optional[str], default: bool) -> bool:
    """Accept 1/t/true and 0/f/false in the usual casings; anything else is the default."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def parse_duration(value: Optional[str], default: int) -> int:
    """
    Parse an interval into seconds.

    Accepts plain seconds ("90") or unit suffixed values ("45s", "30m",
    "1h30m"). Invalid or non-positive values give the default.
    """
    if not value:
        return default
    value = value.strip()

    if value.isdigit():
        seconds = float(value)
    elif _DURATION_FULL_RE.match(value):
        seconds = sum(float(n) * _DURATION_UNITS[unit] for n, unit in _DURATION_RE.findall(value))
    else:
        logger.warning(f"Invalid interval '{value}', using default")
        return default

    if seconds <= 0:
        return default
    return int(seconds)


def parse_positive_int(value: Optional[str], default: int) -> int:
    try:
        n = int(value) if value else default
    except ValueError:
        return default
    return n if n > 0 else default


def parse_log_level(value: Optional[str], default: str = 'INFO') -> str:
    if not value:
        return default
    return LOG_LEVELS.get(value.lower(), default)


def _env(name: str) -> Optional[str]:
    return os.environ.get(name)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='isengard',
        description='Keep running containers on the newest image of their tag'
    )
    parser.add_argument(
        '--interval',
        type=lambda v: parse_duration(v, DEFAULT_INTERVAL),
        default=parse_duration(_env('ISENGARD_INTERVAL'), DEFAULT_INTERVAL),
        help='Time between update cycles, e.g. 90, 45s, 30m, 1h30m (env: ISENGARD_INTERVAL, default: 30m)'
    )
    parser.add_argument(
        '--run-once',
        action='store_true',
        default=parse_bool(_env('ISENGARD_RUN_ONCE'), False),
        help='Run a single cycle and exit (env: ISENGARD_RUN_ONCE)'
    )
    parser.add_argument(
        '--cleanup',
        action=argparse.BooleanOptionalAction,
        default=parse_bool(_env('ISENGARD_CLEANUP'), True),
        help='Remove the old image after a successful update (env: ISENGARD_CLEANUP, default: true)'
    )
    parser.add_argument(
        '--watch-all',
        action=argparse.BooleanOptionalAction,
        default=parse_bool(_env('ISENGARD_WATCH_ALL'), True),
        help='Watch every container unless labeled isengard.enable=false; '
             'with --no-watch-all only containers labeled isengard.enable=true '
             '(env: ISENGARD_WATCH_ALL, default: true)'
    )
    parser.add_argument(
        '--self-update',
        action=argparse.BooleanOptionalAction,
        default=parse_bool(_env('ISENGARD_SELF_UPDATE'), False),
        help='Also update the container isengard runs in (env: ISENGARD_SELF_UPDATE)'
    )
    parser.add_argument(
        '--stop-timeout',
        type=lambda v: parse_positive_int(v, DEFAULT_STOP_TIMEOUT),
        default=parse_positive_int(_env('ISENGARD_STOP_TIMEOUT'), DEFAULT_STOP_TIMEOUT),
        help='Seconds to wait for a graceful stop (env: ISENGARD_STOP_TIMEOUT, default: 30)'
    )
    parser.add_argument(
        '--log-level',
        type=parse_log_level,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=parse_log_level(_env('ISENGARD_LOG_LEVEL')),
        help='Logging level (env: ISENGARD_LOG_LEVEL, default: info)'
    )
    parser.add_argument(
        '--docker-socket',
        default=_env('DOCKER_SOCKET') or DEFAULT_SOCKET,
        help=f'Docker Engine socket (env: DOCKER_SOCKET, default: {DEFAULT_SOCKET})'
    )
    parser.add_argument(
        '--docker-config',
        default=_env('DOCKER_CONFIG') or DEFAULT_DOCKER_CONFIG_DIR,
        help='Directory holding the registry credential file config.json '
             f'(env: DOCKER_CONFIG, default: {DEFAULT_DOCKER_CONFIG_DIR})'
    )
    parser.add_argument(
        '--ntfy-url',
        default=_env('ISENGARD_NTFY_URL'),
        help='ntfy topic URL notified about updates (env: ISENGARD_NTFY_URL)'
    )
    parser.add_argument(
        '--webhook-url',
        default=_env('ISENGARD_WEBHOOK_URL'),
        help='Webhook URL receiving a JSON payload per update (env: ISENGARD_WEBHOOK_URL)'
    )
    return parser


def load_config(argv: Optional[List[str]] = None) -> Config:
    """Build the Config from the environment and command line arguments."""
    args = build_parser().parse_args(argv)
    return Config(
        interval=args.interval,
        run_once=args.run_once,
        cleanup=args.cleanup,
        watch_all=args.watch_all,
        self_update=args.self_update,
        stop_timeout=args.stop_timeout,
        log_level=args.log_level,
        docker_socket=args.docker_socket,
        docker_config=args.docker_config,
        ntfy_url=args.ntfy_url,
        webhook_url=args.webhook_url,
    )
