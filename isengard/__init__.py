"""Keep running containers on the newest image behind their tag."""

__version__ = "1.0.0"
