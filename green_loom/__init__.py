"""Green Loom mission resolution and timeline-probability engine."""

__version__ = "0.1.0"
