"""Command line utilities for the Green Loom engine."""
