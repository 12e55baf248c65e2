"""Fleetdock - agentless Docker fleet control plane over SSH."""

__version__ = "1.4.0"
