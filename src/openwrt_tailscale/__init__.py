"""Tailscale installer and upgrader for OpenWrt routers.

Resolves the latest release, picks the archive matching the router's
architecture, installs it with backup and rollback, and reconciles the
network and firewall configuration the agent needs.
"""

__version__ = "0.1.0"
