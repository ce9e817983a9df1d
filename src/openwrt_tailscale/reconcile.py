"""Idempotent network and firewall configuration for the Tailscale interface.

Existing objects are never modified or removed: the interface is matched by
section name, the zone by its ``name`` option, and forwardings by their
``(src, dest)`` pair regardless of how the section is named.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from openwrt_tailscale.constants import (
    INTERFACE_DEVICE,
    INTERFACE_NAME,
    INTERFACE_PROTO,
    LAN_ZONE,
    ZONE_NAME,
)
from openwrt_tailscale.logging import get_logger
from openwrt_tailscale.system import ConfigStore

log = get_logger("openwrt_tailscale.reconcile")

NETWORK = "network"
FIREWALL = "firewall"

ZONE_OPTIONS: dict[str, str] = {
    "name": ZONE_NAME,
    "input": "ACCEPT",
    "output": "ACCEPT",
    "forward": "ACCEPT",
    "masq": "1",
    "mtu_fix": "1",
}


@dataclass
class ReconcileReport:
    """What a reconcile pass created."""

    interface_created: bool = False
    zone_created: bool = False
    forwardings_created: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.interface_created or self.zone_created or bool(self.forwardings_created)


class ConfigReconciler:
    """Brings the persisted configuration to the state the agent needs."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def interface_present(self) -> bool:
        return self._store.has_section(NETWORK, INTERFACE_NAME)

    def zone_present(self) -> bool:
        for section in self._store.sections(FIREWALL, "zone"):
            if self._store.get(FIREWALL, section, "name") == ZONE_NAME:
                return True
        return False

    def forwarding_present(self, src: str, dest: str) -> bool:
        for section in self._store.sections(FIREWALL, "forwarding"):
            if (
                self._store.get(FIREWALL, section, "src") == src
                and self._store.get(FIREWALL, section, "dest") == dest
            ):
                return True
        return False

    def is_complete(self) -> bool:
        """Interface and zone both exist.

        Forwardings are not part of the check: a missing forwarding alone
        does not make an otherwise configured install incomplete.
        """
        return self.interface_present() and self.zone_present()

    # ------------------------------------------------------------------
    # Idempotent mutations
    # ------------------------------------------------------------------

    def ensure_network_interface(self) -> bool:
        """Create and commit the unmanaged ``tailscale`` interface if missing."""
        if self.interface_present():
            log.info("network_interface_exists", interface=INTERFACE_NAME)
            return False

        log.info("network_interface_creating", interface=INTERFACE_NAME)
        self._store.set_section(NETWORK, INTERFACE_NAME, "interface")
        self._store.set(NETWORK, INTERFACE_NAME, "proto", INTERFACE_PROTO)
        self._store.set(NETWORK, INTERFACE_NAME, "device", INTERFACE_DEVICE)
        self._store.commit(NETWORK)
        return True

    def ensure_firewall_zone(self) -> bool:
        """Stage the ``tailscale`` zone if no zone carries that name."""
        if self.zone_present():
            log.info("firewall_zone_exists", zone=ZONE_NAME)
            return False

        log.info("firewall_zone_creating", zone=ZONE_NAME)
        section = self._store.add_section(FIREWALL, "zone")
        for option, value in ZONE_OPTIONS.items():
            self._store.set(FIREWALL, section, option, value)
        self._store.add_list(FIREWALL, section, "network", INTERFACE_NAME)
        return True

    def ensure_forwarding(self, src: str, dest: str) -> bool:
        """Stage a ``src -> dest`` forwarding unless one already exists."""
        if self.forwarding_present(src, dest):
            log.debug("forwarding_exists", src=src, dest=dest)
            return False

        log.info("forwarding_creating", src=src, dest=dest)
        section = self._store.add_section(FIREWALL, "forwarding")
        self._store.set(FIREWALL, section, "src", src)
        self._store.set(FIREWALL, section, "dest", dest)
        self._store.set(FIREWALL, section, "name", f"tailscale_{src}_to_{dest}")
        return True

    def reconcile(self) -> ReconcileReport:
        """Apply interface, zone and both forwardings, then commit the firewall.

        Raises:
            ConfigStoreError: if the store rejects a write or commit.
        """
        report = ReconcileReport()
        report.interface_created = self.ensure_network_interface()
        report.zone_created = self.ensure_firewall_zone()
        for src, dest in ((ZONE_NAME, LAN_ZONE), (LAN_ZONE, ZONE_NAME)):
            if self.ensure_forwarding(src, dest):
                report.forwardings_created.append((src, dest))
        self._store.commit(FIREWALL)
        log.info(
            "config_reconciled",
            interface_created=report.interface_created,
            zone_created=report.zone_created,
            forwardings_created=len(report.forwardings_created),
        )
        return report
