"""Narrow seams over the router's system tooling.

The orchestrator only talks to these interfaces; the concrete classes wrap
``uci``, ``opkg``, the ``/etc/init.d`` scripts and the ``tailscale`` CLI.
All subprocess calls are confined to this module.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from openwrt_tailscale.constants import (
    AGENT_BINARY,
    AUTH_TIMEOUT,
    COMMAND_TIMEOUT,
    PACKAGE_TIMEOUT,
)
from openwrt_tailscale.errors import ConfigStoreError
from openwrt_tailscale.logging import get_logger
from openwrt_tailscale.release import normalize_version

log = get_logger("openwrt_tailscale.system")


def run_cmd(
    args: Sequence[str],
    timeout: float = COMMAND_TIMEOUT,
    *,
    capture: bool = True,
) -> str | None:
    """Run a command and return stdout, or None on failure.

    With ``capture=False`` the command inherits the terminal (used for the
    interactive login) and an empty string is returned on success.
    """
    cmd = list(args)
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        log.warning("cmd_timeout", cmd=cmd, timeout=timeout)
        return None
    except OSError as exc:
        log.warning("cmd_error", cmd=cmd, error=str(exc))
        return None

    if proc.returncode != 0:
        stderr = proc.stderr.decode(errors="replace")[:500] if capture and proc.stderr else ""
        log.warning("cmd_failed", cmd=cmd, returncode=proc.returncode, stderr=stderr)
        return None

    if not capture:
        return ""
    return proc.stdout.decode(errors="replace")


# ---------------------------------------------------------------------------
# Configuration store
# ---------------------------------------------------------------------------


class ConfigStore(ABC):
    """Typed access to the persisted, section-based system configuration.

    A *config* (``network``, ``firewall``) holds *sections*, each with a type
    (``interface``, ``zone``, ``forwarding``) and named options. Changes are
    staged until :meth:`commit` is called for the config.
    """

    @abstractmethod
    def section_type(self, config: str, section: str) -> str | None:
        """Return the type of a section, or None if it does not exist."""
        raise NotImplementedError

    @abstractmethod
    def get(self, config: str, section: str, option: str) -> str | None:
        """Return an option value, or None if unset."""
        raise NotImplementedError

    @abstractmethod
    def sections(self, config: str, section_type: str) -> list[str]:
        """Return the identifiers of all sections of a type, in order."""
        raise NotImplementedError

    @abstractmethod
    def set_section(self, config: str, section: str, section_type: str) -> None:
        """Create (or retype) a named section."""
        raise NotImplementedError

    @abstractmethod
    def add_section(self, config: str, section_type: str) -> str:
        """Append an anonymous section and return its identifier."""
        raise NotImplementedError

    @abstractmethod
    def set(self, config: str, section: str, option: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_list(self, config: str, section: str, option: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def commit(self, config: str) -> None:
        raise NotImplementedError

    def has_section(self, config: str, section: str) -> bool:
        return self.section_type(config, section) is not None


class UciConfigStore(ConfigStore):
    """ConfigStore backed by the OpenWrt ``uci`` command."""

    def __init__(self, uci: str = "uci", timeout: float = COMMAND_TIMEOUT) -> None:
        self._uci = uci
        self._timeout = timeout

    def _query(self, *args: str) -> str | None:
        return run_cmd([self._uci, "-q", *args], timeout=self._timeout)

    def _mutate(self, *args: str) -> str:
        out = run_cmd([self._uci, *args], timeout=self._timeout)
        if out is None:
            raise ConfigStoreError(f"uci {' '.join(args)} failed")
        return out

    def section_type(self, config: str, section: str) -> str | None:
        out = self._query("get", f"{config}.{section}")
        return (out.strip() or None) if out is not None else None

    def get(self, config: str, section: str, option: str) -> str | None:
        out = self._query("get", f"{config}.{section}.{option}")
        return out.strip() if out is not None else None

    def sections(self, config: str, section_type: str) -> list[str]:
        out = self._query("show", config)
        if out is None:
            return []
        found: list[str] = []
        prefix = f"{config}."
        for line in out.splitlines():
            key, sep, value = line.partition("=")
            if not sep or not key.startswith(prefix):
                continue
            name = key[len(prefix) :]
            # Option lines look like config.section.option=value
            if "." in name:
                continue
            if value.strip().strip("'") == section_type:
                found.append(name)
        return found

    def set_section(self, config: str, section: str, section_type: str) -> None:
        self._mutate("set", f"{config}.{section}={section_type}")

    def add_section(self, config: str, section_type: str) -> str:
        section = self._mutate("add", config, section_type).strip()
        if not section:
            raise ConfigStoreError(f"uci add {config} {section_type} returned no section")
        return section

    def set(self, config: str, section: str, option: str, value: str) -> None:
        self._mutate("set", f"{config}.{section}.{option}={value}")

    def add_list(self, config: str, section: str, option: str, value: str) -> None:
        self._mutate("add_list", f"{config}.{section}.{option}={value}")

    def commit(self, config: str) -> None:
        self._mutate("commit", config)


# ---------------------------------------------------------------------------
# Service supervisor
# ---------------------------------------------------------------------------


class ServiceController(ABC):
    """Starts, stops and enables init services."""

    @abstractmethod
    def start(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def stop(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def enable(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def reload(self, name: str) -> bool:
        raise NotImplementedError


class InitdServiceController(ServiceController):
    """Drives procd services through their ``/etc/init.d`` scripts."""

    def __init__(self, root_dir: str | Path = "/", timeout: float = COMMAND_TIMEOUT) -> None:
        self._init_dir = Path(root_dir) / "etc" / "init.d"
        self._timeout = timeout

    def _action(self, name: str, action: str) -> bool:
        script = self._init_dir / name
        ok = run_cmd([str(script), action], timeout=self._timeout) is not None
        log.debug("service_action", service=name, action=action, ok=ok)
        return ok

    def start(self, name: str) -> bool:
        return self._action(name, "start")

    def stop(self, name: str) -> bool:
        return self._action(name, "stop")

    def enable(self, name: str) -> bool:
        return self._action(name, "enable")

    def reload(self, name: str) -> bool:
        return self._action(name, "reload")


# ---------------------------------------------------------------------------
# Package manager
# ---------------------------------------------------------------------------


class PackageInstaller(ABC):
    """Installs OS-level packages."""

    @abstractmethod
    def installed(self) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    def update(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def install(self, package: str) -> bool:
        raise NotImplementedError


class OpkgPackageInstaller(PackageInstaller):
    """PackageInstaller backed by ``opkg``."""

    def __init__(self, opkg: str = "opkg", timeout: float = PACKAGE_TIMEOUT) -> None:
        self._opkg = opkg
        self._timeout = timeout

    def installed(self) -> set[str]:
        out = run_cmd([self._opkg, "list-installed"], timeout=self._timeout)
        if out is None:
            return set()
        # Lines look like "kmod-tun - 5.15.137-1"
        return {line.split(" - ", 1)[0].strip() for line in out.splitlines() if " - " in line}

    def update(self) -> bool:
        return run_cmd([self._opkg, "update"], timeout=self._timeout) is not None

    def install(self, package: str) -> bool:
        return run_cmd([self._opkg, "install", package], timeout=self._timeout) is not None


# ---------------------------------------------------------------------------
# Tailscale CLI
# ---------------------------------------------------------------------------


class TailscaleAgent:
    """The installed ``tailscale`` command line client."""

    def __init__(self, root_dir: str | Path = "/", timeout: float = COMMAND_TIMEOUT) -> None:
        self._binary = Path(root_dir) / AGENT_BINARY
        self._timeout = timeout

    def installed_version(self) -> str | None:
        """Version reported by the installed binary, normalized.

        Returns None when the binary is absent or reports nothing usable.
        """
        if not self._binary.is_file():
            return None
        out = run_cmd([str(self._binary), "version"], timeout=self._timeout)
        if not out:
            return None
        return normalize_version(out.splitlines()[0]) or None

    @staticmethod
    def up_args(advertise_routes: Sequence[str] = (), login_server: str | None = None) -> list[str]:
        args = ["up", "--accept-dns=false", "--netfilter-mode=off"]
        if advertise_routes:
            args.append(f"--advertise-routes={','.join(advertise_routes)}")
        if login_server:
            args.append(f"--login-server={login_server}")
        return args

    def up(self, advertise_routes: Sequence[str] = (), login_server: str | None = None) -> bool:
        """Bring the node up, printing the login URL to the terminal."""
        cmd = [str(self._binary), *self.up_args(advertise_routes, login_server)]
        return run_cmd(cmd, timeout=AUTH_TIMEOUT, capture=False) is not None
