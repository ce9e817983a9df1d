"""Shared fakes and fixtures for the installer test suite."""

from __future__ import annotations

import io
import json
import tarfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import httpx
import pytest

from openwrt_tailscale.arch import ArchitectureDetector
from openwrt_tailscale.config import Settings
from openwrt_tailscale.constants import AGENT_BINARY, DAEMON_BINARY, INIT_SCRIPT, RC_DIR
from openwrt_tailscale.download import ArchiveFetcher
from openwrt_tailscale.errors import ConfigStoreError
from openwrt_tailscale.orchestrator import UpgradeOrchestrator
from openwrt_tailscale.reconcile import ConfigReconciler
from openwrt_tailscale.release import AssetSelector, ReleaseResolver, normalize_version
from openwrt_tailscale.system import ConfigStore, PackageInstaller, ServiceController

RELEASE_URL = "https://api.example.test/repos/owner/repo/releases/latest"
DOWNLOAD_BASE = "https://downloads.example.test"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MemoryConfigStore(ConfigStore):
    """In-memory ConfigStore with uci-like anonymous section ids."""

    def __init__(self) -> None:
        self.data: dict[str, dict[str, dict[str, Any]]] = {}
        self.commits: list[str] = []
        self.fail_commit: set[str] = set()
        self._counter = 0

    def _config(self, config: str) -> dict[str, dict[str, Any]]:
        return self.data.setdefault(config, {})

    def section_type(self, config: str, section: str) -> str | None:
        entry = self.data.get(config, {}).get(section)
        return entry["_type"] if entry else None

    def get(self, config: str, section: str, option: str) -> str | None:
        entry = self.data.get(config, {}).get(section)
        if not entry or option not in entry:
            return None
        value = entry[option]
        return " ".join(value) if isinstance(value, list) else value

    def sections(self, config: str, section_type: str) -> list[str]:
        return [
            name
            for name, entry in self.data.get(config, {}).items()
            if entry["_type"] == section_type
        ]

    def set_section(self, config: str, section: str, section_type: str) -> None:
        self._config(config).setdefault(section, {})["_type"] = section_type

    def add_section(self, config: str, section_type: str) -> str:
        self._counter += 1
        section = f"cfg{self._counter:06x}"
        self._config(config)[section] = {"_type": section_type}
        return section

    def set(self, config: str, section: str, option: str, value: str) -> None:
        self._config(config)[section][option] = value

    def add_list(self, config: str, section: str, option: str, value: str) -> None:
        self._config(config)[section].setdefault(option, []).append(value)

    def commit(self, config: str) -> None:
        if config in self.fail_commit:
            raise ConfigStoreError(f"uci commit {config} failed")
        self.commits.append(config)

    def snapshot(self) -> str:
        return json.dumps(self.data, sort_keys=True)


class FakeServiceController(ServiceController):
    """Records service actions; ``enable`` writes the rc.d autostart link."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root
        self.calls: list[tuple[str, str]] = []
        self.fail: set[tuple[str, str]] = set()
        self.create_autostart = True

    def _record(self, action: str, name: str) -> bool:
        self.calls.append((action, name))
        return (action, name) not in self.fail

    def start(self, name: str) -> bool:
        return self._record("start", name)

    def stop(self, name: str) -> bool:
        return self._record("stop", name)

    def enable(self, name: str) -> bool:
        ok = self._record("enable", name)
        if ok and self.create_autostart and self.root is not None:
            rc_dir = self.root / RC_DIR
            rc_dir.mkdir(parents=True, exist_ok=True)
            (rc_dir / f"S90{name}").write_text("", encoding="utf-8")
        return ok

    def reload(self, name: str) -> bool:
        return self._record("reload", name)


class FakePackageInstaller(PackageInstaller):
    def __init__(self, installed: Sequence[str] = ()) -> None:
        self.present = set(installed)
        self.calls: list[tuple[str, ...]] = []
        self.update_ok = True
        self.broken: set[str] = set()

    def installed(self) -> set[str]:
        self.calls.append(("list-installed",))
        return set(self.present)

    def update(self) -> bool:
        self.calls.append(("update",))
        return self.update_ok

    def install(self, package: str) -> bool:
        self.calls.append(("install", package))
        if package in self.broken:
            return False
        self.present.add(package)
        return True


class FakeAgent:
    """Stands in for the tailscale CLI.

    The "binary" under ``root`` is a text file whose first line is the
    version it reports.
    """

    def __init__(self, root: Path) -> None:
        self.binary = root / AGENT_BINARY
        self.up_calls: list[tuple[list[str], str | None]] = []
        self.up_ok = True

    def installed_version(self) -> str | None:
        if not self.binary.is_file():
            return None
        lines = self.binary.read_text(encoding="utf-8").splitlines()
        return normalize_version(lines[0]) if lines else None

    def up(self, advertise_routes: Sequence[str] = (), login_server: str | None = None) -> bool:
        self.up_calls.append((list(advertise_routes), login_server))
        return self.up_ok


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_archive(members: dict[str, bytes]) -> bytes:
    """Gzip tarball with the given relative paths and contents."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def release_document(tag: str, names: Sequence[str]) -> dict[str, Any]:
    return {
        "tag_name": tag,
        "assets": [
            {"name": name, "browser_download_url": f"{DOWNLOAD_BASE}/{name}"} for name in names
        ],
    }


def agent_archive(version: str, *, with_daemon: bool = True) -> bytes:
    members = {
        AGENT_BINARY: f"{version}\n".encode(),
        INIT_SCRIPT: b"#!/bin/sh /etc/rc.common\n",
    }
    if with_daemon:
        members[DAEMON_BINARY] = f"daemon {version}\n".encode()
    return build_archive(members)


class Router:
    """A fake router: filesystem under tmp_path plus fake tooling and HTTP."""

    def __init__(self, tmp_path: Path) -> None:
        self.root = tmp_path / "root"
        self.tmp = tmp_path / "tmp"
        self.root.mkdir()
        self.tmp.mkdir()
        (self.root / "etc").mkdir()
        (self.root / "etc" / "openwrt_version").write_text("23.05.3\n", encoding="utf-8")

        self.store = MemoryConfigStore()
        self.services = FakeServiceController(self.root)
        self.packages = FakePackageInstaller(
            ["kmod-tun", "iptables-nft", "ca-bundle", "ca-certificates"]
        )
        self.agent = FakeAgent(self.root)
        self.release: dict[str, Any] | str = release_document("v1.84.2", [])
        self.release_status = 200
        self.files: dict[str, bytes] = {}
        self.requests: list[str] = []
        self.sleeps: list[float] = []

    def publish(self, tag: str, archives: dict[str, bytes]) -> None:
        self.release = release_document(tag, list(archives))
        self.files = {f"{DOWNLOAD_BASE}/{name}": data for name, data in archives.items()}

    def install_existing(self, version: str, *, configured: bool = True) -> None:
        for rel, content in (
            (AGENT_BINARY, f"{version}\n".encode()),
            (DAEMON_BINARY, f"daemon {version}\n".encode()),
            (INIT_SCRIPT, b"#!/bin/sh old\n"),
        ):
            path = self.root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        if configured:
            ConfigReconciler(self.store).reconcile()
            self.store.commits.clear()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url == RELEASE_URL:
            if isinstance(self.release, str):
                return httpx.Response(self.release_status, text=self.release)
            return httpx.Response(self.release_status, json=self.release)
        if url in self.files:
            return httpx.Response(200, content=self.files[url])
        return httpx.Response(404, text="Not Found")

    def settings(self, **overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "_env_file": None,
            "release_api_url": RELEASE_URL,
            "root_dir": str(self.root),
            "tmp_dir": str(self.tmp),
            "stop_grace_seconds": 0,
            "tailscale_advertise_route": None,
            "tailscale_login_server": None,
        }
        values.update(overrides)
        return Settings(**values)

    def orchestrator(self, machine: str = "aarch64", **overrides: Any) -> UpgradeOrchestrator:
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return UpgradeOrchestrator(
            self.settings(**overrides),
            detector=ArchitectureDetector(machine),
            resolver=ReleaseResolver(RELEASE_URL, client=client),
            selector=AssetSelector(),
            fetcher=ArchiveFetcher(client=client),
            reconciler=ConfigReconciler(self.store),
            services=self.services,
            packages=self.packages,
            agent=self.agent,  # type: ignore[arg-type]
            sleep=self.sleeps.append,
        )

    def read(self, rel: str) -> bytes:
        return (self.root / rel).read_bytes()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> MemoryConfigStore:
    return MemoryConfigStore()


@pytest.fixture
def router(tmp_path: Path) -> Router:
    return Router(tmp_path)


@pytest.fixture
def archive_factory() -> Callable[..., bytes]:
    return agent_archive


@pytest.fixture
def tarball() -> Callable[[dict[str, bytes]], bytes]:
    return build_archive
