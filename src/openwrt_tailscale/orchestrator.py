"""Install / upgrade orchestration.

The run is an explicit state machine::

    START -> DETECT_ARCH -> ENSURE_DEPENDENCIES -> RESOLVE_VERSION
          -> SELECT_ASSET -> COMPARE_VERSION
          -> UP_TO_DATE                                    (nothing to do)
          -> [BACKUP] -> DOWNLOAD -> EXTRACT -> VERIFY
                 -> COMMIT_UPGRADE -> ACTIVATE -> [POST_INSTALL_CONFIGURE] -> DONE
                 -> ROLLBACK                               (failure, snapshot taken)
          -> ACTIVATE -> POST_INSTALL_CONFIGURE -> DONE    (same version, config repair)

Everything before BACKUP is read-only. A snapshot exists only once an
existing installation is about to be overwritten; any failure between
BACKUP and COMMIT_UPGRADE restores it. Nothing is retried: re-running the
whole orchestrator is the retry mechanism.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from openwrt_tailscale.arch import Architecture, ArchitectureDetector
from openwrt_tailscale.backup import BackupSnapshot, CleanupGuard, snapshot_dir
from openwrt_tailscale.config import Settings
from openwrt_tailscale.constants import (
    AGENT_BINARY,
    AUTOSTART_GLOB,
    DAEMON_BINARY,
    FIREWALL_SERVICE,
    NETWORK_SERVICE,
    OPENWRT_RELEASE_FILE,
    RC_DIR,
    SERVICE_NAME,
    SNAPSHOT_FILES,
)
from openwrt_tailscale.download import ArchiveFetcher
from openwrt_tailscale.errors import (
    ActivationError,
    DependencyError,
    InstallerError,
    RollbackError,
    UnsupportedPlatform,
    VerificationError,
)
from openwrt_tailscale.logging import get_logger
from openwrt_tailscale.reconcile import ConfigReconciler
from openwrt_tailscale.release import (
    AssetSelection,
    AssetSelector,
    ReleaseManifest,
    ReleaseResolver,
    asset_name,
    normalize_version,
)
from openwrt_tailscale.system import (
    InitdServiceController,
    OpkgPackageInstaller,
    PackageInstaller,
    ServiceController,
    TailscaleAgent,
    UciConfigStore,
)

log = get_logger("openwrt_tailscale.orchestrator")


class Stage(StrEnum):
    """States of an install / upgrade run."""

    START = "start"
    DETECT_ARCH = "detect_arch"
    ENSURE_DEPENDENCIES = "ensure_dependencies"
    RESOLVE_VERSION = "resolve_version"
    SELECT_ASSET = "select_asset"
    COMPARE_VERSION = "compare_version"
    BACKUP = "backup"
    DOWNLOAD = "download"
    EXTRACT = "extract"
    VERIFY = "verify"
    ROLLBACK = "rollback"
    COMMIT_UPGRADE = "commit_upgrade"
    ACTIVATE = "activate"
    POST_INSTALL_CONFIGURE = "post_install_configure"
    UP_TO_DATE = "up_to_date"
    DONE = "done"


TERMINAL_STAGES = frozenset({Stage.UP_TO_DATE, Stage.DONE})

# Failures in these stages are rolled back when a snapshot exists
ROLLBACK_STAGES = frozenset({Stage.DOWNLOAD, Stage.EXTRACT, Stage.VERIFY})


class InstallStatus(StrEnum):
    """Outcome of a run."""

    UP_TO_DATE = "up_to_date"
    INSTALLED = "installed"
    UPGRADED = "upgraded"
    REPAIRED = "repaired"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


SUCCESS_STATUSES = frozenset(
    {
        InstallStatus.UP_TO_DATE,
        InstallStatus.INSTALLED,
        InstallStatus.UPGRADED,
        InstallStatus.REPAIRED,
    }
)


@dataclass
class InstallResult:
    """Result of an orchestrator run."""

    status: InstallStatus = InstallStatus.FAILED
    arch: str | None = None
    current_version: str | None = None
    target_version: str | None = None
    asset_url: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    steps_completed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    completed_at: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "arch": self.arch,
            "current_version": self.current_version,
            "target_version": self.target_version,
            "asset_url": self.asset_url,
            "error": self.error,
            "warnings": self.warnings,
            "steps_completed": self.steps_completed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class RunContext:
    """Facts gathered while a run progresses."""

    arch: Architecture | None = None
    manifest: ReleaseManifest | None = None
    selection: AssetSelection | None = None
    current_version: str | None = None
    binaries_present: bool = False
    is_upgrade: bool = False
    repair_only: bool = False
    snapshot: BackupSnapshot | None = None
    archive: Path | None = None
    failure: BaseException | None = None
    rolled_back: bool = False

    @property
    def target_version(self) -> str | None:
        return self.manifest.version if self.manifest else None


class UpgradeOrchestrator:
    """Drives one install or upgrade from detection to activation."""

    def __init__(
        self,
        settings: Settings,
        *,
        detector: ArchitectureDetector,
        resolver: ReleaseResolver,
        selector: AssetSelector,
        fetcher: ArchiveFetcher,
        reconciler: ConfigReconciler,
        services: ServiceController,
        packages: PackageInstaller,
        agent: TailscaleAgent,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._root = Path(settings.root_dir)
        self._tmp = Path(settings.tmp_dir)
        self._detector = detector
        self._resolver = resolver
        self._selector = selector
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._services = services
        self._packages = packages
        self._agent = agent
        self._sleep = sleep

        self._ctx = RunContext()
        self._result = InstallResult()
        self._guard = CleanupGuard()
        self._handlers: dict[Stage, Callable[[], Stage]] = {
            Stage.START: self._start,
            Stage.DETECT_ARCH: self._detect_arch,
            Stage.ENSURE_DEPENDENCIES: self._ensure_dependencies,
            Stage.RESOLVE_VERSION: self._resolve_version,
            Stage.SELECT_ASSET: self._select_asset,
            Stage.COMPARE_VERSION: self._compare_version,
            Stage.BACKUP: self._backup,
            Stage.DOWNLOAD: self._download,
            Stage.EXTRACT: self._extract,
            Stage.VERIFY: self._verify,
            Stage.ROLLBACK: self._rollback,
            Stage.COMMIT_UPGRADE: self._commit_upgrade,
            Stage.ACTIVATE: self._activate,
            Stage.POST_INSTALL_CONFIGURE: self._post_install_configure,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> UpgradeOrchestrator:
        """Wire the orchestrator to the real router tooling."""
        token = settings.github_token.get_secret_value() if settings.github_token else None
        return cls(
            settings,
            detector=ArchitectureDetector(),
            resolver=ReleaseResolver(
                settings.release_api_url, timeout=settings.http_timeout, token=token
            ),
            selector=AssetSelector(),
            fetcher=ArchiveFetcher(timeout=settings.download_timeout),
            reconciler=ConfigReconciler(UciConfigStore()),
            services=InitdServiceController(settings.root_dir),
            packages=OpkgPackageInstaller(),
            agent=TailscaleAgent(settings.root_dir),
        )

    @property
    def context(self) -> RunContext:
        return self._ctx

    @property
    def result(self) -> InstallResult:
        return self._result

    def path(self, relative: str) -> Path:
        return self._root / relative

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> InstallResult:
        """Run to completion and return the result. Never raises."""
        result = self._result
        stage = Stage.START
        with self._guard:
            try:
                while stage not in TERMINAL_STAGES:
                    next_stage = self.step(stage)
                    if next_stage is not Stage.ROLLBACK:
                        result.steps_completed.append(stage.value)
                    stage = next_stage
                result.status = self._success_status(stage)
                log.info(
                    "run_complete",
                    status=result.status.value,
                    version=result.target_version,
                )
            except InstallerError as exc:
                result.status = (
                    InstallStatus.ROLLED_BACK if self._ctx.rolled_back else InstallStatus.FAILED
                )
                result.error = exc.reason
                log.error("run_failed", stage=stage.value, error=exc.reason)
            except Exception as exc:
                result.status = (
                    InstallStatus.ROLLED_BACK if self._ctx.rolled_back else InstallStatus.FAILED
                )
                result.error = f"Unexpected error: {exc}"
                log.exception("run_failed_unexpectedly", stage=stage.value)
            finally:
                result.completed_at = datetime.now().isoformat()
        return result

    def step(self, stage: Stage) -> Stage:
        """Execute one stage and return the next one.

        A failure in a stage that follows the snapshot diverts to ROLLBACK;
        any other failure propagates.
        """
        handler = self._handlers.get(stage)
        if handler is None:
            raise ValueError(f"No handler for stage {stage.value}")
        log.debug("stage_enter", stage=stage.value)
        try:
            return handler()
        except Exception as exc:
            if stage in ROLLBACK_STAGES and self._ctx.snapshot is not None:
                self._ctx.failure = exc
                return Stage.ROLLBACK
            raise

    def _success_status(self, stage: Stage) -> InstallStatus:
        if stage is Stage.UP_TO_DATE:
            return InstallStatus.UP_TO_DATE
        if self._ctx.repair_only:
            return InstallStatus.REPAIRED
        if self._ctx.is_upgrade:
            return InstallStatus.UPGRADED
        return InstallStatus.INSTALLED

    # ------------------------------------------------------------------
    # Read-only stages
    # ------------------------------------------------------------------

    def _start(self) -> Stage:
        if self._settings.require_openwrt and not self.path(OPENWRT_RELEASE_FILE).is_file():
            raise UnsupportedPlatform("This installer must be run on OpenWrt")
        return Stage.DETECT_ARCH

    def _detect_arch(self) -> Stage:
        arch = self._detector.detect()
        if arch is Architecture.UNKNOWN:
            raise UnsupportedPlatform(f"Unsupported architecture: {self._detector.machine}")
        self._ctx.arch = arch
        self._result.arch = arch.value
        log.info("arch_supported", arch=arch.value)
        return Stage.ENSURE_DEPENDENCIES

    def _ensure_dependencies(self) -> Stage:
        if not self._settings.install_dependencies:
            return Stage.RESOLVE_VERSION

        installed = self._packages.installed()
        missing = [p for p in self._settings.dependency_packages if p not in installed]
        if not missing:
            log.debug("dependencies_present")
            return Stage.RESOLVE_VERSION

        log.info("dependencies_installing", packages=missing)
        if not self._packages.update():
            raise DependencyError("Failed to update package lists")
        for package in missing:
            if not self._packages.install(package):
                raise DependencyError(f"Failed to install {package}")
        return Stage.RESOLVE_VERSION

    def _resolve_version(self) -> Stage:
        self._ctx.manifest = self._resolver.fetch_latest()
        self._result.target_version = self._ctx.manifest.version
        log.info("latest_version", version=self._ctx.manifest.version)
        return Stage.SELECT_ASSET

    def _select_asset(self) -> Stage:
        assert self._ctx.manifest is not None and self._ctx.arch is not None  # noqa: S101
        selection = self._selector.select(
            self._ctx.manifest, self._ctx.manifest.version, self._ctx.arch.value
        )
        self._ctx.selection = selection
        self._result.asset_url = selection.url
        if selection.warning:
            self._result.warnings.append(selection.warning)
        return Stage.COMPARE_VERSION

    def _compare_version(self) -> Stage:
        ctx = self._ctx
        ctx.binaries_present = self.path(AGENT_BINARY).is_file()
        ctx.current_version = self._agent.installed_version()
        ctx.is_upgrade = ctx.current_version is not None
        self._result.current_version = ctx.current_version
        if ctx.binaries_present and ctx.current_version is None:
            log.warning("current_version_unknown", binary=str(self.path(AGENT_BINARY)))
        elif ctx.current_version:
            log.info("current_version", version=ctx.current_version)

        target = normalize_version(ctx.target_version)
        if ctx.current_version is not None and normalize_version(ctx.current_version) == target:
            if self._reconciler.is_complete():
                log.info("already_up_to_date", version=target)
                return Stage.UP_TO_DATE
            # Finish an earlier, partially configured install without downloading
            log.info("configuration_incomplete", version=target)
            ctx.is_upgrade = False
            ctx.repair_only = True
            return Stage.ACTIVATE

        if ctx.binaries_present:
            return Stage.BACKUP
        return Stage.DOWNLOAD

    # ------------------------------------------------------------------
    # Transactional stages
    # ------------------------------------------------------------------

    def _backup(self) -> Stage:
        directory = self._guard.register(snapshot_dir(self._tmp))
        targets = {name: self.path(rel) for name, rel in SNAPSHOT_FILES.items()}
        self._ctx.snapshot = BackupSnapshot.capture(directory, targets)

        log.info("service_stopping", service=SERVICE_NAME)
        if not self._services.stop(SERVICE_NAME):
            log.warning("service_stop_failed", service=SERVICE_NAME)
        if self._settings.stop_grace_seconds:
            self._sleep(self._settings.stop_grace_seconds)
        return Stage.DOWNLOAD

    def _download(self) -> Stage:
        assert self._ctx.selection is not None and self._ctx.arch is not None  # noqa: S101
        version = self._ctx.target_version or ""
        archive = self._guard.register(self._tmp / asset_name(version, self._ctx.arch.value))
        self._ctx.archive = archive
        log.info("download_started", version=version, arch=self._ctx.arch.value)
        self._fetcher.fetch(self._ctx.selection.url, archive)
        return Stage.EXTRACT

    def _extract(self) -> Stage:
        assert self._ctx.archive is not None  # noqa: S101
        log.info("installing", root=str(self._root))
        self._fetcher.extract(self._ctx.archive, self._root)
        return Stage.VERIFY

    def _verify(self) -> Stage:
        missing = [rel for rel in (AGENT_BINARY, DAEMON_BINARY) if not self.path(rel).is_file()]
        if missing:
            raise VerificationError(f"Binaries not found: {', '.join(missing)}")
        return Stage.COMMIT_UPGRADE

    def _rollback(self) -> Stage:
        ctx = self._ctx
        failure = ctx.failure
        snapshot = ctx.snapshot
        reason = failure.reason if isinstance(failure, InstallerError) else str(failure)
        log.warning("rollback_started", error=reason)

        if snapshot is not None:
            try:
                snapshot.restore()
            except RollbackError as exc:
                log.warning("rollback_incomplete", error=exc.reason)
        if not self._services.start(SERVICE_NAME):
            log.warning("rollback_service_start_failed", service=SERVICE_NAME)
        ctx.rolled_back = True

        if failure is None:
            raise InstallerError("Rollback without a recorded failure")
        raise failure

    def _commit_upgrade(self) -> Stage:
        ctx = self._ctx
        if ctx.archive is not None:
            self._guard.release(ctx.archive)
            ctx.archive = None
        if ctx.snapshot is not None:
            self._guard.release(ctx.snapshot.directory)
            ctx.snapshot = None
        log.info("upgrade_committed", version=ctx.target_version)
        return Stage.ACTIVATE

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _activate(self) -> Stage:
        if not self._services.start(SERVICE_NAME):
            raise ActivationError(f"Failed to start {SERVICE_NAME}")

        if self._ctx.is_upgrade:
            log.info("upgrade_complete", version=self._ctx.target_version)
            return Stage.DONE

        routes = self._settings.advertise_routes
        log.info(
            "authenticating",
            advertise_routes=routes,
            login_server=self._settings.tailscale_login_server,
        )
        if not self._agent.up(routes, self._settings.tailscale_login_server):
            raise ActivationError("Authentication failed")

        self._services.enable(SERVICE_NAME)
        if not self._autostart_present():
            raise ActivationError("Autostart failed")
        return Stage.POST_INSTALL_CONFIGURE

    def _autostart_present(self) -> bool:
        rc_dir = self.path(RC_DIR)
        return rc_dir.is_dir() and any(rc_dir.glob(AUTOSTART_GLOB))

    def _post_install_configure(self) -> Stage:
        self._reconciler.reconcile()
        for service in (NETWORK_SERVICE, FIREWALL_SERVICE):
            if not self._services.reload(service):
                log.warning("service_reload_failed", service=service)
                self._result.warnings.append(f"Failed to reload {service}")
        log.info("install_complete", version=self._ctx.target_version)
        return Stage.DONE

