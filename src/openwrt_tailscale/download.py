"""Archive download and extraction."""

from __future__ import annotations

import tarfile
import zlib
from pathlib import Path

import httpx

from openwrt_tailscale.constants import DOWNLOAD_CHUNK_SIZE, DOWNLOAD_TIMEOUT
from openwrt_tailscale.errors import ExtractionError, NetworkError
from openwrt_tailscale.logging import get_logger

log = get_logger("openwrt_tailscale.download")


class ArchiveFetcher:
    """Streams release archives to disk and unpacks them."""

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self._client = client
        self._timeout = timeout

    def _stream(self, client: httpx.Client, url: str, dest: Path) -> int:
        written = 0
        try:
            with client.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                with dest.open("wb") as fh:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Download returned {exc.response.status_code} for {url}"
            ) from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Failed to download {url}: {exc}") from exc
        except OSError as exc:
            raise NetworkError(f"Failed to write {dest}: {exc}") from exc
        return written

    def fetch(self, url: str, dest: Path) -> int:
        """Download ``url`` to ``dest`` and return its size in bytes.

        Raises:
            NetworkError: on transport failure, or if the result is missing
                or empty.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        if self._client is not None:
            self._stream(self._client, url, dest)
        else:
            with httpx.Client(timeout=self._timeout) as client:
                self._stream(client, url, dest)

        if not dest.is_file() or dest.stat().st_size == 0:
            raise NetworkError("Downloaded file is missing or empty")

        size = dest.stat().st_size
        log.info("download_complete", path=str(dest), bytes=size)
        return size

    @staticmethod
    def extract(archive: Path, root: Path) -> list[str]:
        """Unpack a gzip tarball at ``root`` and return the member names.

        Existing files are replaced, not rewritten in place, so a binary that
        is still running does not block the upgrade.

        Raises:
            ExtractionError: if the archive cannot be read or written out.
        """
        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = []
                for member in tar.getmembers():
                    member = tarfile.tar_filter(member, str(root))
                    # A running binary cannot be opened for writing; unlink it first
                    _unlink_file(root / member.name)
                    tar.extract(member, root, filter="tar")
                    members.append(member.name)
        except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
            raise ExtractionError(f"Failed to extract {archive.name}: {exc}") from exc

        log.info("archive_extracted", archive=archive.name, root=str(root), members=len(members))
        return members


def _unlink_file(path: Path) -> None:
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink()
