"""Source fetch module.

This module handles:
- Source specifications (root filesystem, kernel, optional ZFS sources)
- Alpine's LTS kernel config, used as an alternative base document
- Download with mirror fallback and a reusable archive cache
- Safe extraction into the working directory with a completion marker
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from onefile_imagegen.buildconfig.components import Component
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.config import Settings
from onefile_imagegen.toolchain.process import CollaboratorError

logger = logging.getLogger(__name__)

ALPINE_MIRRORS = (
    "https://dl-cdn.alpinelinux.org/alpine",
    "https://mirrors.edge.kernel.org/alpine",
)
KERNEL_MIRRORS = (
    "https://cdn.kernel.org/pub/linux/kernel",
    "https://mirrors.edge.kernel.org/pub/linux/kernel",
)
ZFS_RELEASES = "https://github.com/openzfs/zfs/releases/download"
ALPINE_KERNEL_CONFIG_URLS = (
    "https://git.alpinelinux.org/aports/plain/main/linux-lts/lts.x86_64.config",
    "https://raw.githubusercontent.com/alpinelinux/aports/master/main/linux-lts/"
    "lts.x86_64.config",
    "https://github.com/alpinelinux/aports/raw/refs/heads/master/main/linux-lts/"
    "lts.x86_64.config",
)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Written into an extracted tree once extraction has fully completed
EXTRACTION_MARKER = ".extraction_complete"


class FetchError(CollaboratorError):
    """Raised when a source component cannot be fetched or unpacked."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        """Initialize FetchError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message, code=code)


@dataclass(frozen=True)
class SourceSpec:
    """A source archive and where it unpacks.

    Attributes:
        name: Short component name (rootfs, kernel, zfs).
        version: Upstream version.
        filename: Archive file name.
        urls: Download URLs, tried in order.
        target_dir: Directory name under the working directory.
        strip_top_level: Archive wraps its content in one top-level directory.
        extract_filter: tarfile extraction filter.
    """

    name: str
    version: str
    filename: str
    urls: tuple[str, ...]
    target_dir: str
    strip_top_level: bool = True
    extract_filter: str = "data"


def alpine_source(version: str) -> SourceSpec:
    """Alpine minirootfs used as the install root."""
    branch = "v" + ".".join(version.split(".")[:2])
    filename = f"alpine-minirootfs-{version}-x86_64.tar.gz"
    return SourceSpec(
        name="rootfs",
        version=version,
        filename=filename,
        urls=tuple(
            f"{mirror}/{branch}/releases/x86_64/{filename}" for mirror in ALPINE_MIRRORS
        ),
        target_dir="alpine-minirootfs",
        strip_top_level=False,
        # busybox applets are absolute symlinks
        extract_filter="tar",
    )


def kernel_source(version: str) -> SourceSpec:
    """Linux kernel source tree."""
    major = version.split(".")[0]
    filename = f"linux-{version}.tar.xz"
    return SourceSpec(
        name="kernel",
        version=version,
        filename=filename,
        urls=tuple(f"{mirror}/v{major}.x/{filename}" for mirror in KERNEL_MIRRORS),
        target_dir="linux",
    )


def zfs_source(version: str) -> SourceSpec:
    """OpenZFS release sources."""
    filename = f"zfs-{version}.tar.gz"
    return SourceSpec(
        name="zfs",
        version=version,
        filename=filename,
        urls=(f"{ZFS_RELEASES}/zfs-{version}/{filename}",),
        target_dir="zfs",
    )


def default_sources(settings: Settings, config: BuildConfiguration) -> list[SourceSpec]:
    """Sources required by a build configuration.

    ZFS sources are only fetched when the ZFS component is enabled.
    """
    sources = [
        alpine_source(settings.alpine_version),
        kernel_source(settings.kernel_version),
    ]
    if config.is_enabled(Component.ZFS):
        sources.append(zfs_source(settings.zfs_version))
    return sources


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> str:
    """Download a file, writing it in place only once complete.

    Args:
        client: HTTPX client instance.
        url: URL to download.
        dest_path: Destination path.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        SHA256 hex digest of the downloaded file.

    Raises:
        FetchError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, suffix=".part", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        if total_bytes == 0:
            raise FetchError(f"Empty response from {url}", code="empty_download")

        tmp_path.replace(dest_path)
        checksum = sha256.hexdigest()
        logger.info(
            "Downloaded %s (%d bytes, checksum: %s)",
            dest_path.name,
            total_bytes,
            checksum[:16] + "...",
        )
        return checksum

    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP error downloading {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    finally:
        tmp_path.unlink(missing_ok=True)


def download_with_fallback(
    client: httpx.Client,
    urls: Sequence[str],
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> str:
    """Download from the first mirror that succeeds.

    Raises:
        FetchError: If every mirror fails.
    """
    failures: list[str] = []
    for url in urls:
        try:
            return download_file(client, url, dest_path, timeout=timeout)
        except FetchError as e:
            logger.warning("Mirror failed: %s", e)
            failures.append(str(e))

    raise FetchError(
        f"All mirrors failed for {dest_path.name}: " + "; ".join(failures),
        code="all_mirrors_failed",
    )


def fetch_alpine_kernel_config(
    cache_dir: Path,
    alpine_version: str,
    use_cache: bool = True,
    timeout: float = DOWNLOAD_TIMEOUT,
    client: httpx.Client | None = None,
) -> Path:
    """Download Alpine's LTS kernel config for use as a base document.

    Args:
        cache_dir: Cache directory; the config is kept under
            ``kernel-configs/``.
        alpine_version: Alpine release the config is recorded against.
        use_cache: Reuse a previously downloaded copy.
        timeout: Download timeout in seconds.
        client: HTTPX client; a new one is created if omitted.

    Returns:
        Path of the config document.

    Raises:
        FetchError: If every mirror fails.
    """
    dest_path = cache_dir / "kernel-configs" / f"alpine-lts-{alpine_version}.config"
    if use_cache and dest_path.is_file():
        logger.info("Using cached Alpine kernel config %s", dest_path)
        return dest_path

    if client is not None:
        download_with_fallback(client, ALPINE_KERNEL_CONFIG_URLS, dest_path, timeout)
    else:
        with httpx.Client(follow_redirects=True) as new_client:
            download_with_fallback(
                new_client, ALPINE_KERNEL_CONFIG_URLS, dest_path, timeout
            )
    return dest_path

def _check_members(archive_path: Path, members: list[tarfile.TarInfo]) -> None:
    if not members:
        raise FetchError(f"Archive {archive_path} is empty", code="empty_archive")
    for member in members:
        member_path = Path(member.name)
        if member_path.is_absolute() or ".." in member_path.parts:
            raise FetchError(
                f"Refusing to extract {member.name}: path traversal detected",
                code="path_traversal",
            )


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    strip_top_level: bool = True,
    extract_filter: str = "data",
) -> Path:
    """Extract an archive into ``dest_dir``.

    Extraction goes to a staging directory first; ``dest_dir`` only appears
    once it is complete and carries the completion marker.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory (replaced if partially present).
        strip_top_level: Unwrap a single top-level directory.
        extract_filter: tarfile extraction filter.

    Returns:
        ``dest_dir``.

    Raises:
        FetchError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    staging = dest_dir.with_name(f".{dest_dir.name}.partial")
    shutil.rmtree(staging, ignore_errors=True)
    staging.mkdir(parents=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            _check_members(archive_path, members)
            tar.extractall(staging, filter=extract_filter)

        content = staging
        if strip_top_level:
            entries = list(staging.iterdir())
            if len(entries) == 1 and entries[0].is_dir():
                content = entries[0]

        if dest_dir.exists():
            shutil.rmtree(dest_dir)
        shutil.move(str(content), str(dest_dir))
        (dest_dir / EXTRACTION_MARKER).touch()

    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    except OSError as e:
        raise FetchError(
            f"OS error extracting {archive_path}: {e}", code="os_error"
        ) from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    return dest_dir


def is_extracted(dest_dir: Path) -> bool:
    """Check whether a tree was fully extracted."""
    return (dest_dir / EXTRACTION_MARKER).is_file()


class HttpSourceFetcher:
    """Default source fetch capability backed by httpx."""

    def __init__(
        self,
        cache_dir: Path,
        use_cache: bool = True,
        timeout: float = DOWNLOAD_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.cache_dir = cache_dir
        self.use_cache = use_cache
        self.timeout = timeout
        self._client = client

    def archive_path(self, source: SourceSpec) -> Path:
        return self.cache_dir / "sources" / source.filename

    def fetch(self, source: SourceSpec, dest_dir: Path) -> Path:
        """Make ``source`` available, unpacked, at ``dest_dir``.

        Args:
            source: Source to fetch.
            dest_dir: Extraction target.

        Returns:
            ``dest_dir``.

        Raises:
            FetchError: If the source cannot be downloaded or unpacked.
        """
        if is_extracted(dest_dir):
            logger.info("%s %s already extracted", source.name, source.version)
            return dest_dir

        archive = self.archive_path(source)
        if self.use_cache and archive.is_file():
            logger.info("Using cached %s", archive)
        elif self._client is not None:
            download_with_fallback(self._client, source.urls, archive, self.timeout)
        else:
            with httpx.Client(follow_redirects=True) as client:
                download_with_fallback(client, source.urls, archive, self.timeout)

        return extract_archive(
            archive,
            dest_dir,
            strip_top_level=source.strip_top_level,
            extract_filter=source.extract_filter,
        )


__all__ = [
    "ALPINE_KERNEL_CONFIG_URLS",
    "EXTRACTION_MARKER",
    "FetchError",
    "HttpSourceFetcher",
    "SourceSpec",
    "default_sources",
    "download_file",
    "download_with_fallback",
    "extract_archive",
    "fetch_alpine_kernel_config",
    "is_extracted",
]
