"""Tests for the source fetch module.

These tests use mocked HTTP responses to test mirror fallback,
downloading, caching and extraction.
"""

import hashlib
import lzma
import tarfile
from io import BytesIO

import httpx
import pytest
import respx

from onefile_imagegen.buildconfig.resolver import resolve
from onefile_imagegen.config import Settings
from onefile_imagegen.toolchain.fetch import (
    ALPINE_KERNEL_CONFIG_URLS,
    EXTRACTION_MARKER,
    FetchError,
    HttpSourceFetcher,
    SourceSpec,
    alpine_source,
    default_sources,
    download_file,
    download_with_fallback,
    extract_archive,
    fetch_alpine_kernel_config,
    is_extracted,
    kernel_source,
    zfs_source,
)

PRIMARY = "https://primary.example.com/linux-6.12.19.tar.xz"
FALLBACK = "https://fallback.example.com/linux-6.12.19.tar.xz"


def make_tar_xz(
    files: dict[str, str], top_level: str | None = "linux-6.12.19"
) -> bytes:
    """Build a .tar.xz archive in memory."""
    tar_bytes = BytesIO()
    with tarfile.open(fileobj=tar_bytes, mode="w") as tar:
        for name, content in files.items():
            full_name = f"{top_level}/{name}" if top_level else name
            info = tarfile.TarInfo(name=full_name)
            data = content.encode()
            info.size = len(data)
            tar.addfile(info, BytesIO(data))
    return lzma.compress(tar_bytes.getvalue())


def kernel_spec(*urls: str) -> SourceSpec:
    return SourceSpec(
        name="kernel",
        version="6.12.19",
        filename="linux-6.12.19.tar.xz",
        urls=urls or (PRIMARY, FALLBACK),
        target_dir="linux",
    )


class TestSourceSpecs:
    """Tests for source definitions."""

    def test_alpine_source(self):
        source = alpine_source("3.21.3")
        assert source.filename == "alpine-minirootfs-3.21.3-x86_64.tar.gz"
        assert source.urls[0] == (
            "https://dl-cdn.alpinelinux.org/alpine/v3.21/releases/x86_64/"
            "alpine-minirootfs-3.21.3-x86_64.tar.gz"
        )
        assert source.strip_top_level is False
        assert source.target_dir == "alpine-minirootfs"

    def test_kernel_source(self):
        source = kernel_source("6.12.19")
        assert source.urls[0] == (
            "https://cdn.kernel.org/pub/linux/kernel/v6.x/linux-6.12.19.tar.xz"
        )
        assert len(source.urls) == 2

    def test_zfs_source(self):
        source = zfs_source("2.3.0")
        assert source.urls == (
            "https://github.com/openzfs/zfs/releases/download/zfs-2.3.0/"
            "zfs-2.3.0.tar.gz",
        )

    def test_default_sources_follow_components(self):
        """ZFS sources are only needed when ZFS is enabled."""
        settings = Settings()
        assert [s.name for s in default_sources(settings, resolve([]))] == [
            "rootfs",
            "kernel",
            "zfs",
        ]
        assert [s.name for s in default_sources(settings, resolve(["minimal"]))] == [
            "rootfs",
            "kernel",
        ]


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should download file and return its checksum."""
        content = b"Test file content"
        respx.get(PRIMARY).mock(return_value=httpx.Response(200, content=content))

        dest_path = tmp_path / "sources" / "linux.tar.xz"
        with httpx.Client() as client:
            checksum = download_file(client, PRIMARY, dest_path)

        assert dest_path.read_bytes() == content
        assert checksum == hashlib.sha256(content).hexdigest()
        assert list(dest_path.parent.glob("*.part")) == []

    @respx.mock
    def test_http_error(self, tmp_path):
        """Should raise FetchError on HTTP error and leave nothing behind."""
        respx.get(PRIMARY).mock(return_value=httpx.Response(404))

        dest_path = tmp_path / "linux.tar.xz"
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, PRIMARY, dest_path)

        assert exc_info.value.code == "http_error"
        assert list(tmp_path.iterdir()) == []

    @respx.mock
    def test_timeout_error(self, tmp_path):
        respx.get(PRIMARY).mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, PRIMARY, tmp_path / "linux.tar.xz")

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, tmp_path):
        respx.get(PRIMARY).mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, PRIMARY, tmp_path / "linux.tar.xz")

        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_empty_download(self, tmp_path):
        respx.get(PRIMARY).mock(return_value=httpx.Response(200, content=b""))

        dest_path = tmp_path / "linux.tar.xz"
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, PRIMARY, dest_path)

        assert exc_info.value.code == "empty_download"
        assert not dest_path.exists()


class TestDownloadWithFallback:
    """Tests for mirror fallback."""

    @respx.mock
    def test_falls_back_to_second_mirror(self, tmp_path):
        respx.get(PRIMARY).mock(return_value=httpx.Response(503))
        respx.get(FALLBACK).mock(return_value=httpx.Response(200, content=b"data"))

        dest_path = tmp_path / "linux.tar.xz"
        with httpx.Client() as client:
            download_with_fallback(client, [PRIMARY, FALLBACK], dest_path)

        assert dest_path.read_bytes() == b"data"

    @respx.mock
    def test_all_mirrors_fail(self, tmp_path):
        respx.get(PRIMARY).mock(return_value=httpx.Response(503))
        respx.get(FALLBACK).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_with_fallback(
                client, [PRIMARY, FALLBACK], tmp_path / "linux.tar.xz"
            )

        assert exc_info.value.code == "all_mirrors_failed"
        assert "503" in str(exc_info.value)
        assert "404" in str(exc_info.value)


class TestExtractArchive:
    """Tests for extract_archive function."""

    def test_strips_top_level(self, tmp_path):
        archive = tmp_path / "linux.tar.xz"
        archive.write_bytes(make_tar_xz({"Makefile": "all:", "README": "Linux"}))

        dest_dir = extract_archive(archive, tmp_path / "build" / "linux")

        assert (dest_dir / "Makefile").read_text() == "all:"
        assert (dest_dir / "README").exists()
        assert is_extracted(dest_dir)
        assert list((tmp_path / "build").iterdir()) == [dest_dir]

    def test_keeps_layout_without_strip(self, tmp_path):
        archive = tmp_path / "rootfs.tar.xz"
        archive.write_bytes(
            make_tar_xz({"etc/hostname": "onefile", "bin/sh": "#!"}, top_level=None)
        )

        dest_dir = extract_archive(
            archive, tmp_path / "alpine-minirootfs", strip_top_level=False
        )

        assert (dest_dir / "etc" / "hostname").read_text() == "onefile"
        assert (dest_dir / EXTRACTION_MARKER).is_file()

    def test_replaces_partial_tree(self, tmp_path):
        """A partially extracted tree should be replaced, not merged."""
        dest_dir = tmp_path / "linux"
        dest_dir.mkdir()
        (dest_dir / "stale.o").write_text("stale")

        archive = tmp_path / "linux.tar.xz"
        archive.write_bytes(make_tar_xz({"Makefile": "all:"}))
        extract_archive(archive, dest_dir)

        assert not (dest_dir / "stale.o").exists()
        assert (dest_dir / "Makefile").exists()

    def test_path_traversal_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar.xz"
        archive.write_bytes(make_tar_xz({"../escape.txt": "x"}, top_level=None))

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "escape.txt").exists()
        assert not is_extracted(tmp_path / "out")

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "broken.tar.xz"
        archive.write_bytes(b"definitely not a tarball")

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "tar_error"
        assert not (tmp_path / "out").exists()

    def test_empty_archive(self, tmp_path):
        archive = tmp_path / "empty.tar.xz"
        archive.write_bytes(make_tar_xz({}))

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "empty_archive"


class TestHttpSourceFetcher:
    """Tests for the default fetch capability."""

    @respx.mock
    def test_fetch_downloads_and_extracts(self, tmp_path):
        route = respx.get(PRIMARY).mock(
            return_value=httpx.Response(200, content=make_tar_xz({"Makefile": "x"}))
        )
        with httpx.Client() as client:
            fetcher = HttpSourceFetcher(tmp_path / "cache", client=client)
            dest = fetcher.fetch(kernel_spec(), tmp_path / "build" / "linux")
            assert (dest / "Makefile").exists()
            assert fetcher.archive_path(kernel_spec()).is_file()

            # Already extracted: nothing is downloaded again
            fetcher.fetch(kernel_spec(), tmp_path / "build" / "linux")

        assert route.call_count == 1

    def test_fetch_uses_cached_archive(self, tmp_path):
        fetcher = HttpSourceFetcher(tmp_path / "cache")
        archive = fetcher.archive_path(kernel_spec())
        archive.parent.mkdir(parents=True)
        archive.write_bytes(make_tar_xz({"Makefile": "cached"}))

        dest = fetcher.fetch(kernel_spec(), tmp_path / "linux")

        assert (dest / "Makefile").read_text() == "cached"

    @respx.mock
    def test_fetch_without_cache_redownloads(self, tmp_path):
        route = respx.get(PRIMARY).mock(
            return_value=httpx.Response(200, content=make_tar_xz({"Makefile": "new"}))
        )
        with httpx.Client() as client:
            fetcher = HttpSourceFetcher(
                tmp_path / "cache", use_cache=False, client=client
            )
            archive = fetcher.archive_path(kernel_spec())
            archive.parent.mkdir(parents=True)
            archive.write_bytes(make_tar_xz({"Makefile": "old"}))

            dest = fetcher.fetch(kernel_spec(), tmp_path / "linux")

        assert route.called
        assert (dest / "Makefile").read_text() == "new"


class TestFetchAlpineKernelConfig:
    """Tests for downloading Alpine's LTS kernel config."""

    @respx.mock
    def test_falls_back_between_mirrors(self, tmp_path):
        respx.get(ALPINE_KERNEL_CONFIG_URLS[0]).mock(return_value=httpx.Response(502))
        respx.get(ALPINE_KERNEL_CONFIG_URLS[1]).mock(
            return_value=httpx.Response(200, content=b"CONFIG_MODULES=y\n")
        )

        with httpx.Client() as client:
            path = fetch_alpine_kernel_config(
                tmp_path / "cache", "3.21.3", client=client
            )

        assert path.name == "alpine-lts-3.21.3.config"
        assert path.parent == tmp_path / "cache" / "kernel-configs"
        assert path.read_text() == "CONFIG_MODULES=y\n"

    def test_uses_cached_copy(self, tmp_path):
        cached = tmp_path / "kernel-configs" / "alpine-lts-3.21.3.config"
        cached.parent.mkdir()
        cached.write_text("CONFIG_CACHED=y\n")

        assert fetch_alpine_kernel_config(tmp_path, "3.21.3") == cached
        assert cached.read_text() == "CONFIG_CACHED=y\n"

    @respx.mock
    def test_all_mirrors_fail(self, tmp_path):
        for url in ALPINE_KERNEL_CONFIG_URLS:
            respx.get(url).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            fetch_alpine_kernel_config(
                tmp_path, "3.21.3", use_cache=False, client=client
            )

        assert exc_info.value.code == "all_mirrors_failed"
