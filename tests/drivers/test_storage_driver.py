"""Tests for the storage driver and location variants."""

from pathlib import Path

import pytest

from py_ckp.drivers.storage import (
    LocalPath,
    LocalStorageDriver,
    RemoteUrl,
    UrnRef,
    driver_for,
    location_from,
)
from py_ckp.errors import UnsupportedLocationError


class TestLocationFrom:
    """Verify location classification."""

    def test_urn(self) -> None:
        """ckp:// strings are URN references."""
        assert location_from("ckp://Producer:v1#storage") == UrnRef("ckp://Producer:v1#storage")

    def test_remote(self) -> None:
        """Other URL schemes are remote."""
        assert location_from("s3://bucket/key") == RemoteUrl("s3://bucket/key")

    def test_path(self) -> None:
        """Everything else is a local path."""
        assert location_from("concepts/Producer") == LocalPath(Path("concepts/Producer"))
        assert location_from(Path("/tmp")) == LocalPath(Path("/tmp"))


class TestLocalDriver:
    """Verify the local filesystem driver."""

    def test_relative_paths_use_project_root(self, tmp_path: Path) -> None:
        """Relative paths should resolve under the project root."""
        driver = LocalStorageDriver(tmp_path)
        driver.write_bytes(LocalPath(Path("a/b.txt")), b"hello")
        assert (tmp_path / "a" / "b.txt").read_bytes() == b"hello"
        assert driver.read_bytes(LocalPath(Path("a/b.txt"))) == b"hello"

    def test_urn_locations_resolve(self, tmp_path: Path) -> None:
        """A staged kernel URN should land inside the kernel subtree."""
        driver = LocalStorageDriver(tmp_path)
        driver.write_bytes(UrnRef("ckp://Producer:v1#storage/x.inst/receipt.json"), b"{}")
        assert (tmp_path / "concepts/Producer/storage/x.inst/receipt.json").exists()

    def test_exclusive_write_refuses_overwrite(self, tmp_path: Path) -> None:
        """An exclusive write should fail if the file exists."""
        driver = LocalStorageDriver(tmp_path)
        location = LocalPath(Path("r.json"))
        driver.write_bytes(location, b"1", exclusive=True)
        with pytest.raises(FileExistsError):
            driver.write_bytes(location, b"2", exclusive=True)
        assert driver.read_bytes(location) == b"1"

    def test_plain_write_replaces(self, tmp_path: Path) -> None:
        """A non-exclusive write should replace the content."""
        driver = LocalStorageDriver(tmp_path)
        location = LocalPath(Path("r.json"))
        driver.write_bytes(location, b"1")
        driver.write_bytes(location, b"2")
        assert driver.read_bytes(location) == b"2"

    def test_append(self, tmp_path: Path) -> None:
        """Appends accumulate."""
        driver = LocalStorageDriver(tmp_path)
        location = LocalPath(Path("logs/tx.jsonl"))
        driver.append_bytes(location, b"a\n")
        driver.append_bytes(location, b"b\n")
        assert driver.read_bytes(location) == b"a\nb\n"

    def test_create_link_is_relative_and_exclusive(self, tmp_path: Path) -> None:
        """Links should be relative symlinks and never replace an entry."""
        driver = LocalStorageDriver(tmp_path)
        (tmp_path / "target").mkdir()
        link = LocalPath(Path("inbox/PRODUCES.A/x.inst"))
        driver.create_link(link, LocalPath(Path("target")))
        path = tmp_path / "inbox" / "PRODUCES.A" / "x.inst"
        assert path.is_symlink()
        assert not Path(path.readlink()).is_absolute()
        assert path.resolve() == (tmp_path / "target").resolve()
        with pytest.raises(FileExistsError):
            driver.create_link(link, LocalPath(Path("target")))

    def test_exists_and_list(self, tmp_path: Path) -> None:
        """exists and list_names should reflect the directory."""
        driver = LocalStorageDriver(tmp_path)
        driver.write_bytes(LocalPath(Path("d/b")), b"")
        driver.write_bytes(LocalPath(Path("d/a")), b"")
        assert driver.exists(LocalPath(Path("d/a")))
        assert driver.list_names(LocalPath(Path("d"))) == ["a", "b"]
        assert driver.list_names(LocalPath(Path("missing"))) == []

    def test_remote_refused(self, tmp_path: Path) -> None:
        """The local driver cannot reach remote URLs."""
        with pytest.raises(UnsupportedLocationError):
            LocalStorageDriver(tmp_path).read_bytes(RemoteUrl("https://example.com/x"))


class TestDriverFor:
    """Verify driver selection."""

    def test_local_variants(self, tmp_path: Path) -> None:
        """Paths and URNs get the local driver."""
        assert isinstance(driver_for(LocalPath(Path("x")), tmp_path), LocalStorageDriver)
        assert isinstance(driver_for(UrnRef("ckp://A:v1"), tmp_path), LocalStorageDriver)

    def test_remote_has_no_driver(self, tmp_path: Path) -> None:
        """No bundled driver serves remote URLs."""
        with pytest.raises(UnsupportedLocationError):
            driver_for(RemoteUrl("s3://bucket"), tmp_path)
