"""Drivers — pluggable storage and version backends.

Re-exports public symbols so callers can write::

    from py_ckp.drivers import LocalStorageDriver, detect_driver
"""

from py_ckp.drivers.storage import (
    LocalPath,
    LocalStorageDriver,
    RemoteUrl,
    StorageDriver,
    StorageLocation,
    UrnRef,
    driver_for,
    location_from,
)
from py_ckp.drivers.version import (
    FilesystemVersionDriver,
    VersionBackend,
    VersionDriver,
    VersionInfo,
    create_driver,
    detect_backend,
    detect_driver,
)

__all__ = [
    "FilesystemVersionDriver",
    "LocalPath",
    "LocalStorageDriver",
    "RemoteUrl",
    "StorageDriver",
    "StorageLocation",
    "UrnRef",
    "VersionBackend",
    "VersionDriver",
    "VersionInfo",
    "create_driver",
    "detect_backend",
    "detect_driver",
    "driver_for",
    "location_from",
]
