# Copyright Red Hat
#
# loopvol/provisioner/_objects.py - Provisioned object types
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Representations of the objects created by the provisioner.
"""
from dataclasses import dataclass, field
from typing import List, Optional
from os.path import join

from loopvol import size_fmt

#: Device node directory
DEV_PREFIX = "/dev"

#: Device-mapper device node directory
DEV_MAPPER_PREFIX = "/dev/mapper"


def _dm_escape(name: str) -> str:
    return name.replace("-", "--")


@dataclass(frozen=True)
class BackingFile:
    """
    A regular file backing a loop device.
    """

    path: str
    size: int

    def __str__(self):
        return f"{self.path} ({size_fmt(self.size)})"


@dataclass(frozen=True)
class LoopBinding:
    """
    A loop device bound to a ``BackingFile``.
    """

    backing_file: BackingFile
    device: str

    def __str__(self):
        return f"{self.device} -> {self.backing_file.path}"


@dataclass
class PhysicalVolume:
    """
    An LVM2 physical volume as reported by ``pvs``.
    """

    device: str
    vg_name: str = ""
    size: int = 0
    free: int = 0


@dataclass
class VolumeGroup:
    """
    An LVM2 volume group as reported by ``vgs``.
    """

    name: str
    pvs: List[str] = field(default_factory=list)
    size: int = 0
    free: int = 0
    extent_size: int = 0

    def __str__(self):
        return (
            f"{self.name} (size={size_fmt(self.size)}, free={size_fmt(self.free)}, "
            f"extent_size={size_fmt(self.extent_size)})"
        )


@dataclass
class LogicalVolume:
    """
    An LVM2 logical volume exclusively owned by volume group ``vg``.
    """

    name: str
    vg: VolumeGroup
    size: int

    @property
    def devpath(self):
        """
        The ``/dev/<vg>/<lv>`` device path for this logical volume.
        """
        return join(DEV_PREFIX, self.vg.name, self.name)

    @property
    def dm_path(self):
        """
        The ``/dev/mapper`` device path for this logical volume.
        """
        return join(
            DEV_MAPPER_PREFIX, f"{_dm_escape(self.vg.name)}-{_dm_escape(self.name)}"
        )

    def __str__(self):
        return f"{self.vg.name}/{self.name} ({size_fmt(self.size)})"


@dataclass
class MountedFilesystem:
    """
    A file system mounted from a ``LogicalVolume``. References, but does
    not own, the logical volume.
    """

    lv: Optional[LogicalVolume]
    fstype: str
    mount_point: str
    source: str = ""
    options: str = "defaults"

    def __str__(self):
        return f"{self.source} on {self.mount_point} type {self.fstype}"


__all__ = [
    "DEV_PREFIX",
    "DEV_MAPPER_PREFIX",
    "BackingFile",
    "LoopBinding",
    "PhysicalVolume",
    "VolumeGroup",
    "LogicalVolume",
    "MountedFilesystem",
]
