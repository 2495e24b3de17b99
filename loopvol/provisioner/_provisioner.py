# Copyright Red Hat
#
# loopvol/provisioner/_provisioner.py - Loop volume provisioner
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Sequential provisioning and teardown of a loop-backed LVM2 volume.
"""
from dataclasses import dataclass, field
from os.path import exists
from typing import Dict, List, Optional
from enum import Enum
import logging
import os

from loopvol import (
    LoopvolArgumentError,
    Stage,
    round_up_extents,
    size_fmt,
)

from ._allocator import LOSETUP_CMD, Allocator
from ._callout import Callout, check_commands_present
from ._config import ProvisionConfig
from ._filesystem import (
    BLKID_CMD,
    MKFS_CMD,
    MOUNT_CMD,
    UMOUNT_CMD,
    FilesystemProvisioner,
)
from ._objects import LoopBinding, LogicalVolume, MountedFilesystem
from ._topology import LVM_CMDS, TopologyBuilder, TopologyState

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


class ProvisionState(Enum):
    """
    The last provisioning stage that completed.
    """

    UNBOUND = 0
    ALLOCATED = 1
    PV_CREATED = 2
    VG_CREATED = 3
    LV_CREATED = 4
    MOUNTED = 5

    def __str__(self):
        return self.name


_TOPOLOGY_TO_PROVISION_STATE = {
    TopologyState.UNBOUND: ProvisionState.ALLOCATED,
    TopologyState.PV_CREATED: ProvisionState.PV_CREATED,
    TopologyState.VG_CREATED: ProvisionState.VG_CREATED,
    TopologyState.LV_CREATED: ProvisionState.LV_CREATED,
}


@dataclass
class ProvisionResult:
    """
    The outcome of a ``Provisioner.provision()`` call.
    """

    state: ProvisionState
    binding: Optional[LoopBinding] = None
    lv: Optional[LogicalVolume] = None
    filesystem: Optional[MountedFilesystem] = None
    changed: List[Stage] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        """
        ``True`` if provisioning made no change to the system.
        """
        return not self.changed

    def to_dict(self) -> Dict:
        """
        Return a dictionary representation of this result.
        """
        return {
            "State": str(self.state),
            "BackingFile": self.binding.backing_file.path if self.binding else "",
            "Device": self.binding.device if self.binding else "",
            "VolumeGroup": self.lv.vg.name if self.lv else "",
            "LogicalVolume": self.lv.name if self.lv else "",
            "Size": self.lv.size if self.lv else 0,
            "DevicePath": self.lv.devpath if self.lv else "",
            "FsType": self.filesystem.fstype if self.filesystem else "",
            "MountPoint": self.filesystem.mount_point if self.filesystem else "",
            "Changed": [str(stage) for stage in self.changed],
        }


class Provisioner:
    """
    Provisions one loop-backed PV -> VG -> LV chain with a mounted file
    system, as described by a ``ProvisionConfig``.

    Stages run strictly in order and a failure halts the chain: no stage
    is retried and nothing already created is rolled back. ``teardown()``
    removes what ``provision()`` created.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        callout: Optional[Callout] = None,
        mounts_path: Optional[str] = None,
    ):
        """
        Initialise a new ``Provisioner``.

        :param config: The provisioning configuration.
        :param callout: The ``Callout`` used to run external programs.
        :param mounts_path: The mount table to consult.
        """
        self.config = config
        self.callout = callout or Callout(lvm_system_dir=config.lvm_system_dir)
        self.allocator = Allocator(self.callout)
        self.topology = TopologyBuilder(
            self.callout,
            idempotent=config.idempotent,
            force=config.force,
            extent_size=config.extent_size,
        )
        self.filesystem = FilesystemProvisioner(
            self.callout, force=config.force, mounts_path=mounts_path
        )
        self.state = ProvisionState.UNBOUND

    def check_commands(self):
        """
        Check that the programs needed to provision the configured volume
        are installed.
        """
        check_commands_present(
            [LOSETUP_CMD]
            + LVM_CMDS
            + [BLKID_CMD, f"{MKFS_CMD}.{self.config.fstype}", MOUNT_CMD, UMOUNT_CMD]
        )

    def _lv_size(self, vg_name: str) -> int:
        """
        Return the configured LV size rounded up to the extent size of the
        volume group (or the configured extent size if the volume group
        does not exist yet).
        """
        vg = self.topology.get_volume_group(vg_name)
        extent_size = vg.extent_size if vg else self.config.extent_size
        lv_size = round_up_extents(self.config.lv_size, extent_size)
        if lv_size != self.config.lv_size:
            _log_info(
                "Rounded logical volume size %s up to %s (extent size %s)",
                size_fmt(self.config.lv_size),
                size_fmt(lv_size),
                size_fmt(extent_size),
            )
        return lv_size

    def provision(self) -> ProvisionResult:
        """
        Allocate and bind the backing file, build the PV -> VG -> LV chain
        and mount a file system on the logical volume.

        :returns: A ``ProvisionResult`` describing the final state and the
                  stages that changed the system.
        """
        config = self.config
        config.validate()
        vg_name = config.effective_vg_name
        changed = []

        self.state = ProvisionState.UNBOUND
        binding = self.allocator.allocate(
            config.backing_file, config.size, preallocate=config.preallocate
        )
        changed.extend(self.allocator.changed)
        self.state = ProvisionState.ALLOCATED

        try:
            lv = self.topology.build_topology(
                binding.device, vg_name, config.lv_name, self._lv_size(vg_name)
            )
        finally:
            changed.extend(self.topology.changed)
            self.state = _TOPOLOGY_TO_PROVISION_STATE[self.topology.state]

        try:
            filesystem = self.filesystem.provision(
                lv, config.fstype, config.mount_point, options=config.mount_options
            )
        finally:
            changed.extend(self.filesystem.changed)
        self.state = ProvisionState.MOUNTED

        result = ProvisionResult(self.state, binding, lv, filesystem, changed)
        if result.unchanged:
            _log_info("%s is already provisioned: no changes made", lv)
        else:
            _log_info(
                "Provisioned %s at %s (%s)",
                lv,
                filesystem.mount_point,
                ", ".join(str(stage) for stage in changed),
            )
        return result

    def teardown(self, remove_backing: bool = False) -> List[str]:
        """
        Unmount the file system, remove the LV, VG and PV, and detach the
        loop device. Objects that do not exist are skipped.

        :param remove_backing: Also delete the backing file.
        :returns: A list of the objects removed.
        """
        config = self.config
        config.validate(teardown=True)
        vg_name = config.effective_vg_name
        removed = []

        binding = None
        if config.backing_file:
            binding = self.allocator.find_binding(config.backing_file)
        device = binding.device if binding else None

        # Refuse before unmounting anything if the VG is not ours.
        self.topology.owned_volume_group(vg_name, device)

        if config.mount_point and self.filesystem.unprovision(config.mount_point):
            removed.append(config.mount_point)

        removed.extend(self.topology.destroy(vg_name, config.lv_name, device))

        backing_removed = False
        if binding:
            backing_removed = self.allocator.release(
                binding, remove_backing=remove_backing
            )
            removed.append(str(binding))
        elif remove_backing and config.backing_file and exists(config.backing_file):
            os.unlink(config.backing_file)
            _log_info("Removed backing file %s", config.backing_file)
            backing_removed = True

        if backing_removed:
            removed.append(config.backing_file)

        self.state = ProvisionState.UNBOUND
        return removed

    def status(self) -> Dict:
        """
        Report the current state of the configured volume without changing
        anything.

        :returns: A dictionary describing each provisioned object.
        """
        config = self.config
        if not config.vg_name or not config.lv_name:
            raise LoopvolArgumentError(
                "VgName and LvName are required", stage=Stage.CONFIG
            )
        vg_name = config.effective_vg_name
        state = ProvisionState.UNBOUND
        status = {
            "BackingFile": config.backing_file or "",
            "BackingFileExists": False,
            "Device": "",
            "PhysicalVolume": False,
            "VolumeGroup": vg_name,
            "VolumeGroupExists": False,
            "LogicalVolume": config.lv_name,
            "LogicalVolumeExists": False,
            "Size": 0,
            "MountPoint": config.mount_point or "",
            "Mounted": False,
            "FsType": "",
        }

        binding = None
        if config.backing_file:
            status["BackingFileExists"] = exists(config.backing_file)
            binding = self.allocator.find_binding(config.backing_file)
        if binding:
            state = ProvisionState.ALLOCATED
            status["Device"] = binding.device
            if self.topology.get_physical_volume(binding.device):
                state = ProvisionState.PV_CREATED
                status["PhysicalVolume"] = True

        vg = self.topology.get_volume_group(vg_name)
        if vg:
            status["VolumeGroupExists"] = True
            state = max(state, ProvisionState.VG_CREATED, key=lambda s: s.value)
            lv = self.topology.get_logical_volume(vg, config.lv_name)
            if lv:
                status["LogicalVolumeExists"] = True
                status["Size"] = lv.size
                state = ProvisionState.LV_CREATED

        if config.mount_point:
            entry = self.filesystem.mounted_at(config.mount_point)
            if entry:
                status["Mounted"] = True
                status["FsType"] = entry.fstype
                if state == ProvisionState.LV_CREATED:
                    state = ProvisionState.MOUNTED

        status["State"] = str(state)
        return status
