# Copyright Red Hat
#
# loopvol/provisioner/_topology.py - LVM2 topology builder
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Creation and removal of the PV -> VG -> LV chain on a loop device.
"""
from json import loads, JSONDecodeError
from os.path import realpath
from typing import Dict, List, Optional
from enum import Enum
import logging

from loopvol import (
    LOOPVOL_SUBSYSTEM_TOPOLOGY,
    LoopvolAlreadyInitializedError,
    LoopvolArgumentError,
    LoopvolCalloutError,
    LoopvolExistsError,
    LoopvolNameConflictError,
    LoopvolNoSpaceError,
    LoopvolNotFoundError,
    LoopvolStateError,
    Stage,
    round_down_extents,
    size_fmt,
)

from ._objects import PhysicalVolume, VolumeGroup, LogicalVolume

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_topology(msg, *args, **kwargs):
    """A wrapper for topology subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LOOPVOL_SUBSYSTEM_TOPOLOGY}, **kwargs)


# Global LVM2 report options
LVM_REPORT_FORMAT = "--reportformat"
LVM_JSON = "json"
LVM_JSON_STD = "json_std"
LVM_OPTIONS = "--options"
LVM_UNITS = "--units"
LVM_BYTES = "b"
LVM_NOSUFFIX = "--nosuffix"
LVM_REPORT = "report"
LVM_YES = "--yes"

# Main lvm executable
LVM_CMD = "lvm"

# Version subcommand
LVM_VERSION = "version"

# LVM version string prefix
LVM_VERSION_STR = "LVM version"

# pvs report options
PVS_CMD = "pvs"
PVS_PV = "pv"
PVS_FIELD_OPTIONS = "pv_name,vg_name,pv_size,pv_free"

# vgs report options
VGS_CMD = "vgs"
VGS_VG = "vg"
VGS_FIELD_OPTIONS = "vg_name,vg_size,vg_free,vg_extent_size"

# lvs report options
LVS_CMD = "lvs"
LVS_LV = "lv"
LVS_FIELD_OPTIONS = "vg_name,lv_name,lv_size"

# pvcreate command options
PVCREATE_CMD = "pvcreate"
PVCREATE_FORCE = "--force"

# vgcreate command options
VGCREATE_CMD = "vgcreate"
VGCREATE_EXTENT_SIZE = "--physicalextentsize"

# lvcreate command options
LVCREATE_CMD = "lvcreate"
LVCREATE_NAME = "--name"
LVCREATE_SIZE = "--size"

# Removal commands
LVREMOVE_CMD = "lvremove"
VGREMOVE_CMD = "vgremove"
PVREMOVE_CMD = "pvremove"

#: Default LVM2 physical extent size (4MiB)
DEFAULT_EXTENT_SIZE = 4 * 2**20

#: Space reserved at the start of a PV for metadata (default pe_start)
PV_METADATA_RESERVE = 2**20

#: LVM commands required by the topology builder
LVM_CMDS = [
    LVM_CMD,
    PVS_CMD,
    VGS_CMD,
    LVS_CMD,
    PVCREATE_CMD,
    VGCREATE_CMD,
    LVCREATE_CMD,
    LVREMOVE_CMD,
    VGREMOVE_CMD,
    PVREMOVE_CMD,
]

MINIMUM_LVM_VERSION = (2, 3, 11)
MINIMUM_LVM_VERSION_JSON_STD = (2, 3, 17)


class TopologyState(Enum):
    """
    The last step of the PV -> VG -> LV chain that completed.
    """

    UNBOUND = 0
    PV_CREATED = 1
    VG_CREATED = 2
    LV_CREATED = 3

    def __str__(self):
        return self.name


def _to_bytes(value) -> int:
    """
    Convert an LVM2 report size field to an integer number of bytes.
    """
    return int(str(value).rstrip("Bb"))


def _same_device(dev_a: str, dev_b: str) -> bool:
    return dev_a == dev_b or realpath(dev_a) == realpath(dev_b)


def _version_string(value):
    return ".".join(str(part) for part in value)


class TopologyBuilder:
    """
    Builds a single PV -> VG -> LV chain on a block device.

    The chain is strictly sequential: ``state`` records the last state
    reached and any failure halts the chain without undoing earlier steps.
    Steps that change the system are recorded in ``changed``.
    """

    def __init__(
        self,
        callout,
        idempotent: bool = False,
        force: bool = False,
        extent_size: int = DEFAULT_EXTENT_SIZE,
    ):
        """
        Initialise a new ``TopologyBuilder``.

        :param callout: The ``Callout`` used to run LVM2 programs.
        :param idempotent: Treat objects that already exist as intended
                           as success.
        :param force: Re-initialise a device that carries stale PV metadata.
        :param extent_size: The physical extent size for new volume groups.
        """
        self.callout = callout
        self.idempotent = idempotent
        self.force = force
        self.extent_size = extent_size
        self.state = TopologyState.UNBOUND
        self.changed: List[Stage] = []
        self._json_fmt = None

    def _advance(self, state: TopologyState, stage: Stage, changed: bool):
        _log_debug_topology("Topology state %s -> %s", self.state, state)
        self.state = state
        if changed:
            self.changed.append(stage)

    def _get_lvm_version(self):
        """
        Return the installed version of LVM2 as a tuple.

        :returns: A version tuple (major, minor, patch) of LVM2
        """

        def _version_string_to_tuple(version):
            return tuple(map(int, version.split(".")))

        lvm_cmd = self.callout.run([LVM_CMD, LVM_VERSION], Stage.PV)
        for line in lvm_cmd.stdout.strip().splitlines():
            if LVM_VERSION_STR in line:
                (_, _, version, *_) = line.split()
                if "(" in version:
                    version, _ = version.split("(", maxsplit=1)
                return _version_string_to_tuple(version)
        return (0, 0, 0)

    @property
    def report_format(self):
        """
        The ``--reportformat`` value for the installed LVM2 version.
        """
        if self._json_fmt is None:
            lvm_version = self._get_lvm_version()
            if lvm_version < MINIMUM_LVM_VERSION:
                raise LoopvolNotFoundError(
                    f"Unsupported LVM2 version: {_version_string(lvm_version)} "
                    f"< {_version_string(MINIMUM_LVM_VERSION)}"
                )
            if lvm_version < MINIMUM_LVM_VERSION_JSON_STD:
                self._json_fmt = LVM_JSON
            else:
                self._json_fmt = LVM_JSON_STD
        return self._json_fmt

    def _report(self, cmd: str, fields: str, key: str, stage: Stage) -> List[Dict]:
        """
        Call out to an LVM2 reporting program and return the list of report
        rows for object type ``key``.
        """
        report_cmd_args = [
            cmd,
            LVM_REPORT_FORMAT,
            self.report_format,
            LVM_UNITS,
            LVM_BYTES,
            LVM_NOSUFFIX,
            LVM_OPTIONS,
            fields,
        ]
        report_cmd = self.callout.run(report_cmd_args, stage)
        try:
            report_dict = loads(report_cmd.stdout)
        except JSONDecodeError as err:
            raise LoopvolCalloutError(
                f"Unable to decode {cmd} JSON output: {err}", stage=stage
            ) from err
        rows = []
        for report in report_dict.get(LVM_REPORT, []):
            rows.extend(report.get(key, []))
        return rows

    def physical_volumes(self) -> Dict[str, PhysicalVolume]:
        """
        Return a dictionary mapping device paths to ``PhysicalVolume``
        objects for all PVs visible to LVM2.
        """
        pvs = {}
        for pv_dict in self._report(PVS_CMD, PVS_FIELD_OPTIONS, PVS_PV, Stage.PV):
            pvs[pv_dict["pv_name"]] = PhysicalVolume(
                device=pv_dict["pv_name"],
                vg_name=pv_dict["vg_name"],
                size=_to_bytes(pv_dict["pv_size"]),
                free=_to_bytes(pv_dict["pv_free"]),
            )
        return pvs

    def get_physical_volume(self, device: str) -> Optional[PhysicalVolume]:
        """
        Return the ``PhysicalVolume`` for ``device`` or ``None``.
        """
        for pv_name, pv in self.physical_volumes().items():
            if _same_device(pv_name, device):
                return pv
        return None

    def volume_groups(self) -> Dict[str, VolumeGroup]:
        """
        Return a dictionary mapping names to ``VolumeGroup`` objects for
        all VGs visible to LVM2.
        """
        vgs = {}
        for vg_dict in self._report(VGS_CMD, VGS_FIELD_OPTIONS, VGS_VG, Stage.VG):
            vgs[vg_dict["vg_name"]] = VolumeGroup(
                name=vg_dict["vg_name"],
                size=_to_bytes(vg_dict["vg_size"]),
                free=_to_bytes(vg_dict["vg_free"]),
                extent_size=_to_bytes(vg_dict["vg_extent_size"]),
            )
        if vgs:
            for pv in self.physical_volumes().values():
                if pv.vg_name in vgs:
                    vgs[pv.vg_name].pvs.append(pv.device)
        return vgs

    def get_volume_group(self, vg_name: str) -> Optional[VolumeGroup]:
        """
        Return the ``VolumeGroup`` named ``vg_name`` or ``None``.
        """
        return self.volume_groups().get(vg_name)

    def logical_volumes(self, vg: VolumeGroup) -> Dict[str, LogicalVolume]:
        """
        Return a dictionary mapping names to ``LogicalVolume`` objects for
        all LVs in ``vg``.
        """
        lvs = {}
        for lv_dict in self._report(LVS_CMD, LVS_FIELD_OPTIONS, LVS_LV, Stage.LV):
            if lv_dict["vg_name"] == vg.name:
                lv_name = lv_dict["lv_name"]
                lvs[lv_name] = LogicalVolume(
                    lv_name, vg, _to_bytes(lv_dict["lv_size"])
                )
        return lvs

    def get_logical_volume(
        self, vg: VolumeGroup, lv_name: str
    ) -> Optional[LogicalVolume]:
        """
        Return the ``LogicalVolume`` named ``lv_name`` in ``vg`` or ``None``.
        """
        return self.logical_volumes(vg).get(lv_name)

    def _create_pv(self, device: str) -> PhysicalVolume:
        pv = self.get_physical_volume(device)
        if pv is not None:
            if self.idempotent:
                _log_info("Device %s is already a physical volume", device)
                self._advance(TopologyState.PV_CREATED, Stage.PV, False)
                return pv
            if not self.force or pv.vg_name:
                raise LoopvolAlreadyInitializedError(
                    f"Device {device} already carries LVM2 physical volume metadata"
                    + (f" (volume group {pv.vg_name})" if pv.vg_name else ""),
                    stage=Stage.PV,
                    resource=device,
                )
            _log_warn("Re-initialising physical volume %s", device)

        pvcreate_cmd_args = [PVCREATE_CMD]
        if pv is not None:
            pvcreate_cmd_args.extend([PVCREATE_FORCE, LVM_YES])
        pvcreate_cmd_args.append(device)
        self.callout.run(pvcreate_cmd_args, Stage.PV, resource=device)
        _log_info("Created physical volume %s", device)

        pv = self.get_physical_volume(device)
        if pv is None:
            raise LoopvolCalloutError(
                f"Physical volume {device} not found after {PVCREATE_CMD}",
                stage=Stage.PV,
                resource=device,
            )
        self._advance(TopologyState.PV_CREATED, Stage.PV, True)
        return pv

    def _check_projected_capacity(self, pv: PhysicalVolume, lv_size_bytes: int):
        """
        Check that a volume group created on ``pv`` could hold an LV of
        ``lv_size_bytes`` before creating the volume group.
        """
        capacity = round_down_extents(
            max(pv.size - PV_METADATA_RESERVE, 0), self.extent_size
        )
        if lv_size_bytes > capacity:
            raise LoopvolNoSpaceError(
                f"Requested size {size_fmt(lv_size_bytes)} exceeds the capacity "
                f"of {pv.device} ({size_fmt(capacity)})",
                stage=Stage.LV,
                resource=pv.device,
            )

    def _create_vg(self, pv: PhysicalVolume, vg_name: str) -> VolumeGroup:
        device = pv.device
        vg = self.get_volume_group(vg_name)

        if pv.vg_name and pv.vg_name != vg_name:
            raise LoopvolNameConflictError(
                f"Device {device} belongs to volume group {pv.vg_name}",
                stage=Stage.VG,
                resource=device,
            )

        if vg is not None:
            if not any(_same_device(member, device) for member in vg.pvs):
                raise LoopvolNameConflictError(
                    f"Volume group {vg_name} already exists on "
                    f"{', '.join(vg.pvs) or 'another device'}",
                    stage=Stage.VG,
                    resource=vg_name,
                )
            if not self.idempotent:
                raise LoopvolExistsError(
                    f"Volume group {vg_name} already exists",
                    stage=Stage.VG,
                    resource=vg_name,
                )
            _log_info("Volume group %s already exists on %s", vg_name, device)
            self._advance(TopologyState.VG_CREATED, Stage.VG, False)
            return vg

        vgcreate_cmd_args = [
            VGCREATE_CMD,
            VGCREATE_EXTENT_SIZE,
            f"{self.extent_size // 1024}k",
            vg_name,
            device,
        ]
        self.callout.run(vgcreate_cmd_args, Stage.VG, resource=vg_name)
        _log_info("Created volume group %s on %s", vg_name, device)

        vg = self.get_volume_group(vg_name)
        if vg is None:
            raise LoopvolCalloutError(
                f"Volume group {vg_name} not found after {VGCREATE_CMD}",
                stage=Stage.VG,
                resource=vg_name,
            )
        self._advance(TopologyState.VG_CREATED, Stage.VG, True)
        return vg

    def _create_lv(
        self, vg: VolumeGroup, lv_name: str, lv_size_bytes: int
    ) -> LogicalVolume:
        vg_lv = f"{vg.name}/{lv_name}"
        if lv_size_bytes <= 0 or lv_size_bytes % vg.extent_size:
            raise LoopvolArgumentError(
                f"Size {lv_size_bytes} is not a positive multiple of the "
                f"extent size {vg.extent_size}",
                stage=Stage.LV,
                resource=vg_lv,
            )

        lv = self.get_logical_volume(vg, lv_name)
        if lv is not None:
            if not self.idempotent:
                raise LoopvolExistsError(
                    f"Logical volume {vg_lv} already exists",
                    stage=Stage.LV,
                    resource=vg_lv,
                )
            if lv.size != lv_size_bytes:
                raise LoopvolExistsError(
                    f"Logical volume {vg_lv} exists with size {size_fmt(lv.size)}, "
                    f"requested {size_fmt(lv_size_bytes)}",
                    stage=Stage.LV,
                    resource=vg_lv,
                )
            _log_info("Logical volume %s already exists", vg_lv)
            self._advance(TopologyState.LV_CREATED, Stage.LV, False)
            return lv

        if lv_size_bytes > vg.free:
            raise LoopvolNoSpaceError(
                f"Requested size {size_fmt(lv_size_bytes)} exceeds free space "
                f"in volume group {vg.name} ({size_fmt(vg.free)})",
                stage=Stage.LV,
                resource=vg_lv,
            )

        lvcreate_cmd_args = [
            LVCREATE_CMD,
            LVM_YES,
            LVCREATE_NAME,
            lv_name,
            LVCREATE_SIZE,
            f"{lv_size_bytes}b",
            vg.name,
        ]
        self.callout.run(lvcreate_cmd_args, Stage.LV, resource=vg_lv)
        _log_info("Created logical volume %s (%s)", vg_lv, size_fmt(lv_size_bytes))

        vg = self.get_volume_group(vg.name) or vg
        lv = LogicalVolume(lv_name, vg, lv_size_bytes)
        self._advance(TopologyState.LV_CREATED, Stage.LV, True)
        return lv

    def build_topology(
        self, device: str, vg_name: str, lv_name: str, lv_size_bytes: int
    ) -> LogicalVolume:
        """
        Build the PV -> VG -> LV chain on ``device``.

        :param device: The block device to initialise as a PV.
        :param vg_name: The name of the volume group to create.
        :param lv_name: The name of the logical volume to create.
        :param lv_size_bytes: The LV size: a multiple of the extent size.
        :returns: The ``LogicalVolume``.
        """
        _log_debug_topology(
            "Building topology %s/%s (%d bytes) on %s",
            vg_name,
            lv_name,
            lv_size_bytes,
            device,
        )
        self.state = TopologyState.UNBOUND
        self.changed = []

        pv = self._create_pv(device)

        if not pv.vg_name:
            self._check_projected_capacity(pv, lv_size_bytes)

        vg = self._create_vg(pv, vg_name)

        return self._create_lv(vg, lv_name, lv_size_bytes)

    def owned_volume_group(
        self, vg_name: str, device: Optional[str]
    ) -> Optional[VolumeGroup]:
        """
        Return the volume group ``vg_name`` if it exists and is built on
        ``device`` alone, or ``None`` if it does not exist.

        :raises: ``LoopvolNameConflictError`` if the volume group exists and
                 ``device`` is unknown or is not its only physical volume.
        """
        vg = self.get_volume_group(vg_name)
        if vg is None:
            return None
        if not device:
            raise LoopvolNameConflictError(
                f"Volume group {vg_name} exists but no loop device is bound "
                "to the backing file: refusing to remove it",
                stage=Stage.TEARDOWN,
                resource=vg_name,
            )
        if not vg.pvs or not all(_same_device(pv, device) for pv in vg.pvs):
            raise LoopvolNameConflictError(
                f"Volume group {vg_name} is not built on {device} alone "
                f"({', '.join(vg.pvs) or 'no PVs'})",
                stage=Stage.TEARDOWN,
                resource=vg_name,
            )
        return vg

    def destroy(self, vg_name: str, lv_name: str, device: Optional[str]):
        """
        Remove the logical volume, volume group and physical volume built
        by ``build_topology()``. Objects that do not exist are skipped.

        :returns: A list of the objects removed.
        :raises: ``LoopvolNameConflictError`` if the volume group exists and
                 ``device`` is unknown or is not its only physical volume.
        """
        removed = []
        vg = self.owned_volume_group(vg_name, device)
        if vg is not None:
            vg_lv = f"{vg_name}/{lv_name}"
            lvs = self.logical_volumes(vg)
            others = sorted(name for name in lvs if name != lv_name)
            if others:
                raise LoopvolStateError(
                    f"Volume group {vg_name} contains other logical volumes: "
                    f"{', '.join(others)}",
                    stage=Stage.TEARDOWN,
                    resource=vg_name,
                )
            if lv_name in lvs:
                self.callout.run(
                    [LVREMOVE_CMD, LVM_YES, vg_lv], Stage.TEARDOWN, resource=vg_lv
                )
                _log_info("Removed logical volume %s", vg_lv)
                removed.append(vg_lv)
            self.callout.run(
                [VGREMOVE_CMD, LVM_YES, vg_name], Stage.TEARDOWN, resource=vg_name
            )
            _log_info("Removed volume group %s", vg_name)
            removed.append(vg_name)

        if device and self.get_physical_volume(device) is not None:
            self.callout.run(
                [PVREMOVE_CMD, LVM_YES, device], Stage.TEARDOWN, resource=device
            )
            _log_info("Removed physical volume %s", device)
            removed.append(device)

        self.state = TopologyState.UNBOUND
        return removed
