# Copyright Red Hat
#
# tests/_util.py - Loop volume provisioner test utilities
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
from os.path import isdir, join, realpath
from unittest.mock import patch
import subprocess
import tempfile
import logging
import shutil
import json
import os

from loopvol.provisioner import ProvisionConfig

log = logging.getLogger()

# Path in which to create temporary files
_VAR_TMP = "/var/tmp"

# Default LVM2 data offset (pe_start)
_PE_START = 2**20

# 1GiB
_BACKING_SIZE = 2**30

# 500MiB
_LV_SIZE = 500 * 2**20

_VG_NAME = "vg_data"
_LV_NAME = "lv_storage"

_MOUNT_BUSY = 32

#: Suffix losetup appends to the names of unlinked backing files
_DELETED = " (deleted)"


def _back_file_name(back_file):
    if back_file.endswith(_DELETED) or os.path.exists(back_file):
        return back_file
    return back_file + _DELETED


class FakeHost(object):
    """
    Simulates the loop device, LVM2 and file system programs called by the
    provisioner. Install with ``patch()`` to replace ``subprocess.run`` in
    ``loopvol.provisioner._callout``.

    Backing files are real files in a temporary directory: loop device and
    physical volume sizes are taken from the size of the bound file.
    """

    def __init__(self, loop_count=8, lvm_version="2.03.23(2)"):
        self.dir = tempfile.mkdtemp("_loopvol_fake", dir=_VAR_TMP)
        self.mounts_path = join(self.dir, "mounts")
        self.loop_count = loop_count
        self.lvm_version = lvm_version
        self.loops = {}
        self.device_sizes = {}
        self.pvs = {}
        self.vgs = {}
        self.lvs = {}
        self.signatures = {}
        self.mounted = []
        self.calls = []
        self.failures = {}
        self._write_mounts()

    def cleanup(self):
        shutil.rmtree(self.dir)

    def patch(self):
        """
        Return a ``unittest.mock.patch`` context replacing ``subprocess.run``
        for the provisioner with this host.
        """
        return patch("loopvol.provisioner._callout.run", side_effect=self.run)

    def path(self, *parts):
        return join(self.dir, *parts)

    def make_config(self, **kwargs):
        """
        Return a ``ProvisionConfig`` for a 500MiB LV on a 1GiB backing file
        in this host's temporary directory, updated from ``kwargs``.
        """
        values = {
            "backing_file": self.path("disk.img"),
            "size": _BACKING_SIZE,
            "vg_name": _VG_NAME,
            "lv_name": _LV_NAME,
            "lv_size": _LV_SIZE,
            "fstype": "ext4",
            "mount_point": self.path("mnt", _LV_NAME),
        }
        values.update(kwargs)
        return ProvisionConfig(**values)

    def fail(self, cmd, status, stderr, count=1):
        """
        Make the next ``count`` calls to ``cmd`` exit with ``status`` and
        diagnostic output ``stderr``.
        """
        self.failures.setdefault(cmd, []).extend([(status, stderr)] * count)

    def called(self, cmd):
        """Return the argument lists of all calls to ``cmd``."""
        return [call for call in self.calls if call[0] == cmd]

    def commands(self):
        """Return the program names called, in order."""
        return [call[0] for call in self.calls]

    def run(self, cmd_args, capture_output=False, encoding=None, timeout=None,
            check=False, env=None):
        log.debug("FakeHost: %s", " ".join(cmd_args))
        self.calls.append(list(cmd_args))
        cmd = cmd_args[0]
        if self.failures.get(cmd):
            status, stderr = self.failures[cmd].pop(0)
            stdout = ""
        else:
            if cmd.startswith("mkfs."):
                handler = self._mkfs
            else:
                handler = getattr(self, "_" + cmd)
            status, stdout, stderr = handler(cmd_args)
        if check and status:
            raise subprocess.CalledProcessError(
                status, cmd_args, output=stdout, stderr=stderr
            )
        return subprocess.CompletedProcess(
            cmd_args, status, stdout=stdout, stderr=stderr
        )

    #
    # Loop devices
    #

    def device_size(self, device):
        back_file = self.loops.get(device)
        # A bound file keeps its size after it is unlinked.
        if back_file and os.path.exists(back_file):
            self.device_sizes[device] = os.stat(back_file).st_size
        return self.device_sizes.get(device, 0)

    def add_volume_group(self, vg_name, device, size, lvs=None, extent_size=4 * 2**20):
        """
        Add a volume group ``vg_name`` on the non-loop block device
        ``device`` containing logical volumes ``lvs`` (name -> size).
        """
        self.device_sizes[device] = size
        self.pvs[device] = vg_name
        self.vgs[vg_name] = (device, extent_size)
        for lv_name, lv_size in (lvs or {}).items():
            self.lvs[(vg_name, lv_name)] = lv_size

    def _losetup(self, cmd_args):
        if "--list" in cmd_args:
            if not self.loops:
                return 0, "", ""
            devices = [
                {"name": device, "back-file": _back_file_name(back_file)}
                for device, back_file in sorted(self.loops.items())
            ]
            return 0, json.dumps({"loopdevices": devices}), ""
        if "--find" in cmd_args:
            path = cmd_args[-1]
            if not os.path.exists(path):
                return 1, "", (
                    f"losetup: {path}: failed to set up loop device: "
                    "No such file or directory"
                )
            for minor in range(self.loop_count):
                device = f"/dev/loop{minor}"
                if device not in self.loops:
                    self.loops[device] = realpath(path)
                    self.device_sizes[device] = os.stat(path).st_size
                    return 0, device + "\n", ""
            return 1, "", "losetup: cannot find an unused loop device"
        if "--detach" in cmd_args:
            device = cmd_args[-1]
            if device not in self.loops:
                return 1, "", (
                    f"losetup: {device}: detach failed: No such device or address"
                )
            del self.loops[device]
            self.device_sizes.pop(device, None)
            return 0, "", ""
        return 1, "", "losetup: bad usage"

    #
    # LVM2
    #

    def vg_size(self, vg_name):
        device, extent_size = self.vgs[vg_name]
        usable = self.device_size(device) - _PE_START
        return (usable // extent_size) * extent_size

    def vg_free(self, vg_name):
        used = sum(
            size for (vg, _), size in self.lvs.items() if vg == vg_name
        )
        return self.vg_size(vg_name) - used

    def _lvm(self, cmd_args):
        return 0, (
            f"  LVM version:     {self.lvm_version} (2023-11-21)\n"
            "  Library version: 1.02.197 (2023-11-21)\n"
            "  Driver version:  4.48.0\n"
        ), ""

    @staticmethod
    def _report(key, rows):
        return 0, json.dumps({"report": [{key: rows}]}), ""

    def _pvs(self, cmd_args):
        rows = []
        for device, vg_name in sorted(self.pvs.items()):
            if vg_name:
                size = self.vg_size(vg_name)
                free = self.vg_free(vg_name)
            else:
                size = free = self.device_size(device)
            rows.append({
                "pv_name": device,
                "vg_name": vg_name,
                "pv_size": str(size),
                "pv_free": str(free),
            })
        return self._report("pv", rows)

    def _vgs(self, cmd_args):
        rows = [
            {
                "vg_name": vg_name,
                "vg_size": str(self.vg_size(vg_name)),
                "vg_free": str(self.vg_free(vg_name)),
                "vg_extent_size": str(extent_size),
            }
            for vg_name, (_, extent_size) in sorted(self.vgs.items())
        ]
        return self._report("vg", rows)

    def _lvs(self, cmd_args):
        rows = [
            {"vg_name": vg_name, "lv_name": lv_name, "lv_size": str(size)}
            for (vg_name, lv_name), size in sorted(self.lvs.items())
        ]
        return self._report("lv", rows)

    def _pvcreate(self, cmd_args):
        device = cmd_args[-1]
        if device not in self.loops:
            return 5, "", f"  No device found for {device}."
        if device in self.pvs:
            if "--force" not in cmd_args:
                return 5, "", (
                    f"  Can't initialize physical volume \"{device}\" of volume "
                    "group \"\" without -ff"
                )
            if self.pvs[device]:
                return 5, "", (
                    f"  Can't initialize physical volume \"{device}\" of volume "
                    f"group \"{self.pvs[device]}\" without -ff"
                )
        self.pvs[device] = ""
        self.signatures.pop(device, None)
        return 0, f"  Physical volume \"{device}\" successfully created.\n", ""

    def _vgcreate(self, cmd_args):
        extent_size = int(cmd_args[2].rstrip("k")) * 1024
        vg_name, device = cmd_args[3], cmd_args[4]
        if vg_name in self.vgs:
            return 5, "", f"  A volume group called {vg_name} already exists."
        if device not in self.pvs or self.pvs[device]:
            return 5, "", f"  Physical volume {device} is in use."
        self.pvs[device] = vg_name
        self.vgs[vg_name] = (device, extent_size)
        return 0, f"  Volume group \"{vg_name}\" successfully created\n", ""

    def _lvcreate(self, cmd_args):
        lv_name = cmd_args[cmd_args.index("--name") + 1]
        size = int(cmd_args[cmd_args.index("--size") + 1].rstrip("b"))
        vg_name = cmd_args[-1]
        if vg_name not in self.vgs:
            return 5, "", f"  Volume group \"{vg_name}\" not found"
        if (vg_name, lv_name) in self.lvs:
            return 5, "", (
                f"  Logical Volume \"{lv_name}\" already exists in volume group "
                f"\"{vg_name}\""
            )
        if size > self.vg_free(vg_name):
            return 5, "", f"  Volume group \"{vg_name}\" has insufficient free space"
        self.lvs[(vg_name, lv_name)] = size
        return 0, f"  Logical volume \"{lv_name}\" created.\n", ""

    def _lvremove(self, cmd_args):
        vg_name, lv_name = cmd_args[-1].split("/")
        if (vg_name, lv_name) not in self.lvs:
            return 5, "", (
                f"  Failed to find logical volume \"{vg_name}/{lv_name}\""
            )
        del self.lvs[(vg_name, lv_name)]
        self.signatures.pop(f"/dev/{vg_name}/{lv_name}", None)
        return 0, f"  Logical volume \"{lv_name}\" successfully removed.\n", ""

    def _vgremove(self, cmd_args):
        vg_name = cmd_args[-1]
        if vg_name not in self.vgs:
            return 5, "", f"  Volume group \"{vg_name}\" not found"
        for vg, lv_name in list(self.lvs):
            if vg == vg_name:
                del self.lvs[(vg, lv_name)]
        device, _ = self.vgs.pop(vg_name)
        self.pvs[device] = ""
        return 0, f"  Volume group \"{vg_name}\" successfully removed\n", ""

    def _pvremove(self, cmd_args):
        device = cmd_args[-1]
        if device not in self.pvs:
            return 5, "", f"  No PV found on device {device}."
        if self.pvs[device]:
            return 5, "", (
                f"  PV {device} is used by VG {self.pvs[device]} so please use "
                "vgreduce first."
            )
        del self.pvs[device]
        return 0, f"  Labels on physical volume \"{device}\" successfully wiped.\n", ""

    #
    # File systems
    #

    def _blkid(self, cmd_args):
        device = cmd_args[-1]
        if device in self.signatures:
            return 0, self.signatures[device] + "\n", ""
        return 2, "", ""

    def _mkfs(self, cmd_args):
        fstype = cmd_args[0].split(".", 1)[1]
        device = cmd_args[-1]
        existing = self.signatures.get(device)
        if existing and not {"-F", "-f"} & set(cmd_args):
            return 1, "", f"{device} contains a {existing} file system"
        self.signatures[device] = fstype
        return 0, "", ""

    def _write_mounts(self):
        with open(self.mounts_path, "w", encoding="utf8") as fp:
            fp.write("proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n")
            for what, where, fstype, options in self.mounted:
                where = where.replace(" ", "\\040")
                fp.write(f"{what} {where} {fstype} {options} 0 0\n")

    def add_mount(self, what, where, fstype, options="rw,relatime"):
        """Add an entry to the simulated mount table."""
        self.mounted.append((what, where, fstype, options))
        self._write_mounts()

    def _mount(self, cmd_args):
        fstype = cmd_args[cmd_args.index("--types") + 1]
        options = cmd_args[cmd_args.index("--options") + 1]
        what, where = cmd_args[-2], cmd_args[-1]
        if any(entry[1] == where for entry in self.mounted):
            return _MOUNT_BUSY, "", (
                f"mount: {where}: {what} already mounted on {where}."
            )
        if not isdir(where):
            return _MOUNT_BUSY, "", f"mount: {where}: mount point does not exist."
        if self.signatures.get(what) != fstype:
            return _MOUNT_BUSY, "", (
                f"mount: {where}: wrong fs type, bad option, bad superblock on "
                f"{what}, missing codepage or helper program, or other error."
            )
        if options == "defaults":
            options = "rw,relatime"
        self.add_mount(what, where, fstype, options)
        return 0, "", ""

    def _umount(self, cmd_args):
        where = cmd_args[-1]
        for entry in self.mounted:
            if entry[1] == where:
                self.mounted.remove(entry)
                self._write_mounts()
                return 0, "", ""
        return _MOUNT_BUSY, "", f"umount: {where}: not mounted."
