# Copyright Red Hat
#
# loopvol/provisioner/_filesystem.py - File system creation and mounting
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
File system provisioning for logical volumes.
"""
from os.path import abspath, exists, isdir, normpath, realpath
from typing import List, Optional
import collections
import logging
import os

from loopvol import (
    LOOPVOL_SUBSYSTEM_FILESYSTEM,
    LoopvolArgumentError,
    LoopvolCalloutError,
    LoopvolExistsError,
    LoopvolFormatError,
    LoopvolMountError,
    LoopvolPermissionError,
    LoopvolUmountError,
    Stage,
)

from ._callout import is_permission_error
from ._objects import LogicalVolume, MountedFilesystem

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_filesystem(msg, *args, **kwargs):
    """A wrapper for filesystem subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LOOPVOL_SUBSYSTEM_FILESYSTEM}, **kwargs)


#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

# blkid command options
BLKID_CMD = "blkid"
BLKID_PROBE = "--probe"
BLKID_MATCH_TYPE = "--match-tag=TYPE"
BLKID_OUTPUT_VALUE = "--output=value"

#: blkid exit status when no signature matched
_BLKID_NO_MATCH = 2

# mkfs command prefix
MKFS_CMD = "mkfs"

#: Options to overwrite an existing signature, by file system type
_MKFS_FORCE_OPTS = {
    "ext2": "-F",
    "ext3": "-F",
    "ext4": "-F",
    "xfs": "-f",
    "btrfs": "-f",
}

#: Options to suppress progress output, by file system type
_MKFS_QUIET_OPTS = {
    "ext2": "-q",
    "ext3": "-q",
    "ext4": "-q",
    "xfs": "-q",
    "btrfs": "-q",
}

# mount and umount commands
MOUNT_CMD = "mount"
MOUNT_TYPES = "--types"
MOUNT_OPTIONS = "--options"
UMOUNT_CMD = "umount"

#: Permissions for created mount point directories
_MOUNT_POINT_MODE = 0o755


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def _normalize_mount_point(mount_point: str) -> str:
    if not mount_point:
        raise LoopvolArgumentError("Empty mount point", stage=Stage.MOUNT)
    return normpath(abspath(mount_point))


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/mounts')
        """
        self.path = path

    def entries(self):
        """Iterate over all entries in the mounts file.

        :returns: Yields ``MountsEntry`` objects with unescaped paths.
        """
        with open(self.path, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue

                parts = line.split()
                if len(parts) == 6:
                    parts[0] = _unescape_mounts(parts[0])
                    parts[1] = _unescape_mounts(parts[1])
                    yield self.MountsEntry(*parts)
                else:
                    _log_warn("Skipping malformed %s line: %s", self.path, line)

    def find(self, mount_point):
        """Return the top-most ``MountsEntry`` mounted at ``mount_point``.

        :param mount_point: The mount point path to look up.
        :returns: A ``MountsEntry`` or ``None`` if nothing is mounted there.
        """
        found = None
        for entry in self.entries():
            if entry.where == mount_point:
                found = entry
        return found

    def __repr__(self):
        return f"ProcMountsReader(path='{self.path}')"


def _device_node(lv: LogicalVolume) -> str:
    """
    Return an existing device node path for ``lv``. The ``/dev/<vg>/<lv>``
    links are created by udev, which is often absent in containers, so the
    device-mapper node is used when the link is missing.
    """
    if not exists(lv.devpath) and exists(lv.dm_path):
        return lv.dm_path
    return lv.devpath


def _is_lv_source(what: str, lv: LogicalVolume) -> bool:
    if what in (lv.devpath, lv.dm_path):
        return True
    if exists(what) and exists(lv.devpath):
        return realpath(what) == realpath(lv.devpath)
    return False


class FilesystemProvisioner:
    """
    Formats logical volumes and mounts them. Steps that change the system
    are recorded in ``changed``.
    """

    def __init__(
        self, callout, force: bool = False, mounts_path: Optional[str] = None
    ):
        """
        Initialise a new ``FilesystemProvisioner``.

        :param callout: The ``Callout`` used to run blkid, mkfs and mount.
        :param force: Allow overwriting an existing file system signature
                      of a different type.
        :param mounts_path: The mount table to consult (default
                            ``PROC_MOUNTS``).
        """
        self.callout = callout
        self.force = force
        self.mounts = ProcMountsReader(mounts_path or PROC_MOUNTS)
        self.changed: List[Stage] = []

    def mounted_at(self, mount_point: str):
        """
        Return the ``MountsEntry`` for the file system mounted at
        ``mount_point`` or ``None``.
        """
        return self.mounts.find(_normalize_mount_point(mount_point))

    def probe_fstype(self, devpath: str) -> Optional[str]:
        """
        Return the file system type signature present on ``devpath``, or
        ``None`` if the device carries no recognised signature.
        """
        blkid_cmd_args = [
            BLKID_CMD,
            BLKID_PROBE,
            BLKID_MATCH_TYPE,
            BLKID_OUTPUT_VALUE,
            devpath,
        ]
        blkid_cmd = self.callout.run(
            blkid_cmd_args, Stage.FORMAT, resource=devpath, check=False
        )
        if blkid_cmd.returncode == 0:
            return blkid_cmd.stdout.strip() or None
        if blkid_cmd.returncode == _BLKID_NO_MATCH:
            _log_debug_filesystem("No signature found on %s", devpath)
            return None
        stderr = (blkid_cmd.stderr or "").strip()
        if is_permission_error(stderr):
            raise LoopvolPermissionError(
                f"Permission denied probing {devpath}: {stderr}",
                stage=Stage.FORMAT,
                resource=devpath,
            )
        raise LoopvolCalloutError(
            f"Error calling {BLKID_CMD} for {devpath} "
            f"(status={blkid_cmd.returncode}): {stderr}",
            stage=Stage.FORMAT,
            resource=devpath,
            status=blkid_cmd.returncode,
            stderr=stderr,
        )

    def format(self, lv: LogicalVolume, fstype: str) -> bool:
        """
        Create a file system of type ``fstype`` on ``lv`` unless one is
        already present.

        :returns: ``True`` if a file system was created.
        :raises: ``LoopvolExistsError`` if the device carries a different
                 signature and ``force`` is not set, or
                 ``LoopvolFormatError`` if mkfs fails.
        """
        devpath = _device_node(lv)
        existing = self.probe_fstype(devpath)
        if existing == fstype:
            _log_info("%s already contains a %s file system", devpath, fstype)
            return False
        if existing and not self.force:
            raise LoopvolExistsError(
                f"{devpath} contains a {existing} signature: refusing to "
                f"format as {fstype} without force",
                stage=Stage.FORMAT,
                resource=devpath,
            )

        mkfs_cmd_args = [f"{MKFS_CMD}.{fstype}"]
        if fstype in _MKFS_QUIET_OPTS:
            mkfs_cmd_args.append(_MKFS_QUIET_OPTS[fstype])
        if existing and fstype in _MKFS_FORCE_OPTS:
            mkfs_cmd_args.append(_MKFS_FORCE_OPTS[fstype])
        mkfs_cmd_args.append(devpath)

        if existing:
            _log_warn("Overwriting %s signature on %s", existing, devpath)
        try:
            self.callout.run(mkfs_cmd_args, Stage.FORMAT, resource=devpath)
        except LoopvolCalloutError as err:
            raise LoopvolFormatError(
                f"Failed to create {fstype} file system on {devpath} "
                f"(status={err.status}): {err.stderr}",
                stage=Stage.FORMAT,
                resource=devpath,
                status=err.status,
                stderr=err.stderr,
            ) from err
        _log_info("Created %s file system on %s", fstype, devpath)
        self.changed.append(Stage.FORMAT)
        return True

    def mount(self, lv: LogicalVolume, fstype: str, mount_point: str, options: str):
        """
        Mount the file system on ``lv`` at ``mount_point``.

        :raises: ``LoopvolMountError`` if mount fails.
        """
        what = _device_node(lv)
        mount_cmd_args = [
            MOUNT_CMD,
            MOUNT_TYPES,
            fstype,
            MOUNT_OPTIONS,
            options or "defaults",
            what,
            mount_point,
        ]
        try:
            self.callout.run(mount_cmd_args, Stage.MOUNT, resource=mount_point)
        except LoopvolCalloutError as err:
            raise LoopvolMountError(what, mount_point, err.status, err.stderr) from err
        _log_info("Mounted %s at %s", what, mount_point)
        self.changed.append(Stage.MOUNT)

    def provision(
        self,
        lv: LogicalVolume,
        fstype: str,
        mount_point: str,
        options: str = "defaults",
    ) -> MountedFilesystem:
        """
        Format ``lv`` with ``fstype`` and mount it at ``mount_point``.

        If a file system is already mounted at ``mount_point`` this is
        treated as success and nothing is formatted.

        :param lv: The ``LogicalVolume`` to provision.
        :param fstype: The file system type to create.
        :param mount_point: The mount point path; created if absent.
        :param options: Mount options.
        :returns: The ``MountedFilesystem``.
        """
        self.changed = []
        mount_point = _normalize_mount_point(mount_point)

        entry = self.mounts.find(mount_point)
        if entry is not None:
            if not _is_lv_source(entry.what, lv):
                _log_warn(
                    "%s is already mounted at %s (expected %s): not reformatting",
                    entry.what,
                    mount_point,
                    lv.devpath,
                )
            else:
                _log_info("%s is already mounted at %s", entry.what, mount_point)
            return MountedFilesystem(
                lv, entry.fstype, mount_point, source=entry.what, options=entry.options
            )

        if not isdir(mount_point):
            if exists(mount_point):
                raise LoopvolArgumentError(
                    f"Mount point {mount_point} exists and is not a directory",
                    stage=Stage.MOUNT,
                    resource=mount_point,
                )
            try:
                os.makedirs(mount_point, mode=_MOUNT_POINT_MODE)
            except PermissionError as err:
                raise LoopvolPermissionError(
                    f"Cannot create mount point: {err}",
                    stage=Stage.MOUNT,
                    resource=mount_point,
                ) from err
            _log_debug_filesystem("Created mount point %s", mount_point)

        self.format(lv, fstype)
        self.mount(lv, fstype, mount_point, options)
        return MountedFilesystem(
            lv, fstype, mount_point, source=_device_node(lv), options=options
        )

    def unprovision(self, mount_point: str) -> bool:
        """
        Unmount the file system at ``mount_point`` if one is mounted.

        :returns: ``True`` if a file system was unmounted.
        :raises: ``LoopvolUmountError`` if umount fails.
        """
        mount_point = _normalize_mount_point(mount_point)
        if self.mounts.find(mount_point) is None:
            _log_debug_filesystem("Nothing mounted at %s", mount_point)
            return False
        try:
            self.callout.run([UMOUNT_CMD, mount_point], Stage.TEARDOWN, mount_point)
        except LoopvolCalloutError as err:
            raise LoopvolUmountError(mount_point, err.status, err.stderr) from err
        _log_info("Unmounted %s", mount_point)
        return True
