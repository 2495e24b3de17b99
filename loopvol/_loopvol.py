# Copyright Red Hat
#
# loopvol/_loopvol.py - Loop volume provisioner global definitions
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level loopvol package.
"""
from typing import Optional
from enum import Enum
import logging
import string
import math
import re

_log = logging.getLogger("loopvol")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Loopvol debugging subsystem mask
LOOPVOL_DEBUG_ALLOCATOR = 1
LOOPVOL_DEBUG_TOPOLOGY = 2
LOOPVOL_DEBUG_FILESYSTEM = 4
LOOPVOL_DEBUG_COMMAND = 8
LOOPVOL_DEBUG_ALL = (
    LOOPVOL_DEBUG_ALLOCATOR
    | LOOPVOL_DEBUG_TOPOLOGY
    | LOOPVOL_DEBUG_FILESYSTEM
    | LOOPVOL_DEBUG_COMMAND
)

# Loopvol debugging subsystem names
LOOPVOL_SUBSYSTEM_ALLOCATOR = "loopvol.allocator"
LOOPVOL_SUBSYSTEM_TOPOLOGY = "loopvol.topology"
LOOPVOL_SUBSYSTEM_FILESYSTEM = "loopvol.filesystem"
LOOPVOL_SUBSYSTEM_COMMAND = "loopvol.command"

_DEBUG_MASK_TO_SUBSYSTEM = {
    LOOPVOL_DEBUG_ALLOCATOR: LOOPVOL_SUBSYSTEM_ALLOCATOR,
    LOOPVOL_DEBUG_TOPOLOGY: LOOPVOL_SUBSYSTEM_TOPOLOGY,
    LOOPVOL_DEBUG_FILESYSTEM: LOOPVOL_SUBSYSTEM_FILESYSTEM,
    LOOPVOL_DEBUG_COMMAND: LOOPVOL_SUBSYSTEM_COMMAND,
}

_debug_subsystems = set()

_SIZE_RE = re.compile(r"^(?P<size>[0-9]+)(?P<units>([KMGTPEZkmgtpez]i{,1})?[Bb]{,1})$")

#: All suffixes are expressed in powers of two.
_SIZE_SUFFIXES = {
    "B": 1,
    "K": 2**10,
    "M": 2**20,
    "G": 2**30,
    "T": 2**40,
    "P": 2**50,
    "E": 2**60,
    "Z": 2**70,
}

#: Maximum length for LVM2 VG and LV names
LVM_MAX_NAME_LEN = 127

#: Characters permitted in LVM2 object names
LVM_VALID_NAME_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "+_.-"
)

#: LV name prefixes reserved by LVM2 for internal volumes
_LVM_RESERVED_PREFIXES = ("snapshot", "pvmove")

#: LV name substrings reserved by LVM2 for internal volumes
_LVM_RESERVED_SUBSTRINGS = (
    "_cdata",
    "_cmeta",
    "_corig",
    "_mimage",
    "_mlog",
    "_pmspare",
    "_rimage",
    "_rmeta",
    "_tdata",
    "_tmeta",
    "_vorigin",
)


class Stage(Enum):
    """
    The provisioning stage in which an operation or failure occurred.
    """

    ALLOCATE = "allocate"
    PV = "pvcreate"
    VG = "vgcreate"
    LV = "lvcreate"
    FORMAT = "format"
    MOUNT = "mount"
    TEARDOWN = "teardown"
    CONFIG = "config"

    def __str__(self):
        return self.value


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``loopvol`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    loopvol_log = logging.getLogger("loopvol")

    for handler in loopvol_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``loopvol`` package.

    :param mask: the logical OR of the ``LOOPVOL_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > LOOPVOL_DEBUG_ALL:
        raise ValueError(f"Invalid loopvol debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    loopvol_log = logging.getLogger("loopvol")
    for handler in loopvol_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Loopvol exception types
#


class LoopvolError(Exception):
    """
    Base class for loop volume provisioner errors.

    Every error may carry the provisioning ``stage`` that failed and the
    ``resource`` (path, device or object name) that it failed on.
    """

    def __init__(
        self,
        msg: str,
        stage: Optional[Stage] = None,
        resource: Optional[str] = None,
    ):
        self.stage = stage
        self.resource = resource
        if stage is not None:
            msg = f"{stage}: {msg}"
        super().__init__(msg)


class LoopvolResourceError(LoopvolError):
    """
    A resource needed by the current operation is unavailable.
    """


class LoopvolNoLoopDevicesError(LoopvolResourceError):
    """
    All loop device slots are in use.
    """


class LoopvolNoSpaceError(LoopvolResourceError):
    """
    Insufficient space is available for the requested operation.
    """


class LoopvolExistsError(LoopvolError):
    """
    The object to be created already exists.
    """


class LoopvolAlreadyInitializedError(LoopvolExistsError):
    """
    The device already carries LVM2 physical volume metadata.
    """


class LoopvolNameConflictError(LoopvolExistsError):
    """
    The requested name is already in use by an unrelated object.
    """


class LoopvolPermissionError(LoopvolError):
    """
    The caller has insufficient privilege for the requested operation.
    """


class LoopvolSizeMismatchError(LoopvolError):
    """
    An existing backing file does not have the requested size.
    """


class LoopvolArgumentError(LoopvolError):
    """
    An invalid argument or configuration value was given.
    """


class LoopvolNotFoundError(LoopvolError):
    """
    A required program or object was not found.
    """


class LoopvolStateError(LoopvolError):
    """
    The state of an object does not allow an operation to proceed.
    """


class LoopvolCalloutError(LoopvolError):
    """
    An error calling out to an external program.
    """

    def __init__(
        self,
        msg: str,
        stage: Optional[Stage] = None,
        resource: Optional[str] = None,
        status: Optional[int] = None,
        stderr: str = "",
    ):
        """
        Initialise a new `LoopvolCalloutError` exception.

        :param msg: A description of the failed operation.
        :param stage: The provisioning stage that failed.
        :param resource: The path or device the operation acted on.
        :param status: The exit status of the external program.
        :param stderr: The diagnostic output of the external program.
        """
        self.status, self.stderr = status, stderr
        super().__init__(msg, stage=stage, resource=resource)


class LoopvolFormatError(LoopvolCalloutError):
    """
    An error creating a file system.
    """


class LoopvolMountError(LoopvolCalloutError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `LoopvolMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where = what, where
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(
            msg, stage=Stage.MOUNT, resource=where, status=status, stderr=stderr
        )


class LoopvolUmountError(LoopvolCalloutError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `LoopvolUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where = where
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(
            msg, stage=Stage.TEARDOWN, resource=where, status=status, stderr=stderr
        )


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = math.floor(math.log(abs(value), 1024))
    val = value / math.pow(1024, magnitude)
    if magnitude > 7:
        return f"{val:.1f}YiB"
    return f"{val:3.1f}{suffixes[magnitude]}"


def parse_size_with_units(value):
    """
    Parse a size string with optional unit suffix and return a value in bytes.

    :param value: The size string to parse.
    :returns: an integer size in bytes.
    :raises: ``LoopvolArgumentError`` if the string could not be parsed as a
             valid size value.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_RE.search(value.strip())
    if match is None:
        raise LoopvolArgumentError(
            f"Malformed size expression: '{value}'", stage=Stage.CONFIG
        )
    (size, unit) = (match.group("size"), match.group("units").upper())
    if not unit:
        return int(size)
    return int(size) * _SIZE_SUFFIXES[unit[0]]


def round_up_extents(size_bytes: int, extent_size: int) -> int:
    """
    Round up ``size_bytes`` to the next ``extent_size`` boundary.

    :param size_bytes: An arbitrary size in bytes.
    :param extent_size: An extent size.
    :returns: The given size rounded up to the next extent size boundary.
    """
    if not extent_size or extent_size < 0 or not isinstance(extent_size, int):
        raise ValueError("extent_size must be a positive integer")

    if size_bytes < 0 or not isinstance(size_bytes, int):
        raise ValueError("size_bytes must be a non-negative integer")

    return ((size_bytes + extent_size - 1) // extent_size) * extent_size


def round_down_extents(size_bytes: int, extent_size: int) -> int:
    """
    Round down ``size_bytes`` to the previous ``extent_size`` boundary.
    """
    if not extent_size or extent_size < 0 or not isinstance(extent_size, int):
        raise ValueError("extent_size must be a positive integer")
    return (size_bytes // extent_size) * extent_size


def check_lvm_name(name: str, kind: str = "name"):
    """
    Check that ``name`` is usable as an LVM2 volume group or logical volume
    name.

    :param name: The name to check.
    :param kind: A description of the name used in error messages.
    :raises: ``LoopvolArgumentError`` if the name is not valid.
    """
    if not name:
        raise LoopvolArgumentError(f"Empty {kind}", stage=Stage.CONFIG)
    if len(name) > LVM_MAX_NAME_LEN:
        raise LoopvolArgumentError(
            f"{kind} '{name}' exceeds {LVM_MAX_NAME_LEN} characters",
            stage=Stage.CONFIG,
            resource=name,
        )
    if name in (".", "..") or name.startswith("-"):
        raise LoopvolArgumentError(
            f"Invalid {kind}: '{name}'", stage=Stage.CONFIG, resource=name
        )
    bad_chars = set(name) - LVM_VALID_NAME_CHARS
    if bad_chars:
        bad = "".join(sorted(bad_chars))
        raise LoopvolArgumentError(
            f"{kind} '{name}' contains invalid characters: '{bad}'",
            stage=Stage.CONFIG,
            resource=name,
        )
    if name.startswith(_LVM_RESERVED_PREFIXES) or any(
        sub in name for sub in _LVM_RESERVED_SUBSTRINGS
    ):
        raise LoopvolArgumentError(
            f"{kind} '{name}' uses a name reserved by LVM2",
            stage=Stage.CONFIG,
            resource=name,
        )


def bool_to_yes_no(value):
    """
    Convert boolean-like to yes/no string.

    :param value: The boolean-like value to convert.
    :returns: "yes" or "no"
    """
    return "yes" if bool(value) else "no"


__all__ = [
    # Debug logging subsystems
    "LOOPVOL_DEBUG_ALLOCATOR",
    "LOOPVOL_DEBUG_TOPOLOGY",
    "LOOPVOL_DEBUG_FILESYSTEM",
    "LOOPVOL_DEBUG_COMMAND",
    "LOOPVOL_DEBUG_ALL",
    "LOOPVOL_SUBSYSTEM_ALLOCATOR",
    "LOOPVOL_SUBSYSTEM_TOPOLOGY",
    "LOOPVOL_SUBSYSTEM_FILESYSTEM",
    "LOOPVOL_SUBSYSTEM_COMMAND",
    "SubsystemFilter",
    "get_debug_mask",
    "set_debug_mask",
    # Constants
    "LVM_MAX_NAME_LEN",
    "LVM_VALID_NAME_CHARS",
    "Stage",
    # Exceptions
    "LoopvolError",
    "LoopvolResourceError",
    "LoopvolNoLoopDevicesError",
    "LoopvolNoSpaceError",
    "LoopvolExistsError",
    "LoopvolAlreadyInitializedError",
    "LoopvolNameConflictError",
    "LoopvolPermissionError",
    "LoopvolSizeMismatchError",
    "LoopvolArgumentError",
    "LoopvolNotFoundError",
    "LoopvolStateError",
    "LoopvolCalloutError",
    "LoopvolFormatError",
    "LoopvolMountError",
    "LoopvolUmountError",
    # Helpers
    "size_fmt",
    "parse_size_with_units",
    "round_up_extents",
    "round_down_extents",
    "check_lvm_name",
    "bool_to_yes_no",
]
