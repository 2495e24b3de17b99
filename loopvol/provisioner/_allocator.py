# Copyright Red Hat
#
# loopvol/provisioner/_allocator.py - Backing store allocation
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Backing file creation and loop device binding.
"""
from os.path import dirname, exists, isdir, realpath, join
from json import loads, JSONDecodeError
from typing import Dict, List, Optional
from stat import S_IFBLK, S_ISBLK
from time import sleep
import logging
import os

from loopvol import (
    LOOPVOL_SUBSYSTEM_ALLOCATOR,
    LoopvolArgumentError,
    LoopvolCalloutError,
    LoopvolNoLoopDevicesError,
    LoopvolPermissionError,
    LoopvolSizeMismatchError,
    LoopvolStateError,
    Stage,
    size_fmt,
)

from ._objects import DEV_PREFIX, BackingFile, LoopBinding

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_allocator(msg, *args, **kwargs):
    """A wrapper for allocator subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LOOPVOL_SUBSYSTEM_ALLOCATOR}, **kwargs)


# losetup command options
LOSETUP_CMD = "losetup"
LOSETUP_LIST = "--list"
LOSETUP_JSON = "--json"
LOSETUP_OUTPUT = "--output"
LOSETUP_FIELDS = "NAME,BACK-FILE"
LOSETUP_FIND = "--find"
LOSETUP_SHOW = "--show"
LOSETUP_DETACH = "--detach"

# losetup JSON report keys
LOSETUP_LOOPDEVICES = "loopdevices"
LOSETUP_NAME = "name"
LOSETUP_BACK_FILE = "back-file"

#: Suffix appended by losetup to the names of unlinked backing files
_BACK_FILE_DELETED = " (deleted)"

#: Number of attempts to bind a loop device when racing other users
LOSETUP_RETRIES = 5

#: Base delay between binding attempts in seconds
LOSETUP_RETRY_DELAY = 0.1

#: losetup diagnostics for a device claimed by a concurrent user
_LOOP_BUSY_MARKERS = (
    "Device or resource busy",
    "Resource temporarily unavailable",
)

#: losetup diagnostics for an exhausted loop device table
_NO_FREE_LOOP_MARKERS = (
    "could not find any free loop device",
    "cannot find an unused loop device",
)

#: Block device major number for loop devices
LOOP_MAJOR = 7

#: Permissions for created loop device nodes
_LOOP_NODE_MODE = 0o660


class Allocator:
    """
    Creates backing files and binds them to dynamically assigned loop
    devices.

    Bindings made or found by this ``Allocator`` are registered in
    ``bindings``, keyed by the resolved backing file path, so that a later
    call to ``release()`` can detach them.
    """

    def __init__(self, callout):
        """
        Initialise a new ``Allocator``.

        :param callout: The ``Callout`` used to run ``losetup``.
        """
        self.callout = callout
        self.bindings: Dict[str, LoopBinding] = {}
        self.changed: List[Stage] = []

    def list_bindings(self) -> Dict[str, str]:
        """
        Return a dictionary mapping loop device paths to the resolved path
        of the file bound to each device.
        """
        losetup_cmd_args = [
            LOSETUP_CMD,
            LOSETUP_LIST,
            LOSETUP_JSON,
            LOSETUP_OUTPUT,
            LOSETUP_FIELDS,
        ]
        losetup_cmd = self.callout.run(losetup_cmd_args, Stage.ALLOCATE)
        # losetup prints nothing when no devices are bound.
        if not losetup_cmd.stdout.strip():
            return {}
        try:
            losetup_dict = loads(losetup_cmd.stdout)
        except JSONDecodeError as err:
            raise LoopvolCalloutError(
                f"Unable to decode {LOSETUP_CMD} JSON output: {err}",
                stage=Stage.ALLOCATE,
            ) from err

        bindings = {}
        for loop_dict in losetup_dict.get(LOSETUP_LOOPDEVICES, []):
            back_file = loop_dict.get(LOSETUP_BACK_FILE) or ""
            back_file = back_file.removesuffix(_BACK_FILE_DELETED)
            if not back_file:
                continue
            bindings[loop_dict[LOSETUP_NAME]] = back_file
        return bindings

    def find_binding(self, path: str) -> Optional[LoopBinding]:
        """
        Return the existing ``LoopBinding`` for the file at ``path``, or
        ``None`` if the file is not bound to a loop device.
        """
        real_path = realpath(path)
        devices = [
            device
            for device, back_file in self.list_bindings().items()
            if back_file == real_path
        ]
        if not devices:
            return None
        devices.sort()
        if len(devices) > 1:
            _log_warn(
                "Backing file %s is bound to multiple loop devices: %s",
                path,
                ", ".join(devices),
            )
        size = os.stat(path).st_size if exists(path) else 0
        binding = LoopBinding(BackingFile(path, size), devices[0])
        self.bindings[real_path] = binding
        return binding

    def _create_backing_file(self, path: str, size_bytes: int, preallocate: bool):
        """
        Create the backing file at ``path`` if absent, or verify the size of
        an existing file.
        """
        parent = dirname(path) or "."
        if not isdir(parent):
            raise LoopvolArgumentError(
                f"Directory {parent} does not exist",
                stage=Stage.ALLOCATE,
                resource=path,
            )

        if exists(path):
            existing = os.stat(path).st_size
            if existing != size_bytes:
                raise LoopvolSizeMismatchError(
                    f"Backing file {path} has size {existing} "
                    f"({size_fmt(existing)}), expected {size_bytes} "
                    f"({size_fmt(size_bytes)})",
                    stage=Stage.ALLOCATE,
                    resource=path,
                )
            _log_debug_allocator("Using existing backing file %s", path)
            return False

        if not os.access(parent, os.W_OK):
            raise LoopvolPermissionError(
                f"Directory {parent} is not writable",
                stage=Stage.ALLOCATE,
                resource=path,
            )

        _log_info(
            "Creating backing file %s (%s%s)",
            path,
            size_fmt(size_bytes),
            ", preallocated" if preallocate else "",
        )
        try:
            with open(path, "xb") as fp:
                if preallocate:
                    os.posix_fallocate(fp.fileno(), 0, size_bytes)
                else:
                    fp.truncate(size_bytes)
        except PermissionError as err:
            raise LoopvolPermissionError(
                f"Cannot create backing file: {err}",
                stage=Stage.ALLOCATE,
                resource=path,
            ) from err
        except FileExistsError as err:
            raise LoopvolStateError(
                f"Backing file {path} appeared during allocation",
                stage=Stage.ALLOCATE,
                resource=path,
            ) from err
        return True

    def _bind(self, backing_file: BackingFile) -> str:
        """
        Bind ``backing_file`` to the next free loop device and return the
        device path.
        """
        losetup_cmd_args = [
            LOSETUP_CMD,
            LOSETUP_FIND,
            LOSETUP_SHOW,
            backing_file.path,
        ]
        attempt = 0
        while True:
            attempt += 1
            try:
                losetup_cmd = self.callout.run(
                    losetup_cmd_args, Stage.ALLOCATE, resource=backing_file.path
                )
                return losetup_cmd.stdout.strip()
            except LoopvolCalloutError as err:
                if any(marker in err.stderr for marker in _NO_FREE_LOOP_MARKERS):
                    raise LoopvolNoLoopDevicesError(
                        f"No free loop devices available for {backing_file.path}: "
                        "detach stale bindings or create more loop devices",
                        stage=Stage.ALLOCATE,
                        resource=backing_file.path,
                    ) from err
                busy = any(marker in err.stderr for marker in _LOOP_BUSY_MARKERS)
                if not busy or attempt >= LOSETUP_RETRIES:
                    raise
                _log_debug_allocator(
                    "Loop device claimed concurrently binding %s (attempt %d/%d)",
                    backing_file.path,
                    attempt,
                    LOSETUP_RETRIES,
                )
                sleep(LOSETUP_RETRY_DELAY * attempt)

    def allocate(
        self, path: str, size_bytes: int, preallocate: bool = False
    ) -> LoopBinding:
        """
        Create the backing file at ``path`` if needed and bind it to a loop
        device.

        If the file is already bound to a loop device the existing binding
        is returned rather than creating a second one.

        :param path: The path of the backing file.
        :param size_bytes: The required size of the backing file in bytes.
        :param preallocate: Allocate all blocks rather than creating a
                            sparse file.
        :returns: The ``LoopBinding`` for the backing file.
        :raises: ``LoopvolSizeMismatchError`` if an existing file has a
                 different size, ``LoopvolNoLoopDevicesError`` if no loop
                 device is free, or ``LoopvolPermissionError``.
        """
        self.changed = []
        if not isinstance(size_bytes, int) or size_bytes <= 0:
            raise LoopvolArgumentError(
                f"Invalid backing file size: {size_bytes}",
                stage=Stage.ALLOCATE,
                resource=path,
            )

        created = self._create_backing_file(path, size_bytes, preallocate)

        if not created:
            binding = self.find_binding(path)
            if binding:
                _log_info("Backing file %s already bound to %s", path, binding.device)
                return binding

        backing_file = BackingFile(path, size_bytes)
        device = self._bind(backing_file)
        binding = LoopBinding(backing_file, device)
        self.bindings[realpath(path)] = binding
        _log_info("Bound %s to %s", path, device)
        self.changed.append(Stage.ALLOCATE)
        return binding

    def release(self, binding: LoopBinding, remove_backing: bool = False):
        """
        Detach the loop device for ``binding`` and optionally delete the
        backing file.

        :returns: ``True`` if the backing file was removed.
        """
        path = binding.backing_file.path
        losetup_cmd_args = [LOSETUP_CMD, LOSETUP_DETACH, binding.device]
        self.callout.run(losetup_cmd_args, Stage.TEARDOWN, resource=binding.device)
        self.bindings.pop(realpath(path), None)
        _log_info("Detached %s from %s", binding.device, path)

        if remove_backing and exists(path):
            os.unlink(path)
            _log_info("Removed backing file %s", path)
            return True
        return False


def ensure_loop_nodes(count: int, dev_dir: str = DEV_PREFIX):
    """
    Create any missing ``loopN`` block device nodes for ``N`` in
    ``range(count)``. Container runtimes often provide access to the loop
    driver without populating ``/dev`` with device nodes.

    :param count: The number of loop device nodes required.
    :param dev_dir: The device node directory.
    :returns: The list of created device paths.
    """
    created = []
    for minor in range(count):
        node = join(dev_dir, f"loop{minor}")
        if exists(node):
            if not S_ISBLK(os.stat(node).st_mode):
                _log_warn("%s exists but is not a block device", node)
            continue
        try:
            os.mknod(node, S_IFBLK | _LOOP_NODE_MODE, os.makedev(LOOP_MAJOR, minor))
        except PermissionError as err:
            raise LoopvolPermissionError(
                f"Cannot create loop device node: {err}",
                stage=Stage.ALLOCATE,
                resource=node,
            ) from err
        _log_debug_allocator("Created loop device node %s", node)
        created.append(node)
    return created
