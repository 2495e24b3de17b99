# Copyright Red Hat
#
# loopvol/provisioner/_config.py - Provisioner configuration
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Provisioner configuration loaded from INI files and command line arguments.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from os.path import exists, isabs, join
from typing import Optional
import logging

from loopvol import (
    LoopvolArgumentError,
    Stage,
    check_lvm_name,
    parse_size_with_units,
)

from ._topology import DEFAULT_EXTENT_SIZE

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Base directory for loopvol configuration
_LOOPVOL_CFG_DIR = "/etc/loopvol"

#: Main configuration file path
LOOPVOL_CFG_PATH = join(_LOOPVOL_CFG_DIR, "loopvol.conf")

#: Provisioning configuration file section
_LOOPVOL_CFG_PROVISION = "Provision"

#: Map of configuration fields to configuration file keys
_CFG_KEYS = {
    "backing_file": "BackingFile",
    "size": "Size",
    "vg_name": "VgName",
    "lv_name": "LvName",
    "lv_size": "LvSize",
    "fstype": "FsType",
    "mount_point": "MountPoint",
    "idempotent": "Idempotent",
    "force": "Force",
    "namespace": "Namespace",
    "extent_size": "ExtentSize",
    "mount_options": "MountOptions",
    "preallocate": "Preallocate",
    "lvm_system_dir": "LvmSystemDir",
}

_BOOL_FIELDS = ("idempotent", "force", "preallocate")
_SIZE_FIELDS = ("size", "lv_size", "extent_size")

#: Smallest permitted LVM2 physical extent size
_MIN_EXTENT_SIZE = 2**10


# pylint: disable=too-many-instance-attributes
@dataclass
class ProvisionConfig:
    """
    Configuration for one loop-backed PV/VG/LV chain.
    """

    backing_file: Optional[str] = None
    size: Optional[int] = None
    vg_name: Optional[str] = None
    lv_name: Optional[str] = None
    lv_size: Optional[int] = None
    fstype: str = "ext4"
    mount_point: Optional[str] = None
    idempotent: bool = False
    force: bool = False
    namespace: Optional[str] = None
    extent_size: int = DEFAULT_EXTENT_SIZE
    mount_options: str = "defaults"
    preallocate: bool = False
    lvm_system_dir: Optional[str] = None

    @property
    def effective_vg_name(self) -> Optional[str]:
        """
        The volume group name with the namespace prefix applied. Volume
        group names are global to the host, so a per-run namespace avoids
        clashing with volume groups created by other containers.
        """
        if not self.vg_name:
            return self.vg_name
        if self.namespace:
            return f"{self.namespace}_{self.vg_name}"
        return self.vg_name

    @classmethod
    def from_file(cls, config_file: str) -> "ProvisionConfig":
        """
        Load ``ProvisionConfig`` from an INI-style configuration file located
        at ``config_file``.

        :param config_file: path to loopvol.conf
        :type config_file: ``str``.
        :returns: A ``ProvisionConfig`` instance initialised from
                  ``config_file``.
        :rtype: ``ProvisionConfig``
        """
        if not exists(config_file):
            return ProvisionConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise LoopvolArgumentError(
                f"Malformed configuration file: {err}",
                stage=Stage.CONFIG,
                resource=config_file,
            ) from err

        values = {}
        if cfg.has_section(_LOOPVOL_CFG_PROVISION):
            section = cfg[_LOOPVOL_CFG_PROVISION]
            for name, key in _CFG_KEYS.items():
                if not cfg.has_option(_LOOPVOL_CFG_PROVISION, key):
                    continue
                try:
                    if name in _BOOL_FIELDS:
                        values[name] = section.getboolean(key)
                    elif name in _SIZE_FIELDS:
                        values[name] = parse_size_with_units(section[key])
                    else:
                        values[name] = section[key].strip()
                except ValueError as err:
                    raise LoopvolArgumentError(
                        f"Invalid value for {key}: {err}",
                        stage=Stage.CONFIG,
                        resource=config_file,
                    ) from err

        return ProvisionConfig(**values)

    def update_from_args(self, cmd_args) -> "ProvisionConfig":
        """
        Override configuration values with any values set in the command
        line arguments ``cmd_args``.

        :returns: This ``ProvisionConfig``.
        """
        for cfg_field in fields(self):
            value = getattr(cmd_args, cfg_field.name, None)
            if value is None:
                continue
            if cfg_field.name in _BOOL_FIELDS and not value:
                continue
            if cfg_field.name in _SIZE_FIELDS:
                value = parse_size_with_units(value)
            setattr(self, cfg_field.name, value)
        return self

    def _require(self, *names):
        missing = [_CFG_KEYS[name] for name in names if not getattr(self, name)]
        if missing:
            raise LoopvolArgumentError(
                f"Missing required configuration: {', '.join(missing)}",
                stage=Stage.CONFIG,
            )

    def validate(self, teardown: bool = False):
        """
        Check this configuration for missing or invalid values.

        :param teardown: Validate only the values required for teardown.
        :raises: ``LoopvolArgumentError`` if the configuration is invalid.
        """
        if teardown:
            self._require("vg_name", "lv_name")
        else:
            self._require(
                "backing_file", "size", "vg_name", "lv_name", "lv_size", "mount_point"
            )

        for name in ("backing_file", "mount_point", "lvm_system_dir"):
            path = getattr(self, name)
            if path and not isabs(path):
                raise LoopvolArgumentError(
                    f"{_CFG_KEYS[name]} must be an absolute path: {path}",
                    stage=Stage.CONFIG,
                    resource=path,
                )

        for name in ("size", "lv_size"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise LoopvolArgumentError(
                    f"{_CFG_KEYS[name]} must be greater than zero: {value}",
                    stage=Stage.CONFIG,
                )

        extent_size = self.extent_size
        if extent_size < _MIN_EXTENT_SIZE or extent_size & (extent_size - 1):
            raise LoopvolArgumentError(
                f"ExtentSize must be a power of two of at least 1KiB: {extent_size}",
                stage=Stage.CONFIG,
            )

        check_lvm_name(self.effective_vg_name, kind="volume group name")
        check_lvm_name(self.lv_name, kind="logical volume name")

        if not self.fstype or not self.fstype.isalnum():
            raise LoopvolArgumentError(
                f"Invalid file system type: '{self.fstype}'", stage=Stage.CONFIG
            )
