# Copyright Red Hat
#
# loopvol/provisioner/__init__.py - Loop volume provisioner
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the loop volume provisioner.
"""
from ._objects import (
    BackingFile,
    LoopBinding,
    PhysicalVolume,
    VolumeGroup,
    LogicalVolume,
    MountedFilesystem,
)
from ._callout import Callout
from ._allocator import Allocator, ensure_loop_nodes
from ._topology import TopologyBuilder, TopologyState, DEFAULT_EXTENT_SIZE
from ._filesystem import FilesystemProvisioner, ProcMountsReader
from ._config import ProvisionConfig, LOOPVOL_CFG_PATH
from ._provisioner import Provisioner, ProvisionResult, ProvisionState

__all__ = [
    "BackingFile",
    "LoopBinding",
    "PhysicalVolume",
    "VolumeGroup",
    "LogicalVolume",
    "MountedFilesystem",
    "Callout",
    "Allocator",
    "ensure_loop_nodes",
    "TopologyBuilder",
    "TopologyState",
    "DEFAULT_EXTENT_SIZE",
    "FilesystemProvisioner",
    "ProcMountsReader",
    "ProvisionConfig",
    "LOOPVOL_CFG_PATH",
    "Provisioner",
    "ProvisionResult",
    "ProvisionState",
]
