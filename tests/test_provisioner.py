# Copyright Red Hat
#
# tests/test_provisioner.py - Loop volume provisioner tests
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import logging
import os

log = logging.getLogger()

from loopvol import (
    Stage,
    LoopvolAlreadyInitializedError,
    LoopvolArgumentError,
    LoopvolMountError,
    LoopvolNameConflictError,
    LoopvolNoLoopDevicesError,
    LoopvolNoSpaceError,
    LoopvolNotFoundError,
    LoopvolSizeMismatchError,
)
from loopvol.provisioner import Provisioner, ProvisionState

from ._util import FakeHost

_GiB = 2**30
_MiB = 2**20

_ALL_STAGES = [
    Stage.ALLOCATE,
    Stage.PV,
    Stage.VG,
    Stage.LV,
    Stage.FORMAT,
    Stage.MOUNT,
]


class ProvisionerTestsBase(unittest.TestCase):
    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.host = FakeHost()
        self.addCleanup(self.host.cleanup)
        patcher = self.host.patch()
        patcher.start()
        self.addCleanup(patcher.stop)

    def _provisioner(self, **kwargs):
        config = self.host.make_config(**kwargs)
        return Provisioner(config, mounts_path=self.host.mounts_path)


class ProvisionerTests(ProvisionerTestsBase):
    """Test provisioning loop-backed volumes"""

    def test_provision(self):
        provisioner = self._provisioner()
        result = provisioner.provision()
        config = provisioner.config

        self.assertEqual(result.state, ProvisionState.MOUNTED)
        self.assertEqual(provisioner.state, ProvisionState.MOUNTED)
        self.assertEqual(result.changed, _ALL_STAGES)
        self.assertFalse(result.unchanged)

        self.assertEqual(os.path.getsize(config.backing_file), _GiB)
        self.assertEqual(result.binding.device, "/dev/loop0")
        self.assertEqual(result.lv.vg.name, "vg_data")
        self.assertEqual(result.lv.name, "lv_storage")
        self.assertEqual(result.lv.size, 500 * _MiB)
        self.assertEqual(result.filesystem.fstype, "ext4")
        self.assertEqual(result.filesystem.mount_point, config.mount_point)

        self.assertEqual(self.host.pvs, {"/dev/loop0": "vg_data"})
        self.assertEqual(self.host.lvs, {("vg_data", "lv_storage"): 500 * _MiB})
        self.assertEqual(self.host.signatures, {"/dev/vg_data/lv_storage": "ext4"})
        self.assertEqual(len(self.host.mounted), 1)

    def test_provision_to_dict(self):
        result = self._provisioner().provision()
        values = result.to_dict()
        self.assertEqual(values["State"], "MOUNTED")
        self.assertEqual(values["Device"], "/dev/loop0")
        self.assertEqual(values["VolumeGroup"], "vg_data")
        self.assertEqual(values["LogicalVolume"], "lv_storage")
        self.assertEqual(values["Size"], 500 * _MiB)
        self.assertEqual(values["DevicePath"], "/dev/vg_data/lv_storage")
        self.assertEqual(values["FsType"], "ext4")
        self.assertEqual(
            values["Changed"],
            ["allocate", "pvcreate", "vgcreate", "lvcreate", "format", "mount"],
        )

    def test_provision_idempotent(self):
        self._provisioner().provision()
        calls = len(self.host.calls)

        provisioner = self._provisioner(idempotent=True)
        result = provisioner.provision()
        self.assertEqual(result.state, ProvisionState.MOUNTED)
        self.assertEqual(result.changed, [])
        self.assertTrue(result.unchanged)
        self.assertEqual(result.binding.device, "/dev/loop0")
        self.assertEqual(result.lv.size, 500 * _MiB)

        new_commands = [call[0] for call in self.host.calls[calls:]]
        for cmd in ("pvcreate", "vgcreate", "lvcreate", "mkfs.ext4", "mount"):
            self.assertNotIn(cmd, new_commands)
        find_calls = [
            call for call in self.host.called("losetup") if "--find" in call
        ]
        self.assertEqual(len(find_calls), 1)

    def test_provision_idempotent_repeated(self):
        provisioner = self._provisioner(idempotent=True)
        self.assertEqual(provisioner.provision().changed, _ALL_STAGES)
        for _ in range(3):
            self.assertEqual(provisioner.provision().changed, [])
        self.assertEqual(len(self.host.loops), 1)
        self.assertEqual(len(self.host.mounted), 1)

    def test_provision_twice_not_idempotent(self):
        self._provisioner().provision()
        provisioner = self._provisioner()
        with self.assertRaises(LoopvolAlreadyInitializedError) as cm:
            provisioner.provision()
        self.assertEqual(cm.exception.stage, Stage.PV)
        self.assertEqual(provisioner.state, ProvisionState.ALLOCATED)
        # The existing binding was reused rather than duplicated.
        self.assertEqual(len(self.host.loops), 1)

    def test_provision_rounds_lv_size(self):
        result = self._provisioner(lv_size=500 * _MiB + 1).provision()
        self.assertEqual(result.lv.size, 504 * _MiB)

    def test_provision_namespace(self):
        result = self._provisioner(namespace="ci42").provision()
        self.assertEqual(result.lv.vg.name, "ci42_vg_data")
        self.assertIn("ci42_vg_data", self.host.vgs)

    def test_provision_insufficient_space(self):
        provisioner = self._provisioner(lv_size=2 * _GiB)
        with self.assertRaises(LoopvolNoSpaceError) as cm:
            provisioner.provision()
        self.assertEqual(cm.exception.stage, Stage.LV)
        self.assertEqual(provisioner.state, ProvisionState.PV_CREATED)
        # Only the PV exists: no VG, LV, file system or mount.
        self.assertEqual(self.host.pvs, {"/dev/loop0": ""})
        self.assertEqual(self.host.vgs, {})
        self.assertEqual(self.host.lvs, {})
        self.assertEqual(self.host.signatures, {})
        self.assertEqual(self.host.mounted, [])

    def test_provision_size_mismatch(self):
        config = self.host.make_config()
        with open(config.backing_file, "wb") as fp:
            fp.truncate(_MiB)
        provisioner = Provisioner(config, mounts_path=self.host.mounts_path)
        with self.assertRaises(LoopvolSizeMismatchError):
            provisioner.provision()
        self.assertEqual(provisioner.state, ProvisionState.UNBOUND)
        self.assertEqual(self.host.loops, {})

    def test_provision_no_loop_devices(self):
        self.host.loop_count = 0
        provisioner = self._provisioner()
        with self.assertRaises(LoopvolNoLoopDevicesError):
            provisioner.provision()
        self.assertEqual(provisioner.state, ProvisionState.UNBOUND)

    def test_provision_mount_fails(self):
        self.host.fail("mount", 32, "mount: wrong fs type, bad option")
        provisioner = self._provisioner()
        with self.assertRaises(LoopvolMountError):
            provisioner.provision()
        self.assertEqual(provisioner.state, ProvisionState.LV_CREATED)
        # Earlier stages are not rolled back.
        self.assertIn(("vg_data", "lv_storage"), self.host.lvs)
        self.assertEqual(self.host.signatures, {"/dev/vg_data/lv_storage": "ext4"})

    def test_provision_resume_after_failure(self):
        self.host.fail("mount", 32, "mount: wrong fs type, bad option")
        with self.assertRaises(LoopvolMountError):
            self._provisioner().provision()
        result = self._provisioner(idempotent=True).provision()
        self.assertEqual(result.changed, [Stage.MOUNT])
        self.assertEqual(result.state, ProvisionState.MOUNTED)

    def test_provision_invalid_config(self):
        provisioner = self._provisioner(vg_name="bad/name")
        with self.assertRaises(LoopvolArgumentError):
            provisioner.provision()
        self.assertEqual(self.host.calls, [])

    @patch("loopvol.provisioner._callout.which")
    def test_check_commands(self, mock_which):
        mock_which.side_effect = lambda cmd: None if cmd == "mkfs.xfs" else "/bin/x"
        self._provisioner().check_commands()
        with self.assertRaises(LoopvolNotFoundError):
            self._provisioner(fstype="xfs").check_commands()


class TeardownTests(ProvisionerTestsBase):
    """Test tearing down loop-backed volumes"""

    def test_teardown(self):
        self._provisioner().provision()
        provisioner = self._provisioner()
        config = provisioner.config
        removed = provisioner.teardown()
        self.assertEqual(
            removed,
            [
                config.mount_point,
                "vg_data/lv_storage",
                "vg_data",
                "/dev/loop0",
                f"/dev/loop0 -> {config.backing_file}",
            ],
        )
        self.assertEqual(self.host.mounted, [])
        self.assertEqual(self.host.lvs, {})
        self.assertEqual(self.host.vgs, {})
        self.assertEqual(self.host.pvs, {})
        self.assertEqual(self.host.loops, {})
        self.assertTrue(os.path.exists(config.backing_file))
        self.assertEqual(provisioner.state, ProvisionState.UNBOUND)

    def test_teardown_remove_backing(self):
        self._provisioner().provision()
        provisioner = self._provisioner()
        removed = provisioner.teardown(remove_backing=True)
        self.assertEqual(removed[-1], provisioner.config.backing_file)
        self.assertFalse(os.path.exists(provisioner.config.backing_file))

    def test_teardown_after_partial_provision(self):
        with self.assertRaises(LoopvolNoSpaceError):
            self._provisioner(lv_size=2 * _GiB).provision()
        removed = self._provisioner().teardown(remove_backing=True)
        self.assertIn("/dev/loop0", removed)
        self.assertEqual(self.host.pvs, {})
        self.assertEqual(self.host.loops, {})

    def test_teardown_nothing(self):
        self.assertEqual(self._provisioner().teardown(), [])

    def test_teardown_remove_backing_missing_file(self):
        provisioner = self._provisioner()
        self.assertEqual(provisioner.teardown(remove_backing=True), [])
        self.assertFalse(os.path.exists(provisioner.config.backing_file))

    def test_teardown_remove_backing_unbound_file(self):
        config = self.host.make_config()
        with open(config.backing_file, "wb") as fp:
            fp.truncate(_GiB)
        provisioner = Provisioner(config, mounts_path=self.host.mounts_path)
        self.assertEqual(
            provisioner.teardown(remove_backing=True), [config.backing_file]
        )
        self.assertFalse(os.path.exists(config.backing_file))

    def test_teardown_foreign_volume_group(self):
        # A host VG with the configured name that was never provisioned here.
        self.host.add_volume_group(
            "vg_data", "/dev/sdb", 10 * _GiB, lvs={"lv_storage": _GiB}
        )
        provisioner = self._provisioner()
        config = provisioner.config
        self.host.add_mount("/dev/vg_data/lv_storage", config.mount_point, "xfs")
        with self.assertRaises(LoopvolNameConflictError) as cm:
            provisioner.teardown()
        self.assertEqual(cm.exception.stage, Stage.TEARDOWN)
        self.assertIn("vg_data", self.host.vgs)
        self.assertIn(("vg_data", "lv_storage"), self.host.lvs)
        self.assertEqual(len(self.host.mounted), 1)
        for cmd in ("umount", "lvremove", "vgremove", "pvremove"):
            self.assertNotIn(cmd, self.host.commands())

    def test_teardown_foreign_volume_group_bound(self):
        self._provisioner().provision()
        self.host.add_volume_group("vg_other", "/dev/sdb", 10 * _GiB)
        with self.assertRaises(LoopvolNameConflictError):
            self._provisioner(vg_name="vg_other").teardown()
        self.assertIn("vg_other", self.host.vgs)
        self.assertEqual(len(self.host.mounted), 1)

    def test_teardown_unlinked_backing_file(self):
        self._provisioner().provision()
        provisioner = self._provisioner()
        os.unlink(provisioner.config.backing_file)
        removed = provisioner.teardown(remove_backing=True)
        self.assertIn("vg_data", removed)
        self.assertIn("/dev/loop0", removed)
        self.assertNotIn(provisioner.config.backing_file, removed)
        self.assertEqual(self.host.vgs, {})
        self.assertEqual(self.host.pvs, {})
        self.assertEqual(self.host.loops, {})

    def test_teardown_then_provision(self):
        self._provisioner().provision()
        self._provisioner().teardown(remove_backing=True)
        result = self._provisioner().provision()
        self.assertEqual(result.changed, _ALL_STAGES)


class StatusTests(ProvisionerTestsBase):
    """Test reporting the state of loop-backed volumes"""

    def test_status_unbound(self):
        status = self._provisioner().status()
        self.assertEqual(status["State"], "UNBOUND")
        self.assertFalse(status["BackingFileExists"])
        self.assertFalse(status["Mounted"])

    def test_status_mounted(self):
        self._provisioner().provision()
        status = self._provisioner().status()
        self.assertEqual(status["State"], "MOUNTED")
        self.assertTrue(status["BackingFileExists"])
        self.assertEqual(status["Device"], "/dev/loop0")
        self.assertTrue(status["PhysicalVolume"])
        self.assertTrue(status["VolumeGroupExists"])
        self.assertTrue(status["LogicalVolumeExists"])
        self.assertEqual(status["Size"], 500 * _MiB)
        self.assertTrue(status["Mounted"])
        self.assertEqual(status["FsType"], "ext4")

    def test_status_unlinked_backing_file(self):
        self._provisioner().provision()
        provisioner = self._provisioner()
        os.unlink(provisioner.config.backing_file)
        status = provisioner.status()
        self.assertFalse(status["BackingFileExists"])
        self.assertEqual(status["Device"], "/dev/loop0")
        self.assertTrue(status["PhysicalVolume"])
        self.assertEqual(status["State"], "MOUNTED")

    def test_status_pv_created(self):
        with self.assertRaises(LoopvolNoSpaceError):
            self._provisioner(lv_size=2 * _GiB).provision()
        status = self._provisioner().status()
        self.assertEqual(status["State"], "PV_CREATED")
        self.assertFalse(status["VolumeGroupExists"])

    def test_status_requires_names(self):
        with self.assertRaises(LoopvolArgumentError):
            self._provisioner(lv_name=None).status()
