# Copyright Red Hat
#
# tests/__init__.py - Loop volume provisioner test package
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)


class MockArgs(object):
    config = None
    backing_file = None
    size = None
    vg_name = None
    lv_name = None
    lv_size = None
    fstype = None
    mount_point = None
    namespace = None
    lvm_system_dir = None
    idempotent = False
    force = False
    extent_size = None
    mount_options = None
    preallocate = False
    loop_nodes = 0
    remove_backing = False
    json = False
    debug = None
    verbose = 0


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0
