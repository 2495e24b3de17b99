# Copyright Red Hat
#
# loopvol/__init__.py - Loop volume provisioner package initialisation
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Loopvol top-level package.
"""
from ._loopvol import *  # noqa: F401, F403
from ._loopvol import __all__  # noqa: F401

__version__ = "0.1.0"
