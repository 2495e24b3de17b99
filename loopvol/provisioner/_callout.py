# Copyright Red Hat
#
# loopvol/provisioner/_callout.py - External program callouts
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Wrappers for calling the loop device, LVM2 and file system programs.
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from typing import Dict, List, Optional
from shutil import which
import logging
import os

from loopvol import (
    LoopvolArgumentError,
    LoopvolCalloutError,
    LoopvolNotFoundError,
    LoopvolPermissionError,
    Stage,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Environment variable overriding the callout timeout
LOOPVOL_CALLOUT_TIMEOUT_ENV = "LOOPVOL_CALLOUT_TIMEOUT"

#: Default timeout for external programs in seconds
LOOPVOL_CALLOUT_TIMEOUT = 120

# LVM2 environment variables to filter out
_LVM_ENV_FILTER = [
    "LVM_OUT_FD",
    "LVM_ERR_FD",
    "LVM_REPORT_FD",
    "LVM_COMMAND_PROFILE",
    "LVM_RUN_BY_DMEVENTD",
    "LVM_SUPPRESS_FD_WARNINGS",
    "LVM_SUPPRESS_SYSLOG",
    "LVM_VG_NAME",
    "LVM_LVMPOLLD_PIDFILE",
    "LVM_LVMPOLLD_SOCKET",
    "LVM_LOG_FILE_EPOCH",
    "LVM_LOG_FILE_MAX_LINES",
    "LVM_EXPECTED_EXIT_STATUS",
    "LVM_SUPPRESS_LOCKING_FAILURE_MESSAGES",
    "DM_ABORT_ON_INTERNAL_ERRORS",
    "DM_DISABLE_UDEV",
    "DM_DEBUG_WITH_LINE_NUMBERS",
]

#: Diagnostic fragments that indicate missing privilege
_PERMISSION_MARKERS = (
    "Permission denied",
    "Operation not permitted",
    "must be root",
    "Only root can",
)


def is_permission_error(stderr: str) -> bool:
    """
    Return ``True`` if the diagnostic output ``stderr`` reports a privilege
    failure.
    """
    return any(marker in stderr for marker in _PERMISSION_MARKERS)


def sanitize_environment(lvm_system_dir: Optional[str] = None) -> Dict[str, str]:
    """
    Return a copy of the process environment suitable for running LVM2 and
    util-linux programs: LVM2 control variables are removed, the locale is
    forced to "C" so diagnostics can be matched, and ``LVM_SYSTEM_DIR`` is
    set when ``lvm_system_dir`` is given.
    """
    env = os.environ.copy()
    for var in _LVM_ENV_FILTER:
        env.pop(var, None)
    env["LC_ALL"] = "C"
    env["LANG"] = "C"
    if lvm_system_dir:
        env["LVM_SYSTEM_DIR"] = lvm_system_dir
    return env


def callout_timeout() -> int:
    """
    Return the timeout for external programs in seconds, taken from
    ``$LOOPVOL_CALLOUT_TIMEOUT`` if set.
    """
    value = os.getenv(LOOPVOL_CALLOUT_TIMEOUT_ENV)
    if not value:
        return LOOPVOL_CALLOUT_TIMEOUT
    try:
        timeout = int(value)
    except ValueError as err:
        raise LoopvolArgumentError(
            f"Invalid {LOOPVOL_CALLOUT_TIMEOUT_ENV} value: {value}",
            stage=Stage.CONFIG,
        ) from err
    if timeout <= 0:
        raise LoopvolArgumentError(
            f"{LOOPVOL_CALLOUT_TIMEOUT_ENV} must be positive: {value}",
            stage=Stage.CONFIG,
        )
    return timeout


def check_commands_present(cmds: List[str]):
    """
    Check for the presence of the programs named in ``cmds``.

    :raises: ``LoopvolNotFoundError`` naming any missing programs.
    """
    missing = [cmd for cmd in cmds if not which(cmd)]
    if missing:
        raise LoopvolNotFoundError(f"Required commands not found: {', '.join(missing)}")


class Callout:
    """
    Runs external programs with a sanitised environment and converts their
    failures into ``LoopvolError`` exceptions naming the stage and resource.
    """

    def __init__(
        self,
        lvm_system_dir: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.lvm_system_dir = lvm_system_dir
        self.timeout = timeout if timeout is not None else callout_timeout()
        self._env = sanitize_environment(lvm_system_dir)

    def __repr__(self):
        return f"Callout(lvm_system_dir={self.lvm_system_dir!r}, timeout={self.timeout})"

    def run(
        self,
        cmd_args: List[str],
        stage: Stage,
        resource: Optional[str] = None,
        check: bool = True,
    ):
        """
        Run ``cmd_args`` and return the ``CompletedProcess``.

        Output is captured and decoded as UTF-8. With ``check=True`` a
        non-zero exit status raises ``LoopvolPermissionError`` if the
        program reported a privilege failure, or ``LoopvolCalloutError``
        carrying the exit status and diagnostic output otherwise.

        :param cmd_args: The program and its arguments.
        :param stage: The provisioning stage this call belongs to.
        :param resource: The path or device the call acts on.
        :param check: Raise an exception if the program fails.
        """
        cmd = cmd_args[0]
        _log_debug("Calling %s", " ".join(cmd_args))
        try:
            result = run(
                cmd_args,
                capture_output=True,
                encoding="utf8",
                timeout=self.timeout,
                check=check,
                env=self._env,
            )
        except FileNotFoundError as err:
            raise LoopvolNotFoundError(
                f"{cmd} not found: {err}", stage=stage, resource=resource
            ) from err
        except TimeoutExpired as err:
            raise LoopvolCalloutError(
                f"Timed out calling {cmd} for {resource}: {err}",
                stage=stage,
                resource=resource,
            ) from err
        except CalledProcessError as err:
            stderr = (err.stderr or "").strip()
            if is_permission_error(stderr):
                raise LoopvolPermissionError(
                    f"Permission denied calling {cmd} for {resource}: {stderr}",
                    stage=stage,
                    resource=resource,
                ) from err
            raise LoopvolCalloutError(
                f"Error calling {cmd} for {resource} (status={err.returncode}): "
                f"{stderr}",
                stage=stage,
                resource=resource,
                status=err.returncode,
                stderr=stderr,
            ) from err
        return result
