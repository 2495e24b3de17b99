# Copyright Red Hat
#
# loopvol/command.py - Loop volume provisioner command interface
#
# This file is part of the loopvol project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``loopvol.command`` module provides both the loopvol command line
interface infrastructure, and a simple procedural interface to the
``loopvol`` library modules.

The procedural interface is used by the ``loopvol`` command line tool,
and may be used by application programs, or interactively in the
Python shell.
"""
from argparse import ArgumentParser
from os.path import basename
from json import dumps
import logging
import sys
import os

from loopvol import (
    LoopvolError,
    LoopvolResourceError,
    LoopvolExistsError,
    LoopvolPermissionError,
    LoopvolCalloutError,
    LoopvolSizeMismatchError,
    LoopvolNotFoundError,
    LoopvolArgumentError,
    LOOPVOL_DEBUG_ALLOCATOR,
    LOOPVOL_DEBUG_TOPOLOGY,
    LOOPVOL_DEBUG_FILESYSTEM,
    LOOPVOL_DEBUG_COMMAND,
    LOOPVOL_DEBUG_ALL,
    LOOPVOL_SUBSYSTEM_COMMAND,
    SubsystemFilter,
    set_debug_mask,
    bool_to_yes_no,
    size_fmt,
    Stage,
    __version__,
)
from loopvol.provisioner import (
    LOOPVOL_CFG_PATH,
    ProvisionConfig,
    Provisioner,
    ensure_loop_nodes,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LOOPVOL_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None

#: Command names
PROVISION_CMD = "provision"
TEARDOWN_CMD = "teardown"
STATUS_CMD = "status"

#: Exit status values
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_RESOURCE_UNAVAILABLE = 2
EXIT_EXISTS = 3
EXIT_PERMISSION_DENIED = 4
EXIT_CALLOUT_FAILURE = 5
EXIT_SIZE_MISMATCH = 6
EXIT_NOT_FOUND = 7

#: Exception classes mapped to exit status, most specific first
_EXIT_STATUS_MAP = [
    (LoopvolResourceError, EXIT_RESOURCE_UNAVAILABLE),
    (LoopvolExistsError, EXIT_EXISTS),
    (LoopvolPermissionError, EXIT_PERMISSION_DENIED),
    (LoopvolCalloutError, EXIT_CALLOUT_FAILURE),
    (LoopvolSizeMismatchError, EXIT_SIZE_MISMATCH),
    (LoopvolNotFoundError, EXIT_NOT_FOUND),
]


def exit_status(err):
    """
    Return the exit status for the exception ``err``.

    :param err: An exception raised by a command handler.
    :returns: An integer exit status distinguishing error categories.
    """
    for err_class, status in _EXIT_STATUS_MAP:
        if isinstance(err, err_class):
            return status
    return EXIT_FAILURE


def _str_indent(string, indent):
    """
    Indent all lines of a multi-line string.

    :param string: The string to be indented
    :param indent: The number of characters to indent by
    :returns: str
    """
    outstr = ""
    for line in string.splitlines():
        outstr += indent * " " + line + "\n"
    return outstr.rstrip("\n")


def _format_value(key, value):
    if isinstance(value, bool):
        return bool_to_yes_no(value)
    if key == "Size" and isinstance(value, int):
        return size_fmt(value)
    if isinstance(value, list):
        return ", ".join(value)
    return str(value)


def _format_dict(values):
    """
    Format a dictionary of status values as aligned ``Key: value`` lines.
    """
    width = max(len(key) for key in values) + 2
    return "\n".join(
        f"{key + ':':<{width}}{_format_value(key, value)}"
        for key, value in values.items()
    )


def provision(config):
    """
    Provision the loop-backed volume described by ``config``.

    :param config: The ``ProvisionConfig`` to provision.
    :returns: A ``ProvisionResult``.
    """
    provisioner = Provisioner(config)
    provisioner.check_commands()
    return provisioner.provision()


def teardown(config, remove_backing=False):
    """
    Tear down the loop-backed volume described by ``config``.

    :param config: The ``ProvisionConfig`` to tear down.
    :param remove_backing: Also delete the backing file.
    :returns: A list of the objects removed.
    """
    return Provisioner(config).teardown(remove_backing=remove_backing)


def status(config):
    """
    Return a dictionary describing the state of the loop-backed volume
    described by ``config``.
    """
    return Provisioner(config).status()


def _config_from_args(cmd_args):
    """
    Build a ``ProvisionConfig`` from the configuration file named in
    ``cmd_args`` (or the default configuration file) overridden by any
    values given on the command line.
    """
    config_file = getattr(cmd_args, "config", None) or LOOPVOL_CFG_PATH
    if getattr(cmd_args, "config", None) and not os.path.exists(config_file):
        raise LoopvolArgumentError(
            f"Configuration file not found: {config_file}",
            stage=Stage.CONFIG,
            resource=config_file,
        )
    config = ProvisionConfig.from_file(config_file)
    config.update_from_args(cmd_args)
    _log_debug_command("Using configuration %s", repr(config))
    return config


def _provision_cmd(cmd_args):
    """
    Provision command handler.

    Attempt to provision the configured loop-backed volume.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    config = _config_from_args(cmd_args)

    if cmd_args.loop_nodes:
        created = ensure_loop_nodes(cmd_args.loop_nodes)
        if created:
            _log_info("Created loop device nodes: %s", ", ".join(created))

    result = provision(config)
    if cmd_args.json:
        print(dumps(result.to_dict(), indent=4))
    else:
        print(_format_dict(result.to_dict()))
    return EXIT_SUCCESS


def _teardown_cmd(cmd_args):
    """
    Teardown command handler.

    Attempt to remove the configured loop-backed volume.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    config = _config_from_args(cmd_args)
    removed = teardown(config, remove_backing=cmd_args.remove_backing)
    if removed:
        print("Removed:")
        print(_str_indent("\n".join(removed), 4))
    else:
        _log_info("Nothing to remove")
    return EXIT_SUCCESS


def _status_cmd(cmd_args):
    """
    Status command handler.

    Report the state of the configured loop-backed volume.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    config = _config_from_args(cmd_args)
    values = status(config)
    if cmd_args.json:
        print(dumps(values, indent=4))
    else:
        print(_format_dict(values))
    return EXIT_SUCCESS


def setup_logging(cmd_args):
    """
    Set up loopvol logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    loopvol_log = logging.getLogger("loopvol")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    loopvol_log.setLevel(level)
    if loopvol_log.hasHandlers():
        loopvol_log.handlers.clear()

    # Subsystem log filtering
    _loopvol_subsystem_filter = SubsystemFilter("loopvol")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler(sys.stderr)

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_loopvol_subsystem_filter)

    loopvol_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down loopvol logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "allocator": LOOPVOL_DEBUG_ALLOCATOR,
        "topology": LOOPVOL_DEBUG_TOPOLOGY,
        "filesystem": LOOPVOL_DEBUG_FILESYSTEM,
        "command": LOOPVOL_DEBUG_COMMAND,
        "all": LOOPVOL_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_volume_args(parser):
    """
    Add arguments identifying the volume to a subcommand parser.
    """
    parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        type=str,
        help=f"Path to a configuration file (default {LOOPVOL_CFG_PATH})",
    )
    parser.add_argument(
        "-f",
        "--backing-file",
        dest="backing_file",
        metavar="PATH",
        type=str,
        help="The path of the file backing the loop device",
    )
    parser.add_argument(
        "-s",
        "--size",
        metavar="SIZE",
        type=str,
        help="The size of the backing file (e.g. 1G)",
    )
    parser.add_argument(
        "-g",
        "--vg-name",
        dest="vg_name",
        metavar="VG_NAME",
        type=str,
        help="The name of the volume group",
    )
    parser.add_argument(
        "-l",
        "--lv-name",
        dest="lv_name",
        metavar="LV_NAME",
        type=str,
        help="The name of the logical volume",
    )
    parser.add_argument(
        "-L",
        "--lv-size",
        dest="lv_size",
        metavar="SIZE",
        type=str,
        help="The size of the logical volume (e.g. 500M)",
    )
    parser.add_argument(
        "-t",
        "--fstype",
        metavar="FSTYPE",
        type=str,
        help="The file system type to create (default ext4)",
    )
    parser.add_argument(
        "-m",
        "--mount-point",
        dest="mount_point",
        metavar="PATH",
        type=str,
        help="The path at which to mount the file system",
    )
    parser.add_argument(
        "-n",
        "--namespace",
        metavar="PREFIX",
        type=str,
        help="A prefix applied to the volume group name",
    )
    parser.add_argument(
        "--lvm-system-dir",
        dest="lvm_system_dir",
        metavar="PATH",
        type=str,
        help="An alternate LVM2 configuration directory",
    )


def _add_json_arg(parser):
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )


def _add_provision_parser(cmd_subparser):
    provision_parser = cmd_subparser.add_parser(
        PROVISION_CMD,
        help="Create, format and mount a loop-backed logical volume",
    )
    _add_volume_args(provision_parser)
    provision_parser.add_argument(
        "-i",
        "--idempotent",
        action="store_true",
        help="Treat objects that already exist as intended as success",
    )
    provision_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite stale PV metadata and foreign file system signatures",
    )
    provision_parser.add_argument(
        "--extent-size",
        dest="extent_size",
        metavar="SIZE",
        type=str,
        help="The physical extent size for a new volume group (default 4M)",
    )
    provision_parser.add_argument(
        "-o",
        "--mount-options",
        dest="mount_options",
        metavar="OPTIONS",
        type=str,
        help="Options to pass to mount (default 'defaults')",
    )
    provision_parser.add_argument(
        "--preallocate",
        action="store_true",
        help="Allocate all blocks of the backing file instead of a sparse file",
    )
    provision_parser.add_argument(
        "--loop-nodes",
        dest="loop_nodes",
        metavar="COUNT",
        type=int,
        default=0,
        help="Create missing /dev/loopN device nodes for N < COUNT",
    )
    _add_json_arg(provision_parser)
    provision_parser.set_defaults(func=_provision_cmd)


def _add_teardown_parser(cmd_subparser):
    teardown_parser = cmd_subparser.add_parser(
        TEARDOWN_CMD,
        help="Unmount and remove a loop-backed logical volume",
    )
    _add_volume_args(teardown_parser)
    teardown_parser.add_argument(
        "--remove-backing",
        dest="remove_backing",
        action="store_true",
        help="Delete the backing file after detaching the loop device",
    )
    teardown_parser.set_defaults(func=_teardown_cmd)


def _add_status_parser(cmd_subparser):
    status_parser = cmd_subparser.add_parser(
        STATUS_CMD,
        help="Report the state of a loop-backed logical volume",
    )
    _add_volume_args(status_parser)
    _add_json_arg(status_parser)
    status_parser.set_defaults(func=_status_cmd)


def main(args):
    """
    Main entry point for loopvol.
    """
    parser = ArgumentParser(
        description="Loop-backed LVM2 volume provisioner", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of loopvol",
        version=__version__,
    )
    cmd_subparser = parser.add_subparsers(dest="command", help="Command")

    _add_provision_parser(cmd_subparser)
    _add_teardown_parser(cmd_subparser)
    _add_status_parser(cmd_subparser)

    cmd_args = parser.parse_args(args[1:])

    status_code = EXIT_FAILURE

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status_code

    setup_logging(cmd_args)

    if os.geteuid() != 0:
        _log_error("loopvol must be run as the root user")
        shutdown_logging()
        return EXIT_PERMISSION_DENIED

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status_code

    if cmd_args.debug:
        status_code = cmd_args.func(cmd_args)
    else:
        try:
            status_code = cmd_args.func(cmd_args)
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except LoopvolError as err:
            _log_error("Command failed: %s", err)
            status_code = exit_status(err)
        # pylint: disable=broad-except
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status_code


def run():
    """
    Console script entry point for loopvol.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
