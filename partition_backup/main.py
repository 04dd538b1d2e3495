import argparse
import json
import sys
from pathlib import Path

from partition_backup.__version__ import __version__
from partition_backup.config import settings
from partition_backup.domain.models import DeviceKind, DeviceRef
from partition_backup.logging import ThrottledLogger, get_logger, setup_logging
from partition_backup.orchestrator import (
    ConfirmationRequest,
    OperationResult,
    OperationStatus,
    Orchestrator,
)
from partition_backup.pipeline.progress import ProgressSnapshot, format_elapsed, format_progress_lines
from partition_backup.storage import devices
from partition_backup.storage.exceptions import ConfigurationError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


class ConsolePrompt:
    """Confirmation gate that reads the operator's answer from stdin."""

    def __init__(self, input_func=input, output=None):
        self._input = input_func
        self._output = output or sys.stderr

    def confirm(self, request: ConfirmationRequest) -> bool:
        print(request.message, file=self._output)
        try:
            answer = self._input("> ")
        except EOFError:
            return False
        return answer.strip() == request.expected_response


class ProgressPrinter:
    """Render pipeline progress on one terminal line and into the debug log."""

    def __init__(self, title, output=None):
        self.title = title
        self._output = output or sys.stderr
        self._throttled = ThrottledLogger(get_logger(source="progress", tags=["progress"]))

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        line = " | ".join(format_progress_lines(self.title, snapshot))
        end = "\n" if snapshot.finished else ""
        print(f"\r{line}", end=end, file=self._output, flush=True)
        self._throttled.debug(self.title, line)


def _resolve_device(path, whole_disk):
    """Look the path up in lsblk output, falling back to the --disk flag."""
    found = devices.find_device(path, devices.list_block_devices())
    if found is not None:
        return found
    kind = DeviceKind.WHOLE_DISK if whole_disk else DeviceKind.PARTITION
    return DeviceRef(path=path, kind=kind)


def _report(result: OperationResult) -> int:
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if result.status is OperationStatus.SUCCESS:
        if result.archive is not None:
            print(f"Archive: {result.archive.path}")
        if result.compression_ratio is not None:
            print(f"Compression ratio: {result.compression_ratio:.2f}%")
        if result.elapsed_seconds is not None:
            print(f"Elapsed: {format_elapsed(result.elapsed_seconds)}")
        return EXIT_OK
    print(f"{result.operation} {result.status.value}: [{result.error_kind}] {result.message}", file=sys.stderr)
    if result.status is OperationStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def _cmd_devices(args, config):
    listing = devices.list_disks() if args.disk else devices.list_partitions()
    if not listing:
        print("No devices found")
    for device in listing:
        print(devices.format_device_label(device))
    return EXIT_OK


def _cmd_backup(args, config):
    device = _resolve_device(args.device, args.disk)
    orchestrator = Orchestrator(
        config, prompt=ConsolePrompt(), progress_callback=ProgressPrinter(f"Backup {device.path}")
    )
    return _report(orchestrator.backup(device))


def _cmd_restore(args, config):
    target = _resolve_device(args.target, args.disk)
    orchestrator = Orchestrator(
        config, prompt=ConsolePrompt(), progress_callback=ProgressPrinter(f"Restore {target.path}")
    )
    return _report(orchestrator.restore(Path(args.archive), target))


def _cmd_list(args, config):
    kind = DeviceKind.WHOLE_DISK if args.disk else DeviceKind.PARTITION
    archives = Orchestrator(config, prompt=ConsolePrompt()).list_archives(kind)
    if not archives:
        print("No backup files found")
    for archive in archives:
        markers = "".join(
            flag
            for flag, present in (("C", archive.checksum_path), ("S", archive.signature_path))
            if present
        )
        print(f"{archive.path.name}  {devices.human_size(archive.size_bytes)}  {markers}".rstrip())
    return EXIT_OK


def _cmd_config(args, config):
    if args.config_command == "set":
        config = settings.update_configuration(config, args.settings_path, **{args.key: args.value})
    elif args.config_command == "root":
        config = settings.set_backup_root(config, args.directory, args.settings_path)
    print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        prog="partition-backup", description="Compressed partition and whole-disk backups"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable per-chunk trace output")
    parser.add_argument(
        "--config",
        dest="settings_path",
        type=Path,
        default=None,
        help=f"Settings file (default: {settings.SETTINGS_PATH})",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    devices_cmd = subcommands.add_parser("devices", help="List partitions or disks")
    devices_cmd.add_argument("--disk", action="store_true", help="List whole disks")
    devices_cmd.set_defaults(handler=_cmd_devices)

    backup_cmd = subcommands.add_parser("backup", help="Back up a partition or disk")
    backup_cmd.add_argument("device", help="Device path, e.g. /dev/sda1")
    backup_cmd.add_argument("--disk", action="store_true", help="Treat the device as a whole disk")
    backup_cmd.set_defaults(handler=_cmd_backup)

    restore_cmd = subcommands.add_parser("restore", help="Restore an archive onto a device")
    restore_cmd.add_argument("archive", help="Archive file (.img.zst, .img.gz or .img.xz)")
    restore_cmd.add_argument("target", help="Target device path")
    restore_cmd.add_argument("--disk", action="store_true", help="Treat the target as a whole disk")
    restore_cmd.set_defaults(handler=_cmd_restore)

    list_cmd = subcommands.add_parser("list", help="List archives, newest first")
    list_cmd.add_argument("--disk", action="store_true", help="List whole-disk archives")
    list_cmd.set_defaults(handler=_cmd_list)

    config_cmd = subcommands.add_parser("config", help="Show or change settings")
    config_sub = config_cmd.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the current settings")
    set_cmd = config_sub.add_parser("set", help="Change one setting")
    set_cmd.add_argument("key", choices=sorted(settings.DEFAULT_SETTINGS))
    set_cmd.add_argument("value")
    root_cmd = config_sub.add_parser("root", help="Store backups under DIRECTORY/partition_backup")
    root_cmd.add_argument("directory")
    config_cmd.set_defaults(handler=_cmd_config)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = get_logger(source="main", tags=["system"])

    try:
        config = settings.load_configuration(args.settings_path)
        return args.handler(args, config)
    except ConfigurationError as error:
        log.error(f"Configuration error: {error}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
