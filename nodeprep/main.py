import argparse
import signal
import sys
import threading
from pathlib import Path

from nodeprep.config import settings
from nodeprep.config.settings import AgentOptions, DirProvider
from nodeprep.domain import DiskSettings, FailureAlert
from nodeprep.exceptions import AgentError
from nodeprep.logging import LoggerFactory, setup_logging
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.disk_layout import DiskLayoutManager
from nodeprep.storage.devices import PathDevicePathResolver
from nodeprep.storage.format import Formatter
from nodeprep.storage.mount import Mounter
from nodeprep.storage.partition import (
    PartedPartitioner,
    RootDevicePartitioner,
    SfdiskPartitioner,
)
from nodeprep.supervisor.job_supervisor import MonitJobSupervisor
from nodeprep.supervisor.monit_client import MonitClient, read_monit_credentials


def build_disk_layout_manager(options: AgentOptions) -> DiskLayoutManager:
    dirs = DirProvider(options.base_dir)
    runner = CommandRunner(tmp_dir=options.tmp_dir)
    sfdisk = SfdiskPartitioner(runner)
    return DiskLayoutManager(
        options=options,
        dirs=dirs,
        runner=runner,
        resolver=PathDevicePathResolver(options.device_resolution_timeout),
        mounter=Mounter(runner),
        formatter=Formatter(runner),
        partitioners={"": sfdisk, "sfdisk": sfdisk, "parted": PartedPartitioner(runner)},
        root_partitioner=RootDevicePartitioner(runner),
    )


def build_job_supervisor(options: AgentOptions) -> MonitJobSupervisor:
    dirs = DirProvider(options.base_dir)
    username, password = read_monit_credentials(options.monit_credentials_path)
    client = MonitClient(options.monit_host, options.monit_port, username, password)
    return MonitJobSupervisor(
        client=client,
        runner=CommandRunner(tmp_dir=options.tmp_dir),
        jobs_dir=dirs.monit_jobs_dir(),
        job_failures_server_port=options.job_failures_server_port,
        reload_options=options.reload_options,
    )


def _disk_from_args(args) -> DiskSettings:
    return DiskSettings(
        id=args.disk_id,
        path=args.device,
        filesystem_type=getattr(args, "filesystem", None),
        mount_options=tuple(getattr(args, "mount_option", None) or ()),
        partitioner=getattr(args, "partitioner", None),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Node disk layout and job supervision agent")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable TRACE level logging")
    parser.add_argument("--settings", type=Path, help="Path to the JSON settings file")
    commands = parser.add_subparsers(dest="command", required=True)

    ephemeral = commands.add_parser("setup-ephemeral", help="Partition and mount ephemeral storage")
    ephemeral.add_argument("--device", help="Ephemeral disk device (omit to use the root disk)")
    ephemeral.add_argument("--swap-size", type=int, help="Swap size in bytes (0 disables swap)")

    root = commands.add_parser("setup-root", help="Grow the root partition")
    root.add_argument("--ephemeral-device", help="Ephemeral disk device, if any")

    raw = commands.add_parser("label-raw", help="GPT-label raw ephemeral disks")
    raw.add_argument("devices", nargs="+")

    for name in ("mount-persistent", "unmount-persistent", "mountable", "mounted", "associate"):
        disk = commands.add_parser(name, help=f"{name.replace('-', ' ')} a persistent disk")
        disk.add_argument("--disk-id", required=True)
        disk.add_argument("--device", required=True, help="Device path hint for the disk")
        if name == "mount-persistent":
            disk.add_argument("--mount-point", help="Defaults to the store directory")
            disk.add_argument("--filesystem", choices=["ext4", "xfs"])
            disk.add_argument("--mount-option", action="append")
            disk.add_argument("--partitioner", choices=["sfdisk", "parted"])
        if name == "associate":
            disk.add_argument("--name", required=True)

    migrate = commands.add_parser("migrate", help="Move persistent data to a new disk")
    migrate.add_argument("from_mount_point")
    migrate.add_argument("to_mount_point")

    jobs = commands.add_parser("jobs", help="Drive monit-supervised jobs")
    jobs.add_argument("action", choices=["reload", "start", "stop", "unmonitor", "status"])

    add_job = commands.add_parser("add-job", help="Register a job's monit config")
    add_job.add_argument("name")
    add_job.add_argument("index", type=int)
    add_job.add_argument("config_path")

    commands.add_parser("remove-jobs", help="Remove all job monit configs")
    commands.add_parser("listen-alerts", help="Log monit failure alerts until interrupted")
    return parser


def _listen_for_alerts(supervisor: MonitJobSupervisor) -> None:
    log = LoggerFactory.for_alerts()

    def on_alert(alert: FailureAlert) -> None:
        log.warning(
            f"Job failure: service={alert.service} event={alert.event} "
            f"action={alert.action} description={alert.description}"
        )

    handle = supervisor.monitor_job_failures(on_alert)
    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    try:
        stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        handle.stop()


def main(argv=None):
    args = _build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()
    options = settings.load_settings(args.settings)
    dirs = DirProvider(options.base_dir)

    try:
        if args.command in ("jobs", "add-job", "remove-jobs", "listen-alerts"):
            supervisor = build_job_supervisor(options)
            if args.command == "jobs":
                if args.action == "status":
                    print(supervisor.status())
                else:
                    getattr(supervisor, args.action)()
            elif args.command == "add-job":
                supervisor.add_job(args.name, args.index, args.config_path)
            elif args.command == "remove-jobs":
                supervisor.remove_all_jobs()
            else:
                _listen_for_alerts(supervisor)
            return 0

        manager = build_disk_layout_manager(options)
        if args.command == "setup-ephemeral":
            manager.setup_ephemeral_disk(args.device, args.swap_size)
        elif args.command == "setup-root":
            manager.setup_root_disk(args.ephemeral_device)
        elif args.command == "label-raw":
            manager.setup_raw_ephemeral_disks(
                [DiskSettings(id=device, path=device) for device in args.devices]
            )
        elif args.command == "mount-persistent":
            manager.mount_persistent_disk(
                _disk_from_args(args), args.mount_point or dirs.store_dir()
            )
        elif args.command == "unmount-persistent":
            print(manager.unmount_persistent_disk(_disk_from_args(args)))
        elif args.command == "mountable":
            print(manager.is_persistent_disk_mountable(_disk_from_args(args)))
        elif args.command == "mounted":
            print(manager.is_persistent_disk_mounted(_disk_from_args(args)))
        elif args.command == "associate":
            manager.associate_disk(args.name, _disk_from_args(args))
        elif args.command == "migrate":
            manager.migrate_persistent_disk(args.from_mount_point, args.to_mount_point)
    except AgentError as error:
        log.error(str(error))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
