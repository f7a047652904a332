"""CLI entry point for mountalls3."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .cache import DEFAULT_DISKFREE_MB, BucketCache
from .catalog import ProfileCatalog
from .commands import CommandRunner
from .config import PROFILE_MODES, WILDCARD, Config, ConfigStore
from .errors import CommandNotFound, ConfigError
from .mounttable import MountTable
from .orchestrator import BatchReport, MountOrchestrator, MountSettings, UnmountSelector
from .resolver import GroupResolver, Resolution
from .utils import expand_path
from .vault import CredentialVault, KeyringStore, desktop_notifier

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """Everything a command handler needs, built once per run."""

    args: argparse.Namespace
    store: ConfigStore
    config: Config
    runner: CommandRunner

    def catalog(self) -> ProfileCatalog:
        return ProfileCatalog(self.runner)

    def orchestrator(self, catalog: ProfileCatalog) -> MountOrchestrator:
        vault = CredentialVault(
            KeyringStore(self.runner),
            runner=self.runner,
            catalog=catalog,
            notifier=desktop_notifier(self.runner),
        )
        settings = MountSettings(
            poll_attempts=self.args.poll_attempts,
            poll_interval=self.args.poll_interval,
        )
        return MountOrchestrator(
            mount_base=self.mount_base,
            vault=vault,
            catalog=catalog,
            table=MountTable(),
            runner=self.runner,
            cache=BucketCache(self.args.cache_dir, diskfree_mb=self.args.diskfree),
            settings=settings,
        )

    @property
    def mount_base(self):
        return expand_path(getattr(self.args, "mount_base", None) or self.config.mount_base)


@dataclass(frozen=True)
class Command:
    """A registered subcommand: its handler plus its argument shape."""

    name: str
    help: str
    handler: Callable[[Context], int]
    configure: Callable[[argparse.ArgumentParser], None]
    needs_config: bool = True


# ----------------------------------------------------------------------
# Argument shapes
# ----------------------------------------------------------------------


def _selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-g", "--group",
        metavar="GROUP[,GROUP]",
        help="Bucket groups from the config (comma separated).",
    )
    parser.add_argument(
        "-p", "--profile",
        help="Only buckets of this AWS profile.",
    )
    parser.add_argument(
        "-a", "--all",
        action="store_true",
        help="All buckets from all profiles (ignore config groups).",
    )
    _mount_base_arg(parser)


def _mount_base_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-m", "--mount-base",
        default=None,
        help="Override the mount base directory from the config.",
    )


def _no_args(parser: argparse.ArgumentParser) -> None:
    pass


def _config_args(parser: argparse.ArgumentParser) -> None:
    sub = parser.add_subparsers(dest="action", required=True)
    sub.add_parser("show", help="Print the effective configuration.")
    sub.add_parser("init", help="Create a basic configuration file.")
    sub.add_parser("validate", help="Validate the configuration file.")
    sub.add_parser("reset", help="Back up and delete the configuration file.")

    p = sub.add_parser("set-mount-base", help="Set the default mount base.")
    p.add_argument("path")
    p = sub.add_parser("set-profile-mode", help="Set the default profile mode.")
    p.add_argument("mode", help=f"{' | '.join(PROFILE_MODES)} | <profile name>")
    p = sub.add_parser("set-default-groups", help="Set groups mounted by default.")
    p.add_argument("groups", nargs="+")
    p = sub.add_parser("add-group", help="Create an empty group.")
    p.add_argument("name")
    p.add_argument("--description", default="")
    p = sub.add_parser("remove-group", help="Delete a group.")
    p.add_argument("name")
    p = sub.add_parser("add-bucket", help="Add a static bucket to a group.")
    p.add_argument("group")
    p.add_argument("profile")
    p.add_argument("bucket")
    p = sub.add_parser("add-pattern", help="Add a pattern rule to a group.")
    p.add_argument("group")
    p.add_argument("profile", help=f"profile name or '{WILDCARD}' for all profiles")
    p.add_argument("pattern", help=f"substring to match or '{WILDCARD}' for all buckets")
    p.add_argument("--description", default="")


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


def _split_groups(value: str) -> List[str]:
    return [g.strip() for g in value.split(",") if g.strip()]


def _select(ctx: Context, resolver: GroupResolver) -> Resolution:
    args, config = ctx.args, ctx.config
    if args.all:
        logger.info("Selecting buckets from all AWS profiles")
        return resolver.resolve_profiles(None)
    if args.profile:
        logger.info("Selecting buckets from profile: %s", args.profile)
        return resolver.resolve_profiles([args.profile])
    if args.group:
        return resolver.resolve(_split_groups(args.group))
    if config.default_groups:
        logger.info("Using default groups: %s", ", ".join(config.default_groups))
        return resolver.resolve(config.default_groups)
    if config.profile_mode == "selective":
        logger.error(
            "Profile mode 'selective' mounts only configured groups, but no default "
            "groups are set. Use -g, -p or -a, or 'config set-default-groups'."
        )
        return Resolution()
    if config.profile_mode not in PROFILE_MODES:
        return resolver.resolve_profiles([config.profile_mode])
    return resolver.resolve_profiles(None)


def _report_resolution(resolution: Resolution) -> None:
    for name, err in resolution.errors.items():
        logger.error("Group '%s': %s", name, err)
    for profile, err in resolution.catalog_errors.items():
        logger.warning("Profile '%s' skipped: %s", profile, err)


def _report_batch(report: BatchReport) -> None:
    for outcome in report.failures:
        logger.warning(
            "%s %s:%s: %s", outcome.status.value.upper(), outcome.profile,
            outcome.bucket, outcome.reason,
        )
        if outcome.command:
            logger.warning("    command: %s", outcome.command)
    logger.info("%s", report.summary())


def cmd_mount(ctx: Context) -> int:
    catalog = ctx.catalog()
    resolution = _select(ctx, GroupResolver(ctx.config, catalog))
    _report_resolution(resolution)
    if not resolution.pairs:
        logger.error("No buckets found for the selection. Check your configuration.")
        return 1

    orchestrator = ctx.orchestrator(catalog)
    logger.info("Mount base directory: %s", orchestrator.mount_base)
    report = orchestrator.mount_all(resolution.pairs)
    _report_batch(report)
    orchestrator.cleanup()
    return 0


def cmd_unmount(ctx: Context) -> int:
    args = ctx.args
    catalog = ctx.catalog()
    if args.profile:
        selector = UnmountSelector.for_profile(args.profile)
    elif args.group:
        resolution = GroupResolver(ctx.config, catalog).resolve(_split_groups(args.group))
        _report_resolution(resolution)
        selector = UnmountSelector.for_pairs(resolution.pairs)
    else:
        selector = UnmountSelector.everything()
    report = ctx.orchestrator(catalog).unmount(selector)
    _report_batch(report)
    return 0


def cmd_cleanup(ctx: Context) -> int:
    orchestrator = ctx.orchestrator(ctx.catalog())
    report = orchestrator.cleanup()
    for path, reason in report.skipped:
        logger.info("   Skipping %s (%s)", path.name, reason)
    print(report.summary())
    return 0


def cmd_list_groups(ctx: Context) -> int:
    resolver = GroupResolver(ctx.config, ctx.catalog())
    groups = resolver.describe()
    if not groups:
        print("No bucket groups configured.")
        return 0
    for name, description, static, patterns in groups:
        marker = "*" if name in ctx.config.default_groups else " "
        print(f"{marker} {name:<20} {description}  ({static} bucket(s), {patterns} pattern(s))")
    return 0


def cmd_status(ctx: Context) -> int:
    orchestrator = ctx.orchestrator(ctx.catalog())
    entries = orchestrator.status()
    print(f"Mount base: {orchestrator.mount_base}")
    if not entries:
        print("No S3 buckets mounted.")
    for entry in entries:
        origin = entry.provenance
        owner = f"{origin[0]}" if origin else "unknown profile"
        print(f"  {entry.path.name:<40} {owner}")
    usage = BucketCache(ctx.args.cache_dir).usage()
    if usage:
        print("Local cache usage:")
        for bucket, size in usage.items():
            print(f"  {bucket:<40} {size / (1024 * 1024):.1f} MB")
    return 0


def cmd_config(ctx: Context) -> int:
    args, store = ctx.args, ctx.store
    action = args.action
    if action == "show":
        config = store.load_or_default()
        print(f"Configuration file: {store.path}")
        print(f"mount_base:   {config.mount_base}")
        print(f"profile_mode: {config.profile_mode}")
        print(f"groups:       {', '.join(config.default_groups) or '(none)'}")
        return 0
    if action == "init":
        if store.exists():
            logger.error("Configuration already exists: %s", store.path)
            return 1
        store.create_default()
        return 0
    if action == "validate":
        config = store.load()
        for name in config.default_groups:
            config.group(name)
        print("Configuration file is valid")
        return 0
    if action == "reset":
        backup = store.reset()
        if backup is None:
            print("No configuration file found. Nothing to reset.")
        else:
            print(f"Configuration reset; backup at {backup}")
        return 0

    updates: Dict[str, Callable[[], Config]] = {
        "set-mount-base": lambda: store.set_mount_base(args.path),
        "set-profile-mode": lambda: store.set_profile_mode(args.mode),
        "set-default-groups": lambda: store.set_default_groups(args.groups),
        "add-group": lambda: store.add_group(args.name, args.description),
        "remove-group": lambda: store.remove_group(args.name),
        "add-bucket": lambda: store.add_bucket(args.group, args.profile, args.bucket),
        "add-pattern": lambda: store.add_pattern(
            args.group, args.profile, args.pattern, args.description
        ),
    }
    updates[action]()
    logger.info("Configuration updated: %s", store.path)
    return 0


COMMANDS: Dict[str, Command] = {
    c.name: c
    for c in (
        Command("mount", "Mount buckets (default groups unless told otherwise).",
                cmd_mount, _selection_args),
        Command("unmount", "Unmount buckets (respects -p/-g).", cmd_unmount, _selection_args),
        Command("cleanup", "Remove empty, unmounted directories.", cmd_cleanup, _mount_base_arg),
        Command("list-groups", "List bucket groups from the config.", cmd_list_groups, _no_args),
        Command("status", "Show live mounts and cache usage.", cmd_status, _mount_base_arg),
        Command("config", "Inspect or edit the configuration.", cmd_config, _config_args,
                needs_config=False),
    )
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mountalls3",
        description="Mount S3 buckets as local directories with s3fs and STS credentials.",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="FILE",
        help="Configuration file (default: ~/.config/mountalls3/config.yaml).",
    )
    parser.add_argument(
        "--cache-dir",
        default=None,
        help="s3fs cache directory (default: ~/.cache/mountalls3/s3fs/).",
    )
    parser.add_argument(
        "--diskfree",
        type=int,
        default=DEFAULT_DISKFREE_MB,
        help="Free space in MB s3fs keeps on the cache volume (default: 1024).",
    )
    parser.add_argument(
        "--poll-attempts",
        type=int,
        default=6,
        help="Mount verification attempts (default: 6).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds between verification attempts (default: 5).",
    )
    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only report warnings and errors.",
    )

    sub = parser.add_subparsers(dest="command")
    for command in COMMANDS.values():
        p = sub.add_parser(command.name, help=command.help)
        command.configure(p)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    # Logging
    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(
            level=logging.WARNING if args.quiet else logging.INFO,
            format="%(message)s",
        )

    if args.command is None:
        # Bare invocation mounts the default selection.
        args = parser.parse_args(list(argv) + ["mount"])
    command = COMMANDS[args.command]

    store = ConfigStore(args.config)
    try:
        if command.needs_config and not store.exists():
            logger.warning(
                "No configuration file found at %s; run 'mountalls3 config init'.",
                store.path,
            )
        config = store.load_or_default() if command.needs_config else Config()
        ctx = Context(args=args, store=store, config=config, runner=CommandRunner())
        return command.handler(ctx)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1
    except CommandNotFound as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
