"""
M365 Admin Toolkit — Command-line entry point

Usage:
    python -m m365_admin_toolkit mailbox-sync <group> <mailbox> [--dry-run]
    python -m m365_admin_toolkit shared-mailbox <name> <address> --team <team>
    python -m m365_admin_toolkit password-expiry [--user upn]
    python -m m365_admin_toolkit sso-usage <upn> [--days 30]
    python -m m365_admin_toolkit sso-apps
    python -m m365_admin_toolkit s3 list <bucket> [--prefix p/]
    python -m m365_admin_toolkit s3 download <bucket> <dest> [--prefix p/]

Tenant selection (any tenant command):
    --profile contoso-prod | --tenant-id X --client-id Y | --config config.json
    --delegated  for the device-code flow instead of a certificate

Profile management:
    python -m m365_admin_toolkit profile add <name> --tenant-id ... --client-id ...
    python -m m365_admin_toolkit profile list
    python -m m365_admin_toolkit profile remove <name>
    python -m m365_admin_toolkit profile set-default <name>

Exit status is 1 when a command fails outright (authentication, group
resolution, permission baseline) and 0 otherwise; per-grant failures are
written to the run log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import __version__
from .config import (
    ToolkitConfig,
    CertificateAuth,
    DelegatedAuth,
    DEFAULT_LOG_PATH,
)
from .safety.guardian import SafetyGuardian, SafetyViolation
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphClient, GraphAPIError
from .graph.directory import GraphGroupDirectory
from .exchange import ExchangeClient, ExchangePermissionStore
from .mailbox import SyncFatalError, SyncResult, run_mailbox_sync
from .mailbox.provision import provision_shared_mailbox
from .collectors import (
    BaseCollector,
    CollectorResult,
    PasswordExpiryCollector,
    SsoUsageCollector,
    SsoAppCollector,
)
from .reporting import export_csv, export_json
from .runlog import RunLog
from .s3 import S3BucketClient, S3Error
from .s3.bucket import DEFAULT_REGION
from .profiles import ProfileStore, TenantProfile, DEFAULT_CERT_PATH, resolve_profile


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    print("Usage: python -m m365_admin_toolkit profile {add|list|remove|set-default}")
    return 0


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_admin_toolkit profile add <name> \\")
        print("    --tenant-id <GUID> --client-id <GUID> --cert-path ./base64.txt")
        return 0

    print(f"\n  {'Name':<24s} {'Tenant ID':<38s} {'Client ID':<38s} {'Cert Path':<30s} {'Default'}")
    print(f"  {'─'*24} {'─'*38} {'─'*38} {'─'*30} {'─'*7}")
    for p in profiles:
        default_marker = "  ✓" if p.name == store.default_profile else ""
        display = p.tenant_display_name or ""
        name_col = p.name + (f" ({display})" if display else "")
        print(f"  {name_col:<24s} {p.tenant_id:<38s} {p.client_id:<38s} {p.cert_path:<30s}{default_marker}")
    print()
    return 0


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    profile = TenantProfile(
        name=name,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        cert_path=args.cert_path or DEFAULT_CERT_PATH,
        tenant_display_name=args.display_name or "",
        log_path=args.log_path or "",
        mailbox_exclusions=list(args.exclude or []),
        notes=args.notes or "",
    )
    set_as_default = args.set_default or not store.profiles
    store.add(profile, set_default=set_as_default)
    print(f"  ✅ Profile '{name}' saved.")
    if set_as_default:
        print("  ✅ Set as default profile.")
    return 0


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  ✅ Profile '{args.profile_name}' removed.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  ✅ Default profile set to '{args.profile_name}'.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _tenant_options() -> argparse.ArgumentParser:
    """Options shared by every command that talks to the tenant."""
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--profile", "-p",
        default=None,
        help="Tenant profile name to use (run 'profile list' to see available)",
    )
    parent.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    parent.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )
    parent.add_argument("--cert-path", type=Path, help="Base64-encoded PFX (overrides profile)")
    parent.add_argument("--tenant-id", default=None, help="Tenant ID (overrides profile)")
    parent.add_argument("--client-id", default=None, help="Client ID (overrides profile)")
    parent.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=None,
        help="Directory for CSV/JSON output (default: ./m365_admin_output)",
    )
    parent.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")
    return parent


def _sync_options() -> argparse.ArgumentParser:
    """Options for commands that change mailbox permissions."""
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--dry-run",
        action="store_true",
        help="Read everything, record the permission changes, send none of them",
    )
    parent.add_argument(
        "--log-path",
        default=None,
        help=f"Append-only run log (default: {DEFAULT_LOG_PATH})",
    )
    parent.add_argument(
        "--folder",
        default=None,
        help="Mailbox folder for the Reviewer grants (default: top of mailbox)",
    )
    parent.add_argument(
        "--exclude",
        action="append",
        metavar="PREFIX",
        help="Extra principal prefix never touched by the sync (repeatable)",
    )
    return parent


def _s3_options() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("bucket", help="Bucket name")
    parent.add_argument("--prefix", default="", help="Only keys under this prefix")
    parent.add_argument("--region", default=DEFAULT_REGION, help=f"Bucket region (default: {DEFAULT_REGION})")
    parent.add_argument("--endpoint", default=None, help="Custom S3-compatible endpoint URL (path-style)")
    parent.add_argument("--output-dir", "-o", type=Path, default=None, help="Directory for the listing CSV")
    parent.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365_admin_toolkit",
        description="M365 Admin Toolkit — mailbox permission sync and tenant reports",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    tenant = _tenant_options()
    sync = _sync_options()

    # --- mailbox-sync ---
    ms = subparsers.add_parser(
        "mailbox-sync",
        parents=[tenant, sync],
        help="Align a mailbox's permissions with a group's owners and members",
    )
    ms.add_argument("group", help="Group object id, mail address or display name")
    ms.add_argument("mailbox", help="Mailbox identity (SMTP address)")

    # --- shared-mailbox ---
    sm = subparsers.add_parser(
        "shared-mailbox",
        parents=[tenant, sync],
        help="Create a shared mailbox and grant a Team access to it",
    )
    sm.add_argument("name", help="Mailbox name (alias)")
    sm.add_argument("address", help="Primary SMTP address")
    sm.add_argument("--team", required=True, help="Team / group id, mail address or display name")
    sm.add_argument("--display-name", default="", help="Display name (default: name)")

    # --- password-expiry ---
    pe = subparsers.add_parser("password-expiry", parents=[tenant], help="Password expiry report")
    pe.add_argument("--user", default=None, help="Report on a single user (UPN or object id)")
    pe.add_argument("--include-disabled", action="store_true", help="Include disabled accounts")
    pe.add_argument("--warning-days", type=int, default=None, help="Flag passwords expiring within N days")

    # --- sso-usage ---
    su = subparsers.add_parser("sso-usage", parents=[tenant], help="SSO applications a user signed in to")
    su.add_argument("user", help="User principal name")
    su.add_argument("--days", type=int, default=None, help="Look-back window in days (default: 30)")

    # --- sso-apps ---
    subparsers.add_parser("sso-apps", parents=[tenant], help="Export SSO enterprise applications to CSV")

    # --- s3 ---
    s3_parser = subparsers.add_parser("s3", help="Anonymous S3 bucket listing and download")
    s3_sub = s3_parser.add_subparsers(dest="s3_action", help="S3 actions")
    s3_common = _s3_options()
    ls = s3_sub.add_parser("list", parents=[s3_common], help="List keys in a bucket")
    ls.add_argument("--no-recursive", action="store_true", help="Only the top folder of the prefix")
    dl = s3_sub.add_parser("download", parents=[s3_common], help="Download every object under a prefix")
    dl.add_argument("dest", type=Path, help="Local destination directory")
    dl.add_argument("--overwrite", action="store_true", help="Download files that already exist locally")
    dl.add_argument("--strip-prefix", action="store_true", help="Drop the prefix from local paths")

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--cert-path", default=DEFAULT_CERT_PATH, help="Path to base64-encoded PFX")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--log-path", help="Run log used for this tenant's mailbox syncs")
    add_p.add_argument("--exclude", action="append", metavar="PREFIX", help="Extra mailbox exclusion prefix")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _resolve_profile_for(args: argparse.Namespace) -> Optional[TenantProfile]:
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            print(f"\n❌ Profile '{args.profile}' not found. Use 'profile list' to see available profiles.")
            sys.exit(1)
        return profile
    if not args.config and not args.tenant_id:
        return resolve_profile()
    return None


def build_config(args: argparse.Namespace) -> ToolkitConfig:
    """Build toolkit configuration from profile, CLI args, or config file."""
    if args.config and args.config.exists():
        config = ToolkitConfig.from_file(str(args.config))
    else:
        config = ToolkitConfig()

    if getattr(args, "delegated", False):
        config.auth.mode = "delegated"

    # --- Resolve tenant identity: CLI flags > profile > config file ---
    profile = _resolve_profile_for(args)

    if profile:
        tenant_id = args.tenant_id or profile.tenant_id
        client_id = args.client_id or profile.client_id
        cert_path = str(args.cert_path) if args.cert_path else profile.resolve_cert_path()
    elif args.tenant_id and args.client_id:
        tenant_id = args.tenant_id
        client_id = args.client_id
        cert_path = str(args.cert_path) if args.cert_path else DEFAULT_CERT_PATH
    elif config.auth.certificate:
        tenant_id = config.auth.certificate.tenant_id
        client_id = config.auth.certificate.client_id
        cert_path = str(args.cert_path) if args.cert_path else config.auth.certificate.certificate_path
    elif config.auth.delegated:
        tenant_id = config.auth.delegated.tenant_id
        client_id = config.auth.delegated.client_id
        cert_path = ""
    else:
        print("\n❌ No tenant credentials found. Use one of:")
        print("   • --profile <name>             (from saved profiles)")
        print("   • --tenant-id X --client-id Y  (ad-hoc)")
        print("   • --config config.json         (JSON config file)")
        print("\n   To create a profile:")
        print("   python -m m365_admin_toolkit profile add <name> --tenant-id <GUID> --client-id <GUID>")
        sys.exit(1)

    if config.auth.mode == "delegated":
        config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)
    else:
        password = config.auth.certificate.certificate_password if config.auth.certificate else ""
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=cert_path,
            certificate_password=password,
        )

    # --- Sync options ---
    if getattr(args, "dry_run", False):
        config.sync.dry_run = True
    if getattr(args, "folder", None) is not None:
        config.sync.folder_path = args.folder
    extra = list(profile.mailbox_exclusions) if profile else []
    extra += list(getattr(args, "exclude", None) or [])
    for prefix in extra:
        if prefix not in config.sync.mailbox_exclusions:
            config.sync.mailbox_exclusions.append(prefix)

    if getattr(args, "log_path", None):
        config.output.log_path = args.log_path
    elif profile and profile.log_path:
        config.output.log_path = profile.log_path

    # --- Report options ---
    if getattr(args, "include_disabled", False):
        config.reports.include_disabled_users = True
    if getattr(args, "warning_days", None) is not None:
        config.reports.password_warning_days = args.warning_days
    if getattr(args, "days", None) is not None:
        config.reports.sso_usage_days = args.days

    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    config.verbose = config.verbose or args.verbose
    return config


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Mailbox commands
# ---------------------------------------------------------------------------

def _print_sync_result(result: SyncResult):
    summary = result.summary()
    print(f"\n  Group:    {result.group}")
    print(f"  Mailbox:  {result.mailbox}")
    print(f"  Owners:   {summary['owners']}   Members: {summary['members']}")
    for action in result.actions:
        marker = "❌" if action.failed else "•"
        print(f"    {marker} {action.describe()}")
    for subject in result.unresolved_subjects:
        print(f"    ⚠  Left alone, not matched to any user: {subject}")
    print(
        f"\n  Revoked {summary['revoked']}, granted {summary['granted']}, "
        f"already present {summary['already_present']}, planned {summary['planned']}, "
        f"failed {summary['failed']}"
    )


def _write_sync_reports(
    result: SyncResult,
    guardian: SafetyGuardian,
    config: ToolkitConfig,
    run_id: str,
) -> list[Path]:
    output_dir = config.output.output_dir
    csv_path = export_csv([a.to_dict() for a in result.actions], output_dir, "mailbox_sync", run_id)
    json_path = export_json(
        result.to_dict(),
        output_dir,
        "mailbox_sync",
        run_id,
        extra_metadata=guardian.get_audit_record(),
    )
    print(f"  📊 CSV:  {csv_path}")
    print(f"  📄 JSON: {json_path}")
    return [csv_path, json_path]


async def cmd_mailbox_sync(args: argparse.Namespace, config: ToolkitConfig) -> int:
    guardian = SafetyGuardian(dry_run=config.sync.dry_run)
    guardian.print_banner()
    run_id = _new_run_id()

    with RunLog(config.output.log_path) as runlog:
        authenticator = Authenticator(config.auth)
        try:
            graph_token = await authenticator.graph_token()
            exchange_token = await authenticator.exchange_token()
        except AuthenticationError as e:
            runlog.fatal(f"Authentication failed: {e}")
            print(f"❌ Authentication failed: {e}")
            return 1

        async with GraphClient(graph_token, guardian) as graph, \
                ExchangeClient(exchange_token, authenticator.tenant_id, guardian) as exchange:
            directory = GraphGroupDirectory(graph)
            store = ExchangePermissionStore(exchange, config.sync.folder_exclusions)
            try:
                result = await run_mailbox_sync(
                    args.group, args.mailbox, directory, store, runlog, config.sync
                )
            except SyncFatalError as e:
                print(f"❌ {e}")
                return 1

    _print_sync_result(result)
    _write_sync_reports(result, guardian, config, run_id)
    print(f"  📝 Log:  {Path(config.output.log_path).resolve()}")
    return 0


async def cmd_shared_mailbox(args: argparse.Namespace, config: ToolkitConfig) -> int:
    guardian = SafetyGuardian(dry_run=config.sync.dry_run)
    guardian.print_banner()
    run_id = _new_run_id()

    with RunLog(config.output.log_path) as runlog:
        authenticator = Authenticator(config.auth)
        try:
            graph_token = await authenticator.graph_token()
            exchange_token = await authenticator.exchange_token()
        except AuthenticationError as e:
            runlog.fatal(f"Authentication failed: {e}")
            print(f"❌ Authentication failed: {e}")
            return 1

        async with GraphClient(graph_token, guardian) as graph, \
                ExchangeClient(exchange_token, authenticator.tenant_id, guardian) as exchange:
            directory = GraphGroupDirectory(graph)
            store = ExchangePermissionStore(exchange, config.sync.folder_exclusions)
            try:
                provisioned = await provision_shared_mailbox(
                    exchange,
                    directory,
                    store,
                    runlog,
                    name=args.name,
                    address=args.address,
                    team=args.team,
                    display_name=args.display_name,
                    config=config.sync,
                )
            except SyncFatalError as e:
                print(f"❌ {e}")
                return 1

    state = "created" if provisioned.created else "already existed"
    if provisioned.created and guardian.dry_run:
        state = "would be created"
    print(f"\n  Shared mailbox {provisioned.mailbox} {state}")
    print(f"  Team: {provisioned.team_name} ({provisioned.team_id})")
    if provisioned.sync:
        _print_sync_result(provisioned.sync)
        _write_sync_reports(provisioned.sync, guardian, config, run_id)
    return 0


# ---------------------------------------------------------------------------
# Report commands
# ---------------------------------------------------------------------------

def _print_collector_result(result: CollectorResult):
    print(f"  {len(result.rows)} rows ({result.metadata.get('duration_seconds', '?')}s)")
    for w in result.metadata.get("warnings", []):
        print(f"      ⚠  {w}")
    for e in result.metadata.get("errors", []):
        print(f"      ❌ {e}")


async def _run_report(config: ToolkitConfig, build) -> int:
    """Authenticate for Graph, run one collector and export its rows."""
    guardian = SafetyGuardian()
    run_id = _new_run_id()
    authenticator = Authenticator(config.auth)
    try:
        token = await authenticator.graph_token()
    except AuthenticationError as e:
        print(f"❌ Authentication failed: {e}")
        return 1

    async with GraphClient(token, guardian) as graph:
        collector: BaseCollector = build(graph)
        print(f"\n  Running {collector.description}...")
        result = await collector.execute()

    _print_collector_result(result)
    output_dir = config.output.output_dir
    csv_path = export_csv(result.rows, output_dir, collector.name, run_id)
    json_path = export_json(result.to_dict(), output_dir, collector.name, run_id)
    print(f"  📊 CSV:  {csv_path}")
    print(f"  📄 JSON: {json_path}")
    return 0 if result.ok else 1


async def cmd_password_expiry(args: argparse.Namespace, config: ToolkitConfig) -> int:
    return await _run_report(
        config,
        lambda graph: PasswordExpiryCollector(graph, config.reports, user=args.user),
    )


async def cmd_sso_usage(args: argparse.Namespace, config: ToolkitConfig) -> int:
    return await _run_report(
        config,
        lambda graph: SsoUsageCollector(graph, args.user, config.reports),
    )


async def cmd_sso_apps(args: argparse.Namespace, config: ToolkitConfig) -> int:
    return await _run_report(config, lambda graph: SsoAppCollector(graph, config.reports))


# ---------------------------------------------------------------------------
# S3 commands
# ---------------------------------------------------------------------------

async def cmd_s3(args: argparse.Namespace) -> int:
    output_dir = args.output_dir or Path("./m365_admin_output")
    async with S3BucketClient(args.bucket, region=args.region, endpoint=args.endpoint) as bucket:
        try:
            if args.s3_action == "list":
                rows = []
                async for obj in bucket.walk(args.prefix, recursive=not args.no_recursive):
                    print(f"  {obj.size:>12}  {obj.last_modified:<24}  {obj.key}")
                    rows.append(obj.to_dict())
                path = export_csv(rows, output_dir, "s3_objects", _new_run_id())
                print(f"\n  {len(rows)} objects in s3://{args.bucket}/{args.prefix}")
                print(f"  📊 CSV:  {path}")
                return 0

            summary = await bucket.download(
                args.prefix,
                args.dest,
                overwrite=args.overwrite,
                strip_prefix=args.strip_prefix,
            )
        except S3Error as e:
            print(f"❌ {e}")
            return 1

    print(
        f"\n  Downloaded {len(summary.downloaded)} objects ({summary.bytes_written} bytes), "
        f"skipped {len(summary.skipped)}, failed {len(summary.failed)}"
    )
    for key, error in summary.failed:
        print(f"    ❌ {key}: {error}")
    print(f"  📂 {args.dest.resolve()}")
    return 0


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

COMMANDS = {
    "mailbox-sync": cmd_mailbox_sync,
    "shared-mailbox": cmd_shared_mailbox,
    "password-expiry": cmd_password_expiry,
    "sso-usage": cmd_sso_usage,
    "sso-apps": cmd_sso_apps,
}


async def main_async(argv: Optional[list[str]] = None) -> int:
    """Async entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "profile":
        return _cmd_profile(args)

    if args.command == "s3":
        if not args.s3_action:
            print("Usage: python -m m365_admin_toolkit s3 {list|download} <bucket>")
            return 0
        _configure_logging(args.verbose)
        return await cmd_s3(args)

    config = build_config(args)
    _configure_logging(config.verbose)
    print("=" * 75)
    print(f" M365 Admin Toolkit v{__version__} — {args.command}")
    print(f" Tenant: {config.auth.tenant_id}")
    print("=" * 75)

    try:
        return await COMMANDS[args.command](args, config)
    except (GraphAPIError, SafetyViolation) as e:
        print(f"❌ {e}")
        return 1


def main(argv: Optional[list[str]] = None):
    """Synchronous entry point for `python -m m365_admin_toolkit`."""
    sys.exit(asyncio.run(main_async(argv)))


if __name__ == "__main__":
    main()
