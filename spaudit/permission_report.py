#!/usr/bin/env python3
"""
SharePoint User Permission Report - find where a user holds permissions.

This tool walks the document libraries of one or more SharePoint sites and
reports every library, folder and file on which the given user has a
permission, whether granted directly, through a sharing link, or inherited.

Distinguished grant types:
- Direct: the user (or site user) is named on the permission
- Link: the user was granted access through a sharing link

Prerequisites:
- requests and msal libraries
- App registration with Sites.Read.All (or Sites.FullControl.All), or an
  rclone OneDrive/SharePoint remote with a valid token

Usage:
    python -m spaudit.permission_report --user EMAIL --site-url URL [--site-url URL...] [options]

Options:
    --library NAME          Limit to this library (repeatable)
    --skip-inherited        Only report explicit (non-inherited) grants
    --libraries-only        Only check library roots, not folders and files
    --max-depth N           Stop descending below this folder depth
    --throttle N            Libraries scanned in parallel (default: 6)
    --output PATH           CSV output path

Examples:
    python -m spaudit.permission_report --user jane@contoso.com --site-url https://contoso.sharepoint.com/sites/Finance
    python -m spaudit.permission_report --user jane@contoso.com --site-url https://contoso.sharepoint.com/sites/HR --skip-inherited
    python -m spaudit.permission_report --user jane@contoso.com --site-url https://contoso.sharepoint.com/sites/HR --library Policies --libraries-only
"""

import argparse
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .config_utils import TokenProvider, add_credential_arguments, token_provider_from_args
from .errors import SpAuditError, describe_api_error
from .graph import GraphSession, match_library
from .models import FolderFailure, Library, PermissionGrant, Site, TreeEntry
from .report_writer import PERMISSION_REPORT_HEADER, CsvReportWriter
from .workers import DEFAULT_THROTTLE, run_pool

# grantedToV2 / grantedToIdentitiesV2 are the SharePoint-aware shapes; the
# older keys are still returned for OneDrive and some tenants
SINGLE_GRANT_KEYS = ("grantedToV2", "grantedTo")
MULTI_GRANT_KEYS = ("grantedToIdentitiesV2", "grantedToIdentities")
PRINCIPAL_KEYS = ("user", "siteUser")


@dataclass
class PermissionReportSettings:
    site_urls: List[str]
    user: str
    libraries: List[str] = field(default_factory=list)
    skip_inherited: bool = False
    libraries_only: bool = False
    max_depth: Optional[int] = None
    throttle: int = DEFAULT_THROTTLE
    output: Optional[str] = None

    def output_path(self) -> str:
        if self.output:
            return self.output
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_user = "".join(c if c.isalnum() else "_" for c in self.user)
        return f"permissions_{safe_user}_{timestamp}.csv"


@dataclass(frozen=True)
class LibraryJob:
    """One library to scan; name is what a failure is reported under."""

    site: Site
    library: Library

    @property
    def name(self) -> str:
        return f"{self.site.name}/{self.library.name}"


def _principal_ids(principal: Dict[str, Any]) -> List[str]:
    ids = []
    for key in ("email", "userPrincipalName"):
        value = principal.get(key)
        if value:
            ids.append(value.lower())
    # siteUser loginName looks like i:0#.f|membership|jane@contoso.com
    login_name = principal.get("loginName")
    if login_name:
        ids.append(login_name.rsplit("|", 1)[-1].lower())
    return ids


def _identity_sets(permission: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for key in SINGLE_GRANT_KEYS:
        identity_set = permission.get(key)
        if identity_set:
            yield identity_set
    for key in MULTI_GRANT_KEYS:
        for identity_set in permission.get(key) or []:
            if identity_set:
                yield identity_set


def grant_matches_user(permission: Dict[str, Any], user: str) -> bool:
    """Check whether a permission names the user (case-insensitive email/UPN)."""
    target = user.strip().lower()
    for identity_set in _identity_sets(permission):
        for key in PRINCIPAL_KEYS:
            principal = identity_set.get(key)
            if principal and target in _principal_ids(principal):
                return True
    return False


def describe_grant(permission: Dict[str, Any]) -> Tuple[List[str], str, bool]:
    """
    Summarise a permission.

    Returns:
        Tuple of (roles, granted_via, inherited)
    """
    roles = list(permission.get("roles", []))
    link = permission.get("link")
    if link and link.get("type"):
        granted_via = f"Link ({link.get('type')}, {link.get('scope', 'unknown')})"
    else:
        granted_via = "Direct"
    inherited = bool(permission.get("inheritedFrom"))
    return roles, granted_via, inherited


def _grants_for_item(
    graph: GraphSession,
    library: Library,
    site_url: str,
    user: str,
    entry: TreeEntry,
    item_type: str,
    item_path: str,
    skip_inherited: bool,
) -> Iterator[PermissionGrant]:
    for permission in graph.get_item_permissions(library.id, entry.id):
        if not grant_matches_user(permission, user):
            continue
        roles, granted_via, inherited = describe_grant(permission)
        if inherited and skip_inherited:
            continue
        yield PermissionGrant(
            site_url=site_url,
            library=library.name,
            item_type=item_type,
            item_path=item_path,
            item_url=entry.web_url or "",
            user=user,
            roles=roles,
            granted_via=granted_via,
            inherited=inherited,
        )


def scan_library(
    graph: GraphSession,
    site: Site,
    library: Library,
    user: str,
    skip_inherited: bool = False,
    libraries_only: bool = False,
    max_depth: Optional[int] = None,
) -> Iterator[PermissionGrant]:
    """
    Yield the user's grants on a library root and everything beneath it.

    The walk uses an explicit stack; max_depth=1 checks the root's direct
    children but does not descend into them.
    """
    root = graph.get_root(library.id)
    yield from _grants_for_item(graph, library, site.web_url, user, root,
                                "Library", library.name, skip_inherited)
    if libraries_only:
        return

    stack = [(root, library.name, 0)]
    while stack:
        folder, folder_path, depth = stack.pop()
        if max_depth is not None and depth >= max_depth:
            continue
        for child in graph.fetch_children(library.id, folder.id):
            child_path = f"{folder_path}/{child.name}"
            item_type = "Folder" if child.is_folder else "File"
            yield from _grants_for_item(graph, library, site.web_url, user, child,
                                        item_type, child_path, skip_inherited)
            if child.is_folder:
                stack.append((child, child_path, depth + 1))


def resolve_jobs(graph: GraphSession, settings: PermissionReportSettings) -> List[LibraryJob]:
    """
    Resolve every site and library before any scanning starts.

    Raises:
        ResolutionError: a requested library does not exist on a site
    """
    jobs = []
    for site_url in settings.site_urls:
        site = graph.resolve_site(site_url)
        print(f"✅ Connected to site: {site.name}")
        libraries = graph.list_libraries(site.id)
        if settings.libraries:
            libraries = [match_library(libraries, name) for name in settings.libraries]
        print(f"   Found {len(libraries)} document library(ies): {', '.join(lib.name for lib in libraries)}")
        jobs.extend(LibraryJob(site, library) for library in libraries)
    return jobs


def make_library_task(
    token_provider: TokenProvider,
    settings: PermissionReportSettings,
    writer: CsvReportWriter,
    session_factory=GraphSession,
):
    """Build the per-library worker; rows are written once the library is fully scanned."""
    def task(job: LibraryJob) -> List[PermissionGrant]:
        with session_factory(token_provider()) as graph:
            grants = list(scan_library(
                graph,
                job.site,
                job.library,
                settings.user,
                skip_inherited=settings.skip_inherited,
                libraries_only=settings.libraries_only,
                max_depth=settings.max_depth,
            ))
        for grant in grants:
            writer.write_row(grant.as_row())
        return grants

    return task


def run_permission_report(
    settings: PermissionReportSettings,
    token_provider: TokenProvider,
    session_factory=GraphSession,
) -> Tuple[List[PermissionGrant], List[FolderFailure]]:
    """Scan all requested libraries and write the user's grants to CSV."""
    with session_factory(token_provider()) as graph:
        jobs = resolve_jobs(graph, settings)

    output_path = settings.output_path()
    print(f"🔍 Checking permissions for {settings.user} across {len(jobs)} library(ies)...")

    def on_done(job: LibraryJob, grants: List[PermissionGrant]) -> None:
        if grants:
            print(f"   ✅ {job.name}: {len(grants)} permission(s)")
        else:
            print(f"   ℹ️  {job.name}: no permissions for {settings.user}")

    def on_error(job: LibraryJob, error: BaseException) -> None:
        print(f"   ❌ {job.name}: {error}")

    with CsvReportWriter(output_path, PERMISSION_REPORT_HEADER) as writer:
        task = make_library_task(token_provider, settings, writer, session_factory)
        results, failures = run_pool(jobs, task, settings.throttle, on_done, on_error)

    grants = [grant for library_grants in results for grant in library_grants]
    print(f"\n✓ Results exported to: {output_path}")
    return grants, failures


def print_summary(grants: List[PermissionGrant], failures: List[FolderFailure], user: str, elapsed: float) -> None:
    explicit = sum(1 for grant in grants if not grant.inherited)
    links = sum(1 for grant in grants if grant.granted_via.startswith("Link"))

    print("\n=== Permission Report Summary ===")
    print(f"User: {user}")
    print(f"Permissions found: {len(grants)}")
    print(f"Explicit: {explicit}")
    print(f"Inherited: {len(grants) - explicit}")
    print(f"Via sharing links: {links}")
    print(f"Elapsed: {elapsed:.1f} seconds")

    if not grants:
        print(f"ℹ️  No permissions found for {user}")
    if failures:
        print(f"❌ Failed to scan {len(failures)} library(ies):")
        for failure in failures:
            print(f"   - {failure.name}: {failure.error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Report a user's permissions across SharePoint document libraries, folders and files"
    )
    parser.add_argument("--user", required=True, help="Email / UPN of the user to audit")
    parser.add_argument("--site-url", dest="site_urls", action="append", required=True,
                        help="SharePoint site URL (repeat for several sites)")
    parser.add_argument("--library", dest="libraries", action="append", default=[],
                        help="Limit to this document library (repeatable, default: all)")
    parser.add_argument("--skip-inherited", action="store_true",
                        help="Only report explicit (non-inherited) permissions")
    parser.add_argument("--libraries-only", action="store_true",
                        help="Only check library roots, not folders and files")
    parser.add_argument("--max-depth", type=int, default=None,
                        help="Maximum folder depth to descend (default: unlimited)")
    parser.add_argument("--throttle", type=int, default=DEFAULT_THROTTLE,
                        help=f"Libraries scanned in parallel (default: {DEFAULT_THROTTLE})")
    parser.add_argument("--output", help="Output CSV path (default: permissions_<user>_<timestamp>.csv)")
    add_credential_arguments(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    print("SharePoint User Permission Report")
    print("=" * 50)
    print(f"User: {args.user}")
    print(f"Sites: {', '.join(args.site_urls)}")
    if args.skip_inherited:
        print("Mode: explicit permissions only")
    print()

    settings = PermissionReportSettings(
        site_urls=args.site_urls,
        user=args.user,
        libraries=args.libraries,
        skip_inherited=args.skip_inherited,
        libraries_only=args.libraries_only,
        max_depth=args.max_depth,
        throttle=args.throttle,
        output=args.output,
    )

    start_time = time.time()
    try:
        token_provider = token_provider_from_args(args)
        grants, failures = run_permission_report(settings, token_provider)
    except SpAuditError as e:
        for line in describe_api_error(e):
            print(line)
        return 1
    except OSError as e:
        print(f"❌ Could not write report: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled")
        return 130

    print_summary(grants, failures, settings.user, time.time() - start_time)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
