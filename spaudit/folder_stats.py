#!/usr/bin/env python3
"""
SharePoint Folder Statistics - per top-level folder totals for one document library.

For every folder directly under the library root this tool walks the whole
subtree through Microsoft Graph and reports file count, subfolder count and
total size. Top-level folders are processed in parallel, one worker (with its
own Graph session) per folder, and each folder's row is appended to the CSV as
soon as its walk completes.

Prerequisites:
- requests and msal libraries
- Either app registration credentials with Sites.Read.All, or an rclone
  OneDrive/SharePoint remote with a valid token

Usage:
    python -m spaudit.folder_stats --site-url URL [options]

Options:
    --library NAME          Document library (default: Documents)
    --folder NAME           Only this top-level folder (exact name, else wildcard)
    --throttle N            Parallel workers (default: 6)
    --output PATH           CSV output path
    --include-system        Also report Forms and _-prefixed folders

Examples:
    python -m spaudit.folder_stats --site-url https://contoso.sharepoint.com/sites/Finance
    python -m spaudit.folder_stats --site-url https://contoso.sharepoint.com/sites/Finance --folder "Reports"
    python -m spaudit.folder_stats --site-url https://contoso.sharepoint.com/sites/HR --library "Policies" --throttle 8
"""

import argparse
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Callable, Iterable, Iterator, List, Optional, Protocol, Tuple

from .config_utils import TokenProvider, add_credential_arguments, token_provider_from_args
from .errors import ResolutionError, SpAuditError, describe_api_error
from .graph import GraphSession
from .models import FolderAggregate, FolderFailure, TreeEntry
from .report_writer import FOLDER_STATS_HEADER, CsvReportWriter
from .workers import DEFAULT_THROTTLE, run_pool

WILDCARD_CHARS = "*?["


class ChildFetcher(Protocol):
    def fetch_children(self, drive_id: str, container_id: str) -> Iterator[TreeEntry]:
        ...


SessionFactory = Callable[[str], GraphSession]


@dataclass
class FolderStatsSettings:
    site_url: str
    library: str = "Documents"
    folder: Optional[str] = None
    throttle: int = DEFAULT_THROTTLE
    output: Optional[str] = None
    include_system: bool = False

    def output_path(self) -> str:
        if self.output:
            return self.output
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_library = "".join(c if c.isalnum() else "_" for c in self.library)
        return f"folder_stats_{safe_library}_{timestamp}.csv"


def aggregate(fetcher: ChildFetcher, drive_id: str, top_folder: TreeEntry) -> FolderAggregate:
    """
    Total the subtree under one top-level folder.

    Walks with an explicit stack rather than recursion so very deep trees
    cannot exhaust the interpreter stack. Every folder is expanded exactly
    once; files are tallied as soon as their parent is listed.
    """
    result = FolderAggregate.empty(top_folder.name)
    stack = [top_folder]

    while stack:
        folder = stack.pop()
        if folder.id != top_folder.id:
            result.subfolder_count += 1

        for child in fetcher.fetch_children(drive_id, folder.id):
            if child.is_folder:
                stack.append(child)
            else:
                result.file_count += 1
                result.size_bytes += child.size

    return result


def is_system_folder(name: str) -> bool:
    return name == "Forms" or name.startswith("_")


def select_top_folders(
    entries: Iterable[TreeEntry],
    folder_filter: Optional[str] = None,
    include_system: bool = False,
) -> List[TreeEntry]:
    """
    Pick the top-level folders to report.

    With a filter, an exact (case-insensitive) name match wins; otherwise the
    filter is applied as a wildcard pattern, plain text matching anywhere in
    the name.

    Raises:
        ResolutionError: when the filter matches nothing
    """
    folders = [entry for entry in entries if entry.is_folder]
    visible = folders if include_system else [
        entry for entry in folders if not is_system_folder(entry.name)
    ]

    if not folder_filter:
        return visible

    # a folder asked for by its exact name is reported even if it is a system folder
    wanted = folder_filter.strip().lower()
    exact = [entry for entry in folders if entry.name.lower() == wanted]
    if exact:
        return exact

    pattern = wanted if any(c in wanted for c in WILDCARD_CHARS) else f"*{wanted}*"
    matched = [entry for entry in visible if fnmatchcase(entry.name.lower(), pattern)]
    if not matched:
        raise ResolutionError("Folder", folder_filter, sorted(entry.name for entry in folders))
    return matched


def make_folder_task(
    token_provider: TokenProvider,
    drive_id: str,
    writer: CsvReportWriter,
    session_factory: SessionFactory = GraphSession,
) -> Callable[[TreeEntry], FolderAggregate]:
    """
    Build the per-folder worker.

    Each invocation opens its own Graph session, walks the folder, and
    appends the finished row. A folder that fails mid-walk writes nothing.
    """
    def task(folder: TreeEntry) -> FolderAggregate:
        with session_factory(token_provider()) as graph:
            result = aggregate(graph, drive_id, folder)
        writer.write_aggregate(result)
        return result

    return task


def format_size(size_in_bytes: float) -> str:
    """Convert bytes to human-readable format"""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_in_bytes < 1024.0:
            return f"{size_in_bytes:.2f} {unit}"
        size_in_bytes /= 1024.0
    return f"{size_in_bytes:.2f} PB"


def run_folder_stats(
    settings: FolderStatsSettings,
    token_provider: TokenProvider,
    session_factory: SessionFactory = GraphSession,
) -> Tuple[List[FolderAggregate], List[FolderFailure]]:
    """
    Resolve the library, pick its top-level folders and report each one.

    Raises:
        ResolutionError: site, library or folder filter not found
        GraphError: failure while resolving or listing the library root
    """
    with session_factory(token_provider()) as graph:
        site = graph.resolve_site(settings.site_url)
        print(f"✅ Connected to site: {site.name}")
        library = graph.resolve_library(site.id, settings.library)
        print(f"✅ Found library: {library.name} (ID: {library.id})")
        root = graph.get_root(library.id)
        top_level = list(graph.fetch_children(library.id, root.id))

    folders = select_top_folders(top_level, settings.folder, settings.include_system)
    output_path = settings.output_path()
    print(f"📂 {len(folders)} top-level folder(s) to scan with {max(1, settings.throttle)} worker(s)")

    def on_done(folder: TreeEntry, result: FolderAggregate) -> None:
        print(f"   ✅ {folder.name}: {result.file_count:,} files, "
              f"{result.subfolder_count:,} subfolders, {format_size(result.size_bytes)}")

    def on_error(folder: TreeEntry, error: BaseException) -> None:
        print(f"   ❌ {folder.name}: {error}")

    with CsvReportWriter(output_path, FOLDER_STATS_HEADER) as writer:
        task = make_folder_task(token_provider, library.id, writer, session_factory)
        results, failures = run_pool(folders, task, settings.throttle, on_done, on_error)

    print(f"\n✓ Results exported to: {output_path}")
    return results, failures


def print_summary(results: List[FolderAggregate], failures: List[FolderFailure], elapsed: float) -> None:
    total_files = sum(r.file_count for r in results)
    total_folders = sum(r.subfolder_count for r in results)
    total_bytes = sum(r.size_bytes for r in results)

    print("\n=== Folder Statistics Summary ===")
    print(f"Top-level folders reported: {len(results)}")
    print(f"Files: {total_files:,}")
    print(f"Subfolders: {total_folders:,}")
    print(f"Total Size: {format_size(total_bytes)} ({total_bytes:,} bytes)")
    print(f"Elapsed: {elapsed:.1f} seconds")

    if failures:
        print(f"❌ Failed to scan {len(failures)} folder(s):")
        for failure in failures:
            print(f"   - {failure.name}: {failure.error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Report file count, subfolder count and size per top-level folder of a SharePoint library"
    )
    parser.add_argument("--site-url", required=True, help="SharePoint site URL")
    parser.add_argument("--library", default="Documents", help="Document library name (default: Documents)")
    parser.add_argument("--folder", help="Only this top-level folder (exact name first, then wildcard match)")
    parser.add_argument("--throttle", type=int, default=DEFAULT_THROTTLE,
                        help=f"Number of parallel workers (default: {DEFAULT_THROTTLE})")
    parser.add_argument("--output", help="Output CSV path (default: folder_stats_<library>_<timestamp>.csv)")
    parser.add_argument("--include-system", action="store_true",
                        help="Include system folders such as Forms and _-prefixed folders")
    add_credential_arguments(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    print("SharePoint Folder Statistics")
    print("=" * 50)
    print(f"Site: {args.site_url}")
    print(f"Library: {args.library}")
    if args.folder:
        print(f"Folder filter: {args.folder}")
    print()

    settings = FolderStatsSettings(
        site_url=args.site_url,
        library=args.library,
        folder=args.folder,
        throttle=args.throttle,
        output=args.output,
        include_system=args.include_system,
    )

    start_time = time.time()
    try:
        token_provider = token_provider_from_args(args)
        results, failures = run_folder_stats(settings, token_provider)
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

    print_summary(results, failures, time.time() - start_time)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
