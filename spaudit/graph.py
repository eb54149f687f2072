"""
Thin Microsoft Graph client for SharePoint document libraries.

A GraphSession wraps one requests.Session carrying a bearer token. Workers
each open their own session and close it when their task finishes, so no
connection state is shared between threads.
"""

from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import unquote, urlparse

import requests

from .errors import NetworkError, ResolutionError, map_http_error
from .models import Library, Site, TreeEntry

GRAPH_ROOT = "https://graph.microsoft.com/v1.0"
DEFAULT_PAGE_SIZE = 200
CHILD_FIELDS = "id,name,size,folder,file,parentReference,webUrl"


class GraphSession:
    """Authenticated Graph API session for a single worker."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = GRAPH_ROOT,
        timeout: int = 30,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        })

    def __enter__(self) -> "GraphSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    def get_json(
        self,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "query Graph API",
    ) -> Dict[str, Any]:
        """Issue one GET and return the decoded body, raising on any non-2xx."""
        url = self._url(path_or_url)
        try:
            resp = self._session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Network error during {operation}: {e}", cause=e) from e

        if not 200 <= resp.status_code < 300:
            raise map_http_error(resp.status_code, resp.text, operation)
        return resp.json()

    def get_paged(
        self,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "list items",
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield every element of a collection, following @odata.nextLink.

        Only one page is held at a time. The nextLink already carries the
        query string, so params are sent with the first request only.
        """
        url: Optional[str] = path_or_url
        page_params = params
        while url:
            data = self.get_json(url, params=page_params, operation=operation)
            for item in data.get("value", []):
                yield item
            url = data.get("@odata.nextLink")
            page_params = None

    def fetch_children(self, drive_id: str, container_id: str) -> Iterator[TreeEntry]:
        """Lazily list the direct children of a folder in a drive."""
        params = {"$top": self.page_size, "$select": CHILD_FIELDS}
        items = self.get_paged(
            f"drives/{drive_id}/items/{container_id}/children",
            params=params,
            operation=f"list children of {container_id}",
        )
        for item in items:
            yield TreeEntry.from_item(item)

    def get_root(self, drive_id: str) -> TreeEntry:
        data = self.get_json(f"drives/{drive_id}/root", operation="get library root")
        return TreeEntry.from_item(data)

    def get_item_permissions(self, drive_id: str, item_id: str) -> List[Dict[str, Any]]:
        return list(self.get_paged(
            f"drives/{drive_id}/items/{item_id}/permissions",
            operation=f"get permissions for {item_id}",
        ))

    def resolve_site(self, site_url: str) -> Site:
        """
        Resolve a site URL such as https://contoso.sharepoint.com/sites/Finance.

        The tenant root site (no path) is addressed as /sites/{hostname}.
        """
        parsed = urlparse(site_url if "://" in site_url else f"https://{site_url}")
        hostname = parsed.netloc
        site_path = parsed.path.strip("/")
        if not hostname:
            raise ResolutionError("Site", site_url, [])

        path = f"sites/{hostname}:/{site_path}" if site_path else f"sites/{hostname}"
        data = self.get_json(path, operation=f"resolve site {site_url}")
        return Site(
            id=data["id"],
            name=data.get("displayName") or data.get("name", ""),
            web_url=data.get("webUrl", site_url),
        )

    def list_libraries(self, site_id: str) -> List[Library]:
        """Return the document libraries of a site (other drive types skipped)."""
        libraries = []
        for drive in self.get_paged(f"sites/{site_id}/drives", operation="list document libraries"):
            if drive.get("driveType", "documentLibrary") != "documentLibrary":
                continue
            libraries.append(Library(
                id=drive["id"],
                name=drive.get("name", ""),
                web_url=drive.get("webUrl", ""),
            ))
        return libraries

    def resolve_library(self, site_id: str, name: str) -> Library:
        """Find a library by display name, or by the last segment of its URL."""
        libraries = self.list_libraries(site_id)
        return match_library(libraries, name)


def match_library(libraries: List[Library], name: str) -> Library:
    """
    Pick a library by name (case-insensitive).

    "Shared Documents" is the URL name of the default "Documents" library,
    so the last segment of web_url is also accepted.
    """
    wanted = name.strip().lower()
    for library in libraries:
        if library.name.lower() == wanted:
            return library
    for library in libraries:
        url_name = unquote(library.web_url.rstrip("/").rsplit("/", 1)[-1])
        if url_name and url_name.lower() == wanted:
            return library
    raise ResolutionError("Library", name, [library.name for library in libraries])
