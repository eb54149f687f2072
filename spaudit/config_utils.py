#!/usr/bin/env python3
"""
Shared configuration utilities for the SharePoint audit tools.

This module provides shared functions for:
- Reading rclone configuration and extracting a delegated access token
- Reading app registration credentials (flags, INI file or environment)
- Acquiring app-only tokens with MSAL
- Building the token provider that each worker calls for its own session
"""

import configparser
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

import msal

from .errors import ConfigError

DEFAULT_RCLONE_CONF = "~/.config/rclone/rclone.conf"
GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
SHAREPOINT_REMOTE_TYPES = ("onedrive", "onedrivebusiness", "sharepoint")

ENV_TENANT_ID = "SPAUDIT_TENANT_ID"
ENV_CLIENT_ID = "SPAUDIT_CLIENT_ID"
ENV_CLIENT_SECRET = "SPAUDIT_CLIENT_SECRET"

TokenProvider = Callable[[], str]


@dataclass(frozen=True)
class AppCredentials:
    """Azure AD app registration used for the client-credential flow."""

    tenant_id: str
    client_id: str
    client_secret: str

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}"


def _read_rclone_config(conf_path: str) -> configparser.ConfigParser:
    path = os.path.expanduser(conf_path)
    if not os.path.exists(path):
        raise ConfigError(
            f"rclone config not found at {path}. Please configure rclone first: rclone config",
            details={"path": path},
        )
    config = configparser.ConfigParser()
    config.read(path)
    return config


def find_sharepoint_remotes(conf_path: str = DEFAULT_RCLONE_CONF) -> List[str]:
    """
    Find all OneDrive/SharePoint remotes in rclone configuration.

    Returns:
        List of remote names, empty if the config file does not exist
    """
    if not os.path.exists(os.path.expanduser(conf_path)):
        return []

    config = _read_rclone_config(conf_path)
    remotes = []
    for section_name in config.sections():
        remote_type = config[section_name].get("type", "").lower()
        if remote_type in SHAREPOINT_REMOTE_TYPES:
            remotes.append(section_name)
    return remotes


def get_rclone_access_token(
    rclone_remote: Optional[str] = None,
    conf_path: str = DEFAULT_RCLONE_CONF,
    now: Optional[datetime] = None,
) -> str:
    """
    Extract access token from rclone.conf for the specified remote.

    Args:
        rclone_remote: Name of the remote in rclone.conf. If None, the first
                       OneDrive/SharePoint remote is used.
        conf_path: Location of rclone.conf
        now: Current time, for expiry checks

    Returns:
        Access token string

    Raises:
        ConfigError: when the remote, token or access_token is missing or expired
    """
    config = _read_rclone_config(conf_path)

    if rclone_remote is None:
        remotes = find_sharepoint_remotes(conf_path)
        if not remotes:
            raise ConfigError(
                "No OneDrive/SharePoint remotes found in rclone configuration. "
                "Please configure one first: rclone config"
            )
        rclone_remote = remotes[0]
        if len(remotes) > 1:
            print(f"Found {len(remotes)} SharePoint remotes, using first: {rclone_remote}")
        else:
            print(f"No remote given, using rclone remote: {rclone_remote}")

    if rclone_remote not in config:
        raise ConfigError(
            f"Remote '{rclone_remote}' not found in rclone config. "
            f"Available remotes: {list(config.sections())}"
        )

    token_json = config[rclone_remote].get("token")
    if not token_json:
        raise ConfigError(
            f"No token found for remote '{rclone_remote}'. "
            "Please authenticate first: rclone config reconnect " + rclone_remote
        )

    try:
        token = json.loads(token_json)
    except ValueError as e:
        raise ConfigError(f"Could not parse token JSON: {e}", cause=e) from e

    expiry_str = token.get("expiry")
    if expiry_str:
        expiry_time = _parse_expiry(expiry_str)
        if expiry_time is not None:
            current_time = now or datetime.now(timezone.utc)
            if current_time >= expiry_time:
                raise ConfigError(
                    f"Token has expired! Expired on {expiry_time.strftime('%Y-%m-%d %H:%M:%S %Z')}. "
                    f"Refresh it with: rclone config reconnect {rclone_remote}",
                    details={"expiry": expiry_str},
                )
        else:
            print(f"Warning: Could not parse token expiry time '{expiry_str}'")

    access_token = token.get("access_token")
    if not access_token:
        raise ConfigError("No access_token in token JSON. Please re-authenticate: rclone config")
    return access_token


def _parse_expiry(expiry_str: str) -> Optional[datetime]:
    # rclone writes nanoseconds (2025-07-23T15:50:44.457921153+10:00);
    # fromisoformat accepts at most microseconds
    value = expiry_str.replace("Z", "+00:00")
    if "." in value:
        head, _, tail = value.partition(".")
        digits = ""
        while tail and tail[0].isdigit():
            digits += tail[0]
            tail = tail[1:]
        value = f"{head}.{digits[:6].ljust(6, '0')}{tail}"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_app_credentials(
    tenant_id: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    config_path: Optional[str] = None,
) -> Optional[AppCredentials]:
    """
    Collect app registration credentials.

    Precedence per field: explicit argument, then the [azure] section of
    config_path (tenantId, clientId, clientSecret), then environment.

    Returns:
        AppCredentials, or None when no field is set anywhere

    Raises:
        ConfigError: when only some of the three fields are set
    """
    file_values = {}
    if config_path:
        path = os.path.expanduser(config_path)
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        parser = configparser.ConfigParser()
        parser.read(path)
        if parser.has_section("azure"):
            file_values = dict(parser["azure"])

    # configparser lowercases option names
    values = {
        "tenant_id": tenant_id or file_values.get("tenantid") or os.environ.get(ENV_TENANT_ID),
        "client_id": client_id or file_values.get("clientid") or os.environ.get(ENV_CLIENT_ID),
        "client_secret": client_secret or file_values.get("clientsecret") or os.environ.get(ENV_CLIENT_SECRET),
    }

    if not any(values.values()):
        return None
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError(
            f"Incomplete app credentials, missing: {', '.join(missing)}",
            details={"missing": missing},
        )
    return AppCredentials(**values)


def msal_token_provider(credentials: AppCredentials) -> TokenProvider:
    """
    Return a provider that acquires app-only Graph tokens.

    One ConfidentialClientApplication is shared by all callers; MSAL serves
    repeated calls from its in-memory token cache until the token expires.
    """
    app = msal.ConfidentialClientApplication(
        credentials.client_id,
        authority=credentials.authority,
        client_credential=credentials.client_secret,
    )

    def provider() -> str:
        result = app.acquire_token_for_client(scopes=GRAPH_SCOPE)
        if "access_token" not in result:
            raise ConfigError(
                f"Authentication failed: {result.get('error')}: {result.get('error_description')}",
                details={"correlation_id": result.get("correlation_id")},
            )
        return result["access_token"]

    return provider


def build_token_provider(
    rclone_remote: Optional[str] = None,
    rclone_config: str = DEFAULT_RCLONE_CONF,
    tenant_id: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    config_path: Optional[str] = None,
) -> TokenProvider:
    """
    Choose the credential source for a run.

    App credentials win when any are configured; otherwise the delegated
    token stored by rclone is used. The rclone token is read and validated
    once, up front, so a bad config fails before any traversal starts.
    """
    credentials = load_app_credentials(tenant_id, client_id, client_secret, config_path)
    if credentials is not None:
        print(f"✅ Using app registration {credentials.client_id} (tenant {credentials.tenant_id})")
        provider = msal_token_provider(credentials)
        provider()
        return provider

    access_token = get_rclone_access_token(rclone_remote, rclone_config)
    print("✅ Successfully extracted access token from rclone.conf")
    return lambda: access_token


def add_credential_arguments(parser) -> None:
    """Register the credential flags shared by every command-line tool."""
    group = parser.add_argument_group("credentials")
    group.add_argument("--remote", default=None,
                       help="Name of the rclone OneDrive/SharePoint remote (default: auto-detect)")
    group.add_argument("--rclone-config", default=DEFAULT_RCLONE_CONF,
                       help=f"Path to rclone.conf (default: {DEFAULT_RCLONE_CONF})")
    group.add_argument("--tenant-id", help=f"Azure AD tenant ID (or ${ENV_TENANT_ID})")
    group.add_argument("--client-id", help=f"App registration client ID (or ${ENV_CLIENT_ID})")
    group.add_argument("--client-secret", help=f"App registration secret (or ${ENV_CLIENT_SECRET})")
    group.add_argument("--config", dest="config_path",
                       help="INI file with an [azure] section: tenantId, clientId, clientSecret")


def token_provider_from_args(args) -> TokenProvider:
    return build_token_provider(
        rclone_remote=args.remote,
        rclone_config=args.rclone_config,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        client_secret=args.client_secret,
        config_path=args.config_path,
    )
