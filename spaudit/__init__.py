"""
SharePoint Audit Package

This package provides tools for auditing SharePoint Online document libraries
using the Microsoft Graph API, with app-only (MSAL) tokens or the OAuth token
from an rclone configuration.

Modules:
- folder_stats: File count, subfolder count and size per top-level folder
- permission_report: A user's permission assignments across libraries and files
- graph: Graph API session, paging and site/library resolution
- report_writer: Thread-safe CSV report output
- config_utils: Shared configuration and credential utilities
"""

__version__ = "1.0.0"
__author__ = "SharePoint Audit Project"
