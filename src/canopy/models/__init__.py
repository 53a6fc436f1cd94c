"""SQLModel database models for canopy."""

from canopy.models.files import FILE, FOLDER, FileNode, FileNodeBase
from canopy.models.settings import SYSTEM_SETTINGS_ID, SystemSettings
from canopy.models.shares import ShareLink, ShareLinkBase, ShareLinkFile, ShareLinkFileBase

__all__ = [
    "FILE",
    "FOLDER",
    "SYSTEM_SETTINGS_ID",
    "FileNode",
    "FileNodeBase",
    "ShareLink",
    "ShareLinkBase",
    "ShareLinkFile",
    "ShareLinkFileBase",
    "SystemSettings",
]
