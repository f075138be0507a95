"""Supported cloud providers and their rclone remote definitions."""

from __future__ import annotations

from enum import StrEnum


class CloudProvider(StrEnum):
    """Cloud backends reachable through rclone."""

    GOOGLE_DRIVE = "gdrive"
    ONEDRIVE = "onedrive"
    WEBDAV = "webdav"
    CLOUDFLARE_R2 = "cloudflare-r2"
    PCLOUD = "pcloud"

    @property
    def remote_name(self) -> str:
        """Section name of the remote in rclone.conf."""
        return self.value

    @property
    def rclone_type(self) -> str:
        return _RCLONE_TYPES[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def uses_bucket(self) -> bool:
        return self is CloudProvider.CLOUDFLARE_R2


_RCLONE_TYPES = {
    CloudProvider.GOOGLE_DRIVE: "drive",
    CloudProvider.ONEDRIVE: "onedrive",
    CloudProvider.WEBDAV: "webdav",
    CloudProvider.CLOUDFLARE_R2: "s3",
    CloudProvider.PCLOUD: "pcloud",
}

_DISPLAY_NAMES = {
    CloudProvider.GOOGLE_DRIVE: "Google Drive",
    CloudProvider.ONEDRIVE: "OneDrive",
    CloudProvider.WEBDAV: "WebDAV",
    CloudProvider.CLOUDFLARE_R2: "Cloudflare R2",
    CloudProvider.PCLOUD: "pCloud",
}
