"""Exception types raised across the sync subsystem."""

from __future__ import annotations


class MoodMapperError(Exception):
    """Base class for every error raised by this package."""


class LocalStoreError(MoodMapperError):
    """A local transaction failed and was rolled back."""


class RemoteStoreError(MoodMapperError):
    """A read, write or subscription against the cloud collection failed."""


class CodecError(MoodMapperError, ValueError):
    """A record could not be converted between local, wire and row forms."""


class SyncBusyError(MoodMapperError):
    """Another push, pull or bulk operation already owns the sync session."""
