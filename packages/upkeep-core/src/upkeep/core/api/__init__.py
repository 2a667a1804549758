"""Public, stable API surface for upkeep.

If you're embedding upkeep in an application or a release pipeline, import
from **`upkeep.core.api`**.

Everything outside this package is considered internal and may change without
notice, even in minor releases.
"""

from __future__ import annotations

# Bundles (offline transfer)
from upkeep.core.bundle import BundleExtractor, pack, pack_file, unpack
# Manifest codec
from upkeep.core.codec import canonical_bytes
from upkeep.core.codec import read as read_manifest
from upkeep.core.codec import read_file as read_manifest_file
from upkeep.core.codec import write as write_manifest
from upkeep.core.codec import write_file as write_manifest_file
# Data model
from upkeep.core.entries import FileEntry, capture_local, crc32_bytes, crc32_file
# Common exceptions
from upkeep.core.exception import (
    ConfigurationError,
    DownloadIntegrityError,
    FetchError,
    FormatError,
    LaunchError,
    NotFoundError,
    PathSecurityError,
    SignatureError,
    SyncAborted,
    UnsatisfiedTransferError,
    UpkeepError,
)
# Launching
from upkeep.core.launch import DefaultLauncher, LaunchContext, Launcher, launch
from upkeep.core.manifest import Manifest, ManifestBuilder, Property
# Key/value documents
from upkeep.core.mapper import read_map, write_map
# Observability
from upkeep.core.observability import UpdateHandler, log_event
from upkeep.core.platforms import OS
# Resolution
from upkeep.core.resolver import Classified, Resolution, Staleness, classify, requires_update
# Settings
from upkeep.core.runtime.settings import Settings, load_settings
# Signing
from upkeep.core.signing import generate_key_pair, load_private_key, load_public_key
# Sources
from upkeep.core.sources import DefaultSource, FileSource, FilesystemSource, HttpSource
# Sync
from upkeep.core.sync import EntryOutcome, OutcomeStatus, UpdateResult, stage, update
# Property transfer
from upkeep.core.transfer import ExportedField, PropertyBag, attribute, transfer

__all__ = [
    # model
    "OS",
    "FileEntry",
    "Property",
    "Manifest",
    "ManifestBuilder",
    "capture_local",
    "crc32_bytes",
    "crc32_file",
    # codec
    "read_manifest",
    "read_manifest_file",
    "write_manifest",
    "write_manifest_file",
    "canonical_bytes",
    # signing
    "generate_key_pair",
    "load_private_key",
    "load_public_key",
    # resolution + sync
    "Staleness",
    "Classified",
    "Resolution",
    "classify",
    "requires_update",
    "update",
    "stage",
    "UpdateResult",
    "EntryOutcome",
    "OutcomeStatus",
    # sources
    "FileSource",
    "FilesystemSource",
    "HttpSource",
    "DefaultSource",
    # bundles
    "pack",
    "pack_file",
    "unpack",
    "BundleExtractor",
    # launching
    "LaunchContext",
    "Launcher",
    "DefaultLauncher",
    "launch",
    # transfer
    "ExportedField",
    "PropertyBag",
    "attribute",
    "transfer",
    # key/value documents
    "read_map",
    "write_map",
    # settings + observability
    "Settings",
    "load_settings",
    "UpdateHandler",
    "log_event",
    # exceptions
    "UpkeepError",
    "FormatError",
    "SignatureError",
    "PathSecurityError",
    "NotFoundError",
    "DownloadIntegrityError",
    "ConfigurationError",
    "FetchError",
    "SyncAborted",
    "LaunchError",
    "UnsatisfiedTransferError",
]
