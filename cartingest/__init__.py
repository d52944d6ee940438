"""
cartingest - Audio cart import tool

Imports audio files into a cart catalog: watches dropbox directories for
files that have finished arriving, validates and repairs WAV containers,
extracts metadata from filenames and tags, and sets default cut markers.
"""

__version__ = "0.1.0"

from .checksum import calculate_checksum, verify_checksum
from .container import ContainerDescriptor, DefectKind, inspect, is_container
from .repair import repair
from .patterns import CompiledPattern, compile_pattern, extract, verify_pattern
from .metadata import MetadataRecord
from .markers import MarkerDeriver, MarkerRole, MarkerSet
from .catalog import Catalog, CutId, SqliteCatalog
from .settings import ImportSettings, MarkerSettings, load_settings
from .orchestrator import ImportOrchestrator, ImportOutcome, ImportResult, ImportState
from .importer import DropboxRunner, ImportJob, process_file_list
from .stability import DropboxStore, StabilityTracker

__all__ = [
    "calculate_checksum",
    "verify_checksum",
    "ContainerDescriptor",
    "DefectKind",
    "inspect",
    "is_container",
    "repair",
    "CompiledPattern",
    "compile_pattern",
    "extract",
    "verify_pattern",
    "MetadataRecord",
    "MarkerDeriver",
    "MarkerRole",
    "MarkerSet",
    "Catalog",
    "CutId",
    "SqliteCatalog",
    "ImportSettings",
    "MarkerSettings",
    "load_settings",
    "ImportOrchestrator",
    "ImportOutcome",
    "ImportResult",
    "ImportState",
    "DropboxRunner",
    "ImportJob",
    "process_file_list",
    "DropboxStore",
    "StabilityTracker",
]
