"""
Import settings.

ImportSettings carries every knob of an import run. Defaults match the
classic dropbox behaviour: scan every 5 seconds, import a file after 3
consecutive polls at the same size, give up on a failing file after 3
attempts. Settings can be loaded from a JSON file and are validated before
any file is touched.
"""

import json
import logging
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigError
from .markers import Offset, parse_offset


logger = logging.getLogger(__name__)

DROPBOX_SCAN_INTERVAL = 5
DROPBOX_PASSES = 3
DROPBOX_RETRIES = 3

AUDIO_FORMATS = ("pcm16", "pcm24", "mp2", "mp3", "flac", "ogg", "copy")
SAMPLE_RATES = (32000, 44100, 48000)

# Literal overrides: settings key -> metadata field
LITERAL_FIELDS = (
    "artist", "title", "album", "composer", "conductor", "publisher",
    "label", "client", "agency", "song_id", "description", "outcue",
    "year", "bpm", "user_defined",
)


@dataclass
class MarkerPairSettings:
    """Creation flag and offsets for one Start/End marker pair."""
    enabled: bool = False
    start: Offset = 0
    end: Offset = "10%"


@dataclass
class MarkerSettings:
    """Which default markers to create for a new cut."""
    talk: MarkerPairSettings = field(default_factory=MarkerPairSettings)
    hook: MarkerPairSettings = field(default_factory=MarkerPairSettings)
    segue: MarkerPairSettings = field(
        default_factory=lambda: MarkerPairSettings(start=-3000, end="100%")
    )
    fadeup_enabled: bool = False
    fadeup: Offset = 1000
    fadedown_enabled: bool = False
    fadedown: Offset = -1000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarkerSettings":
        data = dict(data)
        kwargs: Dict[str, Any] = {}
        for name in ("talk", "hook", "segue"):
            if name in data:
                pair = data.pop(name)
                if not isinstance(pair, dict):
                    raise ConfigError(f"markers.{name} must be an object")
                _reject_unknown(pair, MarkerPairSettings, f"markers.{name}")
                base = asdict(getattr(cls(), name))
                base.update(pair)
                kwargs[name] = MarkerPairSettings(**base)
        _reject_unknown(data, cls, "markers")
        kwargs.update(data)
        return cls(**kwargs)

    def validate(self) -> None:
        offsets = {
            "fadeup": self.fadeup,
            "fadedown": self.fadedown,
        }
        for name in ("talk", "hook", "segue"):
            pair = getattr(self, name)
            offsets[f"{name}.start"] = pair.start
            offsets[f"{name}.end"] = pair.end
        for name, value in offsets.items():
            try:
                parse_offset(value)
            except (TypeError, ValueError):
                raise ConfigError(f"Invalid marker offset for {name}: {value!r}")


@dataclass
class ImportSettings:
    """Settings for one import or dropbox run."""
    group: Optional[str] = None
    metadata_pattern: Optional[str] = None

    # Container handling
    fix_broken_formats: bool = False

    # Cart handling
    delete_source: bool = False
    delete_cuts: bool = False
    single_cart: bool = False
    to_cart: Optional[int] = None
    cart_number_offset: int = 0
    use_cartchunk_cutid: bool = False
    title_from_cartchunk_cutid: bool = False
    add_scheduler_codes: List[str] = field(default_factory=list)

    # Literal metadata overrides, e.g. {"artist": "Various"}
    set_string: Dict[str, Any] = field(default_factory=dict)

    # Audio
    audio_format: str = "pcm16"
    sample_rate: int = 48000
    bitrate: int = 0
    channels: int = 2
    normalization_level: Optional[float] = None
    autotrim_level: Optional[float] = None
    segue_level: Optional[float] = None
    segue_length: int = 0

    # Dropbox
    scan_interval: float = DROPBOX_SCAN_INTERVAL
    stability_passes: int = DROPBOX_PASSES
    retry_budget: int = DROPBOX_RETRIES
    persistent_dropbox_id: Optional[str] = None
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)

    markers: MarkerSettings = field(default_factory=MarkerSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportSettings":
        """
        Build settings from a plain dict.

        Raises:
            ConfigError: for unknown keys or malformed values
        """
        data = dict(data)
        markers = data.pop("markers", None)
        _reject_unknown(data, cls, "settings")
        try:
            settings = cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid settings: {e}")
        if markers is not None:
            if not isinstance(markers, dict):
                raise ConfigError("markers must be an object")
            settings.markers = MarkerSettings.from_dict(markers)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_overrides(self, **overrides) -> "ImportSettings":
        """Copy with the given non-None values replaced."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return ImportSettings.from_dict(data)

    def literal_overrides(self) -> Dict[str, Any]:
        return {k: v for k, v in self.set_string.items() if v not in (None, "")}

    def validate(self) -> None:
        """
        Check settings before a run.

        Raises:
            ConfigError: describing the first invalid value found
        """
        if self.stability_passes < 2:
            raise ConfigError(
                f"stability_passes must be at least 2, got {self.stability_passes}"
            )
        if self.retry_budget < 1:
            raise ConfigError(f"retry_budget must be at least 1, got {self.retry_budget}")
        if self.scan_interval <= 0:
            raise ConfigError(f"scan_interval must be positive, got {self.scan_interval}")
        if self.audio_format not in AUDIO_FORMATS:
            raise ConfigError(
                f"Unknown audio format '{self.audio_format}'. "
                f"Use one of: {', '.join(AUDIO_FORMATS)}"
            )
        if self.sample_rate not in SAMPLE_RATES:
            raise ConfigError(f"Unsupported sample rate: {self.sample_rate}")
        if self.channels not in (1, 2):
            raise ConfigError(f"channels must be 1 or 2, got {self.channels}")
        if self.bitrate < 0:
            raise ConfigError(f"bitrate must not be negative, got {self.bitrate}")
        for name in ("normalization_level", "autotrim_level", "segue_level"):
            level = getattr(self, name)
            if level is not None and level > 0:
                raise ConfigError(f"{name} is in dBFS and must be <= 0, got {level}")
        if self.segue_length < 0:
            raise ConfigError(f"segue_length must not be negative, got {self.segue_length}")
        if self.to_cart is not None and self.to_cart <= 0:
            raise ConfigError(f"to_cart must be a positive cart number, got {self.to_cart}")
        if self.delete_cuts and self.to_cart is None:
            raise ConfigError("delete_cuts requires to_cart")
        if self.single_cart and self.to_cart is not None:
            raise ConfigError("single_cart and to_cart are mutually exclusive")
        if self.to_cart is not None and self.metadata_pattern and "%n" in self.metadata_pattern:
            raise ConfigError("to_cart cannot be combined with a %n metadata pattern")
        unknown = sorted(set(self.set_string) - set(LITERAL_FIELDS))
        if unknown:
            raise ConfigError(f"Unknown set_string field(s): {', '.join(unknown)}")
        self.markers.validate()


def _reject_unknown(data: Dict[str, Any], cls, label: str) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown {label} key(s): {', '.join(unknown)}")


def load_settings(path: Optional[Union[str, Path]] = None) -> ImportSettings:
    """
    Load settings from a JSON file, falling back to defaults.

    Raises:
        ConfigError: if the file is missing, unreadable or invalid
    """
    if path is None:
        return ImportSettings()

    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Settings file not found: {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")

    logger.debug(f"Loaded settings from {path}")
    return ImportSettings.from_dict(data)
