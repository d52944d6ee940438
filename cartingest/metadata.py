"""
Metadata records for imported carts.

A MetadataRecord is assembled once per import from up to three sources, in
order of precedence: the filename pattern, the tags embedded in the file
(read with mutagen, plus the broadcast WAV 'cart' chunk), and literal
defaults supplied by the caller. Later sources only fill fields that are
still unset.
"""

import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import mutagen

from .container import ContainerDescriptor


logger = logging.getLogger(__name__)

# Column widths of the catalog; longer values are cut, never rejected
FIELD_MAX_LENGTHS = {
    "artist": 255,
    "title": 255,
    "album": 255,
    "composer": 64,
    "conductor": 64,
    "publisher": 64,
    "label": 64,
    "client": 64,
    "agency": 64,
    "song_id": 32,
    "description": 64,
    "outcue": 64,
    "user_defined": 255,
    "group": 10,
}

NUMERIC_FIELDS = ("year", "bpm", "cart_number")

# Routing fields steer the import and are not stored as cart metadata
ROUTING_FIELDS = ("group", "cart_number")

# Easy-tag keys (mutagen easy=True) mapped to record fields
EASY_TAG_MAP = {
    "artist": "artist",
    "title": "title",
    "album": "album",
    "composer": "composer",
    "conductor": "conductor",
    "organization": "label",
    "date": "year",
    "bpm": "bpm",
}

# Fixed-width text fields at the start of a 'cart' chunk (after the version)
CART_CHUNK_FIELDS = (
    ("title", 64),
    ("artist", 64),
    ("cut_id", 64),
    ("client", 64),
    ("category", 64),
    ("classification", 64),
    ("outcue", 64),
)


@dataclass
class MetadataRecord:
    """Metadata extracted for one import. Every field is optional."""
    artist: Optional[str] = None
    title: Optional[str] = None
    album: Optional[str] = None
    composer: Optional[str] = None
    conductor: Optional[str] = None
    publisher: Optional[str] = None
    label: Optional[str] = None
    client: Optional[str] = None
    agency: Optional[str] = None
    song_id: Optional[str] = None
    description: Optional[str] = None
    outcue: Optional[str] = None
    year: Optional[int] = None
    bpm: Optional[int] = None
    user_defined: Optional[str] = None
    group: Optional[str] = None
    cart_number: Optional[int] = None

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.field_names())

    def set_value(self, name: str, raw: Any) -> bool:
        """
        Store a raw value after type coercion and length bounding.

        Numeric fields that do not parse are left unset.

        Returns:
            True if the field was set
        """
        if raw is None:
            return False
        if name in NUMERIC_FIELDS:
            value = coerce_int(raw)
            if value is None:
                logger.debug(f"Ignoring non-numeric value for {name}: {raw!r}")
                return False
            setattr(self, name, value)
            return True
        text = str(raw).strip()
        if not text:
            return False
        limit = FIELD_MAX_LENGTHS.get(name)
        if limit is not None:
            text = text[:limit]
        setattr(self, name, text)
        return True

    def merge_missing(self, other: Optional["MetadataRecord"]) -> "MetadataRecord":
        """Fill fields that are unset here from another record."""
        if other is None:
            return self
        for name in self.field_names():
            if getattr(self, name) is None and getattr(other, name) is not None:
                setattr(self, name, getattr(other, name))
        return self

    def apply_defaults(self, defaults: Mapping[str, Any]) -> "MetadataRecord":
        """Fill unset fields from literal caller-supplied values."""
        for name, value in defaults.items():
            if value is None or getattr(self, name, None) is not None:
                continue
            self.set_value(name, value)
        return self

    def cart_fields(self) -> Dict[str, Any]:
        """Values stored on the catalog record (routing fields excluded)."""
        return {k: v for k, v in asdict(self).items() if k not in ROUTING_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def coerce_int(raw: Any) -> Optional[int]:
    """Parse a non-negative integer, or return None."""
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    text = str(raw).strip()
    try:
        value = int(text)
    except ValueError:
        return None
    return value if value >= 0 else None


def read_embedded_tags(file_path: Union[str, Path]) -> Optional[MetadataRecord]:
    """
    Read ID3 / Vorbis comment tags with mutagen.

    Returns:
        MetadataRecord, or None when the file carries no readable tags
    """
    try:
        audio = mutagen.File(str(file_path), easy=True)
    except mutagen.MutagenError as e:
        logger.debug(f"No readable tags in {file_path}: {e}")
        return None
    if audio is None or not audio.tags:
        return None

    record = MetadataRecord()
    for key, name in EASY_TAG_MAP.items():
        try:
            values = audio.tags.get(key)
        except (KeyError, ValueError):
            values = None
        if not values:
            continue
        value = values[0]
        if key == "date":
            # ID3 and Vorbis dates look like 1999 or 1999-05-01
            value = str(value)[:4]
        record.set_value(name, value)
    return None if record.is_empty() else record


def read_cart_chunk(descriptor: ContainerDescriptor) -> Dict[str, str]:
    """
    Read the text fields of a broadcast WAV 'cart' chunk.

    Returns:
        Dict with title, artist, cut_id, client, category, classification
        and outcue (only non-empty values), or an empty dict
    """
    entry = descriptor.chunk(b"cart")
    if entry is None:
        return {}

    wanted = 4 + sum(width for _, width in CART_CHUNK_FIELDS)
    size = min(entry.actual_size, wanted)
    with open(descriptor.path, "rb") as f:
        f.seek(entry.payload_offset)
        raw = f.read(size)
    if len(raw) < 4:
        return {}

    values = {}
    position = 4
    for name, width in CART_CHUNK_FIELDS:
        text = raw[position:position + width].split(b"\x00", 1)[0]
        text = text.decode("latin-1").strip()
        if text:
            values[name] = text
        position += width
    return values


def cart_chunk_record(cart_data: Mapping[str, str]) -> Optional[MetadataRecord]:
    """Convert cart chunk text fields into a MetadataRecord."""
    record = MetadataRecord()
    for name in ("title", "artist", "client", "outcue"):
        record.set_value(name, cart_data.get(name))
    return None if record.is_empty() else record


def cut_id_cart_number(cart_data: Mapping[str, str]) -> Optional[int]:
    """Cart number carried in a cart chunk CutID, if it is numeric."""
    cut_id = cart_data.get("cut_id")
    if not cut_id:
        return None
    return coerce_int(cut_id)
