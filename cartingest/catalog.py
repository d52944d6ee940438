"""
Cart catalog.

The catalog owns groups, carts and cuts. A group reserves a range of cart
numbers; a cart holds the shared metadata (title, artist, ...) and up to
MAX_CUTS cuts; each cut references one stored audio file and carries one
integer column per marker role, which the marker editor reads and writes
back through read_markers() / write_markers().

Catalog is the interface the import pipeline talks to. SqliteCatalog is the
bundled implementation.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Union

from .errors import CatalogError, NoCart, NoCut
from .markers import MarkerRole, MarkerSet
from .metadata import MetadataRecord


logger = logging.getLogger(__name__)

MIN_CART = 1
MAX_CART = 999999
MAX_CUTS = 999

# Metadata stored on the cart row; description and outcue live on the cut
CART_METADATA_FIELDS = (
    "title", "artist", "album", "composer", "conductor", "publisher", "label",
    "client", "agency", "song_id", "year", "bpm", "user_defined",
)

MARKER_COLUMNS = tuple(role.value for role in MarkerRole)


class CutId(NamedTuple):
    """Cart number plus cut number within the cart."""
    cart: int
    cut: int

    @property
    def name(self) -> str:
        return f"{self.cart:06d}_{self.cut:03d}"

    def __str__(self) -> str:
        return self.name


@dataclass
class Group:
    """A named range of cart numbers."""
    name: str
    low: int
    high: int
    enforce_range: bool = True
    description: str = ""

    def contains(self, number: int) -> bool:
        return self.low <= number <= self.high


class Catalog(ABC):
    """Record-level operations used by the import pipeline."""

    @abstractmethod
    def get_group(self, name: str) -> Optional[Group]:
        ...

    @abstractmethod
    def allocate_cart(self, group: str, explicit_number: Optional[int] = None) -> int:
        """
        Return a cart number in the group, creating the cart if needed.

        Raises:
            NoCart: group unknown, range exhausted, explicit number out of
                the enforced range or owned by another group
        """

    @abstractmethod
    def allocate_cut(self, cart: int) -> CutId:
        """
        Create the next free cut under a cart.

        Raises:
            NoCut: cart missing or all cut slots used
        """

    @abstractmethod
    def write_cut_record(
        self,
        cut_id: CutId,
        metadata: MetadataRecord,
        markers: MarkerSet,
        audio_ref: Union[str, Path],
        **info: Any,
    ) -> None:
        ...

    @abstractmethod
    def cart_exists(self, cart: int) -> bool:
        ...

    @abstractmethod
    def cut_exists(self, cart: int, cut: int) -> bool:
        ...

    @abstractmethod
    def list_cuts(self, cart: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete_cuts(self, cart: int) -> int:
        ...

    @abstractmethod
    def remove_cut(self, cut_id: CutId) -> None:
        ...

    @abstractmethod
    def remove_cart(self, cart: int) -> None:
        ...

    @abstractmethod
    def audio_path(self, cut_id: CutId, extension: str) -> Path:
        ...

    @abstractmethod
    def read_markers(self, cut_id: CutId) -> MarkerSet:
        ...

    @abstractmethod
    def write_markers(self, cut_id: CutId, markers: MarkerSet) -> None:
        ...

    @abstractmethod
    def set_scheduler_codes(self, cart: int, codes: Sequence[str]) -> None:
        ...


class SqliteCatalog(Catalog):
    """Catalog stored in a SQLite database, audio files under audio_root."""

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        audio_root: Optional[Union[str, Path]] = None,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            audio_root: Directory for stored cut audio (default: 'audio'
                beside the database)
        """
        if db_path is None:
            db_path = Path.home() / ".cartingest" / "catalog.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.audio_root = Path(audio_root) if audio_root else self.db_path.parent / "audio"
        self.audio_root.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise CatalogError(f"Catalog error: {e}", details={"db": str(self.db_path)})
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database tables."""
        marker_columns = ",\n".join(f"{name} INTEGER DEFAULT -1" for name in MARKER_COLUMNS)
        with self._connect() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS groups (
                    name TEXT PRIMARY KEY,
                    description TEXT,
                    low_cart INTEGER,
                    high_cart INTEGER,
                    enforce_range INTEGER DEFAULT 1
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS carts (
                    number INTEGER PRIMARY KEY,
                    group_name TEXT,
                    title TEXT,
                    artist TEXT,
                    album TEXT,
                    composer TEXT,
                    conductor TEXT,
                    publisher TEXT,
                    label TEXT,
                    client TEXT,
                    agency TEXT,
                    song_id TEXT,
                    year INTEGER,
                    bpm INTEGER,
                    user_defined TEXT,
                    scheduler_codes TEXT,
                    created TEXT,
                    FOREIGN KEY (group_name) REFERENCES groups(name)
                )
            ''')
            conn.execute(f'''
                CREATE TABLE IF NOT EXISTS cuts (
                    cut_name TEXT PRIMARY KEY,
                    cart_number INTEGER,
                    cut_number INTEGER,
                    description TEXT,
                    outcue TEXT,
                    audio_path TEXT,
                    audio_format TEXT,
                    duration_ms INTEGER DEFAULT 0,
                    sample_rate INTEGER,
                    channels INTEGER,
                    sha1_hash TEXT,
                    origin_name TEXT,
                    origin_datetime TEXT,
                    {marker_columns},
                    FOREIGN KEY (cart_number) REFERENCES carts(number)
                )
            ''')

    # Groups

    def create_group(
        self,
        name: str,
        low: int,
        high: int,
        enforce_range: bool = True,
        description: str = "",
    ) -> Group:
        """
        Create a group owning carts low..high.

        Raises:
            CatalogError: invalid range, overlap with another group, or the
                group already exists
        """
        if not MIN_CART <= low <= high <= MAX_CART:
            raise CatalogError(f"Invalid cart range {low}-{high} for group {name}")
        if self.get_group(name) is not None:
            raise CatalogError(f"Group already exists: {name}")

        with self._connect() as conn:
            overlap = conn.execute(
                'SELECT name FROM groups WHERE low_cart <= ? AND high_cart >= ?',
                (high, low),
            ).fetchone()
            if overlap:
                raise CatalogError(f"Range {low}-{high} overlaps group {overlap['name']}")
            conn.execute(
                'INSERT INTO groups (name, description, low_cart, high_cart, enforce_range) '
                'VALUES (?, ?, ?, ?, ?)',
                (name, description, low, high, int(enforce_range)),
            )

        logger.info(f"Created group {name} ({low:06d}-{high:06d})")
        return Group(name, low, high, enforce_range, description)

    def get_group(self, name: str) -> Optional[Group]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM groups WHERE name = ?', (name,)).fetchone()
        if row is None:
            return None
        return Group(
            name=row['name'],
            low=row['low_cart'],
            high=row['high_cart'],
            enforce_range=bool(row['enforce_range']),
            description=row['description'] or "",
        )

    def list_groups(self) -> List[Group]:
        with self._connect() as conn:
            names = [row['name'] for row in conn.execute('SELECT name FROM groups ORDER BY name')]
        return [self.get_group(name) for name in names]

    # Carts

    def allocate_cart(self, group: str, explicit_number: Optional[int] = None) -> int:
        owner = self.get_group(group)
        if owner is None:
            raise NoCart(f"Unknown group: {group}", details={"group": group})

        if explicit_number is not None:
            return self._claim_cart(owner, explicit_number)

        with self._connect() as conn:
            used = {
                row['number'] for row in conn.execute(
                    'SELECT number FROM carts WHERE number BETWEEN ? AND ?',
                    (owner.low, owner.high),
                )
            }
            for number in range(owner.low, owner.high + 1):
                if number not in used:
                    self._insert_cart(conn, number, owner.name)
                    logger.debug(f"Allocated cart {number:06d} in group {owner.name}")
                    return number

        raise NoCart(
            f"Group {owner.name} has no free cart numbers ({owner.low:06d}-{owner.high:06d})",
            details={"group": owner.name},
        )

    def _claim_cart(self, owner: Group, number: int) -> int:
        if not MIN_CART <= number <= MAX_CART:
            raise NoCart(f"Invalid cart number: {number}", details={"cart": number})
        if owner.enforce_range and not owner.contains(number):
            raise NoCart(
                f"Cart {number:06d} is outside the range of group {owner.name}",
                details={"cart": number, "group": owner.name},
            )

        with self._connect() as conn:
            row = conn.execute(
                'SELECT group_name FROM carts WHERE number = ?', (number,)
            ).fetchone()
            if row is None:
                self._insert_cart(conn, number, owner.name)
            elif row['group_name'] != owner.name:
                raise NoCart(
                    f"Cart {number:06d} belongs to group {row['group_name']}",
                    details={"cart": number, "group": row['group_name']},
                )
        return number

    def _insert_cart(self, conn: sqlite3.Connection, number: int, group: str) -> None:
        conn.execute(
            'INSERT INTO carts (number, group_name, created) VALUES (?, ?, ?)',
            (number, group, datetime.now().isoformat()),
        )

    def cart_exists(self, cart: int) -> bool:
        with self._connect() as conn:
            row = conn.execute('SELECT 1 FROM carts WHERE number = ?', (cart,)).fetchone()
        return row is not None

    def get_cart(self, cart: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM carts WHERE number = ?', (cart,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data['scheduler_codes'] = json.loads(data['scheduler_codes'] or "[]")
        return data

    def remove_cart(self, cart: int) -> None:
        self.delete_cuts(cart)
        with self._connect() as conn:
            conn.execute('DELETE FROM carts WHERE number = ?', (cart,))
        logger.debug(f"Removed cart {cart:06d}")

    def set_scheduler_codes(self, cart: int, codes: Sequence[str]) -> None:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT scheduler_codes FROM carts WHERE number = ?', (cart,)
            ).fetchone()
            if row is None:
                raise CatalogError(f"Cart {cart:06d} does not exist")
            merged = json.loads(row['scheduler_codes'] or "[]")
            for code in codes:
                if code not in merged:
                    merged.append(code)
            conn.execute(
                'UPDATE carts SET scheduler_codes = ? WHERE number = ?',
                (json.dumps(merged), cart),
            )

    # Cuts

    def allocate_cut(self, cart: int) -> CutId:
        with self._connect() as conn:
            if conn.execute('SELECT 1 FROM carts WHERE number = ?', (cart,)).fetchone() is None:
                raise NoCut(f"Cart {cart:06d} does not exist", details={"cart": cart})
            used = {
                row['cut_number'] for row in conn.execute(
                    'SELECT cut_number FROM cuts WHERE cart_number = ?', (cart,)
                )
            }
            for number in range(1, MAX_CUTS + 1):
                if number not in used:
                    cut_id = CutId(cart, number)
                    conn.execute(
                        'INSERT INTO cuts (cut_name, cart_number, cut_number) VALUES (?, ?, ?)',
                        (cut_id.name, cart, number),
                    )
                    return cut_id

        raise NoCut(f"Cart {cart:06d} has no free cut slots", details={"cart": cart})

    def cut_exists(self, cart: int, cut: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT 1 FROM cuts WHERE cut_name = ?', (CutId(cart, cut).name,)
            ).fetchone()
        return row is not None

    def list_cuts(self, cart: int) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM cuts WHERE cart_number = ? ORDER BY cut_number', (cart,)
            ).fetchall()
        return [dict(row) for row in rows]

    def audio_path(self, cut_id: CutId, extension: str) -> Path:
        return self.audio_root / f"{cut_id.name}.{extension.lstrip('.')}"

    def write_cut_record(
        self,
        cut_id: CutId,
        metadata: MetadataRecord,
        markers: MarkerSet,
        audio_ref: Union[str, Path],
        **info: Any,
    ) -> None:
        """
        Store metadata, markers and audio details for an allocated cut.

        Cart-level metadata only fills columns that are still empty, so the
        first import into a cart names it.

        Keyword Args:
            audio_format, duration_ms, sample_rate, channels, sha1_hash,
            origin_name: Stored on the cut row
        """
        if not markers.is_consistent():
            raise CatalogError(
                f"Refusing inconsistent markers for {cut_id}: {markers.violations()}"
            )

        values = metadata.cart_fields()
        cart_assignments = ", ".join(f"{name} = COALESCE({name}, ?)" for name in CART_METADATA_FIELDS)
        marker_values = markers.to_fields()

        with self._connect() as conn:
            if conn.execute('SELECT 1 FROM cuts WHERE cut_name = ?', (cut_id.name,)).fetchone() is None:
                raise CatalogError(f"Cut {cut_id} was not allocated")
            conn.execute(
                f'UPDATE carts SET {cart_assignments} WHERE number = ?',
                [values.get(name) for name in CART_METADATA_FIELDS] + [cut_id.cart],
            )
            columns = [
                "description", "outcue", "audio_path", "audio_format", "duration_ms",
                "sample_rate", "channels", "sha1_hash", "origin_name", "origin_datetime",
            ] + list(MARKER_COLUMNS)
            row = [
                metadata.description,
                metadata.outcue,
                str(audio_ref),
                info.get("audio_format"),
                info.get("duration_ms", 0),
                info.get("sample_rate"),
                info.get("channels"),
                info.get("sha1_hash"),
                info.get("origin_name"),
                datetime.now().isoformat(),
            ] + [marker_values[name] for name in MARKER_COLUMNS]
            assignments = ", ".join(f"{name} = ?" for name in columns)
            conn.execute(
                f'UPDATE cuts SET {assignments} WHERE cut_name = ?',
                row + [cut_id.name],
            )

    def delete_cuts(self, cart: int) -> int:
        """Delete every cut of a cart and its audio. Returns the number removed."""
        cuts = self.list_cuts(cart)
        for cut in cuts:
            self.remove_cut(CutId(cart, cut['cut_number']))
        if cuts:
            logger.info(f"Deleted {len(cuts)} cut(s) from cart {cart:06d}")
        return len(cuts)

    def remove_cut(self, cut_id: CutId) -> None:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT audio_path FROM cuts WHERE cut_name = ?', (cut_id.name,)
            ).fetchone()
            conn.execute('DELETE FROM cuts WHERE cut_name = ?', (cut_id.name,))
        if row is not None and row['audio_path']:
            audio = Path(row['audio_path'])
            if audio.exists():
                audio.unlink()

    # Markers

    def read_markers(self, cut_id: CutId) -> MarkerSet:
        columns = ", ".join(MARKER_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f'SELECT {columns} FROM cuts WHERE cut_name = ?', (cut_id.name,)
            ).fetchone()
        if row is None:
            raise CatalogError(f"Cut {cut_id} does not exist")
        return MarkerSet.from_fields(dict(row))

    def write_markers(self, cut_id: CutId, markers: MarkerSet) -> None:
        """
        Replace the markers of a cut.

        Raises:
            CatalogError: cut missing or markers violate ordering/bounds
        """
        problems = markers.violations()
        if problems:
            raise CatalogError(f"Inconsistent markers for {cut_id}: {problems}")
        values = markers.to_fields()
        assignments = ", ".join(f"{name} = ?" for name in MARKER_COLUMNS)
        with self._connect() as conn:
            cursor = conn.execute(
                f'UPDATE cuts SET {assignments} WHERE cut_name = ?',
                [values[name] for name in MARKER_COLUMNS] + [cut_id.name],
            )
            if cursor.rowcount == 0:
                raise CatalogError(f"Cut {cut_id} does not exist")
