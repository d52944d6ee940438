"""
Import orchestration.

ImportOrchestrator drives one file at a time through a fixed state machine:

    DISCOVERED -> VERIFYING -> [FIXING] -> EXTRACTING_METADATA
        -> ALLOCATING_CART -> WRITING_CUT -> DERIVING_MARKERS -> COMMITTED

Any state may end in REJECTED with a FileBad, NoCart or NoCut outcome. Once a
file has started it always runs to COMMITTED or REJECTED; a rejection rolls
back every catalog record and stored audio file the pass created, so a
rejected file never leaves a partial cart behind.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .catalog import Catalog, CutId
from .checksum import calculate_checksum
from .container import ContainerDescriptor, inspect, sniff_format
from .encoder import EncodeParams, Encoder, get_encoder, output_extension
from .errors import CatalogError, ConfigError, EncodeError, NoCart, NoCut, NotAContainer
from .events import EventBus, FileCommittedEvent, FileRejectedEvent, FileStateChangedEvent
from .levels import find_segue_start, probe_audio
from .markers import MarkerDeriver, MarkerSet
from .metadata import (
    MetadataRecord,
    cart_chunk_record,
    cut_id_cart_number,
    read_cart_chunk,
    read_embedded_tags,
)
from .patterns import CompiledPattern, compile_pattern, extract
from .repair import repair
from .settings import ImportSettings


logger = logging.getLogger(__name__)


class ImportState(Enum):
    """States of one file's import."""
    DISCOVERED = "discovered"
    VERIFYING = "verifying"
    FIXING = "fixing"
    EXTRACTING_METADATA = "extracting_metadata"
    ALLOCATING_CART = "allocating_cart"
    WRITING_CUT = "writing_cut"
    DERIVING_MARKERS = "deriving_markers"
    COMMITTED = "committed"
    REJECTED = "rejected"


class ImportOutcome(Enum):
    """Result codes of one import attempt."""
    SUCCESS = "Success"
    FILE_BAD = "FileBad"
    NO_CART = "NoCart"
    NO_CUT = "NoCut"

    @property
    def code(self) -> int:
        return list(ImportOutcome).index(self)


@dataclass(frozen=True)
class ImportResult:
    """Outcome of importing one file."""
    path: Path
    outcome: ImportOutcome
    cart: Optional[int] = None
    cut: Optional[int] = None
    reason: str = ""
    states: Tuple[ImportState, ...] = ()
    repaired: bool = False

    @property
    def success(self) -> bool:
        return self.outcome is ImportOutcome.SUCCESS

    @property
    def cut_name(self) -> Optional[str]:
        if self.cart is None or self.cut is None:
            return None
        return CutId(self.cart, self.cut).name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "outcome": self.outcome.value,
            "cart": self.cart,
            "cut": self.cut,
            "reason": self.reason,
            "repaired": self.repaired,
            "states": [s.value for s in self.states],
        }


class Rejection(Exception):
    """Ends a file's import in the REJECTED state."""

    def __init__(self, outcome: ImportOutcome, reason: str):
        super().__init__(reason)
        self.outcome = outcome
        self.reason = reason


@dataclass
class ImportContext:
    """Working state of one file's pass through the state machine."""
    path: Path
    states: List[ImportState] = field(default_factory=list)
    audio_type: Optional[str] = None
    descriptor: Optional[ContainerDescriptor] = None
    repaired: bool = False
    metadata: Optional[MetadataRecord] = None
    cart: Optional[int] = None
    cart_created: bool = False
    stale_cuts: List[int] = field(default_factory=list)
    cut_id: Optional[CutId] = None
    audio_path: Optional[Path] = None
    audio_format: Optional[str] = None
    duration_ms: int = 0
    sample_rate: int = 0
    channels: int = 0
    sha1_hash: Optional[str] = None
    markers: Optional[MarkerSet] = None

    @property
    def state(self) -> ImportState:
        return self.states[-1]


class ImportOrchestrator:
    """
    Imports files into one group of a catalog.

    Settings are validated and the metadata pattern compiled up front, so a
    configuration problem raises before any file is touched.

    Args:
        catalog: Catalog to allocate carts and cuts in
        settings: Import settings
        encoder: Encoder for stored audio (default: chosen by audio format)
        event_bus: Receives per-file events
        run_id: Identifier stamped on emitted events

    Raises:
        ConfigError: invalid settings or unknown target group
        InvalidPattern: metadata pattern does not compile
    """

    def __init__(
        self,
        catalog: Catalog,
        settings: ImportSettings,
        encoder: Optional[Encoder] = None,
        event_bus: Optional[EventBus] = None,
        run_id: str = "",
    ):
        settings.validate()
        if not settings.group:
            raise ConfigError("No target group given")
        if catalog.get_group(settings.group) is None:
            raise ConfigError(f"Group does not exist: {settings.group}")

        self.catalog = catalog
        self.settings = settings
        self.encoder = encoder or get_encoder(settings.audio_format)
        self.params = EncodeParams.from_settings(settings)
        self.event_bus = event_bus or EventBus()
        self.run_id = run_id
        self.pattern: Optional[CompiledPattern] = None
        if settings.metadata_pattern:
            self.pattern = compile_pattern(settings.metadata_pattern)
        self.deriver = MarkerDeriver(settings.markers, settings.segue_length)

        # Run-scoped state
        self.single_cart: Optional[int] = None
        self._cleared_carts: Set[int] = set()

        self._handlers: Dict[ImportState, Callable[[ImportContext], ImportState]] = {
            ImportState.DISCOVERED: self._discover,
            ImportState.VERIFYING: self._verify,
            ImportState.FIXING: self._fix,
            ImportState.EXTRACTING_METADATA: self._extract_metadata,
            ImportState.ALLOCATING_CART: self._allocate_cart,
            ImportState.WRITING_CUT: self._write_cut,
            ImportState.DERIVING_MARKERS: self._derive_markers,
        }

    def import_file(self, file_path: Union[str, Path]) -> ImportResult:
        """
        Import one file, running its state machine to a terminal state.

        Never raises for per-file problems; they come back as a rejected
        ImportResult.
        """
        ctx = ImportContext(path=Path(file_path))
        self._enter(ctx, ImportState.DISCOVERED)

        try:
            while ctx.state is not ImportState.COMMITTED:
                self._enter(ctx, self._handlers[ctx.state](ctx))
        except Rejection as r:
            return self._reject(ctx, r.outcome, r.reason)
        except EncodeError as e:
            return self._reject(ctx, ImportOutcome.FILE_BAD, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error importing {ctx.path}")
            return self._reject(ctx, ImportOutcome.FILE_BAD, f"{type(e).__name__}: {e}")

        return self._commit(ctx)

    def _enter(self, ctx: ImportContext, state: ImportState) -> None:
        old = ctx.states[-1].value if ctx.states else ""
        ctx.states.append(state)
        logger.debug(f"{ctx.path.name}: {old or 'start'} -> {state.value}")
        self.event_bus.emit(FileStateChangedEvent(
            run_id=self.run_id,
            path=str(ctx.path),
            old_state=old,
            new_state=state.value,
        ))

    # State handlers

    def _discover(self, ctx: ImportContext) -> ImportState:
        if not ctx.path.is_file():
            raise Rejection(ImportOutcome.FILE_BAD, "file not found")
        ctx.audio_type = sniff_format(ctx.path)
        if ctx.audio_type is None:
            raise Rejection(ImportOutcome.FILE_BAD, "not a recognised audio file")
        return ImportState.VERIFYING

    def _verify(self, ctx: ImportContext) -> ImportState:
        if ctx.audio_type != "wav":
            return ImportState.EXTRACTING_METADATA

        try:
            descriptor = inspect(ctx.path)
        except NotAContainer as e:
            raise Rejection(ImportOutcome.FILE_BAD, str(e))
        ctx.descriptor = descriptor

        if descriptor.is_valid:
            return ImportState.EXTRACTING_METADATA

        defects = ", ".join(sorted(d.value for d in descriptor.defects))
        if not descriptor.is_repairable:
            raise Rejection(ImportOutcome.FILE_BAD, f"unrepairable defects: {defects}")
        if not self.settings.fix_broken_formats:
            raise Rejection(ImportOutcome.FILE_BAD, f"defects found, repair disabled: {defects}")
        return ImportState.FIXING

    def _fix(self, ctx: ImportContext) -> ImportState:
        if not repair(ctx.path, ctx.descriptor):
            raise Rejection(ImportOutcome.FILE_BAD, "repair failed")
        ctx.repaired = True
        ctx.descriptor = inspect(ctx.path)
        return ImportState.EXTRACTING_METADATA

    def _extract_metadata(self, ctx: ImportContext) -> ImportState:
        record = None
        if self.pattern is not None:
            record = extract(self.pattern, ctx.path)
            if record is None:
                logger.info(f"{ctx.path.name} does not match pattern '{self.pattern.pattern}'")
        record = record or MetadataRecord()

        cart_data = read_cart_chunk(ctx.descriptor) if ctx.descriptor else {}
        if self.settings.title_from_cartchunk_cutid and cart_data.get("cut_id"):
            if record.title is None:
                record.set_value("title", cart_data["cut_id"])
        if self.settings.use_cartchunk_cutid and record.cart_number is None:
            record.cart_number = cut_id_cart_number(cart_data)

        record.merge_missing(read_embedded_tags(ctx.path))
        record.merge_missing(cart_chunk_record(cart_data))
        record.apply_defaults(self.settings.literal_overrides())
        if record.title is None:
            record.set_value("title", ctx.path.stem)

        ctx.metadata = record
        return ImportState.ALLOCATING_CART

    def _target_group(self, record: MetadataRecord) -> str:
        if record.group and record.group != self.settings.group:
            if self.catalog.get_group(record.group) is not None:
                return record.group
            logger.warning(
                f"Group '{record.group}' from filename does not exist, "
                f"using {self.settings.group}"
            )
        return self.settings.group

    def _requested_cart(self, record: MetadataRecord) -> Optional[int]:
        if record.cart_number is not None:
            number = record.cart_number + self.settings.cart_number_offset
            if number <= 0:
                raise Rejection(ImportOutcome.NO_CART, f"invalid cart number {number}")
            return number
        if self.settings.to_cart is not None:
            return self.settings.to_cart
        if self.settings.single_cart and self.single_cart is not None:
            return self.single_cart
        return None

    def _allocate_cart(self, ctx: ImportContext) -> ImportState:
        group = self._target_group(ctx.metadata)
        requested = self._requested_cart(ctx.metadata)
        existed = requested is not None and self.catalog.cart_exists(requested)

        try:
            ctx.cart = self.catalog.allocate_cart(group, requested)
        except NoCart as e:
            raise Rejection(ImportOutcome.NO_CART, str(e))
        ctx.cart_created = not existed

        if self.settings.delete_cuts and existed and ctx.cart not in self._cleared_carts:
            ctx.stale_cuts = [c["cut_number"] for c in self.catalog.list_cuts(ctx.cart)]

        try:
            ctx.cut_id = self.catalog.allocate_cut(ctx.cart)
        except NoCut as e:
            raise Rejection(ImportOutcome.NO_CUT, str(e))
        return ImportState.WRITING_CUT

    def _write_cut(self, ctx: ImportContext) -> ImportState:
        extension = output_extension(self.params, ctx.path)
        ctx.audio_path = self.catalog.audio_path(ctx.cut_id, extension)
        ctx.audio_format = self.params.audio_format.value

        stored = self.encoder.transcode(ctx.path, ctx.audio_path, self.params)
        ctx.audio_path = Path(stored)

        info = probe_audio(ctx.audio_path)
        if info is None:
            raise Rejection(ImportOutcome.FILE_BAD, "stored audio is unreadable")
        ctx.duration_ms, ctx.sample_rate, ctx.channels = info
        ctx.sha1_hash = calculate_checksum(ctx.audio_path, "sha1")
        return ImportState.DERIVING_MARKERS

    def _derive_markers(self, ctx: ImportContext) -> ImportState:
        segue_start = None
        if self.settings.segue_level is not None:
            segue_start = find_segue_start(ctx.audio_path, self.settings.segue_level)
        ctx.markers = self.deriver.derive(ctx.duration_ms, segue_start)

        self.catalog.write_cut_record(
            ctx.cut_id,
            ctx.metadata,
            ctx.markers,
            ctx.audio_path,
            audio_format=ctx.audio_format,
            duration_ms=ctx.duration_ms,
            sample_rate=ctx.sample_rate,
            channels=ctx.channels,
            sha1_hash=ctx.sha1_hash,
            origin_name=ctx.path.name,
        )
        if self.settings.add_scheduler_codes:
            self.catalog.set_scheduler_codes(ctx.cart, self.settings.add_scheduler_codes)
        return ImportState.COMMITTED

    # Terminal states

    def _commit(self, ctx: ImportContext) -> ImportResult:
        # The new cut is already committed; a leftover old cut is not a failure
        for cut in ctx.stale_cuts:
            try:
                self.catalog.remove_cut(CutId(ctx.cart, cut))
            except CatalogError as e:
                logger.warning(f"Could not remove old cut {cut:03d} of cart {ctx.cart:06d}: {e}")
        if self.settings.delete_cuts:
            self._cleared_carts.add(ctx.cart)
        if self.settings.single_cart and self.single_cart is None:
            self.single_cart = ctx.cart

        if self.settings.delete_source:
            try:
                ctx.path.unlink()
                logger.debug(f"Deleted source {ctx.path}")
            except OSError as e:
                logger.warning(f"Could not delete source {ctx.path}: {e}")

        logger.info(
            f"Imported {ctx.path.name} to cart {ctx.cut_id.cart:06d}, cut {ctx.cut_id.cut:03d}"
        )
        self.event_bus.emit(FileCommittedEvent(
            run_id=self.run_id,
            path=str(ctx.path),
            cart=ctx.cut_id.cart,
            cut=ctx.cut_id.cut,
        ))
        return ImportResult(
            path=ctx.path,
            outcome=ImportOutcome.SUCCESS,
            cart=ctx.cut_id.cart,
            cut=ctx.cut_id.cut,
            states=tuple(ctx.states),
            repaired=ctx.repaired,
        )

    def _rollback(self, ctx: ImportContext) -> None:
        try:
            if ctx.cut_id is not None:
                self.catalog.remove_cut(ctx.cut_id)
            if ctx.cart is not None and ctx.cart_created:
                self.catalog.remove_cart(ctx.cart)
            if ctx.audio_path is not None and ctx.audio_path.exists():
                ctx.audio_path.unlink()
        except (OSError, CatalogError) as e:
            logger.error(f"Rollback for {ctx.path.name} incomplete: {e}")

    def _reject(self, ctx: ImportContext, outcome: ImportOutcome, reason: str) -> ImportResult:
        self._rollback(ctx)
        self._enter(ctx, ImportState.REJECTED)
        logger.warning(f"{ctx.path.name} rejected: {outcome.value} ({reason})")
        self.event_bus.emit(FileRejectedEvent(
            run_id=self.run_id,
            path=str(ctx.path),
            outcome=outcome.value,
            reason=reason,
        ))
        return ImportResult(
            path=ctx.path,
            outcome=outcome,
            cart=ctx.cart if outcome is not ImportOutcome.NO_CART else None,
            reason=reason,
            states=tuple(ctx.states),
            repaired=ctx.repaired,
        )
