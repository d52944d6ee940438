"""
Tests for the per-file import state machine.
"""

import pytest

from cartingest.catalog import CutId
from cartingest.container import inspect
from cartingest.encoder import Encoder
from cartingest.errors import CatalogError, ConfigError, EncodeError, InvalidPattern, NoCut
from cartingest.events import EventBus, EventRecorder, EventType
from cartingest.markers import MarkerRole
from cartingest.orchestrator import ImportOrchestrator, ImportOutcome, ImportState
from cartingest.settings import ImportSettings

from conftest import RATE, cart_chunk_payload


class FailingEncoder(Encoder):
    """Leaves a partial output file behind and fails."""

    def transcode(self, input_path, output_path, params):
        output_path.write_bytes(b"partial")
        raise EncodeError("disk full")


def truncated_wav(wav_factory, name="broken.wav", directory=None):
    full = wav_factory("full-reference.wav", frames=RATE)
    return wav_factory(name, directory=directory, frames=RATE,
                       truncate_to=full.stat().st_size - 1000)


def all_cuts(catalog, cart):
    return [cut["cut_number"] for cut in catalog.list_cuts(cart)]


class TestConstruction:
    """Test configuration checks before any file is touched."""

    def test_unknown_group(self, catalog, settings):
        with pytest.raises(ConfigError):
            ImportOrchestrator(catalog, settings.with_overrides(group="NOPE"))

    def test_missing_group(self, catalog):
        with pytest.raises(ConfigError):
            ImportOrchestrator(catalog, ImportSettings(audio_format="copy"))

    def test_invalid_pattern(self, catalog, settings):
        with pytest.raises(InvalidPattern):
            ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%a%t.wav"))

    def test_invalid_settings(self, catalog, settings):
        with pytest.raises(ConfigError):
            ImportOrchestrator(catalog, settings.with_overrides(delete_cuts=True))


class TestImportFile:
    """Test the happy path and basic rejections."""

    def test_success(self, catalog, settings, wav_factory):
        path = wav_factory("Intro.wav", frames=RATE)
        result = ImportOrchestrator(catalog, settings).import_file(path)

        assert result.success
        assert result.outcome is ImportOutcome.SUCCESS
        assert (result.cart, result.cut) == (100, 1)
        assert result.cut_name == "000100_001"
        assert result.states == (
            ImportState.DISCOVERED,
            ImportState.VERIFYING,
            ImportState.EXTRACTING_METADATA,
            ImportState.ALLOCATING_CART,
            ImportState.WRITING_CUT,
            ImportState.DERIVING_MARKERS,
            ImportState.COMMITTED,
        )

        cut = catalog.list_cuts(100)[0]
        assert cut["duration_ms"] == 1000
        assert cut["sample_rate"] == RATE
        assert cut["origin_name"] == "Intro.wav"
        assert len(cut["sha1_hash"]) == 40
        stored = catalog.audio_path(CutId(100, 1), "wav")
        assert stored.read_bytes() == path.read_bytes()
        assert catalog.get_cart(100)["title"] == "Intro"

    def test_markers_written(self, catalog, settings, wav_factory):
        path = wav_factory(frames=RATE)
        ImportOrchestrator(catalog, settings).import_file(path)

        markers = catalog.read_markers(CutId(100, 1))
        assert markers[MarkerRole.CUT_START] == 0
        assert markers[MarkerRole.CUT_END] == 1000
        assert markers.is_consistent()

    def test_missing_file(self, catalog, settings, tmp_path):
        result = ImportOrchestrator(catalog, settings).import_file(tmp_path / "gone.wav")
        assert result.outcome is ImportOutcome.FILE_BAD
        assert result.states == (ImportState.DISCOVERED, ImportState.REJECTED)

    def test_not_audio(self, catalog, settings, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        result = ImportOrchestrator(catalog, settings).import_file(path)
        assert result.outcome is ImportOutcome.FILE_BAD

    def test_unreadable_stored_audio_rolls_back(self, catalog, settings, tmp_path):
        path = tmp_path / "garbage.mp3"
        path.write_bytes(b"ID3\x04\x00\x00\x00\x00\x00\x00" + b"\x00" * 64)
        result = ImportOrchestrator(catalog, settings).import_file(path)

        assert result.outcome is ImportOutcome.FILE_BAD
        assert not catalog.cart_exists(100)
        assert list(catalog.audio_root.iterdir()) == []

    def test_outcome_codes(self):
        assert ImportOutcome.SUCCESS.code == 0
        assert ImportOutcome.FILE_BAD.code == 1
        assert ImportOutcome.NO_CART.code == 2
        assert ImportOutcome.NO_CUT.code == 3

    def test_result_to_dict(self, catalog, settings, wav_factory):
        result = ImportOrchestrator(catalog, settings).import_file(wav_factory())
        data = result.to_dict()
        assert data["outcome"] == "Success"
        assert data["states"][-1] == "committed"


class TestContainerHandling:
    """Test verification and repair inside the pipeline."""

    def test_truncated_file_rejected(self, catalog, settings, wav_factory):
        path = truncated_wav(wav_factory)
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(fix_broken_formats=True))
        result = orchestrator.import_file(path)

        assert result.outcome is ImportOutcome.FILE_BAD
        assert "truncated_file" in result.reason
        assert ImportState.FIXING not in result.states
        assert not catalog.cart_exists(100)

    def test_defect_without_repair_rejected(self, catalog, settings, wav_factory):
        path = wav_factory(data_declared=0)
        before = path.read_bytes()
        result = ImportOrchestrator(catalog, settings).import_file(path)

        assert result.outcome is ImportOutcome.FILE_BAD
        assert "repair disabled" in result.reason
        assert path.read_bytes() == before

    def test_defect_repaired(self, catalog, settings, wav_factory):
        path = wav_factory(frames=RATE, order=("data", "fmt"))
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(fix_broken_formats=True))
        result = orchestrator.import_file(path)

        assert result.success
        assert result.repaired
        assert ImportState.FIXING in result.states
        assert inspect(path).is_valid
        assert catalog.list_cuts(100)[0]["duration_ms"] == 1000


class TestMetadata:
    """Test metadata sources and their precedence."""

    def test_pattern(self, catalog, settings, wav_factory):
        path = wav_factory("Sting_Intro.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%a_%t.wav"))
        assert orchestrator.import_file(path).success

        cart = catalog.get_cart(100)
        assert cart["artist"] == "Sting"
        assert cart["title"] == "Intro"

    def test_pattern_mismatch_still_imports(self, catalog, settings, wav_factory):
        path = wav_factory("Sting-Intro.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%a_%t.wav"))
        assert orchestrator.import_file(path).success

        cart = catalog.get_cart(100)
        assert cart["artist"] is None
        assert cart["title"] == "Sting-Intro"

    def test_literals_fill_unset_fields(self, catalog, settings, wav_factory):
        path = wav_factory("Sting_Intro.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(
            metadata_pattern="%a_%t.wav",
            set_string={"artist": "Various", "album": "Promos"},
        ))
        assert orchestrator.import_file(path).success

        cart = catalog.get_cart(100)
        assert cart["artist"] == "Sting"
        assert cart["album"] == "Promos"

    def test_cart_chunk(self, catalog, settings, wav_factory):
        payload = cart_chunk_payload(title="Morning Show", artist="Station", outcue="Stay tuned")
        path = wav_factory("spot.wav", extra_chunks=[(b"cart", payload)])
        assert ImportOrchestrator(catalog, settings).import_file(path).success

        cart = catalog.get_cart(100)
        assert cart["title"] == "Morning Show"
        assert cart["artist"] == "Station"
        assert catalog.list_cuts(100)[0]["outcue"] == "Stay tuned"

    def test_title_from_cart_chunk_cut_id(self, catalog, settings, wav_factory):
        payload = cart_chunk_payload(title="Ignored", cut_id="PROMO-7")
        path = wav_factory("spot.wav", extra_chunks=[(b"cart", payload)])
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(title_from_cartchunk_cutid=True))
        assert orchestrator.import_file(path).success
        assert catalog.get_cart(100)["title"] == "PROMO-7"

    def test_cart_number_from_cart_chunk(self, catalog, settings, wav_factory):
        path = wav_factory("spot.wav", extra_chunks=[(b"cart", cart_chunk_payload(cut_id="150"))])
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(use_cartchunk_cutid=True))
        result = orchestrator.import_file(path)
        assert result.cart == 150


class TestCartAllocation:
    """Test cart routing and NoCart/NoCut rejections."""

    def test_cart_number_from_filename(self, catalog, settings, wav_factory):
        path = wav_factory("000150_Song.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%n_%t.wav"))
        assert orchestrator.import_file(path).cart == 150

    def test_cart_number_offset(self, catalog, settings, wav_factory):
        path = wav_factory("000050_Song.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(
            metadata_pattern="%n_%t.wav", cart_number_offset=100,
        ))
        assert orchestrator.import_file(path).cart == 150

    def test_cart_out_of_range(self, catalog, settings, wav_factory):
        path = wav_factory("000500_Song.wav")
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%n_%t.wav"))
        result = orchestrator.import_file(path)

        assert result.outcome is ImportOutcome.NO_CART
        assert result.cart is None
        assert not catalog.cart_exists(500)
        assert list(catalog.audio_root.iterdir()) == []

    def test_group_from_filename(self, catalog, settings, wav_factory):
        catalog.create_group("JINGLES", 200, 299)
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(metadata_pattern="%g_%t.wav"))

        assert orchestrator.import_file(wav_factory("JINGLES_Bell.wav")).cart == 200
        assert orchestrator.import_file(wav_factory("NOPE_Bell.wav")).cart == 100

    def test_no_cut_rolls_back_new_cart(self, catalog, settings, wav_factory, monkeypatch):
        def no_cut(cart):
            raise NoCut(f"Cart {cart:06d} has no free cut slots")

        monkeypatch.setattr(catalog, "allocate_cut", no_cut)
        result = ImportOrchestrator(catalog, settings).import_file(wav_factory())

        assert result.outcome is ImportOutcome.NO_CUT
        assert not catalog.cart_exists(100)

    def test_no_cut_keeps_existing_cart(self, catalog, settings, wav_factory, monkeypatch):
        catalog.allocate_cart("MUSIC", 150)

        def no_cut(cart):
            raise NoCut(f"Cart {cart:06d} has no free cut slots")

        monkeypatch.setattr(catalog, "allocate_cut", no_cut)
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150))
        result = orchestrator.import_file(wav_factory())

        assert result.outcome is ImportOutcome.NO_CUT
        assert catalog.cart_exists(150)

    def test_single_cart(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(single_cart=True))
        results = [orchestrator.import_file(wav_factory(f"part{i}.wav")) for i in range(3)]

        assert [(r.cart, r.cut) for r in results] == [(100, 1), (100, 2), (100, 3)]

    def test_single_cart_after_rejection(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(single_cart=True))
        assert not orchestrator.import_file(truncated_wav(wav_factory)).success
        assert orchestrator.single_cart is None

        results = [orchestrator.import_file(wav_factory(f"part{i}.wav")) for i in range(2)]
        assert [(r.cart, r.cut) for r in results] == [(100, 1), (100, 2)]

    def test_to_cart(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150))
        assert orchestrator.import_file(wav_factory("a.wav")).cart == 150
        assert orchestrator.import_file(wav_factory("b.wav")).cart == 150
        assert all_cuts(catalog, 150) == [1, 2]

    def test_delete_cuts_replaces_old_cuts(self, catalog, settings, wav_factory):
        first = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150))
        first.import_file(wav_factory("old1.wav"))
        first.import_file(wav_factory("old2.wav"))

        second = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150, delete_cuts=True))
        assert second.import_file(wav_factory("new1.wav")).success
        assert second.import_file(wav_factory("new2.wav")).success

        # new1 became cut 3 before the old cuts went; new2 reuses the freed slot 1
        cuts = catalog.list_cuts(150)
        assert [cut["cut_number"] for cut in cuts] == [1, 3]
        assert sorted(cut["origin_name"] for cut in cuts) == ["new1.wav", "new2.wav"]
        assert not catalog.audio_path(CutId(150, 2), "wav").exists()

    def test_delete_cuts_keeps_old_cuts_on_failure(self, catalog, settings, wav_factory):
        first = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150))
        first.import_file(wav_factory("old1.wav"))
        first.import_file(wav_factory("old2.wav"))

        second = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150, delete_cuts=True))
        assert not second.import_file(truncated_wav(wav_factory)).success
        assert all_cuts(catalog, 150) == [1, 2]

    def test_delete_cuts_removal_error_keeps_import(self, catalog, settings, wav_factory,
                                                    monkeypatch):
        first = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150))
        first.import_file(wav_factory("old1.wav"))
        first.import_file(wav_factory("old2.wav"))

        def locked(cut_id):
            raise CatalogError(f"Cut {cut_id} is locked")

        monkeypatch.setattr(catalog, "remove_cut", locked)
        second = ImportOrchestrator(catalog, settings.with_overrides(to_cart=150, delete_cuts=True))
        results = [second.import_file(wav_factory(name)) for name in ("new1.wav", "new2.wav")]

        assert [r.outcome for r in results] == [ImportOutcome.SUCCESS] * 2
        assert [(r.cart, r.cut) for r in results] == [(150, 3), (150, 4)]
        assert all_cuts(catalog, 150) == [1, 2, 3, 4]

    def test_scheduler_codes(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(add_scheduler_codes=["ROCK", "HIT"]))
        orchestrator.import_file(wav_factory())
        assert catalog.get_cart(100)["scheduler_codes"] == ["ROCK", "HIT"]


class TestRollback:
    """Test that rejected files leave nothing behind."""

    def test_encode_error(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings, encoder=FailingEncoder())
        result = orchestrator.import_file(wav_factory())

        assert result.outcome is ImportOutcome.FILE_BAD
        assert "disk full" in result.reason
        assert not catalog.cart_exists(100)
        assert list(catalog.audio_root.iterdir()) == []

    def test_delete_source_only_after_commit(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(delete_source=True))

        good = wav_factory("good.wav")
        assert orchestrator.import_file(good).success
        assert not good.exists()

        bad = truncated_wav(wav_factory)
        assert not orchestrator.import_file(bad).success
        assert bad.exists()

    def test_delete_source_kept_on_encode_error(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(
            catalog, settings.with_overrides(delete_source=True), encoder=FailingEncoder()
        )
        path = wav_factory()
        assert not orchestrator.import_file(path).success
        assert path.exists()


class TestSegueDetection:
    """Test level-based segue markers."""

    def test_segue_from_level(self, catalog, settings, wav_factory):
        loud = [16000] * 4800
        quiet = [5] * 3200
        path = wav_factory(samples=loud + quiet)
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(
            segue_level=-20.0, segue_length=300,
        ))
        assert orchestrator.import_file(path).success

        markers = catalog.read_markers(CutId(100, 1))
        assert markers[MarkerRole.SEGUE_START] == 600
        assert markers[MarkerRole.SEGUE_END] == 900

    def test_never_reaches_level(self, catalog, settings, wav_factory):
        orchestrator = ImportOrchestrator(catalog, settings.with_overrides(segue_level=-1.0))
        assert orchestrator.import_file(wav_factory()).success
        markers = catalog.read_markers(CutId(100, 1))
        assert not markers.is_set(MarkerRole.SEGUE_START)


class TestEvents:
    """Test events emitted per file."""

    def test_state_changes_and_commit(self, catalog, settings, wav_factory):
        bus = EventBus()
        recorder = EventRecorder(bus)
        ImportOrchestrator(catalog, settings, event_bus=bus).import_file(wav_factory())

        states = [e.new_state for e in recorder.of_type(EventType.FILE_STATE_CHANGED)]
        assert states[0] == "discovered"
        assert states[-1] == "committed"
        committed = recorder.of_type(EventType.FILE_COMMITTED)
        assert len(committed) == 1
        assert (committed[0].cart, committed[0].cut) == (100, 1)

    def test_rejection_event(self, catalog, settings, wav_factory):
        bus = EventBus()
        recorder = EventRecorder(bus)
        ImportOrchestrator(catalog, settings, event_bus=bus).import_file(truncated_wav(wav_factory))

        rejected = recorder.of_type(EventType.FILE_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].outcome == "FileBad"
        assert recorder.of_type(EventType.FILE_COMMITTED) == []
