#!/usr/bin/env python3
"""
Command-line interface for cartingest.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
from tqdm import tqdm

from . import __version__
from .catalog import SqliteCatalog
from .container import inspect, sniff_format
from .errors import CatalogError, ConfigError, InvalidPattern, NotAContainer
from .events import EventBus, EventType
from .importer import DropboxRunner, ImportJob, expand_file_specs, process_file_list, stop_on_signals
from .orchestrator import ImportOrchestrator
from .patterns import compile_pattern, extract
from .repair import repair
from .settings import AUDIO_FORMATS, ImportSettings, load_settings
from .timestamps import TimestampCache


# Setup logging
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, log_file: Optional[str] = None, log_mode: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    if log_mode:
        fmt = '%(asctime)s - %(levelname)s - %(message)s'
    else:
        fmt = '%(levelname)s - %(message)s'

    logging.basicConfig(level=level, format=fmt, handlers=handlers)


def _parse_set_string(values: Tuple[str, ...]) -> Dict[str, str]:
    literals = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected FIELD=VALUE, got '{item}'", param_hint="--set-string")
        name, value = item.split("=", 1)
        literals[name.strip()] = value
    return literals


def import_options(f):
    """Options shared by the import and dropbox commands."""
    options = [
        click.option('--catalog', type=click.Path(), help='Catalog database (default: ~/.cartingest/catalog.db)'),
        click.option('--audio-root', type=click.Path(), help='Directory for stored cut audio'),
        click.option('--settings', 'settings_file', type=click.Path(exists=True),
                     help='JSON settings file'),
        click.option('--report', '-r', type=click.Path(), help='Save JSON report to file'),
        click.option('--cache', type=click.Path(), help='Timestamp cache file'),
        click.option('--metadata-pattern', help='Filename pattern, e.g. "%a_%t.wav"'),
        click.option('--fix-broken-formats', is_flag=True,
                     help='Repair fixable WAV defects before importing'),
        click.option('--delete-source', is_flag=True,
                     help='Delete each source file after it was imported'),
        click.option('--delete-cuts', is_flag=True,
                     help='Replace the existing cuts of --to-cart'),
        click.option('--single-cart', is_flag=True,
                     help='Import every file as a cut of one cart'),
        click.option('--to-cart', type=int, help='Import into this cart number'),
        click.option('--cart-number-offset', type=int, help='Added to cart numbers from %n or the cart chunk'),
        click.option('--use-cartchunk-cutid', is_flag=True,
                     help='Take the cart number from the cart chunk CutID'),
        click.option('--title-from-cartchunk-cutid', is_flag=True,
                     help='Use the cart chunk CutID as title'),
        click.option('--add-scheduler-code', multiple=True, help='Scheduler code to add (repeatable)'),
        click.option('--set-string', multiple=True, metavar='FIELD=VALUE',
                     help='Literal metadata for fields left unset (repeatable)'),
        click.option('--format', 'audio_format', type=click.Choice(AUDIO_FORMATS),
                     help='Storage format'),
        click.option('--sample-rate', type=int, help='Storage sample rate'),
        click.option('--bitrate', type=int, help='Bitrate in kbps for compressed formats'),
        click.option('--channels', type=int, help='Storage channel count'),
        click.option('--normalization-level', type=float, help='Peak normalization level (dBFS)'),
        click.option('--autotrim-level', type=float, help='Autotrim threshold (dBFS)'),
        click.option('--segue-level', type=float, help='Segue detection level (dBFS)'),
        click.option('--segue-length', type=int, help='Segue length (ms)'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_settings(group: str, settings_file: Optional[str], **options) -> ImportSettings:
    """Settings file first, then command line overrides."""
    settings = load_settings(settings_file)
    set_string = _parse_set_string(options.pop("set_string", ()))
    codes = list(options.pop("add_scheduler_code", ()))

    # Unset options and flags that were not given leave the settings file alone
    overrides = {k: v for k, v in options.items() if v is not None and v is not False}
    overrides["group"] = group
    if set_string:
        overrides["set_string"] = dict(settings.set_string, **set_string)
    if codes:
        overrides["add_scheduler_codes"] = codes
    return settings.with_overrides(**overrides)


def attach_progress(bus: EventBus, unit: str = "files") -> tqdm:
    """Drive a tqdm progress bar from import events."""
    pbar = tqdm(unit=unit)

    def on_started(event):
        if event.total_files:
            pbar.total = event.total_files
            pbar.refresh()

    def on_file_done(event):
        pbar.set_description(Path(event.path).name)
        pbar.update(1)

    bus.subscribe(EventType.RUN_STARTED, on_started)
    for event_type in (EventType.FILE_COMMITTED, EventType.FILE_REJECTED, EventType.FILE_SKIPPED):
        bus.subscribe(event_type, on_file_done)
    return pbar


def print_summary(job: ImportJob, report: Optional[str]) -> None:
    click.echo("\nImport complete!")
    click.echo(f"  Files processed: {len(job.results)}")
    for outcome, count in job.counts().items():
        click.echo(f"  {outcome}: {count}")
    if job.skipped:
        click.echo(f"  Skipped: {len(job.skipped)}")
    for result in job.results:
        if result.success:
            click.echo(f"  ✓ {result.path.name} -> {result.cut_name}")
        else:
            click.echo(f"  ✗ {result.path.name}: {result.outcome.value} ({result.reason})")
    if report:
        job.save_report(report)
        click.echo(f"  Report saved: {report}")


def _open_catalog(catalog: Optional[str], audio_root: Optional[str]) -> SqliteCatalog:
    try:
        return SqliteCatalog(catalog, audio_root)
    except CatalogError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version=__version__)
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--log-file', '-l', type=click.Path(), help='Path to log file')
@click.option('--log-mode', is_flag=True, help='Prefix log lines with date and time')
@click.pass_context
def cli(ctx, verbose, log_file, log_mode):
    """
    cartingest - Audio cart import tool

    Imports audio files into a cart catalog, validating and repairing WAV
    containers, extracting metadata from filenames and tags, and setting
    default cut markers.

    Commands:
        import     Import files once
        dropbox    Watch a directory and import files as they arrive
        verify     Inspect (and optionally repair) a WAV file
        pattern    Test a metadata pattern against a filename
        group-add  Create a catalog group
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose, log_file, log_mode)


@cli.command(name='import')
@click.argument('group')
@click.argument('filespecs', nargs=-1, required=True)
@import_options
def import_cmd(group, filespecs, catalog, audio_root, settings_file, report, cache, **options):
    """
    Import files into GROUP.

    FILESPECS may be files, directories, glob patterns, or '-' to read
    file names from stdin.

    Example:
        cartingest import MUSIC /incoming/*.wav --metadata-pattern "%a_%t.wav"
        find /incoming -name '*.wav' | cartingest import MUSIC - --fix-broken-formats
    """
    library = _open_catalog(catalog, audio_root)
    bus = EventBus()
    try:
        settings = build_settings(group, settings_file, **options)
        orchestrator = ImportOrchestrator(library, settings, event_bus=bus)
    except (ConfigError, InvalidPattern) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    files = expand_file_specs(filespecs)
    timestamps = TimestampCache(cache, settings.persistent_dropbox_id) if cache else None

    stop = {'requested': False}

    def request_stop():
        stop['requested'] = True

    pbar = attach_progress(bus)
    with stop_on_signals(request_stop):
        job = process_file_list(orchestrator, files, cache=timestamps,
                                should_stop=lambda: stop['requested'])
    pbar.close()

    print_summary(job, report)
    sys.exit(job.exit_code)


@cli.command()
@click.argument('group')
@click.argument('path', type=click.Path(exists=True, file_okay=False))
@import_options
@click.option('--scan-interval', type=float, help='Seconds between scans (default: 5)')
@click.option('--passes', 'stability_passes', type=int,
              help='Unchanged scans before a file is imported (default: 3)')
@click.option('--retries', 'retry_budget', type=int,
              help='Failed imports before a file is given up (default: 3)')
@click.option('--persistent-dropbox-id', help='Key for the timestamp cache')
@click.option('--include', multiple=True, help='File patterns to include (e.g., *.wav)')
@click.option('--exclude', multiple=True, help='File patterns to exclude')
@click.option('--max-scans', type=int, help='Stop after this many scans')
def dropbox(group, path, catalog, audio_root, settings_file, report, cache,
            include, exclude, max_scans, **options):
    """
    Watch PATH and import stable files into GROUP.

    Example:
        cartingest dropbox MUSIC /dropbox/music --delete-source
        cartingest dropbox NEWS /dropbox/news --passes 5 --include "*.wav"
    """
    library = _open_catalog(catalog, audio_root)
    bus = EventBus()
    if include:
        options['include_patterns'] = list(include)
    if exclude:
        options['exclude_patterns'] = list(exclude)
    try:
        settings = build_settings(group, settings_file, **options)
        orchestrator = ImportOrchestrator(library, settings, event_bus=bus)
    except (ConfigError, InvalidPattern) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    cache_path = Path(cache) if cache else library.db_path.parent / "timestamps.json"
    timestamps = TimestampCache(cache_path, settings.persistent_dropbox_id)

    runner = DropboxRunner(orchestrator, path, cache=timestamps)

    pbar = attach_progress(bus)
    with stop_on_signals(runner.stop):
        job = runner.run(max_scans=max_scans)
    pbar.close()

    print_summary(job, report)
    sys.exit(job.exit_code)


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--fix', is_flag=True, help='Repair fixable defects in place')
def verify(file, fix):
    """
    Inspect a WAV file's chunk layout and report defects.

    Example:
        cartingest verify recording.wav
        cartingest verify recording.wav --fix
    """
    kind = sniff_format(file)
    if kind != "wav":
        click.echo(f"{file}: {kind or 'unknown'} file, not a WAV container")
        sys.exit(0 if kind else 1)

    try:
        descriptor = inspect(file)
    except NotAContainer as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"File: {file}")
    click.echo(f"  Format: {descriptor.sample_rate} Hz, {descriptor.channels} ch, "
               f"{descriptor.bits_per_sample} bit, {descriptor.duration_ms} ms")
    click.echo("  Chunks:")
    for entry in descriptor.chunk_table:
        marker = "  (size mismatch)" if entry.mismatched else ""
        click.echo(f"    {entry.name!r:8} @ {entry.offset:>10}  declared {entry.declared_size:>10}"
                   f"  actual {entry.actual_size:>10}{marker}")

    if descriptor.is_valid:
        click.echo("✓ No defects")
        return

    click.echo("  Defects: " + ", ".join(sorted(d.value for d in descriptor.defects)))
    if not descriptor.is_repairable:
        click.echo("✗ Not repairable")
        sys.exit(1)
    if not fix:
        click.echo("Run with --fix to repair")
        sys.exit(1)

    if repair(file, descriptor):
        click.echo("✓ Repaired")
    else:
        click.echo("✗ Repair failed", err=True)
        sys.exit(1)


@cli.command()
@click.argument('pattern')
@click.argument('filename')
def pattern(pattern, filename):
    """
    Test a metadata PATTERN against FILENAME.

    Example:
        cartingest pattern "%a_%t.wav" "Sting_Intro.wav"
    """
    try:
        compiled = compile_pattern(pattern)
    except InvalidPattern as e:
        click.echo(f"Invalid pattern: {e}", err=True)
        sys.exit(2)

    record = extract(compiled, filename)
    if record is None:
        click.echo(f"No match: {filename}")
        sys.exit(1)

    for name, value in record.to_dict().items():
        click.echo(f"  {name}: {value}")


@cli.command(name='group-add')
@click.argument('name')
@click.option('--low', required=True, type=int, help='First cart number of the group')
@click.option('--high', required=True, type=int, help='Last cart number of the group')
@click.option('--no-enforce', is_flag=True, help='Allow explicit cart numbers outside the range')
@click.option('--description', default='', help='Group description')
@click.option('--catalog', type=click.Path(), help='Catalog database (default: ~/.cartingest/catalog.db)')
def group_add(name, low, high, no_enforce, description, catalog):
    """
    Create catalog group NAME owning carts LOW..HIGH.

    Example:
        cartingest group-add MUSIC --low 10000 --high 19999
    """
    library = _open_catalog(catalog, None)
    try:
        group = library.create_group(name, low, high, enforce_range=not no_enforce,
                                     description=description)
    except CatalogError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Created group {group.name} ({group.low:06d}-{group.high:06d})")


def main():
    """Entry point for CLI."""
    cli()


if __name__ == '__main__':
    main()
