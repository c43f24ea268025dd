#!/usr/bin/env python3
"""
WebpCrunch
Converts every image in a directory tree to WebP, mirroring the folder layout.
Files whose WebP output already exists are skipped, so re-runs only pick up
new images. Parallel processing with progress bar.
"""

import argparse
import io
import os
import sys
import tempfile
import threading
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from PIL import Image
import piexif
from tqdm import tqdm

# ── ANSI Colors ──────────────────────────────────────────────────────────────

class Color:
    """ANSI color codes. Auto-disabled when not writing to a TTY."""
    _enabled = sys.stdout.isatty()

    BOLD    = '\033[1m'   if _enabled else ''
    DIM     = '\033[2m'   if _enabled else ''
    GREEN   = '\033[92m'  if _enabled else ''
    RED     = '\033[91m'  if _enabled else ''
    YELLOW  = '\033[93m'  if _enabled else ''
    CYAN    = '\033[96m'  if _enabled else ''
    RESET   = '\033[0m'   if _enabled else ''

C = Color

# ── Configuration ────────────────────────────────────────────────────────────

DEFAULT_QUALITY = 80
DEFAULT_INPUT_DIR = '/app/images'
DEFAULT_OUTPUT_DIR = '/app/output'
TARGET_EXTENSION = '.webp'
PARTIAL_SUFFIX = '.part'
OUTPUT_MODE = 0o644             # mkstemp creates 0600 files
SUPPORTED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.bmp', '.tiff', '.tif'}
TIME_FORMAT = '%Y-%m-%d %H:%M:%S %Z'

# Modes WebP can store directly; everything else is converted first
WEBP_MODES = {'RGB', 'RGBA'}


class SetupError(Exception):
    """Raised when the run cannot start (bad input dir, unwritable output root)."""


def clamp_quality(quality: int) -> int:
    """Clamp quality into the 1-100 range accepted by the encoder."""
    return max(1, min(100, quality))


def resolve_workers(workers: int) -> int:
    """0 or negative means one worker per CPU core."""
    if workers > 0:
        return workers
    return os.cpu_count() or 1


@dataclass(frozen=True)
class Config:
    input_dir: Path
    output_dir: Path
    quality: int = DEFAULT_QUALITY
    workers: int = 0
    keep_exif: bool = False
    show_progress: bool = True


# ── Results & Stats ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConversionResult:
    """Outcome of converting one file. Created once per task, never mutated."""
    input_path: Path
    output_path: Path
    success: bool
    message: str
    original_size: int = 0
    new_size: int = 0
    savings_percent: float = 0.0

    @classmethod
    def ok(cls, input_path: Path, output_path: Path, original_size: int,
           new_size: int) -> 'ConversionResult':
        return cls(input_path, output_path, True, 'converted successfully',
                   original_size, new_size, savings_percent(original_size, new_size))

    @classmethod
    def failed(cls, input_path: Path, output_path: Path, message: str,
               original_size: int = 0) -> 'ConversionResult':
        return cls(input_path, output_path, False, message, original_size)


@dataclass
class RunStats:
    """Counters for one invocation.

    The completion counters are only touched through ``record``, which holds a
    lock, so results arriving from several threads never lose an update.
    ``total_files`` and ``skipped_count`` are filled in before dispatch.
    """
    total_files: int = 0
    skipped_count: int = 0
    completed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_original_bytes: int = 0
    total_new_bytes: int = 0

    def __post_init__(self):
        self._lock = threading.Lock()

    def record(self, result: ConversionResult) -> int:
        """Account for one finished task and return its completion sequence number."""
        with self._lock:
            self.completed_count += 1
            if result.success:
                self.success_count += 1
                self.total_original_bytes += result.original_size
                self.total_new_bytes += result.new_size
            else:
                self.failure_count += 1
            return self.completed_count

    @property
    def savings_percent(self) -> float:
        return savings_percent(self.total_original_bytes, self.total_new_bytes)


def savings_percent(original_size: int, new_size: int) -> float:
    """Size reduction in percent, rounded to two decimals. 0 for empty originals."""
    if original_size == 0:
        return 0.0
    return round((1 - new_size / original_size) * 100, 2)


# ── Helpers ──────────────────────────────────────────────────────────────────

def format_bytes(size_bytes: int) -> str:
    """Human-readable file size."""
    size = float(size_bytes)
    for unit in ('B', 'KB', 'MB'):
        if abs(size) < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"


def format_duration(seconds: float) -> str:
    """Milliseconds under a second, seconds under a minute, else minutes + seconds."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{int(minutes)}m {secs:.1f}s"
    return f"{secs:.1f}s"


def find_images(input_dir: Path) -> list[Path]:
    """Recursively find all supported image files (extension match, any case)."""
    images = [
        path for path in input_dir.rglob('*')
        if path.suffix.lower() in SUPPORTED_EXTENSIONS and path.is_file()
    ]
    return sorted(images)


def get_output_path(input_path: Path, input_dir: Path, output_dir: Path) -> Path:
    """Mirror input_path under output_dir with the WebP extension.

    Paths outside input_dir are used as-is for the relative part (anchor
    stripped), so a stray path still maps somewhere under output_dir.
    """
    input_path = Path(input_path)
    try:
        relative_path = input_path.relative_to(input_dir)
    except ValueError:
        relative_path = Path(*input_path.parts[1:]) if input_path.anchor else input_path
    return Path(output_dir) / relative_path.with_suffix(TARGET_EXTENSION)


def filter_already_converted(files: list[Path], input_dir: Path,
                             output_dir: Path) -> tuple[list[Path], int]:
    """Split files into (needs conversion, number skipped).

    An existing output counts as converted. The check and the later write are
    not atomic: two runs against the same output tree can both convert a file.
    """
    to_convert = []
    skipped = 0
    for path in files:
        if get_output_path(path, input_dir, output_dir).exists():
            skipped += 1
        else:
            to_convert.append(path)
    return to_convert, skipped


def prepare_directories(input_dir: Path, output_dir: Path) -> None:
    """Validate the input root and create the output root."""
    if not input_dir.is_dir():
        raise SetupError(f"Input directory does not exist: {input_dir}")
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SetupError(f"Failed to create output directory: {e}") from e


# ── Core Image Processing ───────────────────────────────────────────────────

def read_exif(img: Image.Image) -> bytes | None:
    """Return the source EXIF block without its embedded thumbnail, if readable."""
    raw = img.info.get('exif')
    if not raw:
        return None
    try:
        exif_dict = piexif.load(raw)
        exif_dict['thumbnail'] = None
        exif_dict['1st'] = {}
        return piexif.dump(exif_dict)
    except Exception:
        # Broken metadata never fails a conversion
        return None


def load_image(input_path: Path) -> Image.Image:
    """Decode the file fully into memory."""
    with Image.open(input_path) as img:
        img.load()
        return img.copy()


def normalize_mode(img: Image.Image) -> Image.Image:
    """Convert to a mode the WebP encoder accepts, keeping transparency."""
    if img.mode in WEBP_MODES:
        return img
    if img.mode in ('P', 'PA', 'LA', 'La', 'RGBa') or 'transparency' in img.info:
        converted = img.convert('RGBA')
    else:
        converted = img.convert('RGB')
    converted.info = dict(img.info)
    return converted


def encode_webp(img: Image.Image, quality: int, exif: bytes | None = None) -> bytes:
    """Encode to WebP bytes in memory."""
    save_kwargs = {'quality': quality}
    if exif:
        save_kwargs['exif'] = exif
    buffer = io.BytesIO()
    img.save(buffer, 'WEBP', **save_kwargs)
    return buffer.getvalue()


def write_output(output_path: Path, data: bytes) -> None:
    """Write via a uniquely named sibling .part file and rename over the final name.

    The final name only ever holds a whole file, and a failed write removes its
    .part file again.
    """
    fd, partial = tempfile.mkstemp(dir=output_path.parent,
                                   prefix=output_path.name + '.', suffix=PARTIAL_SUFFIX)
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
        os.chmod(partial, OUTPUT_MODE)
        os.replace(partial, output_path)
    except OSError:
        Path(partial).unlink(missing_ok=True)
        raise


def convert_image(input_path: Path, input_dir: Path, output_dir: Path, quality: int,
                  keep_exif: bool = False) -> ConversionResult:
    """Convert one image. Every failure comes back as a failed result, never raised."""
    output_path = get_output_path(input_path, input_dir, output_dir)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return ConversionResult.failed(input_path, output_path,
                                       f"failed to create output dir: {e}")

    try:
        original_size = input_path.stat().st_size
    except OSError as e:
        return ConversionResult.failed(input_path, output_path, f"cannot stat input: {e}")

    try:
        img = load_image(input_path)
    except Exception as e:
        return ConversionResult.failed(input_path, output_path,
                                       f"failed to load image: {e}", original_size)

    try:
        exif = read_exif(img) if keep_exif else None
        data = encode_webp(normalize_mode(img), quality, exif)
    except Exception as e:
        return ConversionResult.failed(input_path, output_path,
                                       f"failed to encode webp: {e}", original_size)
    finally:
        img.close()

    try:
        write_output(output_path, data)
    except OSError as e:
        return ConversionResult.failed(input_path, output_path,
                                       f"failed to write output: {e}", original_size)

    return ConversionResult.ok(input_path, output_path, original_size, len(data))


# ── Worker Pool ──────────────────────────────────────────────────────────────

def run_conversions(files: list[Path], config: Config, stats: RunStats,
                    on_result: Callable[[int, ConversionResult], None] | None = None,
                    convert: Callable[..., ConversionResult] = convert_image,
                    executor_cls=ProcessPoolExecutor) -> list[ConversionResult]:
    """Convert files in parallel and record exactly one result per file.

    Results are handed to ``on_result`` with their completion sequence number
    as they finish, in completion order. A task whose future raises (worker
    bug, dead worker process) is recorded as a failed result.
    """
    results = []

    def collect(result: ConversionResult):
        current = stats.record(result)
        results.append(result)
        if on_result:
            on_result(current, result)

    def worker_failure(path: Path, error: Exception) -> ConversionResult:
        output_path = get_output_path(path, config.input_dir, config.output_dir)
        return ConversionResult.failed(path, output_path, f"worker error: {error}")

    with executor_cls(max_workers=resolve_workers(config.workers)) as executor:
        future_to_path = {}
        for path in files:
            try:
                future = executor.submit(
                    convert, path, config.input_dir, config.output_dir,
                    config.quality, config.keep_exif,
                )
            except Exception as e:
                # Pool broke while submitting (a worker process died)
                collect(worker_failure(path, e))
                continue
            future_to_path[future] = path

        for future in as_completed(future_to_path):
            path = future_to_path[future]
            try:
                result = future.result()
            except Exception as e:
                result = worker_failure(path, e)
            collect(result)
    return results


# ── Reporting ────────────────────────────────────────────────────────────────

def format_progress_line(current: int, total: int, result: ConversionResult) -> str:
    """One line per finished file: sizes and savings, or the failure message."""
    name = result.input_path.name
    if result.success:
        return (f"[{current}/{total}] {C.GREEN}✓{C.RESET} {name}: "
                f"{format_bytes(result.original_size)} → {format_bytes(result.new_size)} "
                f"{C.DIM}({result.savings_percent:.2f}% saved){C.RESET}")
    return f"[{current}/{total}] {C.RED}✗{C.RESET} {name}: {result.message}"


def format_summary(stats: RunStats, elapsed: float, start_time: str = '',
                   end_time: str = '') -> list[str]:
    """Summary lines built from the run counters only."""
    lines = [
        f"{C.CYAN}{'═' * 52}{C.RESET}",
        f"{C.BOLD}  📊  Conversion Summary{C.RESET}",
        f"{C.CYAN}{'═' * 52}{C.RESET}",
        f"  {C.BOLD}Total files:{C.RESET}       {stats.total_files}",
        f"  {C.BOLD}Successful:{C.RESET}        {C.GREEN}{stats.success_count}{C.RESET}",
    ]
    if stats.failure_count > 0:
        lines.append(f"  {C.BOLD}Failed:{C.RESET}            {C.RED}{stats.failure_count}{C.RESET}")
    else:
        lines.append(f"  {C.BOLD}Failed:{C.RESET}            0")
    lines.append(f"  {C.BOLD}Skipped:{C.RESET}           {stats.skipped_count}")
    lines.append(f"{C.DIM}{'─' * 52}{C.RESET}")

    if stats.success_count > 0:
        saved = stats.savings_percent
        color = C.GREEN if saved > 0 else C.RED
        lines.append(f"  {C.BOLD}Original size:{C.RESET}     {format_bytes(stats.total_original_bytes)}")
        lines.append(f"  {C.BOLD}New size:{C.RESET}          {format_bytes(stats.total_new_bytes)}")
        lines.append(f"  {C.BOLD}Total savings:{C.RESET}     {color}{saved:.2f}%{C.RESET}")

    if start_time:
        lines.append(f"  {C.BOLD}Start time:{C.RESET}        {start_time}")
    if end_time:
        lines.append(f"  {C.BOLD}End time:{C.RESET}          {end_time}")
    lines.append(f"  {C.BOLD}Time elapsed:{C.RESET}      {format_duration(elapsed)}")
    lines.append(f"{C.CYAN}{'═' * 52}{C.RESET}")
    return lines


def print_summary(stats: RunStats, elapsed: float, start_time: str = '',
                  end_time: str = ''):
    """Print a styled summary table after processing."""
    print()
    for line in format_summary(stats, elapsed, start_time, end_time):
        print(line)

    if stats.failure_count > 0:
        print(f"\n  {C.YELLOW}⚠️  {stats.failure_count} file(s) failed and will be retried on the next run{C.RESET}")


# ── Main ─────────────────────────────────────────────────────────────────────

def run(config: Config, executor_cls=ProcessPoolExecutor) -> RunStats:
    """Scan, filter, convert and report. Raises SetupError before converting anything."""
    start = time.monotonic()
    start_time = time.strftime(TIME_FORMAT)

    print()
    print(f"  {C.BOLD}Started at:{C.RESET}      {start_time}")
    print(f"  {C.BOLD}Input folder:{C.RESET}    {config.input_dir}")
    print(f"  {C.BOLD}Output folder:{C.RESET}   {config.output_dir}")
    print(f"  {C.BOLD}Quality:{C.RESET}         {config.quality}")
    print(f"  {C.BOLD}Workers:{C.RESET}         {resolve_workers(config.workers)}")
    print(f"{C.DIM}{'─' * 60}{C.RESET}")

    prepare_directories(config.input_dir, config.output_dir)

    stats = RunStats()
    images = find_images(config.input_dir)
    if not images:
        print(f"{C.YELLOW}No images found in {config.input_dir}{C.RESET}")
        print(f"  {C.DIM}Supported formats: {', '.join(sorted(e[1:] for e in SUPPORTED_EXTENSIONS))}{C.RESET}")
        return stats

    print(f"  Found {C.BOLD}{len(images)}{C.RESET} images")

    files, skipped = filter_already_converted(images, config.input_dir, config.output_dir)
    stats.total_files = len(files)
    stats.skipped_count = skipped
    if skipped > 0:
        print(f"  {C.DIM}⏭ Skipped {skipped} file(s) (already converted){C.RESET}")
    if not files:
        print(f"  {C.GREEN}All files already converted. Nothing to do.{C.RESET}")
        return stats

    print(f"  Converting {C.BOLD}{len(files)}{C.RESET} file(s)\n")

    progress = tqdm(
        total=len(files),
        desc=f"  {C.CYAN}Converting{C.RESET}",
        unit='img',
        ncols=80,
        disable=not (config.show_progress and sys.stdout.isatty()),
    )

    def report(current: int, result: ConversionResult):
        tqdm.write(format_progress_line(current, len(files), result))
        progress.update(1)

    try:
        run_conversions(files, config, stats, on_result=report, executor_cls=executor_cls)
    finally:
        progress.close()

    print_summary(stats, time.monotonic() - start, start_time, time.strftime(TIME_FORMAT))
    print(f"\n  {C.BOLD}Output saved to:{C.RESET} {config.output_dir}\n")
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Convert a directory tree of images to WebP.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  webp-crunch -i /path/to/images -o /path/to/output
  webp-crunch -i photos -o photos_webp --quality 90 --workers 4
  webp-crunch -i photos -o photos_webp --keep-exif
        """
    )
    parser.add_argument('-i', '--input', default=DEFAULT_INPUT_DIR,
                        help=f'Input folder (default: {DEFAULT_INPUT_DIR})')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT_DIR,
                        help=f'Output folder (default: {DEFAULT_OUTPUT_DIR})')
    parser.add_argument('-q', '--quality', type=int, default=DEFAULT_QUALITY,
                        help=f'WebP quality 1-100 (default: {DEFAULT_QUALITY})')
    parser.add_argument('-w', '--workers', type=int, default=0,
                        help='Parallel workers (default: 0 = one per CPU core)')
    parser.add_argument('--keep-exif', action='store_true',
                        help='Copy EXIF metadata into the WebP output (larger files)')
    parser.add_argument('--no-progress', action='store_true',
                        help='Hide the progress bar (per-file lines are still printed)')
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config(
        input_dir=Path(args.input).expanduser().resolve(),
        output_dir=Path(args.output).expanduser().resolve(),
        quality=clamp_quality(args.quality),
        workers=args.workers,
        keep_exif=args.keep_exif,
        show_progress=not args.no_progress,
    )

    try:
        run(config)
    except SetupError as e:
        print(f"{C.RED}Error: {e}{C.RESET}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
