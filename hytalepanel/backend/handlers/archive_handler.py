"""
Archive Handler

Streaming ZIP extraction for server archives that can run to several gigabytes.
Only the central directory is held in memory; each entry is copied to disk in
chunks, one entry at a time and in archive order, so directories exist before
the files placed in them.
"""

import logging
import shutil
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class ExtractionError(Exception):
    """Raised when an archive cannot be opened or an entry cannot be written."""


def _resolve_entry_path(destination: Path, entry_name: str) -> Path:
    target = (destination / entry_name).resolve()
    if target != destination and destination not in target.parents:
        raise ExtractionError(f"Failed to extract {entry_name}: entry points outside {destination}")
    return target


def extract_archive(archive_path: Union[str, Path], destination: Union[str, Path],
                    progress_callback: Optional[Callable[[int], None]] = None) -> int:
    """
    Extract every entry of a ZIP archive into destination.

    Args:
        archive_path: Path to the ZIP file
        destination: Directory to extract into (created if missing)
        progress_callback: Called after every entry with the integer
            percentage of entries processed; the last call is always 100

    Returns:
        int: Number of entries processed

    Raises:
        ExtractionError: The archive is unreadable or an entry failed; entries
            already written are left in place
    """
    archive_path = Path(archive_path)
    destination = Path(destination)

    try:
        destination.mkdir(parents=True, exist_ok=True)
        destination = destination.resolve()
        zf = zipfile.ZipFile(archive_path, 'r')
    except (OSError, zipfile.BadZipFile) as e:
        raise ExtractionError(f"Cannot open archive {archive_path}: {e}") from e

    with zf:
        entries = zf.infolist()
        total = len(entries)
        logger.info(f"Extracting {total} entries from {archive_path.name} to {destination}")

        if total == 0:
            if progress_callback:
                progress_callback(100)
            return 0

        for index, entry in enumerate(entries, start=1):
            target = _resolve_entry_path(destination, entry.filename)
            try:
                if entry.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(entry, 'r') as src, open(target, 'wb') as dst:
                        shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
            except (OSError, zipfile.BadZipFile, zlib.error, RuntimeError, EOFError) as e:
                logger.error(f"Extraction failed at {entry.filename}: {e}")
                raise ExtractionError(f"Failed to extract {entry.filename}: {e}") from e

            if progress_callback:
                progress_callback(index * 100 // total)

    logger.info(f"Extraction of {archive_path.name} complete")
    return total
