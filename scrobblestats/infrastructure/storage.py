import csv
import io
import json
import logging
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Union

from scrobblestats.domain.entities import TrackPlayInfo, TrackRecord
from scrobblestats.domain.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

CSV_FIELDS = ['artist', 'track', 'album', 'timestamp', 'mbid', 'url', 'image_url']
# Written for None so that a missing value and an empty string stay distinct in CSV
CSV_NULL = '\\N'


class FileFormat(str, Enum):
    """Export encodings."""

    JSON = "json"
    CSV = "csv"

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "FileFormat":
        suffix = Path(path).suffix.lower().lstrip('.')
        try:
            return cls(suffix)
        except ValueError:
            raise StorageError(f"Unsupported file format: {Path(path).name}", path=str(path))


def atomic_write_text(path: Union[str, Path], content: str) -> None:
    """Write ``content`` to ``path`` so readers see either the old file or the complete new one."""
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, ValueError) as e:
        # UnicodeEncodeError (lone surrogates) is a ValueError
        raise StorageError(f"Failed to write {path}: {e}", path=str(path)) from e
    finally:
        if tmp_name and os.path.exists(tmp_name):
            os.remove(tmp_name)


def _csv_cell(value: Any) -> str:
    return CSV_NULL if value is None else str(value)


def _csv_value(value: str) -> Optional[str]:
    return None if value == CSV_NULL else value


def encode_json(records: Sequence[TrackRecord]) -> str:
    return json.dumps([r.to_json() for r in records], indent=2, ensure_ascii=False)


def encode_csv(records: Sequence[TrackRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for record in records:
        data = record.to_json()
        writer.writerow({name: _csv_cell(data[name]) for name in CSV_FIELDS})
    return buffer.getvalue()


def decode_json(text: str) -> List[TrackRecord]:
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Expected a JSON list of track records")
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"Item {index} is not a track object: {item!r}")
    return [TrackRecord.from_json(item) for item in data]


def decode_csv(text: str) -> List[TrackRecord]:
    reader = csv.DictReader(io.StringIO(text))
    missing = set(CSV_FIELDS) - set(reader.fieldnames or [])
    if missing:
        raise ValueError(f"Missing CSV columns: {', '.join(sorted(missing))}")
    return [
        TrackRecord.from_json({name: _csv_value(row[name]) for name in CSV_FIELDS})
        for row in reader
    ]


class TrackFileStore:
    """Saves fetched record sequences to timestamp-named files and loads them back."""

    def __init__(self, data_dir: Union[str, Path] = "data", clock=datetime.now):
        """Initialize store.

        Args:
            data_dir: Directory holding exported files; created on first write
            clock: Callable returning the current datetime, used for file names
        """
        self.data_dir = Path(data_dir)
        self._clock = clock

    def build_path(self, prefix: str, fmt: FileFormat) -> Path:
        timestamp = self._clock().strftime('%Y%m%d_%H%M%S')
        return self.data_dir / f"{prefix}_{timestamp}.{fmt.value}"

    def save(self, records: Sequence[TrackRecord],
             fmt: Union[FileFormat, str] = FileFormat.JSON,
             prefix: str = "recent_tracks") -> Path:
        """Save ``records`` to ``<data_dir>/<prefix>_<YYYYmmdd_HHMMSS>.<ext>``.

        Returns:
            Path of the written file

        Raises:
            StorageError: If the file cannot be written
        """
        try:
            fmt = FileFormat(fmt)
        except ValueError:
            raise ValidationError(f"Unsupported export format: {fmt!r}")
        path = self.build_path(prefix, fmt)
        content = encode_json(records) if fmt is FileFormat.JSON else encode_csv(records)
        atomic_write_text(path, content)
        logger.info(f"Saved {len(records)} tracks to {path}")
        return path

    def load(self, path: Union[str, Path]) -> List[TrackRecord]:
        """Load records previously written by ``save``.

        Raises:
            StorageError: Unknown extension, unreadable file or malformed content
        """
        path = Path(path)
        fmt = FileFormat.from_path(path)
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                text = f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}", path=str(path)) from e

        try:
            records = decode_json(text) if fmt is FileFormat.JSON else decode_csv(text)
        except (ValueError, KeyError, TypeError) as e:
            # ValidationError and JSONDecodeError are ValueErrors
            raise StorageError(f"Malformed {fmt.value} file {path}: {e}", path=str(path)) from e

        logger.info(f"Loaded {len(records)} tracks from {path}")
        return records

    def save_play_counts(self, rows: Iterable[TrackPlayInfo], prefix: str = "play_counts") -> Path:
        """Save play-count summary rows as JSON."""
        path = self.build_path(prefix, FileFormat.JSON)
        content = json.dumps([row.to_json() for row in rows], indent=2, ensure_ascii=False)
        atomic_write_text(path, content)
        logger.info(f"Saved play counts to {path}")
        return path

    def write_now_playing(self, path: Union[str, Path], record: Optional[TrackRecord]) -> Path:
        """Overwrite ``path`` with the currently playing track, or ``{}`` when nothing plays."""
        path = Path(path)
        content = json.dumps(record.to_json() if record else {}, indent=2, ensure_ascii=False)
        atomic_write_text(path, content)
        return path
