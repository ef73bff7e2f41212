"""Downloads, archive extraction, and local file readers for pipelines."""

import csv
import hashlib
import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from .exceptions import MalformedInputError

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 120.0
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class DownloadResult:
    path: Path
    bytes: int
    sha256: str


def ensure_downloaded(url: str, dest: Path, client: httpx.Client | None = None) -> DownloadResult | None:
    """Fetch url to dest unless dest already exists.

    Returns None when the cached file was reused. The body is streamed to a
    temporary sibling and renamed into place, so an interrupted download
    never leaves a file that later looks cached.
    """
    dest = Path(dest)
    if dest.exists():
        return None
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")

    digest = hashlib.sha256()
    size = 0
    own_client = client is None
    client = client or httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with open(partial, "wb") as f:
                for chunk in response.iter_bytes(_CHUNK_SIZE):
                    f.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
        partial.replace(dest)
    finally:
        partial.unlink(missing_ok=True)
        if own_client:
            client.close()

    logger.info("Downloaded %s (%d bytes)", url, size)
    return DownloadResult(path=dest, bytes=size, sha256=digest.hexdigest())


def ensure_unzipped(zip_path: Path, dest_dir: Path) -> Path:
    """Extract an archive unless dest_dir already has content."""
    dest_dir = Path(dest_dir)
    if dest_dir.is_dir() and any(dest_dir.iterdir()):
        return dest_dir
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path) as archive:
            archive.extractall(dest_dir)
    except zipfile.BadZipFile as e:
        raise MalformedInputError(f"Not a zip archive: {zip_path}") from e
    return dest_dir


def find_shapefile_paths(directory: Path) -> tuple[Path, Path]:
    """The single .shp and matching .dbf under a directory (searched recursively)."""
    shp_paths = sorted(Path(directory).rglob("*.shp"))
    if not shp_paths:
        raise MalformedInputError(f"No .shp file found in {directory}")
    if len(shp_paths) > 1:
        logger.warning("Multiple .shp files in %s; using %s", directory, shp_paths[0].name)
    shp_path = shp_paths[0]
    dbf_path = shp_path.with_suffix(".dbf")
    if not dbf_path.is_file():
        raise MalformedInputError(f"Missing .dbf next to {shp_path}")
    return shp_path, dbf_path


def read_csv_records(path: Path) -> list[dict[str, str]]:
    """Rows as dicts with trimmed keys and values; fully blank rows are dropped."""
    path = Path(path)
    if not path.is_file():
        raise MalformedInputError(f"Missing CSV: {path}")
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise MalformedInputError(f"CSV has no header row: {path}")
        records = []
        for row in reader:
            cleaned = {
                (key or "").strip(): (value or "").strip() if isinstance(value, str) else ""
                for key, value in row.items()
                if key is not None
            }
            if any(cleaned.values()):
                records.append(cleaned)
    return records


def read_json_file(path: Path):
    path = Path(path)
    if not path.is_file():
        raise MalformedInputError(f"Missing JSON: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"Invalid JSON in {path}: {e}") from e


def read_feature_collection(path: Path) -> list[dict]:
    """Features of a GeoJSON FeatureCollection; any other top-level type is malformed."""
    data = read_json_file(path)
    if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
        raise MalformedInputError(f"Expected FeatureCollection in {path}")
    features = data.get("features")
    if not isinstance(features, list):
        raise MalformedInputError(f"FeatureCollection in {path} has no features array")
    return features
