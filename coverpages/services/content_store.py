# FILE: coverpages/services/content_store.py
"""
Content store: one directory per book id

Holds the immutable page halves, derived OCR and analysis artifacts, and
the marker files the status resolver reads. Duplicate detection is done
against the halves already on disk, so it survives restarts and janitor
sweeps.
"""
import asyncio
import hashlib
import io
import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from coverpages.config import Settings, get_settings
from coverpages.models.books import MappingRecord, PageAssetRef
from coverpages.services.book_locks import BookLocks
from coverpages.services.errors import CorruptImage, DuplicateSlotsExhausted, InvalidBookId

logger = logging.getLogger(__name__)

# Artifact names
OCR_RESULTS = "ocr_results.json"
CONTENT_ANALYSIS = "content_analysis.json"
ID_MAPPING = "id_mapping.json"
METADATA = "metadata.json"
STATUS = "status.json"
ERROR = "error.json"
SOURCE_INFO = "source_info.json"
ACTIVITY_LOG = "logs.txt"

LETTER_TAGS = ("cover", "info", "toc")
SIDES = ("left", "right")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")
CANONICAL_ASSET_RE = re.compile(r"^(\d+|cover|info|toc|PT\d+)_(left|right)\.png$")

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")
_SANITIZED_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,100}\.[0-9a-f]{10}$")
_PT_KEY_RE = re.compile(r"^pt(\d+)$", re.IGNORECASE)


def sanitize_id(book_id: str) -> str:
    """
    Make a book id safe to use as a directory name.

    Safe ids are used as-is. Anything else has its unsafe characters
    replaced and gets a '.<hash>' suffix, so two distinct ids never share
    a directory. The result is stable: sanitizing it again is a no-op.
    """
    if not book_id:
        raise InvalidBookId("Book id must not be empty")
    if _SAFE_ID_RE.match(book_id) or _SANITIZED_ID_RE.match(book_id):
        return book_id
    digest = hashlib.sha256(book_id.encode("utf-8")).hexdigest()[:10]
    return f"{_UNSAFE_ID_CHARS.sub('_', book_id)[:100]}.{digest}"


def normalize_page_key(page_key) -> str:
    """
    Canonical form of a page key.

    Sequence numbers lose leading zeros, letter tags are lower-cased and
    PT tags are upper-cased. Anything else is rejected.
    """
    key = str(page_key).strip()
    if key.isdigit():
        return str(int(key))
    if key.lower() in LETTER_TAGS:
        return key.lower()
    match = _PT_KEY_RE.match(key)
    if match:
        return f"PT{int(match.group(1))}"
    raise ValueError(f"Invalid page key: {page_key!r}")


def capture_order_key(page_key: str, side: str = "left") -> Tuple[int, int, int]:
    """Sort key: numbers ascending, then cover/info/toc, then PT<n> ascending"""
    side_rank = SIDES.index(side) if side in SIDES else len(SIDES)
    if page_key.isdigit():
        return (0, int(page_key), side_rank)
    if page_key in LETTER_TAGS:
        return (1, LETTER_TAGS.index(page_key), side_rank)
    match = _PT_KEY_RE.match(page_key)
    if match:
        return (2, int(match.group(1)), side_rank)
    return (3, 0, side_rank)


def split_image(image: Image.Image) -> Tuple[Image.Image, Image.Image]:
    """Split at floor(width / 2); the right half takes the odd column"""
    width, height = image.size
    if width < 2 or height < 1:
        raise CorruptImage(f"Cannot split image of size {width}x{height}")
    half = width // 2
    left = image.crop((0, 0, half, height))
    right = image.crop((half, 0, width, height))
    return left, right


def fingerprint_halves(left: Image.Image, right: Image.Image) -> str:
    """SHA-256 over the decoded RGBA pixels of both halves"""
    digest = hashlib.sha256()
    for half in (left, right):
        rgba = half.convert("RGBA")
        digest.update(f"{rgba.size[0]}x{rgba.size[1]};".encode("ascii"))
        digest.update(rgba.tobytes())
    return digest.hexdigest()


def decode_image(image_bytes: bytes) -> Image.Image:
    if not image_bytes:
        raise CorruptImage("Empty image payload")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise CorruptImage(f"Unreadable image: {e}")
    return image


class ContentStore:
    """Per-book directory store for page halves and JSON artifacts"""

    def __init__(self, root: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.root = Path(root or self.settings.cache_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.locks = BookLocks()
        # book ids whose capture batch is still being stored
        self._open_batches: Set[str] = set()
        # left-half path -> (mtime, combined size, fingerprint)
        self._fingerprint_memo: Dict[str, Tuple[float, int, str]] = {}

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def book_dir(self, book_id: str) -> Path:
        return self.root / sanitize_id(book_id)

    def exists(self, book_id: str, name: Optional[str] = None) -> bool:
        book_dir = self.book_dir(book_id)
        if name is None:
            return book_dir.is_dir()
        return (book_dir / name).exists()

    def list_book_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def lock(self, *book_ids: str):
        """Single-writer section over one or more book directories"""
        return self.locks.hold(*(sanitize_id(b) for b in book_ids))

    def begin_batch(self, book_id: str):
        """Mark book_id as receiving a capture batch; readers must not treat its pages as final"""
        self._open_batches.add(sanitize_id(book_id))

    def end_batch(self, book_id: str):
        self._open_batches.discard(sanitize_id(book_id))

    def batch_open(self, book_id: str) -> bool:
        return sanitize_id(book_id) in self._open_batches

    # ------------------------------------------------------------------
    # JSON artifacts
    # ------------------------------------------------------------------

    def read_json(self, book_id: str, name: str) -> Optional[Any]:
        path = self.book_dir(book_id) / name
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable artifact {path}: {e}")
            return None

    def write_json(self, book_id: str, name: str, data: Any) -> Path:
        """Write to a temp file in the same directory, then publish with os.replace"""
        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        path = book_dir / name
        fd, tmp_path = tempfile.mkstemp(dir=book_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        return path

    def remove_artifact(self, book_id: str, name: str) -> bool:
        path = self.book_dir(book_id) / name
        if path.is_dir():
            shutil.rmtree(path)
            return True
        if path.exists():
            path.unlink()
            return True
        return False

    def append_text(self, book_id: str, name: str, text: str):
        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        with open(book_dir / name, "a", encoding="utf-8") as f:
            f.write(text)

    def read_text(self, book_id: str, name: str) -> Optional[str]:
        path = self.book_dir(book_id) / name
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Mapping records
    # ------------------------------------------------------------------

    def get_mapping_record(self, book_id: str) -> Optional[MappingRecord]:
        data = self.read_json(book_id, ID_MAPPING)
        if data is None:
            return None
        try:
            return MappingRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid mapping record for {book_id}: {e}")
            return None

    def write_mapping_record(self, record: MappingRecord):
        """Caller holds both book locks"""
        payload = record.to_json()
        self.write_json(record.upload_id, ID_MAPPING, payload)
        if sanitize_id(record.canonical_source_id) == sanitize_id(record.upload_id):
            return
        try:
            self.write_json(record.canonical_source_id, ID_MAPPING, payload)
        except OSError as e:
            logger.warning(
                f"Mirror mapping write failed for {record.canonical_source_id} "
                f"(upload {record.upload_id}): {e}"
            )

    async def put_mapping_record(self, record: MappingRecord):
        async with self.lock(record.upload_id, record.canonical_source_id):
            await asyncio.to_thread(self.write_mapping_record, record)

    # ------------------------------------------------------------------
    # Page assets
    # ------------------------------------------------------------------

    async def put_page_image(self, book_id: str, page_key, image_bytes: bytes) -> PageAssetRef:
        """Split, dedupe and store one captured page; returns the left half"""
        async with self.lock(book_id):
            return await asyncio.to_thread(self._put_page_image_sync, book_id, page_key, image_bytes)

    async def store_unsplit(self, book_id: str, page_key, image_bytes: bytes) -> Path:
        """Fallback after CorruptImage: keep the raw bytes rather than lose the page"""
        async with self.lock(book_id):
            return await asyncio.to_thread(self._store_unsplit_sync, book_id, page_key, image_bytes)

    def _put_page_image_sync(self, book_id: str, page_key, image_bytes: bytes) -> PageAssetRef:
        key = normalize_page_key(page_key)
        image = decode_image(image_bytes)
        left, right = split_image(image)
        fingerprint = fingerprint_halves(left, right)

        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)

        index = self.fingerprint_index(book_id)
        if fingerprint in index:
            original = index[fingerprint]
            key = self._next_duplicate_slot(book_id)
            logger.info(f"[{book_id}] Duplicate of page {original}; storing as {key}")
        elif self._key_occupied(book_id, key):
            requested = key
            key = self._next_duplicate_slot(book_id)
            logger.info(f"[{book_id}] Page key {requested} already holds other content; storing as {key}")

        left_path = book_dir / f"{key}_left.png"
        right_path = book_dir / f"{key}_right.png"
        self._save_png(left, left_path)
        self._save_png(right, right_path)
        self._remember(left_path, right_path, fingerprint)

        logger.info(
            f"[{book_id}] Stored page {key}: left={left.size[0]}px right={right.size[0]}px "
            f"(source {image.size[0]}x{image.size[1]})"
        )
        return self._ref(book_id, key, "left", left_path)

    def _store_unsplit_sync(self, book_id: str, page_key, image_bytes: bytes) -> Path:
        key = normalize_page_key(page_key)
        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        path = book_dir / f"{key}.png"
        fd, tmp_path = tempfile.mkstemp(dir=book_dir, prefix=f".{key}.", suffix=".tmp")
        with os.fdopen(fd, "wb") as f:
            f.write(image_bytes)
        os.replace(tmp_path, path)
        logger.warning(f"[{book_id}] Stored unsplit image for page {key}")
        return path

    def _save_png(self, image: Image.Image, path: Path):
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                image.save(f, format="PNG")
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _key_occupied(self, book_id: str, key: str) -> bool:
        book_dir = self.book_dir(book_id)
        return any((book_dir / f"{key}_{side}.png").exists() for side in SIDES)

    def _next_duplicate_slot(self, book_id: str) -> str:
        limit = self.settings.max_duplicate_slots
        for n in range(1, limit + 1):
            if not self._key_occupied(book_id, f"PT{n}"):
                return f"PT{n}"
        raise DuplicateSlotsExhausted(
            f"All {limit} duplicate slots are in use", book_id=book_id
        )

    def _remember(self, left_path: Path, right_path: Path, fingerprint: str):
        left_stat = left_path.stat()
        size = left_stat.st_size + right_path.stat().st_size
        self._fingerprint_memo[str(left_path)] = (left_stat.st_mtime, size, fingerprint)

    def _stored_fingerprint(self, left_path: Path, right_path: Path) -> Optional[str]:
        try:
            left_stat = left_path.stat()
            size = left_stat.st_size + right_path.stat().st_size
        except OSError:
            return None
        memo = self._fingerprint_memo.get(str(left_path))
        if memo and memo[0] == left_stat.st_mtime and memo[1] == size:
            return memo[2]
        try:
            with Image.open(left_path) as left, Image.open(right_path) as right:
                fingerprint = fingerprint_halves(left, right)
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Cannot fingerprint {left_path}: {e}")
            return None
        self._fingerprint_memo[str(left_path)] = (left_stat.st_mtime, size, fingerprint)
        return fingerprint

    def fingerprint_index(self, book_id: str) -> Dict[str, str]:
        """Fingerprint -> page key for every complete left/right pair on disk"""
        book_dir = self.book_dir(book_id)
        index: Dict[str, str] = {}
        if not book_dir.exists():
            return index
        for ref in self.get_page_assets(book_id):
            if ref.side != "left":
                continue
            right_path = book_dir / ref.right_filename
            if not right_path.exists():
                continue
            fingerprint = self._stored_fingerprint(Path(ref.path), right_path)
            if fingerprint and fingerprint not in index:
                index[fingerprint] = ref.page_key
        return index

    def _ref(self, book_id: str, key: str, side: str, path: Path) -> PageAssetRef:
        return PageAssetRef(book_id=book_id, page_key=key, side=side, filename=path.name, path=str(path))

    def get_page_assets(self, book_id: str) -> List[PageAssetRef]:
        """All canonical halves in capture order, never directory order"""
        book_dir = self.book_dir(book_id)
        if not book_dir.exists():
            return []
        refs = []
        for path in book_dir.iterdir():
            match = CANONICAL_ASSET_RE.match(path.name)
            if match and path.is_file():
                refs.append(self._ref(book_id, match.group(1), match.group(2), path))
        refs.sort(key=lambda r: capture_order_key(r.page_key, r.side))
        return refs

    def get_page_images(self, book_id: str) -> List[str]:
        """Every stored image filename; canonical halves first, in capture order"""
        canonical = [ref.filename for ref in self.get_page_assets(book_id)]
        book_dir = self.book_dir(book_id)
        if not book_dir.exists():
            return canonical
        others = sorted(
            p.name for p in book_dir.iterdir()
            if p.is_file()
            and p.suffix.lower() in IMAGE_EXTENSIONS
            and not p.name.startswith(".")
            and p.name not in canonical
        )
        return canonical + others

    def image_path(self, book_id: str, filename: str) -> Optional[Path]:
        """Resolve a served image name; refuses anything outside the book directory"""
        if not filename or Path(filename).name != filename or filename.startswith("."):
            return None
        if Path(filename).suffix.lower() not in IMAGE_EXTENSIONS:
            return None
        path = self.book_dir(book_id) / filename
        return path if path.is_file() else None


