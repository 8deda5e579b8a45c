"""
Reads Noita session files and turns them into death records and cause-of-death
statistics.

Noita writes one "<timestamp>_stats.xml" file per run into its sessions folder.
Each file holds a <Stats> root with a single <stats> child whose attributes
include the death position (death_pos.x / death_pos.y) and what killed the
player (killed_by):

    <Stats ...>
        <stats death_pos.x="-1234.5" death_pos.y="678.9" killed_by="| fire imp" .../>
    </Stats>

Records missing either coordinate (or with a coordinate of exactly 0) or
missing the killed_by tag are discarded silently.  A zero coordinate cannot be
told apart from an absent one, so real deaths at x=0 or y=0 are dropped too.

Cause labels are counted and ranked on their RAW value.  Display cleanup
(format_cause) is applied only to the already ranked list, so "| fire imp"
ranks after "acid" but is shown as "Fire imp".
"""

import logging
import math
import re
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from xml.etree import ElementTree as ET

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Session file format
# ---------------------------------------------------------------------------

STATS_FILE_SUFFIX = "stats.xml"

STATS_ROOT_TAG = "Stats"
STATS_ELEMENT_TAG = "stats"

ATTR_DEATH_X = "death_pos.x"
ATTR_DEATH_Y = "death_pos.y"
ATTR_KILLED_BY = "killed_by"

# Reader threads used by collect_sessions().
DEFAULT_WORKERS: int = 8

NO_STATS_MESSAGE = "No statistics available yet..."

# Leading run of whitespace and pipe characters Noita puts in front of some
# killed_by values, e.g. "| fire imp".
_CAUSE_PREFIX_RE = re.compile(r"^[\s|]+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DeathMapError(Exception):
    """Base class for errors that abort a whole death-map operation."""


class DirectorySelectionError(DeathMapError):
    """The sessions folder could not be selected or listed."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionRecord:
    """One death: world position and the raw killed_by label."""
    x: float
    y: float
    cause: str


SessionEntry = Tuple[str, Callable[[], str]]


# ---------------------------------------------------------------------------
# Record extraction
# ---------------------------------------------------------------------------


def _to_number(value: Optional[str]) -> float:
    """
    Coerce an attribute value to float.

    Absent and blank values become 0.0, anything unparseable becomes NaN, so
    both fall out of the truthiness check in extract_session().  Only the
    spelled-out "Infinity" literal may produce an infinite value; "inf" and
    digit separators ("1_000") are unparseable.
    """
    if value is None:
        return 0.0
    text = value.strip()
    if not text:
        return 0.0
    if "_" in text:
        return math.nan
    try:
        number = float(text)
    except ValueError:
        return math.nan
    if "inf" in text.lower() and text.lstrip("+-") != "Infinity":
        return math.nan
    return number


def _is_valid_coordinate(value: float) -> bool:
    return value != 0 and not math.isnan(value)


def extract_session(raw_text: str) -> Optional[SessionRecord]:
    """
    Parse the text of one stats.xml file into a SessionRecord.

    Returns None for malformed markup, an unexpected document shape, a
    missing/zero/non-numeric coordinate or an empty killed_by.  Never raises
    on bad input.
    """
    try:
        root = ET.fromstring(raw_text)
    except (ET.ParseError, ValueError, TypeError) as exc:
        logger.debug("Unparseable stats markup: %s", exc)
        return None

    if root.tag != STATS_ROOT_TAG:
        logger.debug("Unexpected root element <%s>", root.tag)
        return None

    stats_elems = root.findall(STATS_ELEMENT_TAG)
    if len(stats_elems) != 1:
        logger.debug("Expected one <%s> element, found %d", STATS_ELEMENT_TAG, len(stats_elems))
        return None
    stats = stats_elems[0]

    x = _to_number(stats.get(ATTR_DEATH_X))
    y = _to_number(stats.get(ATTR_DEATH_Y))
    cause = stats.get(ATTR_KILLED_BY)

    if not _is_valid_coordinate(x) or not _is_valid_coordinate(y) or not cause:
        logger.debug("Discarding session: x=%r y=%r killed_by=%r", x, y, cause)
        return None

    return SessionRecord(x=x, y=y, cause=cause)


# ---------------------------------------------------------------------------
# Folder listing and collection
# ---------------------------------------------------------------------------


def is_stats_xml(name: str) -> bool:
    """True for file names Noita uses for per-run statistics."""
    return name.endswith(STATS_FILE_SUFFIX)


def _file_reader(path: Path) -> Callable[[], str]:
    def read() -> str:
        return path.read_text(encoding="utf-8")
    return read


def list_session_folder(folder: Path) -> List[SessionEntry]:
    """
    List the regular files directly inside *folder* as (name, reader) pairs.

    Sub-folders are not descended into.  Raises DirectorySelectionError if the
    folder does not exist or cannot be listed.
    """
    folder = Path(folder)
    try:
        if not folder.is_dir():
            raise DirectorySelectionError(f"Sessions folder not found: {folder}")
        paths = sorted(p for p in folder.iterdir() if p.is_file())
    except OSError as exc:
        raise DirectorySelectionError(f"Cannot list sessions folder {folder}: {exc}") from exc

    logger.debug("Listed %d file(s) in %s", len(paths), folder)
    return [(p.name, _file_reader(p)) for p in paths]


def _read_and_extract(entry: SessionEntry) -> Optional[SessionRecord]:
    _, reader = entry
    return extract_session(reader())


def collect_sessions(
    entries: Iterable[SessionEntry],
    max_workers: int = DEFAULT_WORKERS,
) -> List[SessionRecord]:
    """
    Read and extract every stats.xml entry concurrently, keeping valid records.

    A file that cannot be read, or whose task fails for any other reason, is
    logged and left out; it never aborts the batch.  The returned records
    follow the order of *entries*.
    """
    candidates = [entry for entry in entries if is_stats_xml(entry[0])]
    if not candidates:
        logger.info("No %s files found.", STATS_FILE_SUFFIX)
        return []

    results: Dict[int, SessionRecord] = {}
    discarded = 0
    unreadable = 0

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {
            executor.submit(_read_and_extract, entry): index
            for index, entry in enumerate(candidates)
        }
        for future in as_completed(futures):
            index = futures[future]
            name = candidates[index][0]
            try:
                record = future.result()
            except (OSError, UnicodeDecodeError) as exc:
                unreadable += 1
                logger.warning("Could not read %s: %s", name, exc)
                continue
            except Exception as exc:
                unreadable += 1
                logger.warning("Failed to process %s: %s", name, exc)
                continue

            if record is None:
                discarded += 1
                logger.debug("No usable death data in %s", name)
            else:
                results[index] = record

    sessions = [results[i] for i in sorted(results)]
    logger.info(
        "Sessions: %d candidate file(s)  |  valid: %d  |  discarded: %d  |  unreadable: %d",
        len(candidates), len(sessions), discarded, unreadable,
    )
    return sessions


def select_session_folder(initial: Optional[Path] = None) -> Path:
    """
    Ask the user for the sessions folder with a Tk directory dialog.

    Raises DirectorySelectionError when the dialog is cancelled or Tk is not
    available on this machine.
    """
    try:
        from tkinter import Tk, TclError, filedialog
    except ImportError as exc:
        raise DirectorySelectionError(f"No folder given and Tk is unavailable: {exc}") from exc

    try:
        root = Tk()
        root.withdraw()
        try:
            chosen = filedialog.askdirectory(
                title="Open your Noita sessions folder",
                initialdir=str(initial) if initial else None,
                mustexist=True,
            )
        finally:
            root.destroy()
    except TclError as exc:
        raise DirectorySelectionError(f"Could not open folder dialog: {exc}") from exc

    if not chosen:
        raise DirectorySelectionError("Folder selection cancelled.")
    return Path(chosen)


# ---------------------------------------------------------------------------
# Cause statistics
# ---------------------------------------------------------------------------


def aggregate_causes(records: Iterable[SessionRecord]) -> Dict[str, int]:
    """Count records per raw killed_by label."""
    return dict(Counter(record.cause for record in records))


def rank_causes(tally: Dict[str, int]) -> List[Tuple[str, int]]:
    """Sort by count descending, then raw label ascending (code-point order)."""
    return sorted(tally.items(), key=lambda item: (-item[1], item[0]))


def format_cause(cause: str) -> str:
    """'| fire imp' -> 'Fire imp'."""
    cleaned = _CAUSE_PREFIX_RE.sub("", cause)
    return cleaned[:1].upper() + cleaned[1:]


def format_cause_stats(ranked: List[Tuple[str, int]]) -> List[str]:
    """Display lines for a ranked cause list, or the placeholder when empty."""
    if not ranked:
        return [NO_STATS_MESSAGE]
    return [f"{format_cause(cause)}: {count}" for cause, count in ranked]
