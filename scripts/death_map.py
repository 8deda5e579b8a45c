"""death_map.py — Plot Noita deaths on the world map and rank causes of death.

Reads every "*stats.xml" file directly inside a Noita sessions folder, draws a
marker for each recorded death on the bundled world map image and prints how
often each cause of death occurred.

World -> image projection:
    The background image is a fixed-size render of the Noita world.  Game
    coordinates are mapped onto its pixels with a single scale and offset
    calibrated against that image:

        image_x = world_x / MAP_SCALE + MAP_OFFSET_X
        image_y = world_y / MAP_SCALE + MAP_OFFSET_Y

    The constants below MUST be re-calibrated if the map image is replaced.
    Points falling outside the image are not clamped; Pillow clips them.

Usage:
    python scripts/death_map.py [FOLDER] [--map PATH] [--output PATH]
                                [--no-export] [--workers N] [--verbose]

    FOLDER       Noita sessions folder.  A folder dialog opens when omitted.
    --map        Background image (default: assets/map.png).
    --output     Where to write the rendered map (default: noita_map.png).
    --no-export  Only print the cause-of-death statistics.

Exit status:
    0  statistics printed (and map written unless --no-export)
    1  no folder selected or the folder could not be read
    2  statistics printed but the map image could not be rendered or written
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from PIL import Image, ImageDraw

from noita_sessions import (
    DEFAULT_WORKERS,
    DeathMapError,
    DirectorySelectionError,
    SessionRecord,
    aggregate_causes,
    collect_sessions,
    format_cause_stats,
    list_session_folder,
    rank_causes,
    select_session_folder,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

SCRIPT_DIR = Path(__file__).resolve().parent
REPO_ROOT = SCRIPT_DIR.parent

MAP_IMAGE_PATH = REPO_ROOT / "assets" / "map.png"
DEFAULT_OUTPUT = Path("noita_map.png")

# ---------------------------------------------------------------------------
# Map calibration -- MUST match MAP_IMAGE_PATH
# ---------------------------------------------------------------------------

MAP_WIDTH: int = 8417
MAP_HEIGHT: int = 5000
MAP_SCALE: float = 3.7       # world units per image pixel
MAP_OFFSET_X: float = 3910   # image x of world x = 0
MAP_OFFSET_Y: float = 480    # image y of world y = 0

# ---------------------------------------------------------------------------
# Marker style
# ---------------------------------------------------------------------------

MARKER_SIZE: int = 20            # circle radius in pixels
MARKER_STROKE_WIDTH: int = 10    # outline width, centred on the circle edge
MARKER_STROKE_COLOR: str = "red"
MARKER_FILL: str = "white"

STATS_HEADING = "Death Reason Statistics"


class MapImageError(DeathMapError):
    """The map image could not be loaded or written."""


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectedPoint:
    """A position in map-image pixels."""
    x: float
    y: float


def project(record) -> ProjectedPoint:
    """Map a world position (anything with .x and .y) to image pixels."""
    return ProjectedPoint(
        x=record.x / MAP_SCALE + MAP_OFFSET_X,
        y=record.y / MAP_SCALE + MAP_OFFSET_Y,
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def load_background(map_path: Path) -> Image.Image:
    """
    Open the background map as RGBA.

    Raises MapImageError when the file is missing or not an image Pillow can
    decode.
    """
    try:
        with Image.open(map_path) as img:
            background = img.convert("RGBA")
    except OSError as exc:
        raise MapImageError(f"Failed to load map image {map_path}: {exc}") from exc

    logger.debug("Background %s: %dx%d", map_path, *background.size)
    return background


def draw_marker(draw: ImageDraw.ImageDraw, point: ProjectedPoint) -> None:
    """
    Draw one death marker centred on *point*.

    Pillow draws outlines inside the bounding box, so the box is grown by half
    the stroke width to centre the stroke on the MARKER_SIZE circle.
    """
    r = MARKER_SIZE + MARKER_STROKE_WIDTH / 2
    draw.ellipse(
        (point.x - r, point.y - r, point.x + r, point.y + r),
        fill=MARKER_FILL,
        outline=MARKER_STROKE_COLOR,
        width=MARKER_STROKE_WIDTH,
    )


def render_death_map(
    sessions: Iterable[SessionRecord],
    map_path: Path = MAP_IMAGE_PATH,
    size: Tuple[int, int] = (MAP_WIDTH, MAP_HEIGHT),
    projector: Callable[[SessionRecord], ProjectedPoint] = project,
) -> Image.Image:
    """
    Paste the background at the origin of a *size* canvas and draw one marker
    per session, in order.  Raises MapImageError if the background fails.
    """
    background = load_background(map_path)

    canvas = Image.new("RGBA", size, (0, 0, 0, 0))
    canvas.paste(background, (0, 0), background)

    draw = ImageDraw.Draw(canvas)
    count = 0
    for session in sessions:
        draw_marker(draw, projector(session))
        count += 1

    logger.info("Rendered %d marker(s) on %dx%d map", count, *size)
    return canvas


def export_map(canvas: Image.Image, output: Path = DEFAULT_OUTPUT) -> Path:
    """
    Write the rendered map as PNG and return the path written.

    Raises MapImageError when the file cannot be written.
    """
    output = Path(output)
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        canvas.save(output, format="PNG")
    except OSError as exc:
        raise MapImageError(f"Failed to write map image {output}: {exc}") from exc
    logger.info("Map written to %s", output)
    return output


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MapState:
    """
    Everything the display reads.  Replaced as a whole after each completed
    batch so a failed or superseded batch never leaves a partial update.
    """
    sessions: Optional[List[SessionRecord]] = None
    cause_tally: Dict[str, int] = field(default_factory=dict)
    map_ready: bool = False


class DeathMapApp:
    """Folder selection, statistics and map rendering for one user session."""

    def __init__(
        self,
        map_path: Path = MAP_IMAGE_PATH,
        max_workers: int = DEFAULT_WORKERS,
        render: bool = True,
    ):
        self.map_path = Path(map_path)
        self.max_workers = max_workers
        self.render_enabled = render

        self.state = MapState()
        self.canvas: Optional[Image.Image] = None
        self._generation = 0

    def open_folder(self, folder: Optional[Path] = None) -> bool:
        """
        Process a sessions folder, asking the user for one if *folder* is None.

        Returns False, leaving the current state untouched, when the folder
        cannot be selected or listed, or when a newer call to open_folder
        started while this one was still collecting.
        """
        self._generation += 1
        generation = self._generation

        try:
            if folder is None:
                folder = select_session_folder()
            entries = list_session_folder(folder)
            sessions = collect_sessions(entries, max_workers=self.max_workers)
        except DirectorySelectionError as exc:
            logger.error("Error processing directory: %s", exc)
            return False

        if generation != self._generation:
            logger.info("Discarding results for %s; a newer folder was opened.", folder)
            return False

        self.state = MapState(
            sessions=sessions,
            cause_tally=aggregate_causes(sessions),
            map_ready=False,
        )
        if self.render_enabled:
            self.render()
        return True

    def render(self) -> bool:
        """(Re)draw the map for the current sessions; sets state.map_ready."""
        if self.state.sessions is None:
            self.canvas = None
            self.state = replace(self.state, map_ready=False)
            return False

        try:
            self.canvas = render_death_map(self.state.sessions, self.map_path)
        except MapImageError as exc:
            logger.error("%s", exc)
            self.canvas = None
            self.state = replace(self.state, map_ready=False)
            return False

        self.state = replace(self.state, map_ready=True)
        return True

    def download(self, output: Path = DEFAULT_OUTPUT) -> Optional[Path]:
        """
        Export the rendered map; None when there is nothing to export.
        Raises MapImageError when the file cannot be written.
        """
        if not self.state.map_ready or self.canvas is None:
            logger.warning("Map has not been rendered; nothing to export.")
            return None
        return export_map(self.canvas, output)

    def ranked_causes(self) -> List[Tuple[str, int]]:
        return rank_causes(self.state.cause_tally)

    def stats_lines(self) -> List[str]:
        return format_cause_stats(self.ranked_causes())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description=(
            "Plot Noita deaths on the world map and rank causes of death.\n"
            "Reads every *stats.xml file directly inside the sessions folder."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument(
        "folder", nargs="?", type=Path,
        help="Noita sessions folder.  A folder dialog opens when omitted.",
    )
    p.add_argument(
        "--map", type=Path, default=MAP_IMAGE_PATH,
        help=f"Background map image (default: {MAP_IMAGE_PATH})",
    )
    p.add_argument(
        "--output", "-o", type=Path, default=DEFAULT_OUTPUT,
        help=f"Rendered map destination (default: {DEFAULT_OUTPUT})",
    )
    p.add_argument(
        "--no-export", action="store_true",
        help="Print statistics only; do not render or write the map.",
    )
    p.add_argument(
        "--workers", type=int, default=DEFAULT_WORKERS,
        help=f"Threads used to read session files (default: {DEFAULT_WORKERS})",
    )
    p.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable DEBUG-level logging.",
    )
    return p.parse_args(argv)


def print_stats(lines: List[str]) -> None:
    print()
    print(STATS_HEADING)
    print("-" * len(STATS_HEADING))
    for line in lines:
        print(line)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.workers < 1:
        logger.error("--workers must be at least 1.")
        sys.exit(1)

    app = DeathMapApp(
        map_path=args.map,
        max_workers=args.workers,
        render=not args.no_export,
    )

    if not app.open_folder(args.folder):
        sys.exit(1)

    print_stats(app.stats_lines())

    if args.no_export:
        return

    if not app.state.map_ready:
        logger.error("Map could not be rendered; statistics only.")
        sys.exit(2)

    try:
        app.download(args.output)
    except MapImageError as exc:
        logger.error("%s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
