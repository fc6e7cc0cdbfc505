"""
JSON persistence for theme forests.

Dates are written as ISO-8601 strings and parents own their children, so a
forest round-trips without loss. Reading validates the hierarchy before
handing it back.
"""

import json
import logging
from pathlib import Path

import aiofiles
import aiofiles.os

from .errors import HierarchyIntegrityError
from .hierarchy import count_themes, validate_hierarchy_integrity
from .models import ConsolidatedTheme

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def forest_to_json(themes: list[ConsolidatedTheme]) -> str:
    return json.dumps(
        {"version": FORMAT_VERSION, "themes": [theme.to_dict() for theme in themes]},
        indent=2,
        ensure_ascii=False,
    )


def forest_from_json(text: str) -> list[ConsolidatedTheme]:
    """Parse a serialized forest; accepts a bare list of themes too."""
    payload = json.loads(text)
    if isinstance(payload, dict):
        version = payload.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported forest format version: {version}")
        payload = payload.get("themes", [])
    if not isinstance(payload, list):
        raise ValueError("Serialized forest must be a list of themes")

    themes = [ConsolidatedTheme.from_dict(item) for item in payload]
    report = validate_hierarchy_integrity(themes)
    if not report.is_valid:
        raise HierarchyIntegrityError("Loaded forest is not a valid hierarchy", report.problems)
    return themes


async def save_forest(path: str | Path, themes: list[ConsolidatedTheme]) -> None:
    """
    Write the forest to path as UTF-8 JSON, creating parent directories.

    The JSON goes to a sibling temp file that then replaces path, so a
    failed write leaves any previous file untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
            await f.write(forest_to_json(themes))
        await aiofiles.os.replace(tmp_path, path)
    except Exception:
        if await aiofiles.os.path.exists(tmp_path):
            await aiofiles.os.remove(tmp_path)
        raise
    logger.debug(f"[PERSISTENCE] Saved {count_themes(themes)} themes to {path}")


async def load_forest(path: str | Path) -> list[ConsolidatedTheme]:
    path = Path(path)
    async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
        text = await f.read()
    themes = forest_from_json(text)
    logger.debug(f"[PERSISTENCE] Loaded {count_themes(themes)} themes from {path}")
    return themes
