"""Configuration overlay merging.

This module handles:
- Overlay fragments scoped to one component (or an ad hoc custom overlay)
- Fixed application priority: component overlays before custom overlays
- Idempotent application with later-applied-wins on key conflicts
- Added/modified statistics for observability
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from onefile_imagegen.kconfig.document import (
    ConfigDocument,
    ConfigSetting,
    MergeError,
    parse_settings,
)

logger = logging.getLogger(__name__)


class OverlayOrigin(str, Enum):
    """Where an overlay comes from; determines application priority."""

    COMPONENT = "component"
    CUSTOM = "custom"

    @property
    def priority(self) -> int:
        return 0 if self is OverlayOrigin.COMPONENT else 1


@dataclass(frozen=True)
class ConfigOverlay:
    """Ordered settings (including "not set" markers) for one component.

    Attributes:
        name: Component or overlay name.
        settings: Settings in fragment order.
        origin: Component-group or custom overlay.
        source: File the overlay was loaded from, if any.
    """

    name: str
    settings: tuple[ConfigSetting, ...]
    origin: OverlayOrigin = OverlayOrigin.COMPONENT
    source: Path | None = None

    @classmethod
    def parse(
        cls,
        text: str,
        name: str,
        origin: OverlayOrigin = OverlayOrigin.COMPONENT,
    ) -> ConfigOverlay:
        """Parse an overlay fragment from text.

        Raises:
            MergeError: On an unparseable line.
        """
        return cls(name, tuple(parse_settings(text, source=name)), origin)

    @classmethod
    def load(
        cls,
        path: Path,
        name: str | None = None,
        origin: OverlayOrigin = OverlayOrigin.COMPONENT,
    ) -> ConfigOverlay:
        """Load an overlay fragment from a file.

        Raises:
            MergeError: If the file does not exist or is malformed.
        """
        if not path.is_file():
            raise MergeError(
                f"Config overlay not found: {path}",
                path=path,
                code="missing_overlay",
            )
        try:
            settings = parse_settings(path.read_text(encoding="utf-8"), str(path))
        except MergeError as e:
            e.path = path
            raise
        return cls(name or path.stem, tuple(settings), origin, path)

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(s.key for s in self.settings)


@dataclass
class OverlayStats:
    """Diagnostic counts for one applied overlay."""

    name: str
    added: int
    modified: int


def apply_overlay(
    document: ConfigDocument,
    overlay: ConfigOverlay,
) -> tuple[ConfigDocument, OverlayStats]:
    """Apply one overlay to a document.

    Args:
        document: Accumulating document.
        overlay: Overlay to apply.

    Returns:
        Tuple of (new document, statistics).
    """
    updated, added, modified = document.with_settings(overlay.settings)
    return updated, OverlayStats(overlay.name, added, modified)


def order_overlays(overlays: Sequence[ConfigOverlay]) -> list[ConfigOverlay]:
    """Stable-sort overlays by origin priority."""
    return sorted(overlays, key=lambda o: o.origin.priority)


def merge_with_stats(
    base: ConfigDocument,
    overlays: Sequence[ConfigOverlay],
) -> tuple[ConfigDocument, list[OverlayStats]]:
    """Merge overlays into a base document and report statistics.

    Args:
        base: Base document.
        overlays: Overlays in selection order.

    Returns:
        Tuple of (effective document, per-overlay statistics).
    """
    document = base
    stats: list[OverlayStats] = []
    for overlay in order_overlays(overlays):
        document, overlay_stats = apply_overlay(document, overlay)
        stats.append(overlay_stats)
        logger.info(
            "Applied overlay %s: features added: %d, features modified: %d",
            overlay.name,
            overlay_stats.added,
            overlay_stats.modified,
        )
    return document, stats


def merge(
    base: ConfigDocument,
    overlays: Sequence[ConfigOverlay],
) -> ConfigDocument:
    """Merge overlays into a base document.

    Component overlays are applied before custom overlays; within each
    group the given order is kept and later overlays win on conflicts.

    Args:
        base: Base document.
        overlays: Overlays in selection order.

    Returns:
        Effective document.
    """
    document, _ = merge_with_stats(base, overlays)
    return document


__all__ = [
    "ConfigOverlay",
    "OverlayOrigin",
    "OverlayStats",
    "apply_overlay",
    "merge",
    "merge_with_stats",
    "order_overlays",
]
