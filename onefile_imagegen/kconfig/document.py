"""Kernel configuration documents.

This module handles:
- Parsing line-oriented ``KEY=value`` / ``# KEY is not set`` records
- An ordered, key-unique document model
- Rendering documents back to text

Comment and blank lines carry no settings and are not preserved.
Two documents are equal when they hold the same settings, regardless of
line order.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

KEY_PATTERN = r"[A-Za-z_][A-Za-z0-9_]*"
SETTING_RE = re.compile(rf"^\s*({KEY_PATTERN})=(.*?)\s*$")
UNSET_RE = re.compile(rf"^\s*#\s*({KEY_PATTERN}) is not set\s*$")


class MergeError(Exception):
    """Raised when a config document or overlay is missing or malformed."""

    def __init__(
        self,
        message: str,
        path: Path | None = None,
        line_number: int | None = None,
        code: str = "malformed_line",
    ) -> None:
        super().__init__(message)
        self.path = path
        self.line_number = line_number
        self.code = code


@dataclass(frozen=True)
class ConfigSetting:
    """A single setting; ``value is None`` means explicitly not set."""

    key: str
    value: str | None

    @property
    def is_unset(self) -> bool:
        return self.value is None

    def render(self) -> str:
        if self.value is None:
            return f"# {self.key} is not set"
        return f"{self.key}={self.value}"


def parse_settings(text: str, source: str = "<string>") -> list[ConfigSetting]:
    """Parse setting lines from config text.

    Args:
        text: Document or overlay content.
        source: Name used in error messages.

    Returns:
        Settings in file order.

    Raises:
        MergeError: On a line that is neither a comment nor a setting.
    """
    settings: list[ConfigSetting] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue

        unset = UNSET_RE.match(stripped)
        if unset:
            settings.append(ConfigSetting(unset.group(1), None))
            continue
        if stripped.startswith("#"):
            continue

        match = SETTING_RE.match(stripped)
        if not match:
            raise MergeError(
                f"{source}:{line_number}: unparseable line: {stripped!r}",
                line_number=line_number,
            )
        settings.append(ConfigSetting(match.group(1), match.group(2)))
    return settings


class ConfigDocument:
    """Ordered kernel configuration with at most one record per key."""

    def __init__(self, settings: Iterable[ConfigSetting] = (), name: str = "") -> None:
        self.name = name
        self._values: dict[str, str | None] = {}
        for setting in settings:
            self._values.pop(setting.key, None)
            self._values[setting.key] = setting.value

    @classmethod
    def parse(cls, text: str, name: str = "<string>") -> ConfigDocument:
        """Parse a document from text."""
        return cls(parse_settings(text, source=name), name=name)

    @classmethod
    def load(cls, path: Path) -> ConfigDocument:
        """Load a document from a file.

        Raises:
            MergeError: If the file does not exist or is malformed.
        """
        if not path.is_file():
            raise MergeError(
                f"Config document not found: {path}",
                path=path,
                code="missing_document",
            )
        try:
            return cls.parse(path.read_text(encoding="utf-8"), name=str(path))
        except MergeError as e:
            e.path = path
            raise

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[ConfigSetting]:
        for key, value in self._values.items():
            yield ConfigSetting(key, value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigDocument):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"<ConfigDocument(name='{self.name}', settings={len(self)})>"

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value of a key (None for unset or absent)."""
        return self._values.get(key, default)

    def is_set(self, key: str) -> bool:
        """True when the key has a value (not absent, not unset)."""
        return self._values.get(key) is not None

    def keys(self) -> list[str]:
        return list(self._values)

    def as_dict(self) -> dict[str, str | None]:
        return dict(self._values)

    def with_settings(
        self, settings: Iterable[ConfigSetting]
    ) -> tuple[ConfigDocument, int, int]:
        """Return a copy with the settings applied in order.

        Any existing record for a key, whether a value or a "not set"
        marker, is removed before the new record is appended.

        Args:
            settings: Settings to apply.

        Returns:
            Tuple of (updated document, keys added, keys modified).
        """
        updated = ConfigDocument(self, name=self.name)
        added = modified = 0
        for setting in settings:
            if setting.key in updated._values:
                del updated._values[setting.key]
                modified += 1
            else:
                added += 1
            updated._values[setting.key] = setting.value
        return updated, added, modified

    def render(self) -> str:
        """Render the document as config text."""
        lines = [setting.render() for setting in self]
        return "\n".join(lines) + "\n" if lines else ""

    def write(self, path: Path) -> Path:
        """Write the rendered document to a file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        logger.debug("Wrote %d config records to %s", len(self), path)
        return path


__all__ = [
    "ConfigDocument",
    "ConfigSetting",
    "MergeError",
    "parse_settings",
]
