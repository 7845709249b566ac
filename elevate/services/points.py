"""
Points catalog: which normalized tags earn credit, and how much.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional

from ..config import Settings, get_settings


@dataclass(frozen=True)
class PointsCatalog:
    """Recognized learn tags and their point values."""

    learn_tags: frozenset[str]
    default_points: int = 20
    overrides: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PointsCatalog":
        settings = settings or get_settings()
        return cls(
            learn_tags=settings.learn_tags,
            default_points=settings.LEARN_DEFAULT_POINTS,
            overrides=settings.tag_points,
        )

    def is_recognized(self, tag_norm: str) -> bool:
        return tag_norm in self.learn_tags

    def points_for(self, tag_norm: str) -> int:
        return self.overrides.get(tag_norm, self.default_points)
