"""
Elevate Engine - Badge Evaluation

Badges are sticky and derived from tag grants. Evaluation is idempotent:
badges are inserted with ON CONFLICT DO NOTHING, so calling it twice for the
same user never grants twice.

Default rule set:
    STARTER - the user holds a grant for every configured learn tag
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ..config import Settings, get_settings
from ..core.logging import get_logger
from ..core.transactions import Inserted
from .repository import IngestRepository

logger = get_logger(__name__)

STARTER_BADGE = "STARTER"


@dataclass(frozen=True)
class BadgeRule:
    """A badge earned once the user holds every tag in required_tags."""

    code: str
    required_tags: frozenset[str]

    def is_satisfied(self, held_tags: set[str]) -> bool:
        return bool(self.required_tags) and self.required_tags <= held_tags


class BadgeEvaluator:
    """Checks badge rules for a user and records newly earned badges."""

    def __init__(self, rules: Iterable[BadgeRule]):
        self.rules = tuple(rules)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BadgeEvaluator":
        settings = settings or get_settings()
        return cls([BadgeRule(STARTER_BADGE, settings.learn_tags)])

    async def evaluate(self, repo: IngestRepository, user_id: str) -> list[str]:
        """
        Grant every badge whose rule the user now satisfies.

        Returns:
            Codes of badges inserted by this call (already-held badges omitted).
        """
        if not self.rules:
            return []

        held_tags = await repo.user_tag_grants(user_id)
        granted: list[str] = []
        for rule in self.rules:
            if not rule.is_satisfied(held_tags):
                continue
            outcome = await repo.insert_badge(user_id, rule.code)
            if isinstance(outcome, Inserted):
                granted.append(rule.code)

        if granted:
            logger.info(
                f"Badges granted: {', '.join(granted)}",
                extra={"user_id": user_id, "count": len(granted)},
            )
        return granted
