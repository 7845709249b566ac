"""
Tests for the points catalog and badge rules.
"""

import pytest

from elevate.config import get_settings
from elevate.services.badges import STARTER_BADGE, BadgeEvaluator, BadgeRule
from elevate.services.points import PointsCatalog
from tests.helpers import TAG_1, TAG_2, FakeStore


class TestPointsCatalog:
    def test_from_settings(self, test_env):
        test_env.setenv("KAJABI_TAG_POINTS", "Elevate AI 2 Completed=50")
        test_env.setenv("LEARN_DEFAULT_POINTS", "15")
        catalog = PointsCatalog.from_settings(get_settings())

        assert catalog.is_recognized(TAG_1)
        assert not catalog.is_recognized("elevate-ai-3-completed")
        assert catalog.points_for(TAG_1) == 15
        assert catalog.points_for(TAG_2) == 50


class TestBadgeRule:
    def test_satisfied_only_with_every_tag(self):
        rule = BadgeRule(STARTER_BADGE, frozenset({TAG_1, TAG_2}))
        assert not rule.is_satisfied({TAG_1})
        assert rule.is_satisfied({TAG_1, TAG_2, "something-else"})

    def test_empty_rule_never_satisfied(self):
        assert not BadgeRule(STARTER_BADGE, frozenset()).is_satisfied({TAG_1})


class TestBadgeEvaluator:
    @pytest.mark.asyncio
    async def test_grants_once(self):
        store = FakeStore()
        store.add_user("u1", contact_id="c1")
        evaluator = BadgeEvaluator([BadgeRule(STARTER_BADGE, frozenset({TAG_1}))])

        async with store.transaction() as repo:
            await repo.insert_tag_grant("u1", TAG_1)
            first = await evaluator.evaluate(repo, "u1")
            second = await evaluator.evaluate(repo, "u1")

        assert first == [STARTER_BADGE]
        assert second == []
        assert store.badges == {("u1", STARTER_BADGE)}

    def test_default_rules_use_learn_tags(self):
        evaluator = BadgeEvaluator.from_settings(get_settings())
        assert evaluator.rules == (BadgeRule(STARTER_BADGE, frozenset({TAG_1, TAG_2})),)
