from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from categorization import MATCH_CONFIDENCE, CategorizationEngine, load_rules
from database import Base
from models import CategoryKind, CategoryRule, RuleMatchType
from schemas import CategoryIn, RuleIn
from services import CategoryService, RuleService


def _categories(session: Session) -> tuple[int, int]:
    categories = CategoryService(session)
    groceries = categories.create(
        CategoryIn(slug="groceries", name="Courses", kind=CategoryKind.expense)
    )
    shopping = categories.create(
        CategoryIn(slug="shopping", name="Shopping", kind=CategoryKind.expense)
    )
    return groceries.id, shopping.id


def test_higher_priority_wins_then_more_specific_match() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, shopping = _categories(session)
        rule_engine = CategorizationEngine()
        rules = RuleService(session, rule_engine)
        rules.create(RuleIn(pattern="carrefour", category_id=groceries, priority=100))
        exact = rules.create(
            RuleIn(
                pattern="CB CARREFOUR MARKET",
                match_type=RuleMatchType.exact,
                category_id=shopping,
                priority=100,
            )
        )

        match = rule_engine.categorize(session, "CB CARREFOUR MARKET 12/03 X4521")
        assert match.category_id == shopping
        assert match.rule_id == exact.id
        assert match.confidence == MATCH_CONFIDENCE[RuleMatchType.exact]

        boosted = rules.create(
            RuleIn(pattern="carrefour", category_id=groceries, priority=300)
        )
        match = rule_engine.categorize(session, "CB CARREFOUR MARKET 12/03 X4521")
        assert match.category_id == groceries
        assert match.rule_id == boosted.id


def test_equal_rules_resolve_by_creation_then_id() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, shopping = _categories(session)
        stamp = datetime(2024, 1, 1, 12, 0)
        later = CategoryRule(
            pattern="monoprix",
            match_type=RuleMatchType.contains,
            category_id=shopping,
            priority=100,
            created_at=datetime(2024, 2, 1),
        )
        first = CategoryRule(
            pattern="monoprix",
            match_type=RuleMatchType.contains,
            category_id=groceries,
            priority=100,
            created_at=stamp,
        )
        twin = CategoryRule(
            pattern="monoprix",
            match_type=RuleMatchType.contains,
            category_id=shopping,
            priority=100,
            created_at=stamp,
        )
        session.add_all([later, first, twin])
        session.commit()

        ordered = [rule.id for rule in load_rules(session)]
        assert ordered == [first.id, twin.id, later.id]

        for _ in range(5):
            match = CategorizationEngine().categorize(session, "CB MONOPRIX PARIS")
            assert match.rule_id == first.id


def test_source_filter_limits_a_rule_to_one_bank() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, shopping = _categories(session)
        rule_engine = CategorizationEngine()
        rules = RuleService(session, rule_engine)
        rules.create(
            RuleIn(
                pattern="paiement carte",
                category_id=shopping,
                priority=500,
                source_filter="Boursorama",
            )
        )
        rules.create(RuleIn(pattern="paiement carte", category_id=groceries))

        assert rule_engine.categorize(session, "PAIEMENT CARTE", "boursorama").category_id == shopping
        assert rule_engine.categorize(session, "PAIEMENT CARTE", "credit_mutuel").category_id == groceries
        assert rule_engine.categorize(session, "PAIEMENT CARTE").category_id == groceries


def test_regex_rules_search_the_normalized_label() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, _ = _categories(session)
        rule_engine = CategorizationEngine()
        RuleService(session, rule_engine).create(
            RuleIn(
                pattern=r"^prlv .*(netflix|spotify)",
                match_type=RuleMatchType.regex,
                category_id=groceries,
            )
        )

        match = rule_engine.categorize(session, "PRLV SEPA Spotify AB 123456789")
        assert match is not None
        assert match.confidence == MATCH_CONFIDENCE[RuleMatchType.regex]
        assert rule_engine.categorize(session, "CB SPOTIFY") is None


def test_invalid_regex_is_rejected_and_never_loaded() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, _ = _categories(session)
        with pytest.raises(ValueError, match="Invalid regular expression"):
            RuleService(session, CategorizationEngine()).create(
                RuleIn(pattern="(", match_type=RuleMatchType.regex, category_id=groceries)
            )

        session.add(
            CategoryRule(pattern="(", match_type=RuleMatchType.regex, category_id=groceries)
        )
        session.commit()
        assert load_rules(session) == ()


def test_rule_for_unknown_category_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValueError, match="Category not found"):
            RuleService(session, CategorizationEngine()).create(
                RuleIn(pattern="carrefour", category_id=42)
            )


def test_cache_is_loaded_once_and_cleared_by_rule_changes() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, shopping = _categories(session)
        rule_engine = CategorizationEngine()
        rules = RuleService(session, rule_engine)
        rule = rules.create(RuleIn(pattern="picard", category_id=groceries))

        rule_engine.categorize(session, "CB PICARD")
        rule_engine.categorize(session, "CB PICARD")
        assert rule_engine.cache.loads == 1

        # written behind the service's back: invisible until the cache is cleared
        session.add(
            CategoryRule(
                pattern="picard",
                match_type=RuleMatchType.contains,
                category_id=shopping,
                priority=900,
            )
        )
        session.commit()
        assert rule_engine.categorize(session, "CB PICARD").category_id == groceries

        rules.toggle(rule.id, False)
        assert rule_engine.categorize(session, "CB PICARD").category_id == shopping
        assert rule_engine.cache.loads == 2

        rules.delete(rule.id)
        rule_engine.categorize(session, "CB PICARD")
        assert rule_engine.cache.loads == 3


def test_upsert_by_pattern_keeps_the_higher_priority() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries, shopping = _categories(session)
        rules = RuleService(session, CategorizationEngine())
        learned = rules.upsert_by_pattern("CB BIOCOOP 03/04 X7781", groceries)
        assert (learned.pattern, learned.match_type, learned.priority) == (
            "cb biocoop",
            RuleMatchType.exact,
            200,
        )

        rules.update(
            learned.id,
            RuleIn(
                pattern=learned.pattern,
                match_type=RuleMatchType.exact,
                category_id=groceries,
                priority=800,
            ),
        )
        again = rules.upsert_by_pattern("Cb Biocoop 17/04 X1200", shopping)

        assert again.id == learned.id
        assert again.category_id == shopping
        assert again.priority == 800
        assert len(rules.list_all()) == 1
