"""
Unit Tests for Query Classifier

Tests the ordered search rule table, query typing and personalization levels.
"""

import pytest
from datetime import datetime, timezone

from adaptive_search.query_classifier import (
    ClassificationRule,
    PersonalizationLevel,
    QueryClassifier,
    QueryComplexity,
    QueryType,
    SearchIntensity,
    SpecificityLevel,
    UrgencyLevel,
    default_recent_years,
    SEARCH_RULES,
    _no_search,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def classifier():
    """Classifier with fixed recent years so results do not depend on the date."""
    return QueryClassifier(recent_years=(2025, 2024))


# =============================================================================
# SEARCH DECISION TESTS
# =============================================================================

class TestSearchDecisions:
    """Tests for the search rule table outcomes."""

    @pytest.mark.parametrize("query", ["hi", "Hello!", "good morning", "how are you?", "hey"])
    def test_greetings_never_search(self, classifier, query):
        analysis = classifier.analyze(query)
        assert analysis.search_needed is False
        assert analysis.search_intensity == SearchIntensity.NONE
        assert analysis.query_type == QueryType.GREETING
        assert analysis.personalization_level == PersonalizationLevel.NONE
        assert analysis.matched_rule == "greeting"

    def test_bitcoin_price_needs_current_search(self, classifier):
        analysis = classifier.analyze("what is the latest price of bitcoin")
        assert analysis.search_needed is True
        assert analysis.search_intensity in (SearchIntensity.MODERATE, SearchIntensity.DEEP)
        assert analysis.matched_rule == "current_info"
        assert analysis.confidence == 0.95

    def test_current_info_with_research_goes_deep(self, classifier):
        analysis = classifier.analyze("best laptop 2025")
        assert analysis.search_intensity == SearchIntensity.DEEP
        assert analysis.recommended_sources == 6
        assert analysis.recommended_scraping == 4

    def test_creative_query_skips_search(self, classifier):
        analysis = classifier.analyze("write a poem about autumn leaves")
        assert analysis.search_needed is False
        assert analysis.matched_rule == "creative"

    def test_conceptual_query_skips_search(self, classifier):
        analysis = classifier.analyze("what is the theory of relativity")
        assert analysis.search_needed is False
        assert analysis.matched_rule == "conceptual"

    def test_conceptual_with_recent_year_is_not_conceptual(self, classifier):
        analysis = classifier.analyze("what is the meaning of the 2025 tax changes")
        assert analysis.matched_rule != "conceptual"
        assert analysis.search_needed is True

    def test_complex_research_is_comprehensive(self, classifier):
        analysis = classifier.analyze(
            "give me a detailed survey of approaches to protein folding used by academic groups"
        )
        assert analysis.search_intensity == SearchIntensity.COMPREHENSIVE
        assert analysis.recommended_sources == 8
        assert analysis.recommended_scraping == 5

    def test_general_how_to_skips_search(self, classifier):
        analysis = classifier.analyze("how to bake sourdough bread")
        assert analysis.search_needed is False
        assert analysis.matched_rule == "general_how_to"

    def test_technical_how_to_searches(self, classifier):
        analysis = classifier.analyze("how to install the library with pip")
        assert analysis.search_needed is True
        assert analysis.matched_rule == "technical_how_to"
        assert analysis.search_intensity == SearchIntensity.MODERATE

    def test_empty_query_falls_to_default(self, classifier):
        analysis = classifier.analyze("")
        assert analysis.search_needed is False
        assert analysis.matched_rule == "default"
        assert analysis.personalization_level == PersonalizationLevel.MINIMAL

    def test_intensity_none_iff_no_search(self, classifier):
        for query in ["hi", "latest AI news", "how to fix a bug in my API code", "tell me a joke"]:
            analysis = classifier.analyze(query)
            assert (analysis.search_intensity == SearchIntensity.NONE) == (not analysis.search_needed)


# =============================================================================
# RULE TABLE TESTS
# =============================================================================

class TestRuleTable:
    """Tests for rule ordering and custom tables."""

    def test_rule_order(self, classifier):
        assert classifier.describe_rules() == [
            "greeting",
            "creative",
            "conceptual",
            "current_info",
            "complex_research",
            "comparison",
            "factual_data",
            "technical_how_to",
            "general_how_to",
            "complex_specific",
            "default",
        ]

    def test_first_matching_rule_wins(self, classifier):
        # Creative precedes current_info
        analysis = classifier.analyze("write an article about the latest news")
        assert analysis.matched_rule == "creative"

    def test_custom_rule_table(self):
        always_skip = ClassificationRule("skip_all", lambda f: True, lambda f: _no_search("custom", 0.5))
        classifier = QueryClassifier(recent_years=(2025,), rules=[always_skip])

        analysis = classifier.analyze("latest bitcoin price")

        assert analysis.matched_rule == "skip_all"
        assert analysis.reasoning == "custom"
        assert classifier.describe_rules() == ["skip_all", "default"]

    def test_default_table_is_shared_constant(self, classifier):
        assert classifier.rules == SEARCH_RULES

    def test_default_recent_years(self):
        years = default_recent_years(datetime(2031, 6, 1, tzinfo=timezone.utc))
        assert years == (2031, 2030)


# =============================================================================
# FACTOR TESTS
# =============================================================================

class TestFactors:
    """Tests for extracted query factors."""

    def test_complexity_by_word_count(self, classifier):
        assert classifier.extract_factors("rust ownership").query_complexity == QueryComplexity.SIMPLE
        assert classifier.extract_factors("explain rust ownership rules to me").query_complexity == QueryComplexity.MODERATE
        assert classifier.extract_factors(
            "explain how rust ownership and borrowing rules interact with async code"
        ).query_complexity == QueryComplexity.COMPLEX

    def test_urgency_levels(self, classifier):
        assert classifier.extract_factors("need this urgent").urgency_level == UrgencyLevel.HIGH
        assert classifier.extract_factors("current weather").urgency_level == UrgencyLevel.MEDIUM
        assert classifier.extract_factors("tell me a story").urgency_level == UrgencyLevel.LOW

    def test_specificity_levels(self, classifier):
        assert classifier.extract_factors("NASA budget 2024").specificity_level == SpecificityLevel.VERY_SPECIFIC
        assert classifier.extract_factors("NASA budget").specificity_level == SpecificityLevel.SPECIFIC
        assert classifier.extract_factors("space budget").specificity_level == SpecificityLevel.VAGUE

    def test_recent_year_factor(self, classifier):
        assert classifier.extract_factors("phones in 2025").has_recent_year is True
        assert classifier.extract_factors("phones in 1999").has_recent_year is False

    def test_analysis_to_dict(self, classifier):
        data = classifier.analyze("latest AI news").to_dict()
        assert data["search_intensity"] in ("moderate", "deep")
        assert data["factors"]["has_current_info_keywords"] is True
        assert data["factors"]["query_complexity"] == "simple"


# =============================================================================
# QUERY TYPE AND PERSONALIZATION TESTS
# =============================================================================

class TestPersonalization:
    """Tests for query typing and personalization level."""

    def test_personal_with_preference_is_high(self, classifier):
        analysis = classifier.analyze("I prefer quiet keyboards, which should I buy")
        assert analysis.query_type == QueryType.PERSONAL
        assert analysis.personalization_level == PersonalizationLevel.HIGH

    def test_personal_without_preference_is_moderate(self, classifier):
        analysis = classifier.analyze("my laptop battery drains overnight")
        assert analysis.query_type == QueryType.PERSONAL
        assert analysis.personalization_level == PersonalizationLevel.MODERATE

    def test_technical_is_minimal(self, classifier):
        analysis = classifier.analyze("why does this function throw an error")
        assert analysis.query_type == QueryType.TECHNICAL
        assert analysis.personalization_level == PersonalizationLevel.MINIMAL

    def test_creative_is_moderate(self, classifier):
        analysis = classifier.analyze("brainstorm names for a bakery")
        assert analysis.query_type == QueryType.CREATIVE
        assert analysis.personalization_level == PersonalizationLevel.MODERATE

    def test_research_is_minimal(self, classifier):
        analysis = classifier.analyze("industry overview of solar panels")
        assert analysis.query_type == QueryType.RESEARCH
        assert analysis.personalization_level == PersonalizationLevel.MINIMAL


# =============================================================================
# UTILITY TESTS
# =============================================================================

class TestUtilities:

    def test_should_search(self, classifier):
        assert classifier.should_search("hi") is False
        assert classifier.should_search("bitcoin price today") is True

    def test_get_search_strategy(self, classifier):
        strategy = classifier.get_search_strategy("bitcoin price today")
        assert strategy["intensity"] == "moderate"
        assert strategy["sources"] == 4
        assert strategy["scraping"] == 3
        assert strategy["reasoning"]
