"""
Rule-based Query Classifier for search and personalization decisions.

Scores a query's need for web search (and how aggressive that search should
be) and how much of the user's stored memory should shape the answer.
Pure, deterministic and synchronous: no I/O, no model calls.

Pattern families (greeting, current-information, research, factual-data,
how-to, conceptual, creative, comparison, technical, urgency) are evaluated
once into a QueryFactors record. The search decision is then the first match
of an ordered rule table, so rules can be tested and reordered independently.

Usage:
    from adaptive_search.query_classifier import QueryClassifier

    classifier = QueryClassifier()
    analysis = classifier.analyze("what is the latest price of bitcoin")
    if analysis.search_needed:
        print(analysis.search_intensity, analysis.recommended_sources)
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger("adaptive_search.query_classifier")


class SearchIntensity(str, Enum):
    """How many sources to fetch and scrape."""
    NONE = "none"
    LIGHT = "light"
    MODERATE = "moderate"
    DEEP = "deep"
    COMPREHENSIVE = "comprehensive"


class QueryType(str, Enum):
    GREETING = "greeting"
    FACTUAL = "factual"
    PERSONAL = "personal"
    TECHNICAL = "technical"
    CREATIVE = "creative"
    RESEARCH = "research"
    GENERAL = "general"


class PersonalizationLevel(str, Enum):
    """How much stored user memory should influence the answer."""
    NONE = "none"
    MINIMAL = "minimal"
    MODERATE = "moderate"
    HIGH = "high"


class QueryComplexity(str, Enum):
    SIMPLE = "simple"      # <= 3 words
    MODERATE = "moderate"  # <= 8 words
    COMPLEX = "complex"


class UrgencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SpecificityLevel(str, Enum):
    VAGUE = "vague"
    SPECIFIC = "specific"
    VERY_SPECIFIC = "very_specific"


def _compile(*patterns: str, flags: int = re.IGNORECASE) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, flags) for p in patterns)


GREETING_PATTERNS = _compile(
    r"^(hi|hello|hey|yo|sup|howdy|greetings?)[\s!?.]*$",
    r"^(good\s+(morning|afternoon|evening|day|night))[\s!?.]*$",
    r"^(what'?s\s+up|whats?\s+up|wassup|wazzup)[\s!?.]*$",
    r"^(how'?s\s+it\s+going|how\s+are\s+you|how\s+do\s+you\s+do)[\s!?.]*$",
    r"^(hola|bonjour|namaste|aloha)[\s!?.]*$",
    r"^(welcome|welcome\s+back)[\s!?.]*$",
)

# The first current-information pattern also carries the recent-year tokens,
# which are supplied per classifier instance.
CURRENT_INFO_PATTERNS = _compile(
    r"\b(what'?s (new|happening)|breaking|trending|popular|viral)\b",
    r"\b(news|update|updates|announcement|release|launched?)\b",
    r"\b(stock|market|price|cost|pricing|rates?)\b",
    r"\b(weather|temperature|forecast)\b",
    r"\b(live|real[- ]?time|current(ly)?)\b",
)

RESEARCH_PATTERNS = _compile(
    r"\b(research|study|analysis|report|survey|findings|investigation)\b",
    r"\b(comprehensive|detailed|in[- ]?depth|thorough|complete|extensive)\b",
    r"\b(compare|comparison|vs\.?|versus|pros? and cons?|advantages?|disadvantages?)\b",
    r"\b(best|top|leading|recommended|popular|most)\b",
    r"\b(industry|market|trend|landscape|overview)\b",
    r"\b(explain|understand|learn|how does|why does|what are the)\b",
)

FACTUAL_DATA_PATTERNS = _compile(
    r"\b(statistics|stats|data|numbers|figures|metrics)\b",
    r"\b(how (much|many)|what (percentage|percent)|rate|ratio)\b",
    r"\b(population|size|count|amount|quantity)\b",
    r"\b(results|performance|sales|revenue|profit)\b",
    r"\b(specifications?|specs|features|details)\b",
)

HOW_TO_PATTERNS = _compile(
    r"\b(how to|guide|tutorial|instructions?|steps?|process)\b",
    r"\b(setup|configure|install|create|build|make)\b",
    r"\b(fix|solve|troubleshoot|debug|resolve)\b",
    r"\b(learn|teach|show me|walk through)\b",
)

CONCEPTUAL_PATTERNS = _compile(
    r"\b(what is|definition|meaning|concept|theory|principle)\b",
    r"\b(how does|why does|explain|clarify)\b",
    r"\b(difference between|distinguish|contrast)\b",
    r"\b(history|historical|background|origin)\b",
)

CREATIVE_PATTERNS = _compile(
    r"\b(write|create|generate|come up with|brainstorm)\b",
    r"\b(story|poem|essay|article|content)\b",
    r"\b(idea|suggestion|opinion|thought|perspective)\b",
    r"\b(imagine|pretend|suppose|hypothetical)\b",
    r"\b(creative|artistic|design|style)\b",
)

COMPARISON_PATTERNS = _compile(
    r"\b(vs\.?|versus|compared? (to|with)|against)\b",
    r"\b((better|worse|superior|inferior) than)\b",
    r"\b(difference|similarities?|pros? and cons?)\b",
    r"\b(which (is|are) (better|best|faster|cheaper))\b",
)

TECH_PATTERNS = _compile(
    r"\b(API|framework|library|package|version|update)\b",
    r"\b(bug|error|issue|problem|fix|solution)\b",
    r"\b(documentation|docs|syntax|example|code)\b",
    r"\b(install|setup|configure|deploy|host)\b",
)

URGENCY_PATTERNS = _compile(
    r"\b(urgent|asap|quickly|fast|immediate|now|emergency)\b",
    r"\b(deadline|due|urgent|critical|important)\b",
    r"\b(breaking|live|happening now|just announced)\b",
)

# Case matters for acronyms, so these are compiled individually.
SPECIFICITY_INDICATORS = (
    re.compile(r"\b(exactly|specifically|precisely|particular)\b", re.IGNORECASE),
    re.compile(r"\d{4}"),           # Years
    re.compile(r'"[^"]+"'),         # Quoted terms
    re.compile(r"\b[A-Z]{2,}\b"),   # Acronyms
    re.compile(r"\b\w+\.\w+\b"),    # Domain names or dotted identifiers
)

PERSONAL_PATTERN = re.compile(r"\b(I|my|me|myself|I'm|I've|I'd|I'll)\b", re.IGNORECASE)
TECHNICAL_TYPE_PATTERN = re.compile(
    r"\b(code|programming|API|bug|error|function|class|method|debug)\b", re.IGNORECASE
)
PREFERENCE_LANGUAGE = re.compile(
    r"\b(prefer|like|want|need|help me|my style|my preference)\b", re.IGNORECASE
)
FIRST_PERSON = re.compile(r"\b(I|my|me|for me)\b", re.IGNORECASE)


def _matches(query: str, patterns: Sequence[Pattern]) -> bool:
    return any(p.search(query) for p in patterns)


def default_recent_years(now: Optional[datetime] = None) -> Tuple[int, ...]:
    """Current and previous calendar year."""
    year = (now or datetime.now(timezone.utc)).year
    return (year, year - 1)


@dataclass(frozen=True)
class QueryFactors:
    """Every pattern-family hit and derived level for one query."""
    has_current_info_keywords: bool
    has_research_keywords: bool
    has_factual_data_keywords: bool
    is_comparison: bool
    is_how_to: bool
    is_conceptual: bool
    is_creative: bool
    is_greeting: bool
    has_tech_keywords: bool
    has_recent_year: bool
    query_complexity: QueryComplexity
    urgency_level: UrgencyLevel
    specificity_level: SpecificityLevel

    def to_dict(self) -> Dict[str, Any]:
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class SearchDecision:
    """Outcome of the search rule table."""
    search_needed: bool
    intensity: SearchIntensity
    reasoning: str
    confidence: float
    sources: int
    scraping: int


@dataclass(frozen=True)
class ClassificationRule:
    """One (predicate, outcome) entry of the ordered search rule table."""
    name: str
    applies: Callable[[QueryFactors], bool]
    decide: Callable[[QueryFactors], SearchDecision]


@dataclass(frozen=True)
class QueryAnalysis:
    """
    Classification result for one query. Computed fresh per query.

    Invariant: search_intensity is NONE exactly when search_needed is False.
    """
    search_needed: bool
    search_intensity: SearchIntensity
    query_type: QueryType
    personalization_level: PersonalizationLevel
    confidence: float
    recommended_sources: int
    recommended_scraping: int
    reasoning: str
    factors: QueryFactors
    matched_rule: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "search_needed": self.search_needed,
            "search_intensity": self.search_intensity.value,
            "query_type": self.query_type.value,
            "personalization_level": self.personalization_level.value,
            "confidence": self.confidence,
            "recommended_sources": self.recommended_sources,
            "recommended_scraping": self.recommended_scraping,
            "reasoning": self.reasoning,
            "matched_rule": self.matched_rule,
            "factors": self.factors.to_dict(),
        }


def _no_search(reasoning: str, confidence: float) -> SearchDecision:
    return SearchDecision(False, SearchIntensity.NONE, reasoning, confidence, 0, 0)


def _search(intensity: SearchIntensity, reasoning: str, confidence: float) -> SearchDecision:
    sources, scraping = INTENSITY_BUDGETS[intensity]
    return SearchDecision(True, intensity, reasoning, confidence, sources, scraping)


# (recommended sources, recommended scraping) per intensity
INTENSITY_BUDGETS: Dict[SearchIntensity, Tuple[int, int]] = {
    SearchIntensity.NONE: (0, 0),
    SearchIntensity.LIGHT: (3, 2),
    SearchIntensity.MODERATE: (4, 3),
    SearchIntensity.DEEP: (6, 4),
    SearchIntensity.COMPREHENSIVE: (8, 5),
}


def _is_complex(f: QueryFactors) -> bool:
    return f.query_complexity == QueryComplexity.COMPLEX


SEARCH_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "greeting",
        lambda f: f.is_greeting,
        lambda f: _no_search("Simple greeting - no search required", 1.0),
    ),
    ClassificationRule(
        "creative",
        lambda f: f.is_creative,
        lambda f: _no_search("Creative/generative query - can be answered with internal knowledge", 0.9),
    ),
    ClassificationRule(
        "conceptual",
        lambda f: f.is_conceptual and not f.has_current_info_keywords and not f.has_recent_year,
        lambda f: _no_search("Conceptual/historical query - can be answered with existing knowledge", 0.85),
    ),
    ClassificationRule(
        "current_info",
        lambda f: f.has_current_info_keywords or f.urgency_level == UrgencyLevel.HIGH,
        lambda f: _search(
            SearchIntensity.DEEP if f.has_research_keywords else SearchIntensity.MODERATE,
            "Query requires current/real-time information",
            0.95,
        ),
    ),
    ClassificationRule(
        "complex_research",
        lambda f: f.has_research_keywords and _is_complex(f),
        lambda f: _search(
            SearchIntensity.COMPREHENSIVE,
            "Complex research query requiring thorough analysis",
            0.9,
        ),
    ),
    ClassificationRule(
        "comparison",
        lambda f: f.is_comparison,
        lambda f: _search(
            SearchIntensity.DEEP if _is_complex(f) else SearchIntensity.MODERATE,
            "Comparison query requires current data from multiple sources",
            0.85,
        ),
    ),
    ClassificationRule(
        "factual_data",
        lambda f: f.has_factual_data_keywords,
        lambda f: _search(
            SearchIntensity.MODERATE,
            "Query requires current factual data and statistics",
            0.8,
        ),
    ),
    ClassificationRule(
        "technical_how_to",
        lambda f: f.is_how_to and (
            f.has_tech_keywords or f.specificity_level == SpecificityLevel.VERY_SPECIFIC
        ),
        lambda f: _search(
            SearchIntensity.MODERATE,
            "Technical how-to query may require current documentation/examples",
            0.75,
        ),
    ),
    ClassificationRule(
        "general_how_to",
        lambda f: f.is_how_to,
        lambda f: _no_search("General how-to query can be answered with existing knowledge", 0.7),
    ),
    ClassificationRule(
        "complex_specific",
        lambda f: _is_complex(f) and f.specificity_level == SpecificityLevel.VERY_SPECIFIC,
        lambda f: _search(
            SearchIntensity.LIGHT,
            "Complex specific query - light search to verify and supplement knowledge",
            0.6,
        ),
    ),
)

DEFAULT_RULE = ClassificationRule(
    "default",
    lambda f: True,
    lambda f: _no_search("Simple query can be answered with existing knowledge", 0.8),
)

# First match wins. Each predicate sees the raw query and its factors.
QUERY_TYPE_RULES: Tuple[Tuple[QueryType, Callable[[str, QueryFactors], bool]], ...] = (
    (QueryType.GREETING, lambda q, f: f.is_greeting),
    (QueryType.PERSONAL, lambda q, f: bool(PERSONAL_PATTERN.search(q))),
    (QueryType.TECHNICAL, lambda q, f: bool(TECHNICAL_TYPE_PATTERN.search(q))),
    (QueryType.RESEARCH, lambda q, f: f.has_research_keywords),
    (QueryType.CREATIVE, lambda q, f: f.is_creative),
    (QueryType.FACTUAL, lambda q, f: f.has_factual_data_keywords or f.is_conceptual),
)


class QueryClassifier:
    """
    Rule-table query classifier.

    Args:
        recent_years: Years treated as "current information" tokens
            (defaults to the current and previous calendar year)
        rules: Ordered search rule table (defaults to SEARCH_RULES)
    """

    def __init__(
        self,
        recent_years: Optional[Sequence[int]] = None,
        rules: Optional[Sequence[ClassificationRule]] = None,
    ):
        self.recent_years = tuple(recent_years) if recent_years else default_recent_years()
        self.rules: Tuple[ClassificationRule, ...] = tuple(rules) if rules is not None else SEARCH_RULES

        years = "|".join(str(y) for y in self.recent_years)
        self._recent_year_pattern = re.compile(rf"\b({years})\b")
        self._current_info_patterns = _compile(
            rf"\b(latest|recent|current|today|now|this (year|month|week)|{years})\b"
        ) + CURRENT_INFO_PATTERNS

    def analyze(self, query: str, user_context: Optional[Any] = None) -> QueryAnalysis:
        """
        Classify a query.

        Args:
            query: Raw query text
            user_context: Optional host context (currently not consulted)

        Returns:
            QueryAnalysis for the query
        """
        query = query or ""
        factors = self.extract_factors(query)
        query_type = self._determine_query_type(query, factors)
        personalization = self._determine_personalization(query_type, query)
        rule, decision = self._decide(factors)

        logger.debug(
            f"Classified '{query[:50]}': type={query_type.value}, rule={rule.name}, "
            f"intensity={decision.intensity.value}"
        )

        return QueryAnalysis(
            search_needed=decision.search_needed,
            search_intensity=decision.intensity,
            query_type=query_type,
            personalization_level=personalization,
            confidence=decision.confidence,
            recommended_sources=decision.sources,
            recommended_scraping=decision.scraping,
            reasoning=decision.reasoning,
            factors=factors,
            matched_rule=rule.name,
        )

    def extract_factors(self, query: str) -> QueryFactors:
        """Evaluate every pattern family against the query once."""
        has_current_info = _matches(query, self._current_info_patterns)
        return QueryFactors(
            has_current_info_keywords=has_current_info,
            has_research_keywords=_matches(query, RESEARCH_PATTERNS),
            has_factual_data_keywords=_matches(query, FACTUAL_DATA_PATTERNS),
            is_comparison=_matches(query, COMPARISON_PATTERNS),
            is_how_to=_matches(query, HOW_TO_PATTERNS),
            is_conceptual=_matches(query, CONCEPTUAL_PATTERNS),
            is_creative=_matches(query, CREATIVE_PATTERNS),
            is_greeting=_matches(query, GREETING_PATTERNS),
            has_tech_keywords=_matches(query, TECH_PATTERNS),
            has_recent_year=bool(self._recent_year_pattern.search(query)),
            query_complexity=self._assess_complexity(query),
            urgency_level=self._assess_urgency(query, has_current_info),
            specificity_level=self._assess_specificity(query),
        )

    @staticmethod
    def _assess_complexity(query: str) -> QueryComplexity:
        word_count = len(re.split(r"\s+", query))
        if word_count <= 3:
            return QueryComplexity.SIMPLE
        if word_count <= 8:
            return QueryComplexity.MODERATE
        return QueryComplexity.COMPLEX

    @staticmethod
    def _assess_urgency(query: str, has_current_info: bool) -> UrgencyLevel:
        if _matches(query, URGENCY_PATTERNS):
            return UrgencyLevel.HIGH
        if has_current_info:
            return UrgencyLevel.MEDIUM
        return UrgencyLevel.LOW

    @staticmethod
    def _assess_specificity(query: str) -> SpecificityLevel:
        signals = sum(1 for pattern in SPECIFICITY_INDICATORS if pattern.search(query))
        if signals >= 2:
            return SpecificityLevel.VERY_SPECIFIC
        if signals >= 1:
            return SpecificityLevel.SPECIFIC
        return SpecificityLevel.VAGUE

    @staticmethod
    def _determine_query_type(query: str, factors: QueryFactors) -> QueryType:
        for query_type, predicate in QUERY_TYPE_RULES:
            if predicate(query, factors):
                return query_type
        return QueryType.GENERAL

    @staticmethod
    def _determine_personalization(query_type: QueryType, query: str) -> PersonalizationLevel:
        if query_type == QueryType.GREETING:
            return PersonalizationLevel.NONE
        if query_type in (QueryType.FACTUAL, QueryType.TECHNICAL):
            return PersonalizationLevel.MINIMAL
        if query_type == QueryType.PERSONAL:
            if PREFERENCE_LANGUAGE.search(query):
                return PersonalizationLevel.HIGH
            return PersonalizationLevel.MODERATE
        if query_type == QueryType.CREATIVE:
            return PersonalizationLevel.MODERATE
        if query_type == QueryType.RESEARCH:
            if FIRST_PERSON.search(query):
                return PersonalizationLevel.MODERATE
            return PersonalizationLevel.MINIMAL
        return PersonalizationLevel.MINIMAL

    def _decide(self, factors: QueryFactors) -> Tuple[ClassificationRule, SearchDecision]:
        for rule in self.rules:
            if rule.applies(factors):
                return rule, rule.decide(factors)
        return DEFAULT_RULE, DEFAULT_RULE.decide(factors)

    # Quick utility methods
    def should_search(self, query: str, user_context: Optional[Any] = None) -> bool:
        return self.analyze(query, user_context).search_needed

    def get_search_strategy(self, query: str, user_context: Optional[Any] = None) -> Dict[str, Any]:
        """Intensity, source/scrape budget and reasoning for a query."""
        analysis = self.analyze(query, user_context)
        return {
            "intensity": analysis.search_intensity.value,
            "sources": analysis.recommended_sources,
            "scraping": analysis.recommended_scraping,
            "reasoning": analysis.reasoning,
        }

    def describe_rules(self) -> List[str]:
        """Names of the search rules in evaluation order."""
        return [rule.name for rule in self.rules] + [DEFAULT_RULE.name]
