import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from csv_utils import normalize_header
from descriptions import matching_key
from models import CategoryRule, RuleMatchType
from seed import BANK_CATEGORY_MAP

logger = logging.getLogger(__name__)

MATCH_CONFIDENCE = {
    RuleMatchType.exact: 0.95,
    RuleMatchType.contains: 0.8,
    RuleMatchType.regex: 0.7,
}
TRANSFER_CONFIDENCE = 0.9
AUTHORITATIVE_CONFIDENCE = 1.0

_SPECIFICITY = {
    RuleMatchType.exact: 0,
    RuleMatchType.contains: 1,
    RuleMatchType.regex: 2,
}


@dataclass(frozen=True)
class RuleSnapshot:
    id: int
    pattern: str
    match_type: RuleMatchType
    category_id: int
    priority: int
    source_filter: Optional[str]
    created_at: datetime
    compiled: Optional[re.Pattern] = field(default=None, compare=False, repr=False)

    @property
    def sort_key(self) -> tuple:
        return (-self.priority, _SPECIFICITY[self.match_type], self.created_at, self.id)

    def applies_to(self, source_key: Optional[str]) -> bool:
        if not self.source_filter:
            return True
        return (source_key or "").lower() == self.source_filter.lower()

    def matches(self, key: str) -> bool:
        if self.match_type == RuleMatchType.exact:
            return key == self.pattern
        if self.match_type == RuleMatchType.contains:
            return self.pattern in key
        return self.compiled is not None and self.compiled.search(key) is not None


@dataclass(frozen=True)
class CategoryMatch:
    category_id: int
    confidence: float
    rule_id: Optional[int] = None


def snapshot_rule(rule: CategoryRule) -> Optional[RuleSnapshot]:
    compiled = None
    if rule.match_type == RuleMatchType.regex:
        pattern = rule.pattern.strip()
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error:
            logger.warning(f"rule_skipped: id={rule.id} reason=invalid_regex")
            return None
    else:
        pattern = matching_key(rule.pattern)
        if not pattern:
            return None
    return RuleSnapshot(
        id=rule.id,
        pattern=pattern,
        match_type=rule.match_type,
        category_id=rule.category_id,
        priority=rule.priority,
        source_filter=rule.source_filter,
        created_at=rule.created_at,
        compiled=compiled,
    )


def load_rules(session: Session) -> tuple[RuleSnapshot, ...]:
    rules = session.scalars(
        select(CategoryRule).where(CategoryRule.is_active.is_(True))
    ).all()
    snapshots = [snap for snap in (snapshot_rule(rule) for rule in rules) if snap]
    snapshots.sort(key=lambda snap: snap.sort_key)
    return tuple(snapshots)


class RuleCache:
    """
    Active rules in evaluation order, loaded on first use.

    Entries never expire on their own; callers that change rules call
    ``invalidate`` and the next ``get`` reloads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: Optional[tuple[RuleSnapshot, ...]] = None
        self.loads = 0

    def get(self, session: Session) -> tuple[RuleSnapshot, ...]:
        with self._lock:
            if self._rules is None:
                self._rules = load_rules(session)
                self.loads += 1
                logger.debug(f"rule_cache_loaded: rules={len(self._rules)}")
            return self._rules

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None


class CategorizationEngine:
    def __init__(self, cache: Optional[RuleCache] = None) -> None:
        self.cache = cache or RuleCache()

    def snapshot(self, session: Session) -> tuple[RuleSnapshot, ...]:
        return self.cache.get(session)

    def categorize(
        self,
        session: Session,
        description: str,
        source_key: Optional[str] = None,
        *,
        rules: Optional[Sequence[RuleSnapshot]] = None,
    ) -> Optional[CategoryMatch]:
        """First matching rule for the description, or None."""
        if rules is None:
            rules = self.cache.get(session)
        key = matching_key(description)
        if not key:
            return None
        for rule in rules:
            if rule.applies_to(source_key) and rule.matches(key):
                return CategoryMatch(
                    category_id=rule.category_id,
                    confidence=MATCH_CONFIDENCE[rule.match_type],
                    rule_id=rule.id,
                )
        return None

    def clear_rule_cache(self) -> None:
        self.cache.invalidate()


def map_bank_category(label: Optional[str]) -> Optional[str]:
    """Category slug for an institution-provided label such as ``Loisirs > Sport``."""
    if not label:
        return None
    parts = [normalize_header(part) for part in label.split(">")]
    for part in reversed(parts):
        slug = BANK_CATEGORY_MAP.get(part)
        if slug:
            return slug
    return BANK_CATEGORY_MAP.get(normalize_header(label))
