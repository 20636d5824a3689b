"""
Heuristic analyzers - cheap, deterministic scoring over context entries.

Everything here is a pure function of its inputs; the tick and the
self-model decide what to do with the scores.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

DUPLICATE_THRESHOLD = 0.8
MAX_DUPLICATE_PAIRS = 10

PROMOTION_THRESHOLD = 0.4
PROMOTION_MIN_WORD_LENGTH = 4  # description words must be longer than this
MAX_PROMOTABLE = 20

ARCHIVE_AFTER_DAYS = 180

KEYWORD_LIMIT = 5
STOP_WORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'from', 'is', 'are', 'was', 'were', 'be', 'been',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'this', 'that', 'it', 'its',
])

OPPOSITION_PAIRS = (
    ("prefer", "avoid"),
    ("use", "don't use"),
    ("always", "never"),
    ("composition", "inheritance"),
    ("functional", "class"),
    ("stateless", "stateful"),
    ("monolith", "microservice"),
    ("sql", "nosql"),
    ("sync", "async"),
)
MAX_CONTRADICTIONS = 10


@dataclass
class Contradiction:
    entry_a: str
    entry_b: str
    description: str

    def to_dict(self):
        return {"entry_a": self.entry_a, "entry_b": self.entry_b, "description": self.description}


def content_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the lower-cased whitespace token sets."""
    a_words = set(a.lower().split())
    b_words = set(b.lower().split())
    union = a_words | b_words
    if not union:
        return 0.0
    return len(a_words & b_words) / len(union)


def detect_near_duplicates(entries: Sequence) -> List[Tuple[str, str]]:
    """Pairs of active same-type entries whose content overlaps by more than 80%."""
    active = [e for e in entries if not e.archived]
    pairs = []
    for i in range(len(active)):
        for j in range(i + 1, len(active)):
            a, b = active[i], active[j]
            if a.context_type != b.context_type:
                continue
            if content_similarity(a.content, b.content) > DUPLICATE_THRESHOLD:
                pairs.append((a.id, b.id))
    return pairs[:MAX_DUPLICATE_PAIRS]


def score_promotion(content: str, schema_type) -> float:
    """Fraction of a type's significant description words found in the content."""
    text = content.lower()
    words = [w for w in schema_type.description.lower().split() if len(w) > PROMOTION_MIN_WORD_LENGTH]
    if not words:
        return 0.0
    return sum(1 for w in words if w in text) / len(words)


def best_schema_type(content: str, schema) -> Optional[str]:
    """Highest-scoring schema type for the content; the first type wins ties."""
    best_type = None
    best_score = 0.0
    for schema_type in schema.types:
        score = score_promotion(content, schema_type)
        if score > best_score:
            best_score = score
            best_type = schema_type.name
    return best_type


def find_promotable_entries(entries: Sequence, schema) -> List[Tuple[object, str]]:
    """Untyped active entries that match some schema type well enough.

    Returns (entry, suggested_type) for at most the first 20 matches.
    """
    promotable = []
    for entry in entries:
        if entry.context_type or entry.archived:
            continue
        if any(score_promotion(entry.content, t) >= PROMOTION_THRESHOLD for t in schema.types):
            promotable.append(entry)

    results = []
    for entry in promotable[:MAX_PROMOTABLE]:
        suggested = best_schema_type(entry.content, schema)
        if suggested:
            results.append((entry, suggested))
    return results


def extract_keywords(content: str) -> List[str]:
    """First few significant words of the content, used as tags."""
    words = re.split(r"\W+", content.lower())
    return [w for w in words if len(w) > 3 and w not in STOP_WORDS][:KEYWORD_LIMIT]


def days_between(a: datetime, b: datetime) -> float:
    return abs((b - a).total_seconds()) / 86400


def is_stale(updated_at: datetime, now: datetime, type_reads: int) -> bool:
    """Old enough to archive and never read."""
    return days_between(updated_at, now) > ARCHIVE_AFTER_DAYS and type_reads == 0


def detect_keyword_contradictions(entries: Iterable) -> List[Contradiction]:
    """Pairs of active entries using opposing words.

    Entries with two different context types are never compared.
    """
    active = [e for e in entries if not e.archived]
    contradictions = []
    for i in range(len(active)):
        for j in range(i + 1, len(active)):
            a, b = active[i], active[j]
            if a.context_type and b.context_type and a.context_type != b.context_type:
                continue
            text_a = a.content.lower()
            text_b = b.content.lower()
            for word, opposite in OPPOSITION_PAIRS:
                if (word in text_a and opposite in text_b) or (word in text_b and opposite in text_a):
                    contradictions.append(Contradiction(
                        entry_a=a.id,
                        entry_b=b.id,
                        description=f'Entry {a.id[:8]} contains "{word}" while entry {b.id[:8]} contains "{opposite}"',
                    ))
                    break
    return contradictions[:MAX_CONTRADICTIONS]
