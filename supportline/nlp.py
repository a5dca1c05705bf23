"""Lightweight NLP utilities for sentiment, topic and keyword detection."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from langdetect import DetectorFactory, LangDetectException, detect

DetectorFactory.seed = 0

_POSITIVE = {"love", "great", "thanks", "thank", "kind", "helpful", "good", "awesome"}
_NEGATIVE = {
    "unacceptable",
    "ridiculous",
    "frustrating",
    "frustrated",
    "angry",
    "terrible",
    "awful",
    "hate",
    "worst",
    "useless",
    "ruined",
    "hacked",
    "furious",
}

TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "billing": ("billing", "charged", "refund", "invoice", "payment", "subscription"),
    "security": ("security", "hacked", "unauthorized", "breach"),
    "access": ("login", "log in", "locked", "password", "sign in", "access"),
    "technical": ("error", "bug", "crash", "outage", "down", "failing", "broken"),
    "feature_request": ("feature request", "please add", "would be nice"),
}

_TOKEN = re.compile(r"[a-z0-9']+")

NEUTRAL_SENTIMENT = 0.5


@dataclass
class KeywordMatch:
    category: str
    keyword: str


@dataclass
class NlpPipeline:
    """Deterministic NLP pipeline used by the dispatcher and ticketing.

    Sentiment is a polarity score in ``[0, 1]`` where ``0.5`` is neutral; each
    positive word adds ``0.2`` and each negative word subtracts ``0.2``.
    """

    topics: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(TOPIC_KEYWORDS))

    def analyse(self, text: str) -> Dict[str, Any]:
        text = text or ""
        score = self.sentiment_score(text)
        if score > NEUTRAL_SENTIMENT:
            label = "positive"
        elif score < NEUTRAL_SENTIMENT:
            label = "negative"
        else:
            label = "neutral"
        return {
            "sentiment": {"label": label, "score": score},
            "topics": self.extract_topics(text),
            "language": self._language(text),
        }

    def sentiment_score(self, text: str) -> float:
        tokens = _TOKEN.findall((text or "").lower())
        positives = sum(1 for token in tokens if token in _POSITIVE)
        negatives = sum(1 for token in tokens if token in _NEGATIVE)
        raw = NEUTRAL_SENTIMENT + (positives - negatives) * 0.2
        return round(max(0.0, min(1.0, raw)), 4)

    def extract_topics(self, text: str) -> List[str]:
        lowered = (text or "").lower()
        hits = [
            topic
            for topic, keywords in self.topics.items()
            if any(_contains_phrase(lowered, keyword) for keyword in keywords)
        ]
        return hits or ["general"]

    def match_keywords(
        self, text: str, keywords: Mapping[str, Iterable[str]]
    ) -> Optional[KeywordMatch]:
        """Return the first configured keyword found in ``text``.

        Categories are checked in mapping order and keywords in list order, so
        the same text always yields the same match.
        """

        lowered = (text or "").lower()
        for category, words in keywords.items():
            for word in words:
                if _contains_phrase(lowered, word.lower()):
                    return KeywordMatch(category=category, keyword=word.lower())
        return None

    def _language(self, text: str) -> Optional[str]:
        try:
            return detect(text) if text.strip() else None
        except LangDetectException:
            return None


def _contains_phrase(lowered: str, phrase: str) -> bool:
    # Whole-word match: "sue" must not fire on "issue".
    return re.search(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])", lowered) is not None


__all__ = ["KeywordMatch", "NEUTRAL_SENTIMENT", "NlpPipeline", "TOPIC_KEYWORDS"]
