"""
Lexicon sentiment scoring for respondent feedback.

Each matched word contributes its weight to the positive or negative side.
A negator in the three preceding tokens flips (and damps) a word, and an
intensifier directly before it boosts it. The compound score is
``raw / sqrt(raw**2 + alpha)`` which lands in (-1, 1); equal positive and
negative evidence always yields ``neutral``.
"""
import re
import math
from dataclasses import dataclass

POSITIVE = "positive"
NEUTRAL = "neutral"
NEGATIVE = "negative"
LABELS = (POSITIVE, NEUTRAL, NEGATIVE)

_POSITIVE_WORDS = {
    "good": 1.5, "great": 2.0, "excellent": 2.5, "amazing": 2.5, "awesome": 2.5,
    "fantastic": 2.5, "wonderful": 2.5, "outstanding": 2.5, "brilliant": 2.5,
    "love": 2.5, "loved": 2.5, "loving": 2.0, "like": 1.0, "liked": 1.0, "enjoy": 1.5,
    "enjoyed": 1.5, "happy": 2.0, "glad": 1.5, "pleased": 1.5, "satisfied": 1.5,
    "helpful": 1.5, "friendly": 1.5, "kind": 1.5, "welcoming": 1.5, "supportive": 1.5,
    "clear": 1.0, "easy": 1.0, "fast": 1.0, "quick": 1.0, "smooth": 1.0, "safe": 1.5,
    "thanks": 1.5, "thank": 1.5, "grateful": 2.0, "appreciate": 2.0, "appreciated": 2.0,
    "nice": 1.5, "fun": 1.5, "best": 2.0, "better": 1.0, "improved": 1.0, "perfect": 2.5,
    "recommend": 1.5, "impressed": 2.0, "useful": 1.5, "valuable": 1.5, "respectful": 1.5,
    "inclusive": 1.5, "organized": 1.0, "responsive": 1.0, "delighted": 2.5,
}

_NEGATIVE_WORDS = {
    "bad": 1.5, "poor": 1.5, "terrible": 2.5, "awful": 2.5, "horrible": 2.5,
    "worst": 2.5, "worse": 1.5, "hate": 2.5, "hated": 2.5, "dislike": 1.5,
    "disliked": 1.5, "angry": 2.0, "upset": 2.0, "annoyed": 1.5, "annoying": 1.5,
    "frustrated": 2.0, "frustrating": 2.0, "disappointed": 2.0, "disappointing": 2.0,
    "unhappy": 2.0, "sad": 1.5, "rude": 2.0, "unhelpful": 1.5, "unfriendly": 1.5,
    "confusing": 1.5, "confused": 1.0, "slow": 1.0, "broken": 1.5, "dirty": 1.5,
    "unsafe": 2.5, "dangerous": 2.5, "harassment": 3.0, "harassed": 3.0,
    "discrimination": 3.0, "bullying": 3.0, "bullied": 3.0, "ignored": 1.5,
    "problem": 1.0, "problems": 1.0, "issue": 0.5, "issues": 0.5, "complaint": 1.5,
    "useless": 2.0, "waste": 1.5, "late": 1.0, "boring": 1.5, "uncomfortable": 2.0,
    "disrespectful": 2.0, "unacceptable": 2.5, "fail": 1.5, "failed": 1.5,
}

_NEGATORS = {
    "not", "no", "never", "none", "nothing", "neither", "nor", "without",
    "hardly", "barely", "cannot", "cant", "dont", "didnt", "isnt", "wasnt", "wont",
}

_INTENSIFIERS = {
    "very": 0.3, "really": 0.3, "so": 0.2, "super": 0.3, "extremely": 0.5,
    "incredibly": 0.5, "absolutely": 0.4, "totally": 0.3, "truly": 0.3, "quite": 0.1,
}

_NEGATION_WINDOW = 3
_NEGATION_DAMPING = 0.75

_TOKEN_RE = re.compile(r"[a-z]+(?:'[a-z]+)?")


def tokenize(text) -> list[str]:
    if not isinstance(text, str):
        return []
    return _TOKEN_RE.findall(text.lower())


def _is_negator(token: str) -> bool:
    return token in _NEGATORS or token.endswith("n't")


@dataclass(frozen=True)
class SentimentScore:
    label: str
    score: float
    positive: float = 0.0
    negative: float = 0.0

    @property
    def magnitude(self) -> float:
        return abs(self.score)


class SentimentTagger:
    def __init__(self, neutral_threshold: float = 0.05, alpha: float = 15.0):
        if alpha <= 0:
            raise ValueError("alpha must be positive")
        self.neutral_threshold = neutral_threshold
        self.alpha = alpha

    @classmethod
    def from_config(cls, config) -> "SentimentTagger":
        return cls(
            neutral_threshold=float(config.get("SENTIMENT_NEUTRAL_THRESHOLD", 0.05)),
            alpha=float(config.get("SENTIMENT_NORMALIZATION_ALPHA", 15.0)),
        )

    def score(self, text) -> SentimentScore:
        tokens = tokenize(text)
        positive = negative = 0.0
        for i, token in enumerate(tokens):
            if token in _POSITIVE_WORDS:
                weight = _POSITIVE_WORDS[token]
            elif token in _NEGATIVE_WORDS:
                weight = -_NEGATIVE_WORDS[token]
            else:
                continue
            if i > 0 and tokens[i - 1] in _INTENSIFIERS:
                weight *= 1.0 + _INTENSIFIERS[tokens[i - 1]]
            if any(_is_negator(t) for t in tokens[max(0, i - _NEGATION_WINDOW):i]):
                weight = -weight * _NEGATION_DAMPING
            if weight > 0:
                positive += weight
            else:
                negative -= weight

        if math.isclose(positive, negative):
            return SentimentScore(NEUTRAL, 0.0, positive, negative)

        raw = positive - negative
        compound = raw / math.sqrt(raw * raw + self.alpha)
        if compound >= self.neutral_threshold:
            label = POSITIVE
        elif compound <= -self.neutral_threshold:
            label = NEGATIVE
        else:
            label = NEUTRAL
        return SentimentScore(label, round(compound, 4), positive, negative)

    def classify(self, text) -> str:
        return self.score(text).label


_default = SentimentTagger()


def classify(text) -> str:
    """positive | neutral | negative. Never raises; empty text is neutral."""
    return _default.classify(text)
