"""
Lightweight TF-IDF vectorizer with a bounded, corpus-relative vocabulary.

Vectors are only comparable when produced by the same Vocabulary build, so
callers build one vocabulary over both sides of a comparison.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

DEFAULT_VOCAB_SIZE = 200

_NON_WORD = re.compile(r'[^\u0590-\u05FFa-zA-Z0-9\s]')

STOP_WORDS = frozenset({
    # Hebrew
    'של', 'את', 'על', 'עם', 'זה', 'זו', 'זאת', 'הוא', 'היא', 'הם', 'הן', 'אני', 'אתה', 'אנחנו', 'אתם',
    'לא', 'כן', 'גם', 'או', 'אם', 'כי', 'אבל', 'רק', 'כל', 'יש', 'אין', 'מה', 'מי', 'איך', 'למה', 'כמו',
    'עוד', 'כבר', 'היה', 'היו', 'להיות', 'אל', 'מן', 'מ', 'ב', 'ל', 'ה', 'ו', 'ש', 'אשר', 'כך', 'פה',
    'שם', 'הזה', 'הזאת', 'האלה', 'אלה', 'לי', 'לך', 'לו', 'לה', 'לנו', 'להם', 'שלי', 'שלך', 'שלו', 'שלה',
    'יותר', 'מאוד', 'אחד', 'אחת', 'עד', 'בין', 'אחרי', 'לפני', 'תוך', 'בלי', 'ללא',
    # English
    'the', 'a', 'an', 'and', 'or', 'but', 'if', 'of', 'to', 'in', 'on', 'at', 'for', 'with', 'by', 'from',
    'is', 'are', 'was', 'were', 'be', 'been', 'it', 'its', 'this', 'that', 'these', 'those', 'i', 'you',
    'he', 'she', 'we', 'they', 'me', 'my', 'your', 'our', 'not', 'no', 'do', 'does', 'did', 'so', 'as',
    'can', 'will', 'would', 'should', 'could', 'have', 'has', 'had', 'what', 'how', 'about', 'into',
})


def tokenize(text: str) -> List[str]:
    """Lowercase, strip punctuation and drop stop words and single characters."""
    cleaned = _NON_WORD.sub(' ', (text or '').lower())
    return [token for token in cleaned.split() if len(token) > 1 and token not in STOP_WORDS]


@dataclass(frozen=True)
class Vocabulary:
    """An immutable vocabulary build: term index plus idf weights."""
    terms: Tuple[str, ...]
    idf: Tuple[float, ...]

    @property
    def size(self) -> int:
        return len(self.terms)

    def vectorize(self, text: str) -> np.ndarray:
        """L2-normalized tf-idf vector of text under this build."""
        vector = np.zeros(self.size, dtype=float)
        tokens = tokenize(text)
        if not tokens or not self.terms:
            return vector

        index = {term: i for i, term in enumerate(self.terms)}
        counts = Counter(tokens)
        for term, count in counts.items():
            position = index.get(term)
            if position is not None:
                vector[position] = (count / len(tokens)) * self.idf[position]

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector

    def vectorize_all(self, texts: Iterable[str]) -> List[np.ndarray]:
        return [self.vectorize(text) for text in texts]


class VocabBuilder:
    """Builds fresh Vocabulary instances from a text snapshot.

    Each build is a new immutable object, so concurrent rounds never see a
    vocabulary mutated underneath them.
    """

    def __init__(self, max_terms: int = DEFAULT_VOCAB_SIZE):
        self.max_terms = max_terms

    def build(self, texts: Sequence[str]) -> Vocabulary:
        """Build a vocabulary capped at max_terms by document frequency.

        Args:
            texts: Corpus snapshot; both sides of any comparison must be in it

        Returns:
            Immutable Vocabulary
        """
        doc_freq: Counter = Counter()
        for text in texts:
            doc_freq.update(set(tokenize(text)))

        # Ties broken alphabetically so identical inputs give identical builds
        ranked = sorted(doc_freq.items(), key=lambda item: (-item[1], item[0]))[:self.max_terms]
        total_docs = len(texts)
        terms = tuple(term for term, _ in ranked)
        idf = tuple(math.log((total_docs + 1) / (df + 1)) + 1 for _, df in ranked)
        return Vocabulary(terms=terms, idf=idf)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity, 0.0 for mismatched lengths or zero vectors."""
    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    if left.shape != right.shape or left.size == 0:
        return 0.0
    denominator = np.linalg.norm(left) * np.linalg.norm(right)
    if denominator == 0:
        return 0.0
    return float(np.dot(left, right) / denominator)


def text_similarity(builder: VocabBuilder, first: str, second: str) -> float:
    """Similarity of two texts under a vocabulary built from exactly those two texts."""
    vocabulary = builder.build([first, second])
    return cosine_similarity(vocabulary.vectorize(first), vocabulary.vectorize(second))


def rank_by_similarity(builder: VocabBuilder,
                       query: str,
                       texts: Sequence[str],
                       top_k: int,
                       threshold: float) -> List[Tuple[int, float]]:
    """Rank texts against query under one shared vocabulary build.

    Returns up to top_k (index, score) pairs whose score clears threshold;
    when none do, the top_k best pairs are returned unconditionally.
    """
    if not texts:
        return []
    vocabulary = builder.build([query, *texts])
    query_vector = vocabulary.vectorize(query)
    scored = [(i, cosine_similarity(query_vector, vector)) for i, vector in enumerate(vocabulary.vectorize_all(texts))]
    scored.sort(key=lambda pair: pair[1], reverse=True)

    above = [pair for pair in scored if pair[1] >= threshold]
    return (above or scored)[:top_k]


def build_profile_summary(texts: Sequence[str], categories: Sequence[str]) -> Dict[str, object]:
    """Derive topics, interests and category counts from recent memories.

    The 15 most frequent tokens are split into 8 topics and 7 interests.
    """
    counts: Counter = Counter()
    for text in texts:
        counts.update(tokenize(text))
    top_words = [word for word, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:15]]

    patterns: Mapping[str, int] = Counter(category for category in categories if category)
    return {
        'topics': top_words[:8],
        'interests': top_words[8:15],
        'patterns': dict(patterns),
    }
