"""
Token and text helpers used to size LLM requests.

Pure functions, no I/O. Token counts here are estimates for chunking
decisions only; billing always uses the provider-reported usage.
"""

import math
import re
from collections import Counter
from typing import List

_SENTENCE_BOUNDARY = re.compile(r'[.!?]+')
_WORD = re.compile(r"[a-zA-Z][a-zA-Z'-]+")

STOPWORDS = frozenset({
    'about', 'after', 'again', 'against', 'almost', 'along', 'already', 'although',
    'always', 'among', 'another', 'anything', 'around', 'because', 'become', 'before',
    'being', 'below', 'between', 'both', 'could', 'doesn', 'doing', 'during', 'each',
    'either', 'enough', 'every', 'everything', 'first', 'going', 'gonna', 'great',
    'having', 'here', 'into', 'itself', 'just', 'know', 'later', 'little', 'maybe',
    'might', 'never', 'other', 'others', 'really', 'right', 'should', 'since',
    'something', 'still', 'their', 'there', 'these', 'thing', 'things', 'think',
    'those', 'though', 'three', 'through', 'today', 'under', 'until', 'wanna',
    'where', 'which', 'while', 'whole', 'would', 'yeah', 'your', 'yours', 'actually',
    'basically', 'people', 'okay', 'kind', 'sort', 'very', 'much', 'many', 'what',
    'when', 'with', 'from', 'that', 'this', 'they', 'them', 'then', 'than', 'were',
    'been', 'have', 'will', 'also', 'some', 'like', 'want', 'make', 'made', 'said',
})


def estimate_token_count(text: str) -> int:
    """Rough token estimate: 1 token ~ 4 characters of English text"""
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> List[str]:
    """Split on sentence terminators, trimming and dropping empty pieces"""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def deduplicate_sentences(text: str, min_length: int = 8) -> str:
    """Drop short and repeated sentences (first occurrence wins, case-sensitive)"""
    seen = set()
    kept = []

    for sentence in split_sentences(text):
        if len(sentence) < min_length or sentence in seen:
            continue
        seen.add(sentence)
        kept.append(sentence)

    if not kept:
        return ''
    return '. '.join(kept) + '.'


def split_into_chunks(text: str, max_tokens_per_chunk: int) -> List[str]:
    """Greedily pack whole sentences into chunks within the token budget.

    A sentence is never split; one that alone exceeds the budget becomes its
    own chunk. Every input sentence lands in exactly one chunk, in order.
    """
    chunks: List[str] = []
    current = ''

    for sentence in split_sentences(text):
        candidate = current + sentence + '. '
        if current and estimate_token_count(candidate) > max_tokens_per_chunk:
            chunks.append(current.strip())
            current = sentence + '. '
        else:
            current = candidate

    if current.strip():
        chunks.append(current.strip())

    return chunks


def extract_key_topics(text: str, limit: int = 10) -> List[str]:
    """Most frequent salient words, used as a rough coverage probe"""
    words = [w.lower() for w in _WORD.findall(text)]
    counts = Counter(w for w in words if len(w) >= 5 and w not in STOPWORDS)
    return [word for word, _ in counts.most_common(limit)]
