"""Headline keyword extraction.

Exact-match tokens only, no stemming: the scorer compares keyword sets by
overlap ratio, so "tariff" and "tariffs" are distinct terms.
"""

import re
from typing import List

MIN_KEYWORD_LENGTH = 4

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'must', 'shall', 'can', 'need', 'dare',
    'ought', 'used', 'to', 'of', 'in', 'for', 'on', 'with', 'at', 'by',
    'from', 'as', 'into', 'through', 'during', 'before', 'after', 'above',
    'below', 'between', 'under', 'again', 'further', 'then', 'once', 'here',
    'there', 'when', 'where', 'why', 'how', 'all', 'each', 'few', 'more',
    'most', 'other', 'some', 'such', 'no', 'nor', 'not', 'only', 'own',
    'same', 'so', 'than', 'too', 'very', 'just', 'and', 'but', 'if', 'or',
    'because', 'until', 'while', 'this', 'that', 'these', 'those', 'what',
    'which', 'who', 'whom', 'its', 'his', 'her', 'their', 'our', 'your',
    'says', 'said', 'new', 'over', 'out', 'about',
})

_NON_WORD = re.compile(r'[^a-z0-9\s]')


def extract_keywords(text: str) -> List[str]:
    """Lowercase tokens longer than three characters, punctuation and stop-words removed."""
    if not text:
        return []
    cleaned = _NON_WORD.sub('', text.lower())
    return [
        word for word in cleaned.split()
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS
    ]
