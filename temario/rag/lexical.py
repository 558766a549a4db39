"""
Lexical relevance scoring used when no usable vector exists for a candidate.

Scores are normalized term overlap in [0, 1]: the share of distinct query
tokens found in the candidate. Matching is case- and diacritic-insensitive
("Jubilación" matches "jubilacion"). On top of the overlap:

    - query tokens found in the title add a title boost;
    - queries citing a specific article ("artículo 205", "art. 42") get a
      boost on candidates containing it;
    - queries naming a law by its usual short name ("LGSS", "Estatuto de los
      Trabajadores") get a boost on candidates titled with that law;
    - law documents are boosted for queries using legal vocabulary, and
      syllabus topics ("Tema 3 - ...") for queries asking about a "tema".
"""

import re
import unicodedata
from typing import Iterable, List, Optional, Set

MIN_TOKEN_LENGTH = 3

# Function words that would otherwise match almost every Spanish legal text
STOPWORDS = frozenset({
    "ante", "bajo", "cada", "como", "con", "contra", "cual", "cuales", "cuando",
    "del", "desde", "donde", "dos", "durante", "ella", "ellas", "ellos", "entre",
    "esa", "esas", "ese", "eso", "esos", "esta", "estas", "este", "esto", "estos",
    "hacia", "han", "hasta", "las", "les", "los", "mas", "mismo", "muy", "nos",
    "otra", "otras", "otro", "otros", "para", "pero", "por", "que", "quien",
    "segun", "ser", "sera", "sin", "sobre", "son", "sus", "tambien", "tiene",
    "todo", "todos", "una", "unas", "uno", "unos",
    "and", "the", "for", "with",
})

# Usual short names of frequently cited laws, both normalized. A query naming
# the key matches titles carrying either the key or its alias.
LAW_ALIASES = {
    "lgss": "ley general de la seguridad social",
    "ley general de la seguridad social": "lgss",
    "estatuto de los trabajadores": "et",
    "procedimiento administrativo": "ley 39/2015",
    "regimen juridico": "ley 40/2015",
    "constitucion": "constitucion espanola",
    "8/2015": "rdl 8/2015",
}

# Query vocabulary that signals a question about legislation
LEGAL_TERMS = (
    "ley", "articulo", "art", "real decreto", "rd", "orden", "estatuto", "constitucion",
    "lgss", "procedimiento administrativo", "seguridad social", "jubilacion", "pension",
    "incapacidad", "desempleo", "afiliacion", "cotizacion",
)

LAW = "ley"
GENERAL_TOPIC = "tema_general"
SPECIFIC_TOPIC = "tema_especifico"
REGULATION = "normativa"

_TOKEN = re.compile(r"\w+")
_ARTICLE_REFERENCE = re.compile(r"\b(?:articulo|art\.?)\s*(\d+(?:\.\d+)*)")
_LAW_TITLE = re.compile(r"\b(?:ley|real decreto|rd|rdl|orden|estatuto|constitucion)\b")
# Article headers in raw (accented) text, at the start of a line
_ARTICLE_HEADER = re.compile(r"^[ \t]*(?:art[íi]culo|art[º.])\s*\d+", re.IGNORECASE | re.MULTILINE)
# Context kept before an inline (non-header) article mention
PASSAGE_LEAD_CHARS = 200


def normalize(text: str) -> str:
    """Lowercase and strip diacritics (á → a, ñ → n)."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower()


def tokenize(text: str) -> List[str]:
    """Normalized word tokens, without stopwords and very short tokens."""
    return [
        token for token in _TOKEN.findall(normalize(text))
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    ]


def _contains_phrase(haystack: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", haystack) is not None


def find_article_references(text: str) -> List[str]:
    """Article numbers cited in a text, in order of appearance, without duplicates.

    >>> find_article_references("¿Qué dice el artículo 205.1 y el art. 42?")
    ['205.1', '42']
    """
    seen = []
    for number in _ARTICLE_REFERENCE.findall(normalize(text)):
        if number not in seen:
            seen.append(number)
    return seen


def mentions_article(text: str, number: str, normalized: bool = False) -> bool:
    """True if `text` contains the given article number after an article marker."""
    haystack = text if normalized else normalize(text)
    pattern = rf"\b(?:articulo|art\.?)\s*{re.escape(number)}(?!\d)"
    return re.search(pattern, haystack) is not None


def article_passage(text: str, number: str, max_chars: int) -> Optional[str]:
    """The part of `text` holding article `number`, at most `max_chars` long.

    A header line for the article ("Artículo 205. ...") yields the article
    up to the next article header. Otherwise the first inline mention yields
    a window starting shortly before it. None if the article is not in the text.
    """
    marker = rf"(?:art[íi]culo|art[º.])\s*{re.escape(number)}(?!\d)"
    header = re.search(rf"^[ \t]*{marker}", text, re.IGNORECASE | re.MULTILINE)
    if header:
        following = _ARTICLE_HEADER.search(text, header.end())
        end = following.start() if following else len(text)
        return text[header.start():end].strip()[:max_chars]

    mention = re.search(rf"\b{marker}", text, re.IGNORECASE)
    if mention:
        start = max(0, mention.start() - PASSAGE_LEAD_CHARS)
        return text[start:start + max_chars]
    return None


def topics_match(candidate_topic: Optional[str], topic_filter: Optional[str]) -> bool:
    if not candidate_topic or not topic_filter:
        return False
    return normalize(candidate_topic).strip() == normalize(topic_filter).strip()


def law_alias_match(query: str, title: str) -> bool:
    """True if the query names a law by a short name the title also carries."""
    query, title = normalize(query), normalize(title)
    return any(
        _contains_phrase(query, name) and (_contains_phrase(title, name) or _contains_phrase(title, alias))
        for name, alias in LAW_ALIASES.items()
    )


def document_type(title: str) -> str:
    """Classify a document by its title: law, syllabus topic or other regulation."""
    title = normalize(title)
    if "tema" in title and "general" in title:
        return GENERAL_TOPIC
    if "tema" in title and "especifico" in title:
        return SPECIFIC_TOPIC
    if _LAW_TITLE.search(title):
        return LAW
    return REGULATION


def is_legal_query(query: str) -> bool:
    query = normalize(query)
    return any(_contains_phrase(query, term) for term in LEGAL_TERMS)


def overlap_ratio(query_tokens: Set[str], text_tokens: Iterable[str]) -> float:
    if not query_tokens:
        return 0.0
    found = query_tokens.intersection(text_tokens)
    return len(found) / len(query_tokens)


def _content_tokens(normalized_text: str) -> Set[str]:
    return {
        token for token in _TOKEN.findall(normalized_text)
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    }


def lexical_score(
    query: str,
    text: str,
    title: str = "",
    topic: Optional[str] = None,
    topic_filter: Optional[str] = None,
    topic_boost: float = 0.0,
    article_boost: float = 0.0,
    title_boost: float = 0.0,
    alias_boost: float = 0.0,
    law_boost: float = 0.0,
    syllabus_boost: float = 0.0,
) -> float:
    """Relevance of `text` (and its title) to `query` by term overlap.

    Args:
        query: Free-text query.
        text: Candidate text.
        title: Candidate title; its tokens count as part of the text.
        topic: Candidate topic tag.
        topic_filter: Topic requested with the query.
        topic_boost: Multiplicative boost applied to positive scores on a topic match.
        article_boost: Added when the query cites an article present in the text.
        title_boost: Added in proportion to the share of query tokens found in the title.
        alias_boost: Added when the query names a law the title carries (see LAW_ALIASES).
        law_boost: Multiplicative boost for law documents on queries with legal vocabulary.
        syllabus_boost: Multiplicative boost for syllabus topics on queries mentioning "tema".

    Returns:
        Score in [0, 1].
    """
    query_tokens = set(tokenize(query))
    articles = find_article_references(query)
    if not query_tokens and not articles:
        return 0.0

    haystack = normalize(f"{title}\n{text}")
    score = overlap_ratio(query_tokens, _content_tokens(haystack))
    if score > 0 and title:
        score += title_boost * overlap_ratio(query_tokens, _content_tokens(normalize(title)))

    if articles and any(mentions_article(haystack, number, normalized=True) for number in articles):
        score += article_boost

    if alias_boost and title and law_alias_match(query, title):
        score += alias_boost

    if score > 0 and title:
        kind = document_type(title)
        if kind == LAW and is_legal_query(query):
            score *= 1.0 + law_boost
        elif kind in (GENERAL_TOPIC, SPECIFIC_TOPIC) and "tema" in query_tokens:
            score *= 1.0 + syllabus_boost

    if score > 0 and topics_match(topic, topic_filter):
        score *= 1.0 + topic_boost

    return min(score, 1.0)
