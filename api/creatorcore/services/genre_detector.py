"""Keyword heuristics for tagging campaign titles with a music genre."""

from __future__ import annotations

from dataclasses import dataclass
import re

GENRE_UNCLASSIFIED = "Unclassified"
GENRE_OTHER = "Other"
GENRE_BRAND = "Brand"

GENRE_TAXONOMY: tuple[str, ...] = (
    "Hip-Hop/Rap",
    "Pop",
    "R&B",
    "Country",
    "Rock",
    "Electronic/EDM",
    "Latin",
    "K-Pop",
    "Alternative",
    "Indie",
    "Afrobeats",
    "Reggaeton",
    "Gospel",
    "Folk",
    GENRE_BRAND,
    GENRE_OTHER,
    GENRE_UNCLASSIFIED,
)

CONFIDENCE_SCORES = {"high": 0.9, "medium": 0.7, "low": 0.5}

GENRE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Hip-Hop/Rap": (
        "drake",
        "kendrick lamar",
        "travis scott",
        "lil baby",
        "21 savage",
        "cardi b",
        "nicki minaj",
        "megan thee stallion",
        "j. cole",
        "lil uzi vert",
        "gunna",
        "hip hop",
        "hip-hop",
        "rap",
        "rapper",
        "trap",
        "drill",
    ),
    "Pop": (
        "taylor swift",
        "dua lipa",
        "ariana grande",
        "olivia rodrigo",
        "sabrina carpenter",
        "ed sheeran",
        "harry styles",
        "billie eilish",
        "pop",
    ),
    "R&B": (
        "sza",
        "summer walker",
        "brent faiyaz",
        "jhene aiko",
        "giveon",
        "daniel caesar",
        "r&b",
        "rnb",
        "soul",
    ),
    "Country": (
        "morgan wallen",
        "luke combs",
        "zach bryan",
        "lainey wilson",
        "chris stapleton",
        "kane brown",
        "country",
    ),
    "Rock": (
        "foo fighters",
        "imagine dragons",
        "metallica",
        "green day",
        "rock",
        "metal",
        "punk",
    ),
    "Electronic/EDM": (
        "calvin harris",
        "david guetta",
        "marshmello",
        "skrillex",
        "fred again",
        "martin garrix",
        "edm",
        "techno",
        "dubstep",
        "house music",
    ),
    "Latin": (
        "karol g",
        "peso pluma",
        "shakira",
        "rauw alejandro",
        "grupo frontera",
        "latin",
        "corridos",
        "regional mexicano",
    ),
    "K-Pop": (
        "bts",
        "blackpink",
        "newjeans",
        "stray kids",
        "k-pop",
        "kpop",
    ),
    "Alternative": (
        "twenty one pilots",
        "arctic monkeys",
        "the 1975",
        "alternative",
        "alt rock",
    ),
    "Indie": (
        "phoebe bridgers",
        "clairo",
        "boygenius",
        "mitski",
        "indie",
    ),
    "Afrobeats": (
        "burna boy",
        "wizkid",
        "tems",
        "tyla",
        "asake",
        "afrobeats",
        "amapiano",
    ),
    "Reggaeton": (
        "bad bunny",
        "j balvin",
        "daddy yankee",
        "feid",
        "ozuna",
        "reggaeton",
        "dembow",
        "perreo",
    ),
    "Gospel": (
        "maverick city music",
        "elevation worship",
        "kirk franklin",
        "cece winans",
        "gospel",
        "worship",
    ),
    "Folk": (
        "noah kahan",
        "mumford & sons",
        "the lumineers",
        "hozier",
        "folk",
        "americana",
    ),
}

BRAND_KEYWORDS: tuple[str, ...] = (
    "nike",
    "adidas",
    "puma",
    "gymshark",
    "pepsi",
    "coca-cola",
    "red bull",
    "mcdonald's",
    "starbucks",
    "samsung",
    "netflix",
    "sephora",
    "fenty beauty",
    "duolingo",
    "uber eats",
    "doordash",
    "shein",
    "temu",
    "crocs",
    "celsius",
    "liquid death",
)

_MONTHS = "January|February|March|April|May|June|July|August|September|October|November|December"
_TITLE_CLEANUP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\s*\b(TikTok|IG|Instagram|Twitter|YouTube)\b\s*(Campaign|Seeding|Promo|Push)?\b", re.IGNORECASE),
    re.compile(r"\s*\bX\s+(Campaign|Seeding|Promo|Push)\b"),
    re.compile(
        r"\s*\b(Campaign|Seeding|Promo|Push|Spike|Content|Tour|Event|Master|INTL|US|UK|MIX)\s*$",
        re.IGNORECASE,
    ),
    re.compile(r"\s*Targets?\s*template\s*\d*", re.IGNORECASE),
    re.compile(rf"\s*\(?\b({_MONTHS})\s*/?\s*\d{{0,4}}\s*-?\s*\w*\)?\s*$", re.IGNORECASE),
    re.compile(rf"\s*\(?\d{{1,2}}\s*({_MONTHS})\s*\d{{4}}\)?", re.IGNORECASE),
    re.compile(rf"\s*\b({_MONTHS})\b\s*\d{{0,4}}", re.IGNORECASE),
    re.compile(r"\s*\b\d{4}\s*$"),
    re.compile(r"\s*-\s*$"),
)
_DATE_RANGE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\s+\w+\s+\d{1,2}\s*-\s*\d{1,2}\s*\d{0,4}\s*$", re.IGNORECASE),
    re.compile(r"\s+\w+-ongoing\s*$", re.IGNORECASE),
)
_ARTIST_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(.+?)\s*[-–—]\s*(.+)$"),
    re.compile(r"^(.+?)\s*\|\s*(.+)$"),
    re.compile(r"^(.+?)\s+[\"“](.+?)[\"”]\s*.*$"),
    re.compile(r"^(.+?)\s+[xX]\s+(.+)$"),
)
_FEATURING_RE = re.compile(r"\s*(feat\.?|ft\.?|featuring)\s+.+$", re.IGNORECASE)
_BRACKETED_RE = re.compile(r"\s*[\[(].+?[\])]\s*")
_NAME_LIKE_RE = re.compile(r"^[A-Za-z0-9\s.'$&]+$")
_BRAND_PLATFORM_RE = re.compile(
    r"\b(TikTok|Instagram|IG|Twitter|YouTube|Snapchat)\s*(Campaign|Seeding|Promo|Push|Content)?\b",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class HeuristicMatch:
    genre: str
    confidence: str


def confidence_score(confidence: str | None) -> float:
    return CONFIDENCE_SCORES.get(confidence or "", 0.0)


def parse_artist_from_title(title: str | None) -> str | None:
    """Best-effort artist name from titles like ``Artist - Song`` or ``Artist | Song``."""
    if not title or not title.strip():
        return None

    cleaned = title.strip()
    for pattern in _TITLE_CLEANUP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    for pattern in _DATE_RANGE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()

    for pattern in _ARTIST_PATTERNS:
        match = pattern.match(cleaned)
        if not match:
            continue
        artist = _FEATURING_RE.sub("", match.group(1).strip()).strip()
        artist = _BRACKETED_RE.sub("", artist).strip()
        if 2 <= len(artist) <= 80:
            return artist

    if cleaned and _NAME_LIKE_RE.match(cleaned) and len(cleaned.split()) <= 4:
        return cleaned
    return None


def detect_genre_heuristic(title: str | None) -> HeuristicMatch | None:
    if not title or not title.strip():
        return None

    title_for_brands = _BRAND_PLATFORM_RE.sub("", title).strip()
    for brand in BRAND_KEYWORDS:
        if _keyword_regex(brand).search(title_for_brands):
            return HeuristicMatch(genre=GENRE_BRAND, confidence="high")

    scores: dict[str, int] = {}
    artist = parse_artist_from_title(title)
    if artist:
        artist_lower = artist.lower()
        for genre, keywords in GENRE_KEYWORDS.items():
            for keyword in keywords:
                if artist_lower == keyword:
                    return HeuristicMatch(genre=genre, confidence="high")
                if keyword in artist_lower or artist_lower in keyword:
                    scores[genre] = scores.get(genre, 0) + 3

    for genre, keywords in GENRE_KEYWORDS.items():
        for keyword in keywords:
            if len(keyword) < 3:
                continue
            if _keyword_regex(keyword).search(title):
                is_genre_word = len(keyword) <= 6 and " " not in keyword
                scores[genre] = scores.get(genre, 0) + (1 if is_genre_word else 2)

    if not scores:
        return None
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    best_genre, best_score = ranked[0]
    second_score = ranked[1][1] if len(ranked) > 1 else 0

    if best_score >= 3 and best_score > second_score:
        return HeuristicMatch(genre=best_genre, confidence="high")
    if best_score >= 2 and best_score > second_score:
        return HeuristicMatch(genre=best_genre, confidence="medium")
    if best_score >= 1 and second_score == 0:
        return HeuristicMatch(genre=best_genre, confidence="low")
    return None


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)
