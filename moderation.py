# moderation.py
"""
Score-based comment automod.

Text is normalised (diacritics stripped, leetspeak folded back to letters,
punctuation turned into spaces) before the word list is checked, so
"5h!t" and "SHÎT" match the same entry. The other heuristics look for
link spam, repetition and shouting. The result carries every heuristic
that fired so a caller can explain the decision.
"""

import re
import unicodedata
from collections import Counter, namedtuple

ModerationResult = namedtuple("ModerationResult", ["action", "score", "reasons"])

REJECT_SCORE = 80
FLAG_SCORE = 20

BANNED_WORDS = (
    "fuck", "shit", "bitch", "bastard", "asshole", "damn", "slut", "dick", "piss", "crap",
    "cock", "pussy", "cunt", "twat", "prick", "wank", "bollocks", "bugger", "arse", "shag",
    "tit", "whore", "motherfucker", "fucker", "shithead", "shitface", "douche", "douchebag",
    "cum", "fag", "faggot", "dyke", "tranny", "rape", "rapist", "molest", "molester",
    "pedophile", "pedo", "nigger", "chink", "gook", "spic", "wetback", "beaner", "coon",
    "towelhead", "camel jockey", "raghead", "kike", "hebe", "yid", "gyp", "retard", "retarded",
)
_BANNED_RES = [re.compile(r"\b" + re.escape(w) + r"\b") for w in BANNED_WORDS]

LEET_MAP = (
    ("4", "a"), ("@", "a"), ("3", "e"), ("1", "i"), ("!", "i"),
    ("0", "o"), ("5", "s"), ("$", "s"), ("7", "t"), ("+", "t"),
)

URL_RE = re.compile(r"https?://[\w\-._~:/?#\[\]@!$&'()*+,;=%]+", re.IGNORECASE)
REPEATED_CHAR_RE = re.compile(r"([a-z])\1{6,}")


def _is_punct_or_symbol(ch):
    return unicodedata.category(ch)[0] in ("P", "S")


def normalize_text(text):
    out = "".join(c for c in unicodedata.normalize("NFKD", text) if not unicodedata.combining(c))
    out = out.lower()
    for src, dst in LEET_MAP:
        out = out.replace(src, dst)
    out = "".join(" " if _is_punct_or_symbol(c) else c for c in out)
    return " ".join(out.split())


def check_comment(text):
    if not text or not text.strip():
        return ModerationResult("reject", 100, ["empty"])

    reasons = []
    score = 0
    norm = normalize_text(text)

    for banned in _BANNED_RES:
        if banned.search(norm):
            reasons.append("banned_word")
            score += 80

    urls = URL_RE.findall(text)
    if len(urls) >= 2:
        reasons.append("multiple_links")
        score += 40
    if any(len(u) > 100 for u in urls):
        reasons.append("long_url")
        score += 25

    if REPEATED_CHAR_RE.search(norm):
        reasons.append("repeated_chars")
        score += 40

    counts = Counter()
    for token in norm.split():
        counts[token] += 1
        if counts[token] >= 6:
            reasons.append("repetition")
            score += 45

    non_punct = "".join(c for c in norm if not c.isspace() and not _is_punct_or_symbol(c))
    if len(non_punct) < 6 and len(urls) == 1:
        reasons.append("link_only")
        score += 20

    if len(text) < 6 and "!!" in text:
        reasons.append("short_exclaim")
        score += 10
    if len(text) < 10 and text == text.upper() and re.search(r"[A-Z]", text):
        reasons.append("shouting")
        score += 8

    symbols = sum(1 for c in text if not c.isalnum() and not c.isspace())
    if symbols > min(30, max(5, len(text) // 6)):
        reasons.append("lots_symbols")
        score += 12

    if score >= REJECT_SCORE:
        return ModerationResult("reject", score, reasons)
    if score >= FLAG_SCORE:
        return ModerationResult("flag", score, reasons)
    return ModerationResult("allow", score, reasons)
