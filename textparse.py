# textparse.py
import re
import unicodedata
from urllib.parse import quote

from markupsafe import Markup, escape

HASHTAG_RE = re.compile(r"#([A-Za-z0-9_-]+)")
MENTION_RE = re.compile(r"@([A-Za-z0-9_]+)")
URL_RE = re.compile(r"https?://[^\s]+", re.IGNORECASE)

# one pass over the caption; alternation order decides ties at the same offset
_CAPTION_TOKEN_RE = re.compile(
    r"(?P<url>https?://[^\s]+)|#(?P<tag>[A-Za-z0-9_-]+)|@(?P<mention>[A-Za-z0-9_]+)",
    re.IGNORECASE,
)


def _unique(items):
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def parse_hashtags(text):
    """Lowercased hashtags in first-seen order, without duplicates."""
    return _unique(m.lower() for m in HASHTAG_RE.findall(text or ""))


def parse_mentions(text):
    return _unique(MENTION_RE.findall(text or ""))


def render_caption(text):
    """
    Escape ``text`` and turn URLs, #hashtags and @mentions into links.
    Returns a ``Markup`` string that is safe to embed in HTML.
    """
    if not text:
        return Markup("")
    parts = []
    last = 0
    for m in _CAPTION_TOKEN_RE.finditer(text):
        parts.append(escape(text[last:m.start()]))
        if m.group("url"):
            href = m.group("url")
            display = href[:50] + "…" if len(href) > 60 else href
            parts.append(
                Markup('<a href="{0}" target="_blank" rel="noopener noreferrer" class="external-link">{1}</a>').format(
                    href, display
                )
            )
        elif m.group("tag"):
            tag = m.group("tag").lower()
            parts.append(
                Markup('<a href="/hashtags/{0}" class="hashtag-link">#{1}</a>').format(quote(tag), tag)
            )
        else:
            name = m.group("mention")
            parts.append(Markup('<a href="/profile/{0}" class="mention-link">@{0}</a>').format(name))
        last = m.end()
    parts.append(escape(text[last:]))
    return Markup("").join(parts)


def slugify(text, max_length=80):
    folded = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", folded.lower()).strip("-")
    return slug[:max_length].rstrip("-")
