"""HTML to text normalization for Anki fields."""

import hashlib
import html
import re

# Regex patterns
CLOZE_PATTERN = re.compile(r"\{\{c(\d+)::(.*?)(?:::(.*?))?\}\}", re.DOTALL)
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
BR_PATTERN = re.compile(r"<br\s*/?>", re.IGNORECASE)
DIV_OPEN_PATTERN = re.compile(r"<div[^>]*>", re.IGNORECASE)
DIV_CLOSE_PATTERN = re.compile(r"</div>", re.IGNORECASE)
IMG_SRC_PATTERN = re.compile(
    r"""<img\b[^>]*?\ssrc=(?:"([^"]*)"|'([^']*)'|([^\s>"']+))[^>]*>""", re.IGNORECASE
)
STYLE_SCRIPT_PATTERN = re.compile(r"<(style|script)\b[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
BLANK_LINES_PATTERN = re.compile(r"\n\s*\n")
WHITESPACE_PATTERN = re.compile(r"\s+")


def strip_html(text: str) -> str:
    """Strip HTML tags and decode entities, collapsing whitespace.

    Args:
        text: HTML field content.

    Returns:
        Plain text on a single line.
    """
    if not text:
        return ""
    result = STYLE_SCRIPT_PATTERN.sub("", text)
    result = HTML_TAG_PATTERN.sub("", result)
    result = html.unescape(result)
    return WHITESPACE_PATTERN.sub(" ", result).strip()


def strip_html_media(text: str) -> str:
    """Strip HTML like ``strip_html`` but keep image filenames in place."""
    def keep_filename(match: re.Match[str]) -> str:
        return " " + next(group for group in match.groups() if group is not None) + " "

    return strip_html(IMG_SRC_PATTERN.sub(keep_filename, text))


def clean_html(text: str) -> str:
    """Convert field HTML to display text, keeping line breaks.

    ``<br>`` and ``</div>`` become newlines, other tags are dropped and
    entities decoded; runs of blank lines collapse to one.
    """
    if not text:
        return ""
    result = BR_PATTERN.sub("\n", text)
    result = DIV_CLOSE_PATTERN.sub("\n", result)
    result = DIV_OPEN_PATTERN.sub("", result)
    result = STYLE_SCRIPT_PATTERN.sub("", result)
    result = HTML_TAG_PATTERN.sub("", result)
    result = html.unescape(result).replace("\xa0", " ")
    result = BLANK_LINES_PATTERN.sub("\n\n", result)
    return result.strip()


def cloze_front(text: str, ordinal: int) -> str:
    """Render the question side of cloze card ``ordinal`` (1-based).

    The deletion being asked becomes ``{{answer}}``; every other deletion
    is shown revealed.
    """

    def replace(match: re.Match[str]) -> str:
        if int(match.group(1)) == ordinal:
            return "{{" + match.group(2) + "}}"
        return match.group(2)

    return CLOZE_PATTERN.sub(replace, text)


def cloze_answer(text: str, ordinal: int) -> str:
    """Return the answers of cloze card ``ordinal``, joined by ``, ``."""
    answers = [m.group(2) for m in CLOZE_PATTERN.finditer(text) if int(m.group(1)) == ordinal]
    return ", ".join(answers)


def field_checksum(text: str) -> int:
    """Duplicate-detection checksum of a sort field.

    First 32 bits of the SHA-1 of the HTML-stripped text, the value Anki
    stores in ``notes.csum``.
    """
    digest = hashlib.sha1(strip_html_media(text).encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def split_tags(raw: str) -> tuple[str, ...]:
    """Split a space-delimited tag string, dropping empty tokens."""
    return tuple(tag for tag in raw.split() if tag)
