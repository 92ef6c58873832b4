"""HTML sanitization for archived article content.

Implements a *prune* strategy: any element that is not on the safe-tag list,
or that carries an executable payload, is removed **together with its entire
subtree**.  Its safe siblings are left untouched.  Surviving elements keep
only allow-listed attributes.

Executable payloads are:

- event-handler attributes (``onclick``, ``onerror``, ...),
- ``javascript:``, ``vbscript:`` and ``data:`` URLs in URL-bearing
  attributes (``data:image/*`` is tolerated on ``<img src>``),
- ``style`` values containing ``expression(``, ``url(``, ``javascript:``,
  ``behavior:``, ``-moz-binding`` or ``@import``.

Comments, doctypes, processing instructions and CDATA sections are removed,
and ``<html>``/``<body>``/``<head>`` wrappers are unwrapped so the result is an
embeddable fragment.
"""

from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup, Tag
from bs4.dammit import EntitySubstitution
from bs4.element import CData, Comment, Declaration, Doctype, ProcessingInstruction
from bs4.formatter import HTMLFormatter

from link_archiver.core.exceptions import ErrorReason, SanitizationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Allow-lists
# ---------------------------------------------------------------------------

#: Elements that may appear in archived content.
ALLOWED_TAGS: frozenset[str] = frozenset({
    "a", "abbr", "acronym", "address", "article", "aside", "b", "bdi", "bdo",
    "big", "blockquote", "br", "caption", "center", "cite", "code", "col",
    "colgroup", "dd", "del", "details", "dfn", "div", "dl", "dt", "em",
    "figcaption", "figure", "footer", "h1", "h2", "h3", "h4", "h5", "h6",
    "header", "hr", "i", "img", "ins", "kbd", "li", "main", "mark", "ol", "p",
    "picture", "pre", "q", "rp", "rt", "ruby", "s", "samp", "section", "small",
    "source", "span", "strike", "strong", "sub", "summary", "sup", "table",
    "tbody", "td", "tfoot", "th", "thead", "time", "tr", "tt", "u", "ul", "var",
    "wbr",
})

#: Wrapper elements whose children are kept but which are themselves removed.
UNWRAP_TAGS: frozenset[str] = frozenset({"html", "body"})

#: Attributes allowed on every element.
GLOBAL_ATTRIBUTES: frozenset[str] = frozenset({
    "class", "dir", "id", "lang", "style", "title",
})

#: Additional attributes allowed per element.
TAG_ATTRIBUTES: dict[str, frozenset[str]] = {
    "a": frozenset({"href", "name", "rel", "target"}),
    "abbr": frozenset({"title"}),
    "blockquote": frozenset({"cite"}),
    "col": frozenset({"span", "width"}),
    "colgroup": frozenset({"span", "width"}),
    "del": frozenset({"cite", "datetime"}),
    "img": frozenset({"alt", "height", "src", "srcset", "width", "loading"}),
    "ins": frozenset({"cite", "datetime"}),
    "li": frozenset({"value"}),
    "ol": frozenset({"reversed", "start", "type"}),
    "q": frozenset({"cite"}),
    "source": frozenset({"media", "sizes", "src", "srcset", "type"}),
    "td": frozenset({"align", "colspan", "headers", "rowspan", "valign"}),
    "th": frozenset({"align", "colspan", "headers", "rowspan", "scope", "valign"}),
    "time": frozenset({"datetime"}),
}

#: Attributes whose values are URLs and must be checked for dangerous schemes.
URL_ATTRIBUTES: frozenset[str] = frozenset({
    "action", "background", "cite", "data", "formaction", "href", "lowsrc",
    "poster", "src", "srcset", "xlink:href",
})

_DANGEROUS_SCHEMES: tuple[str, ...] = ("javascript:", "vbscript:", "data:")
_DANGEROUS_STYLE_TOKENS: tuple[str, ...] = (
    "expression(",
    "url(",
    "javascript:",
    "behavior:",
    "-moz-binding",
    "@import",
)

# Browsers ignore control characters and whitespace inside URL schemes.
_URL_NOISE_RE = re.compile(r"[\x00-\x20\x7f]+")
_CSS_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_CSS_ESCAPE_RE = re.compile(r"\\([0-9a-fA-F]{1,6})\s?")

_REMOVED_NODE_TYPES = (Comment, Doctype, ProcessingInstruction, Declaration, CData)

# Minimal entity escaping; void elements rendered as HTML (<br>), not XHTML (<br/>).
_OUTPUT_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)


# ---------------------------------------------------------------------------
# Payload checks
# ---------------------------------------------------------------------------


def _is_dangerous_url(value: str, *, allow_data_image: bool) -> bool:
    normalized = _URL_NOISE_RE.sub("", value).lower()
    if allow_data_image and normalized.startswith("data:image/"):
        return False
    return normalized.startswith(_DANGEROUS_SCHEMES)


def _is_dangerous_style(value: str) -> bool:
    def _unescape(match: re.Match[str]) -> str:
        try:
            return chr(int(match.group(1), 16))
        except (ValueError, OverflowError):
            return ""

    normalized = _CSS_COMMENT_RE.sub("", value)
    normalized = _CSS_ESCAPE_RE.sub(_unescape, normalized).replace("\\", "")
    normalized = _URL_NOISE_RE.sub("", normalized).lower()
    return any(token in normalized for token in _DANGEROUS_STYLE_TOKENS)


def _attribute_text(value: str | list[str]) -> str:
    # bs4 returns multi-valued attributes (class, rel) as lists.
    return " ".join(value) if isinstance(value, list) else str(value)


def _has_executable_payload(tag: Tag) -> bool:
    """Return ``True`` if any attribute of ``tag`` could run script."""
    for name, raw_value in tag.attrs.items():
        attr = name.lower()
        value = _attribute_text(raw_value)

        if attr.startswith("on"):
            return True
        if attr == "style" and _is_dangerous_style(value):
            return True
        if attr in URL_ATTRIBUTES:
            allow_data_image = tag.name == "img" and attr == "src"
            candidates = value.split(",") if attr == "srcset" else [value]
            if any(_is_dangerous_url(c.strip(), allow_data_image=allow_data_image) for c in candidates):
                return True
    return False


# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------


class HtmlSanitizer:
    """Removes script-capable content from an HTML fragment."""

    def sanitize(self, html: str) -> str:
        """Return a sanitized copy of ``html``.

        Raises:
            SanitizationError: With reason ``sanitization_failed`` if the
                document cannot be processed.
        """
        try:
            soup = BeautifulSoup(html, "html.parser")
            pruned = self._scrub(soup)
            result = soup.decode(formatter=_OUTPUT_FORMATTER).strip()
        except Exception as exc:  # noqa: BLE001
            logger.warning("sanitizer: failed to sanitize document: %s", exc)
            raise SanitizationError(
                ErrorReason.SANITIZATION_FAILED,
                f"Sanitization failed: {exc}",
                details={"error_type": type(exc).__name__},
            ) from exc

        if pruned:
            logger.debug("sanitizer: pruned %d element(s)", pruned)
        return result

    def _scrub(self, node: Tag) -> int:
        """Sanitize the children of ``node`` in place; return the prune count."""
        pruned = 0
        for child in list(node.children):
            if isinstance(child, _REMOVED_NODE_TYPES):
                child.extract()
                continue
            if not isinstance(child, Tag):
                continue

            name = (child.name or "").lower()
            if name == "head":
                child.decompose()
                continue
            if name in UNWRAP_TAGS:
                pruned += self._scrub(child)
                child.unwrap()
                continue

            if name not in ALLOWED_TAGS or _has_executable_payload(child):
                child.decompose()
                pruned += 1
                continue

            allowed = GLOBAL_ATTRIBUTES | TAG_ATTRIBUTES.get(name, frozenset())
            for attr in list(child.attrs):
                if attr.lower() not in allowed:
                    del child.attrs[attr]

            pruned += self._scrub(child)
        return pruned
