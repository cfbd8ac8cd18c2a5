"""
Email content normalizer.

Merges the walker's html/plain accumulators into one renderable HTML string
and sanitizes it. The output is always wrapped in a single container div
with a fixed font stack so emails render consistently in the client.

Sanitization parses the markup with BeautifulSoup (``html.parser``) and
works on the tree, so tags split or nested to dodge a pattern can't be
reassembled into live markup. sanitize_html is idempotent: feeding its
output back in returns the same string (an existing container is unwrapped
before the passes run).
"""

import html as html_lib
import re

from bs4 import BeautifulSoup, Doctype, NavigableString, ProcessingInstruction

EMPTY_CONTENT = "<p>(This message has no content)</p>"

CONTAINER_STYLE = (
    "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, "
    "'Helvetica Neue', Arial, sans-serif; line-height: 1.6; "
    "word-wrap: break-word; overflow-wrap: break-word;"
)
_CONTAINER_OPEN = f'<div class="email-content" style="{CONTAINER_STYLE}">'
_CONTAINER_CLOSE = "</div>"

_ISOLATED_TARGET = "_blank"
_ISOLATED_REL = "noopener noreferrer"

# Tag names a browser could treat as an element; anything else is parser debris
_ELEMENT_NAME = re.compile(r"[a-z][a-z0-9._:-]*")

_NO_LINKIFY_PARENTS = {"a", "style", "script", "textarea"}
_BARE_URL = re.compile(r"""https?://[^\s<>"']+""", re.IGNORECASE)
_URL_TRAILING_PUNCTUATION = ".,;:!?)]"

# Non-breaking spaces are content, so only ASCII whitespace is collapsed.
_WHITESPACE_RUN = re.compile(r"[ \t\n\r\f\v]+")
_WHITESPACE_BETWEEN_TAGS = re.compile(r">[ \t\n\r\f\v]+<")


# ---------------------------------------------------------------------------
# Basis selection
# ---------------------------------------------------------------------------

def plain_text_to_html(text: str) -> str:
    """Escape &, < and > and turn every line break into <br>."""
    escaped = html_lib.escape(text, quote=False)
    return re.sub(r"\r\n|\r|\n", "<br>", escaped)


def normalize_content(html: str, text: str) -> str:
    """
    Build the final ``content`` string for an email.

    HTML wins whenever there is any; plain text is escaped and converted
    otherwise; with neither, the explicit EMPTY_CONTENT placeholder is used.
    Never returns None or an empty string.
    """
    if html and html.strip():
        basis = html
    elif text and text.strip():
        basis = plain_text_to_html(text)
    else:
        basis = EMPTY_CONTENT
    return sanitize_html(basis)


# ---------------------------------------------------------------------------
# Sanitization passes
# ---------------------------------------------------------------------------

def _strip_preambles(soup: BeautifulSoup) -> None:
    for node in list(soup.descendants):
        if isinstance(node, (Doctype, ProcessingInstruction)):
            node.extract()

    for tag in soup.find_all("script"):
        tag.decompose()

    for tag in soup.find_all(True):
        if not _ELEMENT_NAME.fullmatch(tag.name):
            tag.unwrap()
            continue
        for attr in list(tag.attrs):
            if attr == "xmlns" or attr.startswith("xmlns:"):
                del tag.attrs[attr]


def _is_one_pixel(value) -> bool:
    return isinstance(value, str) and value.strip().lower() in ("1", "1px")


def _remove_tracking_pixels(soup: BeautifulSoup) -> None:
    for img in soup.find_all("img"):
        if _is_one_pixel(img.get("width")) and _is_one_pixel(img.get("height")):
            img.decompose()


def _split_trailing_punctuation(url: str) -> tuple[str, str]:
    trailing = ""
    while url and url[-1] in _URL_TRAILING_PUNCTUATION:
        trailing = url[-1] + trailing
        url = url[:-1]
    return url, trailing


def _linkify_bare_urls(soup: BeautifulSoup) -> None:
    for node in list(soup.find_all(string=_BARE_URL)):
        # Comments, CDATA and style/script text are NavigableString subclasses.
        if type(node) is not NavigableString:
            continue
        if any(parent.name in _NO_LINKIFY_PARENTS for parent in node.parents):
            continue

        text = str(node)
        pieces = []
        pos = 0
        for match in _BARE_URL.finditer(text):
            url, trailing = _split_trailing_punctuation(match.group(0))
            if not url:
                continue
            if match.start() > pos:
                pieces.append(NavigableString(text[pos:match.start()]))
            anchor = soup.new_tag("a", href=url)
            anchor.string = url
            pieces.append(anchor)
            pos = match.start() + len(url)
        if not pieces:
            continue
        if pos < len(text):
            pieces.append(NavigableString(text[pos:]))
        node.replace_with(*pieces)


def _isolate_anchors(soup: BeautifulSoup) -> None:
    for anchor in soup.find_all("a"):
        if anchor.has_attr("target"):
            continue
        anchor["target"] = _ISOLATED_TARGET
        if not anchor.has_attr("rel"):
            anchor["rel"] = _ISOLATED_REL


def _collapse_whitespace(html: str) -> str:
    html = _WHITESPACE_RUN.sub(" ", html)
    html = _WHITESPACE_BETWEEN_TAGS.sub("><", html)
    return html.strip()


def _unwrap_container(html: str) -> str:
    stripped = html.strip()
    if stripped.startswith(_CONTAINER_OPEN) and stripped.endswith(_CONTAINER_CLOSE):
        return stripped[len(_CONTAINER_OPEN):-len(_CONTAINER_CLOSE)]
    return html


def sanitize_html(html: str) -> str:
    """
    Make provider HTML safe and consistent to render.

    Passes, in order:
      a. drop DOCTYPE / <?xml?> preambles, <script> elements and xmlns
         attributes; unwrap tags whose names no browser would parse
      b. drop 1x1 tracking-pixel <img> tags (width/height in either order)
      c. turn bare URLs in text outside anchors, style and script into
         anchors opening in a new, isolated browsing context
      d. give existing anchors without a target the same treatment
      e. collapse whitespace runs and remove whitespace between tags
      f. wrap everything in one container div with a fixed font stack
    """
    soup = BeautifulSoup(_unwrap_container(html or ""), "html.parser")
    _strip_preambles(soup)
    _remove_tracking_pixels(soup)
    _linkify_bare_urls(soup)
    _isolate_anchors(soup)
    body = _collapse_whitespace(soup.decode())
    return f"{_CONTAINER_OPEN}{body}{_CONTAINER_CLOSE}"
