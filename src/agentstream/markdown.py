"""Minimal markdown renderer for streamed assistant text.

`render_markdown` is re-run on the whole accumulated text after every append,
so it is a pure function: no state survives between calls and the same input
always yields the same output.
"""

from __future__ import annotations

import re

_LOOKALIKES = (
    (re.compile("[\u2217\uFF0A]"), "*"),
    (re.compile("[\u2013\u2014]"), "-"),
    (re.compile("\u00A0"), " "),
)

_FENCE = "```"
_LANG_TAG = re.compile(r"^[a-zA-Z0-9_-]+$")
_HEADING = re.compile(r"^(#{1,3})\s+(.+)$")
_BULLET = re.compile(r"^[-*]\s+(.+)$")

_CODE_SPAN = re.compile(r"`([^`]+)`")
_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^\s)]+)\)")
_BARE_URL = re.compile(r"(^|[\s(])(https?://[^\s<\x00]+)")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"(^|[^*])\*([^*]+)\*(?!\*)")
_PLACEHOLDER = re.compile("\x00(\\d+)\x00")
_URL_TRAILING = ".,;:!?)"


def escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def normalize_text(text: str) -> str:
    """Fold look-alike punctuation the model sometimes emits back to ASCII."""
    src = (text or "").replace("\r\n", "\n").replace("\x00", "")
    for pattern, replacement in _LOOKALIKES:
        src = pattern.sub(replacement, src)
    return src


def _anchor(url: str, label: str) -> str:
    return f'<a href="{url}" target="_blank" rel="noopener noreferrer">{label}</a>'


def render_inline(escaped: str) -> str:
    """Apply inline formatting to already-escaped text.

    Passes run in a fixed order: code spans, links and bare URLs, bold,
    italic. Code spans and links are swapped for placeholders so later passes
    never rewrite their contents.
    """
    shielded: list[str] = []

    def shield(html: str) -> str:
        shielded.append(html)
        return f"\x00{len(shielded) - 1}\x00"

    def bare_url(match: re.Match[str]) -> str:
        url = match.group(2)
        trailing = ""
        while url and url[-1] in _URL_TRAILING:
            trailing = url[-1] + trailing
            url = url[:-1]
        if not url:
            return match.group(0)
        return match.group(1) + shield(_anchor(url, url)) + trailing

    out = _CODE_SPAN.sub(lambda m: shield(f"<code>{m.group(1)}</code>"), escaped)
    out = _LINK.sub(lambda m: shield(_anchor(m.group(2), m.group(1))), out)
    out = _BARE_URL.sub(bare_url, out)
    out = _BOLD.sub(r"<strong>\1</strong>", out)
    out = _ITALIC.sub(r"\1<em>\2</em>", out)
    return _PLACEHOLDER.sub(lambda m: shielded[int(m.group(1))], out)


def _render_code(chunk: str) -> str:
    lines = chunk.split("\n")
    first = lines[0].strip()
    if _LANG_TAG.match(first):
        code = "\n".join(lines[1:])
        return (
            f'<pre class="md-pre"><code class="md-code" data-lang="{first}">'
            f"{escape_html(code)}</code></pre>"
        )
    return f'<pre class="md-pre"><code class="md-code">{escape_html(chunk)}</code></pre>'


def _starts_block(line: str) -> bool:
    stripped = line.strip()
    return bool(_HEADING.match(stripped) or _BULLET.match(stripped))


def _render_text(chunk: str) -> str:
    lines = escape_html(chunk).split("\n")
    html: list[str] = []
    idx = 0

    while idx < len(lines):
        line = lines[idx].rstrip()
        if not line.strip():
            idx += 1
            continue

        heading = _HEADING.match(line.strip())
        if heading:
            level = len(heading.group(1))
            html.append(f"<h{level}>{render_inline(heading.group(2).strip())}</h{level}>")
            idx += 1
            continue

        if _BULLET.match(line.strip()):
            items: list[str] = []
            while idx < len(lines):
                item = _BULLET.match(lines[idx].strip())
                if not item:
                    break
                items.append(f"<li>{render_inline(item.group(1))}</li>")
                idx += 1
            html.append("<ul>" + "".join(items) + "</ul>")
            continue

        paragraph: list[str] = []
        while idx < len(lines):
            current = lines[idx].rstrip()
            if not current.strip() or _starts_block(current):
                break
            paragraph.append(current)
            idx += 1
        html.append(f"<p>{render_inline('<br />'.join(paragraph))}</p>")

    return "".join(html)


def render_markdown(text: str) -> str:
    """Render the full accumulated text into HTML-like markup."""
    parts = normalize_text(text).split(_FENCE)
    rendered: list[str] = []
    for index, chunk in enumerate(parts):
        # Odd segments sit between fences; a trailing unclosed fence is code too.
        if index % 2 == 1:
            rendered.append(_render_code(chunk))
        else:
            rendered.append(_render_text(chunk))
    return "".join(rendered)
