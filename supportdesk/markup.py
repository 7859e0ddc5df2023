"""Escape-then-format rendering of chat text into a small, safe HTML subset."""

import html
import re

_CODE_BLOCK = re.compile(r"```(\w+)?\n(.*?)```", re.S)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_BOLD = re.compile(r"\*\*(.+?)\*\*")
_NUMBERED = re.compile(r"^(\d+)[.)]\s+(.+)$")
_BULLET = re.compile(r"^[-*•]\s+(.+)$")
_TAG = re.compile(r"<[^>]+>")
_BREAK = re.compile(r"<br>|</p>(?!$)|</li>(?!$)")
_STASHED = re.compile("^\x00\\d+\x00$")


def escape_html(s: str) -> str:
    return html.escape(s, quote=True)


def render_markdown(text: str) -> str:
    """
    Render a plain-text message. All input is escaped first, so the only
    tags in the output are the ones produced here: pre/code, strong,
    ol/ul/li, p and br.
    """
    if not text:
        return ""
    blocks = []

    def stash(m):
        blocks.append("<pre><code>" + m.group(2).strip() + "</code></pre>")
        return f"\x00{len(blocks) - 1}\x00"

    escaped = _CODE_BLOCK.sub(stash, escape_html(text))
    escaped = _INLINE_CODE.sub(r"<code>\1</code>", escaped)
    escaped = _BOLD.sub(r"<strong>\1</strong>", escaped)

    out = []
    list_tag = None
    in_para = False
    for raw in escaped.split("\n"):
        line = raw.strip()
        if _STASHED.match(line):
            # code blocks stand alone, never inside a paragraph
            if list_tag:
                out.append(f"</{list_tag}>")
                list_tag = None
            if in_para:
                out.append("</p>")
                in_para = False
            out.append(line)
            continue
        numbered = _NUMBERED.match(line)
        bullet = None if numbered else _BULLET.match(line)
        if numbered or bullet:
            tag = "ol" if numbered else "ul"
            if list_tag != tag:
                if list_tag:
                    out.append(f"</{list_tag}>")
                if in_para:
                    out.append("</p>")
                    in_para = False
                out.append(f"<{tag}>")
                list_tag = tag
            out.append("<li>" + (numbered.group(2) if numbered else bullet.group(1)) + "</li>")
            continue
        if list_tag:
            out.append(f"</{list_tag}>")
            list_tag = None
        if not line:
            if in_para:
                out.append("</p>")
                in_para = False
            continue
        out.append("<br>" if in_para else "<p>")
        in_para = True
        out.append(line)
    if list_tag:
        out.append(f"</{list_tag}>")
    if in_para:
        out.append("</p>")

    rendered = "".join(out)
    return re.sub("\x00(\\d+)\x00", lambda m: blocks[int(m.group(1))], rendered)


def to_plain_text(markup: str) -> str:
    text = _BREAK.sub("\n", markup or "")
    return html.unescape(_TAG.sub("", text)).strip()
