"""Extraction of runnable scene code from assistant text.

The assistant marks code with Markdown fences (optionally language tagged) and
may wrap it in the in-chat control tokens ``[INSERT_CODE]`` / ``[RUN_SCENE]``.
``extract`` is called on every streamed delta, so it must stay pure and cheap:
it only returns code once a fenced block is syntactically complete.
"""

from __future__ import annotations

from typing import Optional, Tuple

FENCE = "```"

# Recognised opening fences. The earliest opening in the text wins; when
# several start at the same index the longest (most specific) tag wins.
FENCE_CANDIDATES: Tuple[str, ...] = (
    "```javascript",
    "```typescript",
    "```jsx",
    "```tsx",
    "```html",
    "```js",
    "```ts",
    "```css",
    FENCE,
)

INSERT_CODE_START = "[INSERT_CODE]"
INSERT_CODE_END = "[/INSERT_CODE]"
RUN_SCENE = "[RUN_SCENE]"
RUN_SCENE_END = "[/RUN_SCENE]"
ARTIFACT_TOKENS: Tuple[str, ...] = (INSERT_CODE_END, INSERT_CODE_START, RUN_SCENE, RUN_SCENE_END)

MIN_CODE_LENGTH = 10


def _is_tag_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_-+"


def _find_opening(content: str, token: str) -> Optional[int]:
    """Index of the first valid occurrence of ``token``.

    Valid means exactly three backticks (no backtick directly before or after
    the run) and, for tagged tokens, a tag that is not the prefix of a longer
    tag (``js`` must not match ``json``).
    """
    start = 0
    length = len(content)
    while True:
        idx = content.find(token, start)
        if idx == -1:
            return None
        start = idx + 1
        if idx > 0 and content[idx - 1] == "`":
            continue
        ticks_end = idx + len(FENCE)
        if ticks_end < length and content[ticks_end] == "`":
            continue
        tag_end = idx + len(token)
        if len(token) > len(FENCE) and tag_end < length and _is_tag_char(content[tag_end]):
            continue
        return idx


def _find_closing(content: str, start: int) -> Optional[int]:
    """Index where the body of an open block ends, or ``None``.

    A fence on its own line is preferred; a bare run anywhere is the fallback.
    Either way the run must be exactly three backticks.
    """
    length = len(content)
    for marker in ("\n" + FENCE, FENCE):
        pos = start
        while True:
            idx = content.find(marker, pos)
            if idx == -1:
                break
            pos = idx + 1
            fence_at = idx + len(marker) - len(FENCE)
            if fence_at > 0 and content[fence_at - 1] == "`":
                continue
            ticks_end = fence_at + len(FENCE)
            if ticks_end < length and content[ticks_end] == "`":
                continue
            return idx
    return None


def _locate_block(content: str) -> Optional[Tuple[int, Optional[int]]]:
    """Return ``(body_start, body_end)`` of the first fenced block.

    ``body_end`` is ``None`` while the closing fence has not arrived yet.
    ``None`` overall means no opening fence (or an opening line that is still
    incomplete).
    """
    best: Optional[Tuple[int, str]] = None
    for token in FENCE_CANDIDATES:
        idx = _find_opening(content, token)
        if idx is None:
            continue
        if best is None or idx < best[0] or (idx == best[0] and len(token) > len(best[1])):
            best = (idx, token)
    if best is None:
        return None
    idx, token = best
    # Body starts after the opening line; the bare fence skips any info string.
    newline = content.find("\n", idx + len(token))
    if newline == -1:
        return None
    body_start = newline + 1
    return body_start, _find_closing(content, body_start)


def strip_trailing_artifacts(code: str) -> str:
    text = code.strip()
    changed = True
    while changed:
        changed = False
        for token in ARTIFACT_TOKENS:
            if text.endswith(token):
                text = text[: -len(token)].strip()
                changed = True
    return text


def _finish(body: str) -> Optional[str]:
    code = strip_trailing_artifacts(body)
    if len(code) < MIN_CODE_LENGTH:
        return None
    return code


def extract(content: Optional[str]) -> Optional[str]:
    """Return the code inside the first complete fenced block, or ``None``."""
    if not content:
        return None
    located = _locate_block(content)
    if located is None:
        return None
    body_start, body_end = located
    if body_end is None:
        return None
    return _finish(content[body_start:body_end])


def extract_for_run(content: Optional[str]) -> Optional[str]:
    """Just-in-time re-scan used by the run action once streaming has ended.

    Accepts a block whose closing fence never arrived (some models close the
    block with ``[/INSERT_CODE]`` only), reading up to that marker or the end
    of the text.
    """
    code = extract(content)
    if code is not None or not content:
        return code
    located = _locate_block(content)
    if located is None:
        return None
    body_start, body_end = located
    if body_end is not None:
        return None
    end = content.find(INSERT_CODE_END, body_start)
    if end == -1:
        end = len(content)
    return _finish(content[body_start:end])


def has_code_block(content: Optional[str]) -> bool:
    return extract(content) is not None


def has_run_scene_trigger(content: Optional[str]) -> bool:
    return bool(content) and RUN_SCENE in content


def strip_control_tokens(content: Optional[str]) -> str:
    text = content or ""
    for token in ARTIFACT_TOKENS:
        text = text.replace(token, "")
    return text.strip()
