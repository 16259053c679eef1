from __future__ import annotations

import pytest

from src.xrai.services import code_extractor as ce


def test_extracts_tagged_block_trimmed():
    text = "Here you go:\n```javascript\n  const scene = new BABYLON.Scene(engine);  \n```\nEnjoy"
    assert ce.extract(text) == "const scene = new BABYLON.Scene(engine);"


@pytest.mark.parametrize("tag", ["javascript", "typescript", "jsx", "tsx", "html", "js", "ts", "css", ""])
def test_recognised_tags(tag):
    text = f"```{tag}\nconsole.log('hello world');\n```"
    assert ce.extract(text) == "console.log('hello world');"


def test_bare_fence_skips_unknown_info_string():
    text = "```python\nprint('hello there')\n```"
    assert ce.extract(text) == "print('hello there')"


def test_js_does_not_match_json_tag():
    text = "```json\n{\"answer\": 42, \"ok\": true}\n```"
    # falls through to the bare fence, which still yields the body
    assert ce.extract(text) == "{\"answer\": 42, \"ok\": true}"


def test_unterminated_fence_yields_nothing():
    assert ce.extract("```js\nconst box = MeshBuilder.CreateBox('b');") is None


def test_opening_line_incomplete_yields_nothing():
    assert ce.extract("Sure! ```javascri") is None


def test_short_code_is_rejected():
    assert ce.extract("```js\nx=1\n```") is None


def test_no_fence():
    assert ce.extract("just words") is None
    assert ce.extract("") is None
    assert ce.extract(None) is None


def test_trailing_artifacts_removed():
    text = "```js\nconst scene = createScene();\n[/INSERT_CODE]\n[RUN_SCENE]\n```"
    assert ce.extract(text) == "const scene = createScene();"


def test_first_block_wins_for_same_tag():
    text = "```js\nconst first = 1234;\n```\n```js\nconst second = 5678;\n```"
    assert ce.extract(text) == "const first = 1234;"


def test_earlier_block_wins_over_later_more_specific_tag():
    text = "```js\nconst first = 1234;\n```\nthen\n```javascript\nconst second = 5678;\n```"
    assert ce.extract(text) == "const first = 1234;"


def test_complete_block_survives_later_unterminated_fence():
    text = "```js\nconst first = 1234;\n```\nFull version:\n```javascript\nconst partial"
    assert ce.extract(text) == "const first = 1234;"


def test_bare_block_before_tagged_block_wins():
    text = "```\nconst bare = 'first';\n```\n```typescript\nconst typed: number = 2;\n```"
    assert ce.extract(text) == "const bare = 'first';"


def test_four_backtick_run_does_not_close_block():
    text = "```js\nconst quoted = 'long line';\n````\nmore text"
    assert ce.extract(text) is None
    closed = text + "\n```"
    assert ce.extract(closed) == "const quoted = 'long line';\n````\nmore text"


def test_extract_is_idempotent():
    text = "intro\n```tsx\nexport default function App() { return null }\n```"
    once = ce.extract(text)
    assert once is not None
    assert ce.extract(text) == once


def test_extract_for_run_accepts_unterminated_block():
    text = "[INSERT_CODE]```javascript\nconst scene = new BABYLON.Scene(engine);\n[/INSERT_CODE]\n[RUN_SCENE]"
    assert ce.extract(text) is None
    assert ce.extract_for_run(text) == "const scene = new BABYLON.Scene(engine);"


def test_extract_for_run_prefers_complete_block():
    text = "```js\nconst complete = true;\n```"
    assert ce.extract_for_run(text) == "const complete = true;"


def test_control_token_helpers():
    text = "Done! [INSERT_CODE]```js\nconst a = 12345;\n```[/INSERT_CODE] [RUN_SCENE]"
    assert ce.has_run_scene_trigger(text)
    assert not ce.has_run_scene_trigger("no trigger here")
    assert ce.has_code_block(text)
    stripped = ce.strip_control_tokens(text)
    assert "[RUN_SCENE]" not in stripped and "[INSERT_CODE]" not in stripped
    assert stripped.startswith("Done!")
