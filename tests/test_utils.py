"""Tests for code snippet extraction."""

from snassist.utils import extract_code_snippets, strip_code_blocks


def test_language_tag_and_order():
    text = "A:\n```python\nprint(1)\n```\nB:\n```sql\nSELECT 1;\n```"

    snippets = extract_code_snippets(text)

    assert [(s.language, s.code) for s in snippets] == [("python", "print(1)"), ("sql", "SELECT 1;")]
    assert snippets[0].id != snippets[1].id
    assert snippets[0].id.startswith("code-")


def test_untagged_block_defaults_to_javascript():
    snippets = extract_code_snippets("```\ngs.info('hi');\n```")

    assert snippets[0].language == "javascript"


def test_empty_block_skipped():
    assert extract_code_snippets("```js\n   \n```") == []


def test_no_blocks():
    assert extract_code_snippets("Just prose.") == []


def test_strip_code_blocks():
    assert strip_code_blocks("Before\n```js\nx();\n```\nAfter") == "Before\n\nAfter"
