"""Shared utility functions for snassist."""

from __future__ import annotations

import re
import time

from snassist.chat.schemas import CodeSnippet

_CODE_BLOCK = re.compile(r"```([\w-]*)[\n\r]([\s\S]*?)```")

DEFAULT_SNIPPET_LANGUAGE = "javascript"


def extract_code_snippets(text: str) -> list[CodeSnippet]:
    """Fenced code blocks in ``text``, in order of appearance.

    Blocks without a language tag are assumed to be JavaScript, the
    ServiceNow scripting language. Empty blocks are skipped.
    """
    stamp = int(time.time() * 1000)
    snippets: list[CodeSnippet] = []
    for match in _CODE_BLOCK.finditer(text):
        language = match.group(1).strip() or DEFAULT_SNIPPET_LANGUAGE
        code = match.group(2).strip()
        if code:
            snippets.append(CodeSnippet(id=f"code-{stamp}-{len(snippets)}", code=code, language=language))
    return snippets


def strip_code_blocks(text: str) -> str:
    """Remove fenced code blocks, leaving the surrounding prose."""
    return _CODE_BLOCK.sub("", text)
