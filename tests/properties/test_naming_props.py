"""Property-based tests for branch naming using Hypothesis.

These tests verify:
- Generated names are always git-safe (lowercase words joined by single dashes)
- Names use at most seven words of the task name
- Names without usable characters fall back to the task id
"""
from __future__ import annotations

import re

from hypothesis import given, settings
from hypothesis import strategies as st

from taskdesk.tasks.naming import MAX_WORDS, generate_branch_name

# === Strategies ===

printable = st.characters(min_codepoint=32, max_codepoint=126)
task_name_strategy = st.text(alphabet=printable, max_size=200)
word_strategy = st.from_regex(r"[a-z0-9]{1,10}", fullmatch=True)

TASK_ID = "0b5c6f2e-3d41-4a7e-9f10-7d2c1e9b8a66"
SAFE_NAME = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


# === Property Tests ===


@given(name=task_name_strategy)
@settings(max_examples=300)
def test_name_is_git_safe(name: str) -> None:
    branch = generate_branch_name(name, TASK_ID)
    assert branch == TASK_ID or SAFE_NAME.fullmatch(branch)


@given(words=st.lists(word_strategy, min_size=1, max_size=15))
@settings(max_examples=200)
def test_uses_leading_words(words: list[str]) -> None:
    branch = generate_branch_name(" ".join(words), TASK_ID)
    assert branch == "-".join(words[:MAX_WORDS])


@given(name=st.text(alphabet=st.sampled_from(" !?.-_#@"), max_size=30))
def test_unusable_names_fall_back_to_id(name: str) -> None:
    assert generate_branch_name(name, TASK_ID) == TASK_ID


def test_example() -> None:
    assert generate_branch_name("Fix the Login bug!", "t1") == "fix-the-login-bug"
    assert generate_branch_name("  --Refactor   API -- layer--  ", "t1") == "refactor-api-layer"
