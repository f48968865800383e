"""Property-based tests for conflict marker parsing using Hypothesis.

These tests verify:
- Every well-formed region is found with its sides intact
- Whitespace-only regions resolve to our side and leave no markers
- Text outside regions survives trivial resolution unchanged
"""
from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from taskdesk.tasks.conflicts import (
    has_conflict_markers,
    parse_conflict_regions,
    resolve_trivially,
)

# === Strategies ===

# Lines that can never be mistaken for a marker.
line_strategy = st.from_regex(r"[a-z0-9 =(){}:.]{0,30}", fullmatch=True).filter(
    lambda line: not line.startswith(("=======", "<<<<<<<", ">>>>>>>", "|||||||"))
)
block_strategy = st.lists(line_strategy, min_size=1, max_size=5).map("\n".join)
content_line_strategy = st.from_regex(r"[a-z0-9(][a-z0-9 =(){}:.]{0,30}", fullmatch=True)
content_block_strategy = st.lists(content_line_strategy, min_size=1, max_size=5).map("\n".join)


def _region(ours: str, theirs: str, base: str | None = None) -> str:
    parts = ["<<<<<<< HEAD", ours]
    if base is not None:
        parts.extend(["||||||| base", base])
    parts.extend(["=======", theirs, ">>>>>>> feature"])
    return "\n".join(parts)


# === Property Tests ===


@given(
    regions=st.lists(
        st.tuples(block_strategy, block_strategy, st.none() | block_strategy),
        min_size=1,
        max_size=4,
    ),
    filler=block_strategy,
)
@settings(max_examples=200)
def test_regions_round_trip(regions: list[tuple[str, str, str | None]], filler: str) -> None:
    content = "\n".join(f"{filler}\n{_region(ours, theirs, base)}" for ours, theirs, base in regions)

    parsed = parse_conflict_regions(content)

    assert [(r.ours, r.theirs, r.base) for r in parsed] == regions
    assert has_conflict_markers(content)


@given(before=block_strategy, ours=content_block_strategy, after=block_strategy)
@settings(max_examples=200)
def test_whitespace_regions_resolve_to_ours(before: str, ours: str, after: str) -> None:
    theirs = "\n".join(f"  {line}\t" for line in ours.split("\n"))
    content = f"{before}\n{_region(ours, theirs)}\n{after}"

    resolved = resolve_trivially(content)

    assert resolved is not None
    assert not has_conflict_markers(resolved)
    stripped = "\n".join(line.rstrip() for line in ours.split("\n"))
    assert resolved == f"{before}\n{stripped}\n{after}"
