"""
Tests for stop sequence detection.

This module tests:
- Detection of a stop sequence and the emit boundary before it
- Hold-back of text that may be the start of a stop sequence
- Earliest match wins when several stop sequences appear
- Matches straddling the already-emitted boundary
"""

import pytest

from vlm_bridge.sampling.stop_checker import StopChecker


@pytest.mark.unit
def test_no_stop_sequences_emits_everything() -> None:
    """Test that without stop sequences all text is safe."""
    checker = StopChecker()
    assert not checker
    assert checker.check("hello world") == (11, False)


@pytest.mark.unit
def test_empty_stop_sequence_ignored() -> None:
    """Test that empty strings are not treated as stop sequences."""
    checker = StopChecker(["", "END"])
    assert checker.stop_sequences == ("END",)


@pytest.mark.unit
def test_stop_sequence_found() -> None:
    """Test that text before the stop sequence is emitted and generation stops."""
    checker = StopChecker(["END"])
    assert checker.check("hello END there") == (6, True)


@pytest.mark.unit
def test_partial_stop_sequence_held_back() -> None:
    """Test that a trailing prefix of a stop sequence is held back."""
    checker = StopChecker(["END"])
    assert checker.check("hello EN") == (6, False)


@pytest.mark.unit
def test_partial_match_released_when_disproved() -> None:
    """Test that held text is released once it cannot become the stop sequence."""
    checker = StopChecker(["END"])
    assert checker.check("hello ENT") == (9, False)


@pytest.mark.unit
def test_earliest_stop_sequence_wins() -> None:
    """Test that the earliest of several stop sequences ends the text."""
    checker = StopChecker(["world", "lo"])
    assert checker.check("hello world") == (3, True)


@pytest.mark.unit
def test_match_straddling_emitted_boundary() -> None:
    """Test that a stop sequence starting before the emitted offset is found."""
    checker = StopChecker(["world"])
    # "hello wor" was emitted up to the held-back "wor" (offset 6)
    assert checker.check("hello world", start=6) == (6, True)
