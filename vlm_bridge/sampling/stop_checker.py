"""
Stop sequence detection for streamed generation.

A fragment may only be emitted once it can no longer turn out to be the
beginning of a stop sequence, so the checker reports how much of the
generated text is safe to emit and whether a stop sequence has appeared.
"""

from typing import Iterable, Tuple


class StopChecker:
    """Tracks stop sequences over the growing generated text."""

    def __init__(self, stop_sequences: Iterable[str] = ()) -> None:
        # Empty strings would match everywhere
        self.stop_sequences = tuple(s for s in stop_sequences if s)
        self._max_len = max((len(s) for s in self.stop_sequences), default=0)

    def __bool__(self) -> bool:
        return bool(self.stop_sequences)

    def check(self, text: str, start: int = 0) -> Tuple[int, bool]:
        """Find how much of ``text`` may be emitted.

        Args:
            text: Full generated text so far.
            start: Offset before which text has already been checked and
                emitted; matches are searched from slightly before it so a
                stop sequence straddling the boundary is still found.

        Returns:
            Tuple of (safe_end, stopped). ``text[:safe_end]`` may be emitted.
            When ``stopped`` is True, ``safe_end`` is the index where the
            earliest stop sequence begins.
        """
        if not self.stop_sequences:
            return len(text), False

        search_from = max(0, start - self._max_len + 1)
        earliest = -1
        for stop in self.stop_sequences:
            idx = text.find(stop, search_from)
            if idx != -1 and (earliest == -1 or idx < earliest):
                earliest = idx
        if earliest != -1:
            return earliest, True

        return len(text) - self._partial_match_length(text), False

    def _partial_match_length(self, text: str) -> int:
        """Length of the longest suffix of text that is a proper prefix of a stop sequence."""
        longest = 0
        for stop in self.stop_sequences:
            for size in range(min(len(stop) - 1, len(text)), longest, -1):
                if text.endswith(stop[:size]):
                    longest = size
                    break
        return longest
