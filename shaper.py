#!/usr/bin/env python3
"""
Feed shaping: reorder a recency-ordered candidate list so that the same
source domain and near-duplicate headlines do not appear back to back.

Shaping is a permutation. Every input item is emitted exactly once; the
algorithm only decides the order. Selection is greedy over a bounded scan
horizon and prefers, in turn:

1. the first candidate from a different domain whose title key has not been
   seen in the recent window,
2. the first candidate from a different domain,
3. the candidate at the front of the queue.

Because the scan always walks candidates in their original relative order,
ties are broken in favour of the most recent item.
"""

import re
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import config, get_logger

# Module-specific logger
logger = get_logger("shaper")

TITLE_KEY_MAX_TOKENS = 10

STOP_WORDS = frozenset("""
    a an the and or but nor so yet of to in on at by for from with without into onto over under
    about after before as is are was were be been being am it its this that these those there
    here than then up down out off new just now says say said will would could should can may
    might must has have had do does did not no vs via amid
    breaking live update updates watch video photos exclusive report reports latest
""".split())

_URL_PATTERN = re.compile(r"(https?://|www\.)\S+", re.IGNORECASE)
_POSSESSIVE_PATTERN = re.compile(r"['’]s\b")
_APOSTROPHE_PATTERN = re.compile(r"['’]")
_NON_ALNUM_PATTERN = re.compile(r"[\W_]+", re.UNICODE)


def normalize_title_key(title: Optional[str]) -> str:
    """Reduce a headline to a near-duplicate signature.

    Lowercases, strips URLs and punctuation, collapses whitespace, drops stop
    words and keeps at most the first ten remaining tokens. An empty string
    means the title carries no usable signal.
    """
    if not title:
        return ""
    text = str(title).lower()
    text = _URL_PATTERN.sub(" ", text)
    text = _POSSESSIVE_PATTERN.sub("", text)
    text = _APOSTROPHE_PATTERN.sub("", text)
    text = _NON_ALNUM_PATTERN.sub(" ", text)
    tokens = [token for token in text.split() if token not in STOP_WORDS]
    return " ".join(tokens[:TITLE_KEY_MAX_TOKENS])


def _default_domain(item: Dict[str, Any]) -> str:
    return str(item.get("source_domain") or "").strip().lower()


def _default_title(item: Dict[str, Any]) -> str:
    return str(item.get("title") or "")


class RecentTitleWindow:
    """Bounded FIFO of recently emitted title keys with O(1) membership."""

    def __init__(self, size: int):
        self.size = max(0, int(size))
        self._order = deque()
        self._counts: Dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        return bool(key) and key in self._counts

    def __len__(self) -> int:
        return len(self._order)

    def push(self, key: str) -> None:
        if not key:
            return
        self._order.append(key)
        self._counts[key] = self._counts.get(key, 0) + 1
        while len(self._order) > self.size:
            evicted = self._order.popleft()
            remaining = self._counts[evicted] - 1
            if remaining:
                self._counts[evicted] = remaining
            else:
                del self._counts[evicted]


class FeedShaper:
    """Greedy, single-pass reordering with a recent-title window."""

    def __init__(
        self,
        window: Optional[int] = None,
        scan_horizon: Optional[int] = None,
        domain_of: Callable[[Dict[str, Any]], str] = _default_domain,
        title_of: Callable[[Dict[str, Any]], str] = _default_title,
    ):
        self.window = config.SHAPER_WINDOW if window is None else max(0, int(window))
        self.scan_horizon = max(1, config.SHAPER_SCAN_HORIZON if scan_horizon is None else int(scan_horizon))
        self.domain_of = domain_of
        self.title_of = title_of

    def shape(self, items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return the same items reordered to reduce visible repetition."""
        # Keys are computed once; the queue holds (domain, title_key, item)
        queue = [(self.domain_of(item), normalize_title_key(self.title_of(item)), item) for item in items]
        output: List[Dict[str, Any]] = []
        recent = RecentTitleWindow(self.window)
        last_domain: Optional[str] = None
        relaxed = 0
        forced = 0

        while queue:
            horizon = min(len(queue), self.scan_horizon)
            chosen = None
            fallback = None
            for index in range(horizon):
                domain, key, _ = queue[index]
                if domain == last_domain:
                    continue
                if key not in recent:
                    chosen = index
                    break
                if fallback is None:
                    fallback = index
            if chosen is None:
                if fallback is not None:
                    chosen = fallback
                    relaxed += 1
                else:
                    chosen = 0
                    forced += 1

            domain, key, item = queue.pop(chosen)
            output.append(item)
            last_domain = domain
            recent.push(key)

        if relaxed or forced:
            logger.debug(f"Shaped {len(output)} items ({relaxed} relaxed picks, {forced} forced picks)")
        return output


def shape_feed(items: Iterable[Dict[str, Any]], window: Optional[int] = None, scan_horizon: Optional[int] = None) -> List[Dict[str, Any]]:
    """Convenience wrapper around FeedShaper for article dicts."""
    return FeedShaper(window=window, scan_horizon=scan_horizon).shape(items)
