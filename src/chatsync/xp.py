"""
XP accrual for successfully persisted sends.

    xp    = 0.01 base
          + 20 if an attachment is present
          + 0.001 per emoji glyph
          + min(20, floor(len(body) / 50))
    level = floor(sqrt(xp / 100)) + 1

Accounting only: awarding XP never blocks or fails a send.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional

logger = logging.getLogger("chatsync.xp")

BASE_XP = 0.01
FILE_BONUS = 20.0
EMOJI_BONUS = 0.001
LENGTH_BONUS_CAP = 20
LENGTH_BONUS_CHARS = 50

# Pictographic blocks; variation selectors, ZWJ and skin-tone modifiers are
# not counted as separate glyphs.
_EMOJI_RE = re.compile(
    "["
    "\U0001F1E6-\U0001F1FF"  # regional indicators
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F900-\U0001F9FF"  # supplemental symbols & pictographs
    "\U0001FA70-\U0001FAFF"  # symbols & pictographs extended-A
    "\u2600-\u27bf"  # misc symbols, dingbats
    "\u2b50\u2b55"
    "]"
)


def count_emoji(body: str) -> int:
    return len(_EMOJI_RE.findall(body))


def message_xp(body: str, has_attachment: bool = False) -> float:
    xp = BASE_XP
    if has_attachment:
        xp += FILE_BONUS
    xp += EMOJI_BONUS * count_emoji(body)
    xp += min(LENGTH_BONUS_CAP, len(body) // LENGTH_BONUS_CHARS)
    return round(xp, 3)


def level_for_xp(xp: float) -> int:
    if xp <= 0:
        return 1
    return math.floor(math.sqrt(xp / 100)) + 1


class XPLedger:
    """Cumulative XP for the session's viewer.  Never decreases."""

    def __init__(self, initial_xp: float = 0.0) -> None:
        self._xp = max(0.0, float(initial_xp))

    @property
    def xp(self) -> float:
        return self._xp

    @property
    def level(self) -> int:
        return level_for_xp(self._xp)

    def award(self, amount: float) -> Optional[int]:
        """Add *amount* XP.

        Returns:
            The new level if this award crossed a level boundary, else ``None``.
        """
        if amount <= 0:
            return None
        before = self.level
        self._xp = round(self._xp + amount, 3)
        after = self.level
        if after > before:
            logger.info("Level up: %d -> %d (xp=%.3f)", before, after, self._xp)
            return after
        return None

    def award_message(self, body: str, has_attachment: bool = False) -> tuple[float, Optional[int]]:
        amount = message_xp(body, has_attachment)
        return amount, self.award(amount)
