from __future__ import annotations

import math
from fractions import Fraction

from sessionward.storage.models import RenewalToken


class RotationPolicy:
    """Decides when a renewal family must be replaced.

    A token rotates once its usage (counted after the current renewal)
    reaches ``ceil(ratio * max_uses)``. The threshold is computed with exact
    fractions so ``0.8 * 10`` is 8, never 8.000000000000002.
    """

    def __init__(self, ratio: float = 0.8) -> None:
        if not 0 < ratio <= 1:
            raise ValueError("rotation ratio must be in (0, 1]")
        self.ratio = Fraction(str(ratio))

    def threshold(self, max_uses: int) -> int:
        return max(1, math.ceil(self.ratio * max_uses))

    def should_rotate(self, token: RenewalToken) -> bool:
        return token.used_count >= self.threshold(token.max_uses)
