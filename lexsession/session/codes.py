"""
Join-code allocation.

Codes are fixed-length numeric strings (leading zeros allowed) drawn
uniformly at random and checked against a caller-supplied lookup over the
codes currently in use. The allocator keeps no state; the registry
re-checks uniqueness under its own lock when it commits the code.
"""

from __future__ import annotations

import random
import secrets
from typing import Callable, Optional

from lexsession.core import constants as C
from lexsession.core.errors import SessionError
from lexsession.core.types import Result, Ok, Err


class CodeAllocator:
    """
    Random numeric code generator with a bounded retry budget.

    Usage:
        allocator = CodeAllocator()
        result = allocator.allocate(lambda code: code in live_codes)
    """

    __slots__ = ("_length", "_max_attempts", "_rng")

    def __init__(
        self,
        length: int = C.SESSION_CODE_LENGTH,
        max_attempts: int = C.SESSION_CODE_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not (1 <= length <= C.SESSION_CODE_MAX_LENGTH):
            raise ValueError(
                f"length must be in [1, {C.SESSION_CODE_MAX_LENGTH}], got {length}"
            )
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._length = length
        self._max_attempts = max_attempts
        self._rng = rng or secrets.SystemRandom()

    @property
    def length(self) -> int:
        return self._length

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def generate(self, length: Optional[int] = None) -> str:
        """Draw one candidate code without checking it."""
        n = length or self._length
        return "".join(str(self._rng.randrange(10)) for _ in range(n))

    def allocate(
        self,
        exists: Callable[[str], bool],
        length: Optional[int] = None,
    ) -> Result[str, SessionError]:
        """
        Return a code for which `exists(code)` is False.

        Fails with SESSION_CODE_EXHAUSTED after `max_attempts` collisions.
        """
        n = length or self._length
        if not (1 <= n <= C.SESSION_CODE_MAX_LENGTH):
            return Err(SessionError.invalid_input(
                "length", f"must be in [1, {C.SESSION_CODE_MAX_LENGTH}]", n,
            ))

        for _ in range(self._max_attempts):
            code = self.generate(n)
            if not exists(code):
                return Ok(code)

        return Err(SessionError.code_exhausted(self._max_attempts, n))
