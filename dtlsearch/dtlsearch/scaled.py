"""Underflow-resistant non-negative numbers for likelihood accumulation."""

from __future__ import annotations

import math

SCALE_FACTOR = 2.0**256
SCALE_THRESHOLD = 1.0 / SCALE_FACTOR
LOG_SCALE_THRESHOLD = math.log(SCALE_THRESHOLD)
NULL_SCALE = 2**30 - 2

# Negative subtraction results above this bound are treated as round-off.
_ROUNDOFF_TOLERANCE = 1e-10


class ScaledNumber:
    """A value ``mantissa * SCALE_FACTOR ** -scale``.

    Larger scales hold smaller magnitudes. The null value carries
    ``NULL_SCALE`` and compares below every other value; a zero value is
    always stored as null, which is also what the no-argument form builds.
    """

    __slots__ = ("mantissa", "scale")

    def __init__(self, value: float = 0.0, scale: int = 0):
        if value < 0.0:
            raise ValueError("ScaledNumber requires a non-negative value")
        self.mantissa = float(value)
        self.scale = NULL_SCALE if self.mantissa == 0.0 else int(scale)

    @classmethod
    def null(cls) -> "ScaledNumber":
        return cls(0.0, NULL_SCALE)

    def copy(self) -> "ScaledNumber":
        return ScaledNumber(self.mantissa, self.scale)

    def is_null(self) -> bool:
        return self.mantissa == 0.0

    def rescale(self) -> "ScaledNumber":
        """Renormalize in place once the mantissa falls below the threshold."""
        if self.mantissa == 0.0:
            self.scale = NULL_SCALE
        elif self.mantissa < SCALE_THRESHOLD:
            self.scale += 1
            self.mantissa *= SCALE_FACTOR
        return self

    def log(self) -> float:
        if self.mantissa == 0.0:
            return -math.inf
        return math.log(self.mantissa) + self.scale * LOG_SCALE_THRESHOLD

    def __float__(self) -> float:
        if self.scale == 0:
            return self.mantissa
        return 0.0

    def __add__(self, other: "ScaledNumber") -> "ScaledNumber":
        if other.is_null():
            return self.copy()
        if self.is_null():
            return other.copy()
        if self.scale == other.scale:
            return ScaledNumber(self.mantissa + other.mantissa, self.scale).rescale()
        if self.scale < other.scale:
            return self.copy()
        return other.copy()

    def __iadd__(self, other: "ScaledNumber") -> "ScaledNumber":
        result = self + other
        self.mantissa = result.mantissa
        self.scale = result.scale
        return self

    def __sub__(self, other: "ScaledNumber") -> "ScaledNumber":
        if other.is_null():
            return self.copy()
        if self.is_null():
            raise ValueError("cannot subtract a positive value from the null value")
        if self.scale == other.scale:
            diff = self.mantissa - other.mantissa
            if diff < 0.0:
                if diff > -_ROUNDOFF_TOLERANCE:
                    return ScaledNumber.null()
                raise ValueError("ScaledNumber subtraction would be negative")
            return ScaledNumber(diff, self.scale).rescale()
        if other.scale > self.scale:
            return self.copy()
        raise ValueError("ScaledNumber subtraction would be negative")

    def __mul__(self, other) -> "ScaledNumber":
        if isinstance(other, ScaledNumber):
            mantissa = self.mantissa * other.mantissa
            if mantissa == 0.0:
                return ScaledNumber.null()
            return ScaledNumber(mantissa, self.scale + other.scale)
        if other < 0.0:
            raise ValueError("ScaledNumber requires a non-negative factor")
        mantissa = self.mantissa * other
        if mantissa == 0.0:
            return ScaledNumber.null()
        return ScaledNumber(mantissa, self.scale)

    __rmul__ = __mul__

    def __imul__(self, other) -> "ScaledNumber":
        result = self * other
        self.mantissa = result.mantissa
        self.scale = result.scale
        return self

    def __truediv__(self, other: float) -> "ScaledNumber":
        if other <= 0.0:
            raise ValueError("ScaledNumber can only be divided by a positive value")
        if self.is_null():
            return ScaledNumber.null()
        return ScaledNumber(self.mantissa / other, self.scale)

    def _key(self) -> tuple[int, int, float]:
        # Sorts null first, then by decreasing scale, then by mantissa.
        if self.is_null():
            return (0, 0, 0.0)
        return (1, -self.scale, self.mantissa)

    def __lt__(self, other: "ScaledNumber") -> bool:
        return self._key() < other._key()

    def __le__(self, other: "ScaledNumber") -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: "ScaledNumber") -> bool:
        return self._key() > other._key()

    def __ge__(self, other: "ScaledNumber") -> bool:
        return self._key() >= other._key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScaledNumber):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        if self.is_null():
            return "ScaledNumber(null)"
        return f"ScaledNumber({self.mantissa!r}, scale={self.scale})"
