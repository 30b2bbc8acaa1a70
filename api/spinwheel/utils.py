import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_sysrand = secrets.SystemRandom()


def utcnow() -> datetime:
    """UTC-aware 'now' to keep comparisons consistent with timestamptz columns."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PrizeCandidate:
    """One wedge of the wheel as seen by a single draw."""
    name: str
    color: str
    probability: float
    id: Optional[int] = None


# Used when no prize is active; GET /api/prizes serves the same list so the
# wheel a client renders always matches the draw order.
DEFAULT_PRIZES: tuple[PrizeCandidate, ...] = (
    PrizeCandidate(name="100 THB", color="#E11D48", probability=25),
    PrizeCandidate(name="No Luck", color="#607D8B", probability=30),
    PrizeCandidate(name="500 THB", color="#D4AF37", probability=15),
    PrizeCandidate(name="Spin Again", color="#10B981", probability=15),
    PrizeCandidate(name="1000 THB", color="#E11D48", probability=10),
    PrizeCandidate(name="Jackpot", color="#D4AF37", probability=5),
)


def select_weighted(candidates: Sequence[PrizeCandidate], rng=None) -> int:
    """
    Cumulative-weight scan over ``candidates`` in table order.

    Draws ``r`` uniformly from ``[0, total)`` and returns the index of the
    first candidate where ``r - running_weight <= 0``. Zero-weight entries
    after the first position can never win. ``rng`` only needs a
    ``random()`` method, so tests can pass a seeded ``random.Random``.
    """
    if not candidates:
        raise ValueError("No prizes to draw from")
    rng = rng or _sysrand
    total = sum(max(c.probability, 0) for c in candidates)
    remainder = rng.random() * total
    for i, c in enumerate(candidates):
        remainder -= max(c.probability, 0)
        if remainder <= 0:
            return i
    # float drift
    return len(candidates) - 1


def gen_code(length: int = 8, prefix: str = "") -> str:
    # prefix counts towards the length, e.g. gen_code(10, "XM") -> "XMK7F9X2BD"
    prefix = prefix.upper()
    return prefix + "".join(secrets.choice(ALPHABET) for _ in range(length - len(prefix)))
