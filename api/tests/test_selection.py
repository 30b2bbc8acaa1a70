import random
from collections import Counter

import pytest

from spinwheel.utils import DEFAULT_PRIZES, PrizeCandidate, gen_code, select_weighted, ALPHABET

from conftest import SequenceRandom


def wheel(*weights):
    return [PrizeCandidate(name=f"P{i}", color="#000000", probability=w) for i, w in enumerate(weights)]


def test_fixed_sequence_is_deterministic():
    prizes = wheel(25, 30, 15, 15, 10, 5)
    rng = SequenceRandom(0.10, 0.50, 0.60, 0.97, 0.80)
    picks = [select_weighted(prizes, rng) for _ in range(5)]
    # r = 10 -> 0, 50 -> 1, 60 -> 2, 97 -> 5, 80 -> 3 (25+30+15 = 70 < 80 <= 85)
    assert picks == [0, 1, 2, 5, 3]


def test_boundary_belongs_to_earlier_prize():
    # r lands exactly on the end of the first wedge
    assert select_weighted(wheel(50, 50), SequenceRandom(0.5)) == 0


def test_seeded_sample_follows_weights():
    prizes = list(DEFAULT_PRIZES)
    rng = random.Random(1234)
    counts = Counter(select_weighted(prizes, rng) for _ in range(20000))

    assert counts[1] > counts[5]  # "No Luck" beats "Jackpot"
    for i, p in enumerate(prizes):
        assert counts[i] / 20000 == pytest.approx(p.probability / 100, abs=0.02)


def test_same_seed_same_draws():
    prizes = list(DEFAULT_PRIZES)
    rng1, rng2 = random.Random(99), random.Random(99)
    assert [select_weighted(prizes, rng1) for _ in range(50)] == [select_weighted(prizes, rng2) for _ in range(50)]


def test_zero_weight_prize_is_never_drawn():
    prizes = wheel(50, 0, 50)
    rng = random.Random(42)
    picks = {select_weighted(prizes, rng) for _ in range(5000)}
    assert 1 not in picks
    assert picks == {0, 2}


def test_drift_guard_returns_last():
    # a draw past the total can only come from float drift; the last wedge takes it
    assert select_weighted(wheel(1, 1, 1), SequenceRandom(1.0000001)) == 2


def test_empty_wheel_rejected():
    with pytest.raises(ValueError):
        select_weighted([])


def test_default_prizes_sum_to_100():
    assert len(DEFAULT_PRIZES) == 6
    assert sum(p.probability for p in DEFAULT_PRIZES) == 100
    assert [p.name for p in DEFAULT_PRIZES][1] == "No Luck"
    assert [p.name for p in DEFAULT_PRIZES][5] == "Jackpot"


def test_gen_code_prefix_and_alphabet():
    code = gen_code(10, "xm")
    assert len(code) == 10
    assert code.startswith("XM")
    assert all(ch in ALPHABET for ch in code[2:])
