"""Path derivation, bin folding, payouts and verification."""
import itertools
import random

import pytest

from plinko_fair.engine import (
    ClaimedOutcome,
    ConfigurationError,
    GameConfig,
    InvalidInput,
    RiskTier,
    calculate_final_bin,
    calculate_game_result,
    calculate_path,
    resolve_multiplier,
    validate_multiplier_tables,
    verify_outcome,
)
from plinko_fair.utils import deterministic_random, hash_sha256

SERVER_SEED = "0" * 64
CLIENT_SEED = "1" * 32


@pytest.fixture
def outcome():
    return calculate_game_result(SERVER_SEED, CLIENT_SEED, 0, 8, "medium")


def _claim(path, bin_index, multiplier):
    return ClaimedOutcome(path=tuple(path), bin_index=bin_index, multiplier=multiplier)

# =========================
# DERIVATION
# =========================

def test_outcome_is_deterministic(outcome):
    again = calculate_game_result(SERVER_SEED, CLIENT_SEED, 0, 8, RiskTier.MEDIUM)

    assert again == outcome
    assert again.path == outcome.path
    assert again.bin_index == outcome.bin_index
    assert again.multiplier == outcome.multiplier


def test_outcome_fields(outcome):
    assert len(outcome.path) == 8
    assert set(outcome.path) <= {0, 1}
    assert outcome.hashed_server_seed == hash_sha256(SERVER_SEED)
    assert outcome.bin_index == calculate_final_bin(outcome.path)
    assert outcome.multiplier == GameConfig.MULTIPLIERS[RiskTier.MEDIUM][outcome.bin_index]


def test_path_decisions_follow_threshold():
    path = calculate_path(SERVER_SEED, CLIENT_SEED, 3, 16)

    for i, direction in enumerate(path):
        sample = deterministic_random(SERVER_SEED, CLIENT_SEED, 3 + i)
        assert direction == (1 if sample >= 0.5 else 0)


def test_each_row_uses_its_own_nonce():
    path = calculate_path(SERVER_SEED, CLIENT_SEED, 5, 8)
    shifted = calculate_path(SERVER_SEED, CLIENT_SEED, 6, 7)

    assert path[1:] == shifted


def test_different_seeds_change_paths():
    paths = {calculate_path(SERVER_SEED, CLIENT_SEED, nonce, 16) for nonce in range(50)}
    assert len(paths) > 1


def test_to_dict_hides_server_seed_on_request(outcome):
    public = outcome.to_dict(reveal=False)
    revealed = outcome.to_dict()

    assert "serverSeed" not in public
    assert revealed["serverSeed"] == SERVER_SEED
    assert public["path"] == list(outcome.path)
    assert public["riskMode"] == "medium"

# =========================
# BIN FOLDING
# =========================

@pytest.mark.parametrize("rows", [8, 12, 16])
def test_extreme_paths_are_clamped(rows):
    assert calculate_final_bin([0] * rows) == 0
    assert calculate_final_bin([1] * rows) == GameConfig.BIN_COUNT - 1


@pytest.mark.parametrize("path, expected", [
    ([1, 0] * 4, 8),       # 8 * 17/16 = 8.5 -> 8
    ([1, 0] * 8, 8),       # 16 * 17/32 = 8.5 -> 8
    ([1] + [0] * 15, 1),   # 2 * 17/32 = 1.0625 -> 1
    ([1] * 7 + [0], 14),   # 14 * 17/16 = 14.875 -> 14
])
def test_fold_truncates(path, expected):
    assert calculate_final_bin(path) == expected


def test_fold_ignores_order():
    assert calculate_final_bin([1, 1, 0, 0, 0, 0, 0, 0]) == calculate_final_bin([0, 0, 0, 0, 0, 0, 1, 1])


def test_bins_in_range_exhaustive_8_rows():
    bins = [calculate_final_bin(path) for path in itertools.product((0, 1), repeat=8)]

    assert len(bins) == 256
    assert all(0 <= b <= GameConfig.BIN_COUNT - 1 for b in bins)


@pytest.mark.parametrize("rows", [12, 16])
def test_bins_in_range_sampled(rows):
    rng = random.Random(rows)
    for _ in range(2000):
        path = [rng.randint(0, 1) for _ in range(rows)]
        assert 0 <= calculate_final_bin(path) <= GameConfig.BIN_COUNT - 1


@pytest.mark.parametrize("rows", [8, 12, 16])
def test_bins_grow_with_right_moves(rows):
    bins = [calculate_final_bin([1] * rights + [0] * (rows - rights)) for rights in range(rows + 1)]
    assert bins == sorted(bins)


def test_empty_path_is_rejected():
    with pytest.raises(InvalidInput):
        calculate_final_bin([])

# =========================
# PAYOUTS
# =========================

@pytest.mark.parametrize("tier", list(RiskTier))
def test_multiplier_table_integrity(tier):
    table = GameConfig.MULTIPLIERS[tier]

    assert len(table) == GameConfig.BIN_COUNT
    for i in range(len(table)):
        assert table[i] == table[len(table) - 1 - i]
    assert all(m > 0 for m in table)


def test_resolve_multiplier_lookup():
    assert resolve_multiplier(0, "high") == 110
    assert resolve_multiplier(8, "medium") == 0.1
    assert resolve_multiplier(8, RiskTier.LOW) == 0.5


def test_resolve_multiplier_clamps_index():
    assert resolve_multiplier(-3, "low") == 1.5
    assert resolve_multiplier(99, "high") == 110


def test_resolve_multiplier_unknown_tier():
    with pytest.raises(InvalidInput):
        resolve_multiplier(3, "extreme")


def test_validate_rejects_short_table():
    tables = dict(GameConfig.MULTIPLIERS)
    tables[RiskTier.LOW] = tables[RiskTier.LOW][:-1]

    with pytest.raises(ConfigurationError):
        validate_multiplier_tables(tables)


def test_validate_rejects_asymmetric_table():
    tables = dict(GameConfig.MULTIPLIERS)
    tables[RiskTier.HIGH] = (111,) + tables[RiskTier.HIGH][1:]

    with pytest.raises(ConfigurationError):
        validate_multiplier_tables(tables)


def test_validate_rejects_missing_tier():
    tables = dict(GameConfig.MULTIPLIERS)
    del tables[RiskTier.MEDIUM]

    with pytest.raises(ConfigurationError):
        validate_multiplier_tables(tables)

# =========================
# VERIFICATION
# =========================

def test_verify_accepts_own_outcome(outcome):
    assert verify_outcome(SERVER_SEED, CLIENT_SEED, 0, 8, "medium", outcome)
    assert verify_outcome(
        SERVER_SEED, CLIENT_SEED, 0, 8, "medium",
        _claim(outcome.path, outcome.bin_index, outcome.multiplier),
    )


def test_verify_rejects_flipped_path_bit(outcome):
    path = list(outcome.path)
    path[0] = 1 - path[0]

    assert not verify_outcome(
        SERVER_SEED, CLIENT_SEED, 0, 8, "medium",
        _claim(path, outcome.bin_index, outcome.multiplier),
    )


@pytest.mark.parametrize("delta", [-1, 1])
def test_verify_rejects_shifted_bin(outcome, delta):
    assert not verify_outcome(
        SERVER_SEED, CLIENT_SEED, 0, 8, "medium",
        _claim(outcome.path, outcome.bin_index + delta, outcome.multiplier),
    )


def test_verify_rejects_changed_multiplier(outcome):
    assert not verify_outcome(
        SERVER_SEED, CLIENT_SEED, 0, 8, "medium",
        _claim(outcome.path, outcome.bin_index, outcome.multiplier + 1),
    )


def test_verify_rejects_truncated_path(outcome):
    assert not verify_outcome(
        SERVER_SEED, CLIENT_SEED, 0, 8, "medium",
        _claim(outcome.path[:-1], outcome.bin_index, outcome.multiplier),
    )


def test_verify_rejects_other_inputs(outcome):
    assert not all(
        verify_outcome(SERVER_SEED, CLIENT_SEED, nonce, 8, "medium", outcome)
        for nonce in range(1, 20)
    )
    assert not verify_outcome(SERVER_SEED, CLIENT_SEED, 0, 9, "medium", outcome)


def test_verify_does_not_mutate_claim(outcome):
    before = outcome.to_dict()
    verify_outcome(SERVER_SEED, CLIENT_SEED, 0, 8, "high", outcome)
    assert outcome.to_dict() == before


@pytest.mark.parametrize("kwargs", [
    {"rows": 0},
    {"rows": GameConfig.MAX_ROWS + 1},
    {"rows": "16"},
    {"risk": "extreme"},
    {"nonce": -1},
])
def test_invalid_inputs_raise(kwargs):
    params = {"nonce": 0, "rows": 8, "risk": "low", **kwargs}
    with pytest.raises(InvalidInput):
        calculate_game_result(SERVER_SEED, CLIENT_SEED, **params)
