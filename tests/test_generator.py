"""
Sealed List Generator Test Suite

Pure generation tests, no database:
- Seeded PRNG determinism
- Stratum enumeration and resolution
- Block balance, block-size rules and varied blocks
- Slot policies, numbering and drug-kit prefixes
"""
from collections import Counter

import pytest

from rtsm.database.enums import SlotPolicy
from rtsm.randomization.exceptions import ConfigError, ValidationError
from rtsm.randomization.generator import (
    DEFAULT_STRATUM, GenerationPlan, RetainedStratum, SeededRandom,
    enumerate_strata, format_randomization_number, generate, resolve_stratum_key,
)
from rtsm.randomization.schemas import parse_scheme

SEED = "fixed-seed-for-generator-tests"

AGE_SEX = [
    {"name": "age", "values": ["<65", ">=65"]},
    {"name": "sex", "values": ["M", "F"]},
]


def make_plan(**overrides) -> GenerationPlan:
    data = {
        "study_id": "S1",
        "name": "Plan",
        "allocation_ratios": {"A": 1, "B": 1},
        "block_size": 4,
        "total_slots": 20,
    }
    data.update(overrides)
    return GenerationPlan.from_definition(parse_scheme(data), seed=SEED)


def blocks_of(entries):
    grouped = {}
    for entry in entries:
        grouped.setdefault((entry.stratum_key, entry.block_number), []).append(entry.arm_id)
    return grouped


# =============================================================================
# Seeded PRNG
# =============================================================================

def test_same_seed_same_sequence():
    first = SeededRandom("abc")
    second = SeededRandom("abc")
    assert [first.random() for _ in range(20)] == [second.random() for _ in range(20)]


def test_different_seed_different_sequence():
    assert [SeededRandom("abc").randbelow(1000) for _ in range(5)] != \
        [SeededRandom("abd").randbelow(1000) for _ in range(5)]


def test_randbelow_stays_in_range():
    rng = SeededRandom(SEED)
    values = [rng.randbelow(3) for _ in range(300)]
    assert set(values) == {0, 1, 2}


def test_shuffle_is_a_permutation():
    items = list(range(10))
    shuffled = SeededRandom(SEED).shuffle(items)
    assert sorted(shuffled) == items
    assert items == list(range(10))


def test_weighted_choice_follows_weights():
    rng = SeededRandom(SEED)
    picks = Counter(rng.weighted_choice([("A", 3), ("B", 1)]) for _ in range(4000))
    assert 0.70 < picks["A"] / 4000 < 0.80


# =============================================================================
# Strata
# =============================================================================

def test_enumerate_strata_cross_product():
    factors = [(f["name"], f["values"]) for f in AGE_SEX]
    assert enumerate_strata(factors) == [
        "age:<65|sex:M", "age:<65|sex:F", "age:>=65|sex:M", "age:>=65|sex:F",
    ]


def test_enumerate_strata_without_factors():
    assert enumerate_strata([]) == [DEFAULT_STRATUM]


def test_resolve_stratum_key_ignores_extra_keys():
    factors = [(f["name"], f["values"]) for f in AGE_SEX]
    key = resolve_stratum_key(factors, {"sex": "F", "age": ">=65", "site": "042"})
    assert key == "age:>=65|sex:F"


def test_resolve_stratum_key_missing_factor():
    factors = [(f["name"], f["values"]) for f in AGE_SEX]
    with pytest.raises(ValidationError, match="sex"):
        resolve_stratum_key(factors, {"age": "<65"})


def test_resolve_stratum_key_undeclared_value():
    factors = [(f["name"], f["values"]) for f in AGE_SEX]
    with pytest.raises(ValidationError, match="age"):
        resolve_stratum_key(factors, {"age": "70", "sex": "M"})


# =============================================================================
# Block randomization
# =============================================================================

def test_one_to_one_block_four_twenty_slots():
    generated = generate(make_plan(), config_id=1)

    assert len(generated) == 20
    assert Counter(e.arm_id for e in generated.entries) == {"A": 10, "B": 10}
    for arms in blocks_of(generated.entries).values():
        assert Counter(arms) == {"A": 2, "B": 2}


def test_two_to_one_block_six():
    generated = generate(
        make_plan(allocation_ratios={"A": 2, "B": 1}, block_size=6, total_slots=18), config_id=1
    )

    assert Counter(e.arm_id for e in generated.entries) == {"A": 12, "B": 6}
    for arms in blocks_of(generated.entries).values():
        assert Counter(arms) == {"A": 4, "B": 2}


def test_contiguous_sequence_groups_are_balanced():
    generated = generate(make_plan(), config_id=1)
    arms = [e.arm_id for e in sorted(generated.entries, key=lambda e: e.sequence_number)]
    for start in range(0, 20, 4):
        assert Counter(arms[start:start + 4]) == {"A": 2, "B": 2}


def test_block_size_not_multiple_of_ratio_sum():
    with pytest.raises(ConfigError):
        generate(make_plan(allocation_ratios={"A": 2, "B": 1}, block_size=4), config_id=1)


def test_varied_block_sizes_each_balanced():
    plan = make_plan(block_size_varied=True, block_sizes_list=[4, 6], total_slots=60)
    generated = generate(plan, config_id=1)

    sizes = set()
    for arms in blocks_of(generated.entries).values():
        sizes.add(len(arms))
        counts = Counter(arms)
        assert counts["A"] == counts["B"]
    assert sizes <= {4, 6}
    assert len(generated) >= 60


def test_varied_block_size_that_cannot_balance():
    plan = make_plan(
        allocation_ratios={"A": 2, "B": 1}, block_size=6,
        block_size_varied=True, block_sizes_list=[6, 4],
    )
    with pytest.raises(ConfigError):
        generate(plan, config_id=1)


def test_last_block_is_never_truncated():
    generated = generate(make_plan(total_slots=10), config_id=1)
    assert len(generated) == 12


def test_generation_is_deterministic():
    first = generate(make_plan(total_slots=40), config_id=7)
    second = generate(make_plan(total_slots=40), config_id=7)
    assert [e.arm_id for e in first.entries] == [e.arm_id for e in second.entries]


def test_randomization_numbers_are_unique():
    generated = generate(make_plan(stratification_factors=AGE_SEX, total_slots=80), config_id=3)
    numbers = [e.randomization_number for e in generated.entries]
    assert len(numbers) == len(set(numbers))


# =============================================================================
# Stratification and slot policy
# =============================================================================

def test_across_strata_splits_total():
    plan = make_plan(
        randomization_type="stratified", stratification_factors=AGE_SEX,
        total_slots=100, slot_policy=SlotPolicy.ACROSS_STRATA,
    )
    by_stratum = generate(plan, config_id=1).by_stratum()

    assert len(by_stratum) == 4
    for entries in by_stratum.values():
        # ceil(100 / 4) = 25, rounded up to whole blocks of 4
        assert len(entries) == 28
        assert [e.sequence_number for e in entries] == list(range(1, 29))


def test_per_stratum_gives_each_stratum_the_total():
    plan = make_plan(
        randomization_type="stratified", stratification_factors=AGE_SEX,
        total_slots=20, slot_policy=SlotPolicy.PER_STRATUM,
    )
    by_stratum = generate(plan, config_id=1).by_stratum()
    assert all(len(entries) == 20 for entries in by_stratum.values())


def test_strata_are_generated_independently():
    plan = make_plan(stratification_factors=AGE_SEX, total_slots=80, slot_policy=SlotPolicy.ACROSS_STRATA)
    by_stratum = generate(plan, config_id=1).by_stratum()
    sequences = [tuple(e.arm_id for e in entries) for entries in by_stratum.values()]
    assert len(set(sequences)) > 1


def test_retained_entries_shift_numbering():
    plan = make_plan(total_slots=20)
    generated = generate(plan, config_id=1, retained={DEFAULT_STRATUM: RetainedStratum(3, 3, 1)})

    assert generated.entries[0].sequence_number == 4
    assert generated.entries[0].block_number == 2
    # 17 remaining slots, rounded up to whole blocks
    assert len(generated) == 20


# =============================================================================
# Simple randomization
# =============================================================================

def test_simple_generates_exact_slot_count():
    generated = generate(make_plan(randomization_type="simple", block_size=3, total_slots=25), config_id=1)

    assert len(generated) == 25
    assert all(e.block_number == 0 for e in generated.entries)
    assert {e.arm_id for e in generated.entries} <= {"A", "B"}


def test_simple_ignores_block_divisibility():
    generated = generate(make_plan(randomization_type="simple", allocation_ratios={"A": 2, "B": 1}, block_size=4), config_id=1)
    assert len(generated) == 20


# =============================================================================
# Numbering
# =============================================================================

def test_randomization_number_format():
    assert format_randomization_number(5, 2, 17) == "RND-005-02-00017"
    assert format_randomization_number(5, 0, 1, "KIT") == "KIT-RND-005-00-00001"


def test_drug_kit_default_prefix():
    generated = generate(make_plan(drug_kit_management=True), config_id=9)
    assert generated.entries[0].randomization_number == "KIT-RND-009-00-00001"


def test_drug_kit_custom_prefix():
    generated = generate(make_plan(drug_kit_management=True, drug_kit_prefix="DK"), config_id=9)
    assert all(e.randomization_number.startswith("DK-RND-009-00-") for e in generated.entries)


def test_preview_limits():
    plan = make_plan(stratification_factors=AGE_SEX, total_slots=400)
    generated = generate(plan, config_id=0, strata_limit=1, slot_cap=8)
    assert generated.strata == ["age:<65|sex:M"]
    assert len(generated) == 8
