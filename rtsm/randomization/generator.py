"""
RTSM - Sealed List Generator
============================
Builds the per-stratum randomization list for a scheme.

Algorithms:
- Simple randomization: independent weighted draw per slot
- Permuted block randomization: balanced blocks, order shuffled within each block
- Stratified randomization: an independent block list per stratum

Lists are reproducible: the same scheme and seed always produce the same
list, so a regulator can regenerate and compare it.
"""

import hashlib
import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from rtsm.config import get_settings
from rtsm.database.enums import RandomizationType, SlotPolicy
from rtsm.database.models import RandomizationScheme

from .exceptions import ConfigError, ValidationError
from .schemas import SchemeDefinition

logger = logging.getLogger(__name__)

DEFAULT_STRATUM = "default"

_UINT64 = 1 << 64


# =============================================================================
# SEEDED PRNG
# =============================================================================

class SeededRandom:
    """
    Deterministic generator: SHA-256 over "seed:counter".

    Given the same seed it yields the same sequence on every platform,
    which is what makes a sealed list reproducible for inspection.
    """

    def __init__(self, seed: str):
        self._seed = seed
        self._counter = 0

    def _next_uint64(self) -> int:
        digest = hashlib.sha256(f"{self._seed}:{self._counter}".encode()).digest()
        self._counter += 1
        return int.from_bytes(digest[:8], "big")

    def random(self) -> float:
        """Float in [0, 1)."""
        return self._next_uint64() / _UINT64

    def randbelow(self, n: int) -> int:
        """Integer in [0, n) without modulo bias."""
        if n <= 0:
            raise ValueError("n must be positive")
        limit = _UINT64 - (_UINT64 % n)
        while True:
            value = self._next_uint64()
            if value < limit:
                return value % n

    def shuffle(self, items: Sequence) -> list:
        """Fisher-Yates shuffle returning a new list."""
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = self.randbelow(i + 1)
            result[i], result[j] = result[j], result[i]
        return result

    def weighted_choice(self, ratios: Sequence[Tuple[str, int]]) -> str:
        """Pick an arm with probability weight / sum(weights)."""
        ticket = self.randbelow(sum(weight for _, weight in ratios))
        for arm_id, weight in ratios:
            if ticket < weight:
                return arm_id
            ticket -= weight
        return ratios[-1][0]


# =============================================================================
# STRATA
# =============================================================================

def enumerate_strata(factors: Sequence[Tuple[str, Sequence[str]]]) -> List[str]:
    """
    Cross-product of factor values as canonical stratum keys.

    [("age", ["<65", ">=65"]), ("sex", ["M", "F"])] gives
    ["age:<65|sex:M", "age:<65|sex:F", "age:>=65|sex:M", "age:>=65|sex:F"]
    """
    if not factors:
        return [DEFAULT_STRATUM]
    names = [name for name, _ in factors]
    return [
        "|".join(f"{name}:{value}" for name, value in zip(names, combo))
        for combo in itertools.product(*(values for _, values in factors))
    ]


def resolve_stratum_key(
    factors: Sequence[Tuple[str, Sequence[str]]],
    stratum_values: Optional[Mapping[str, str]],
) -> str:
    """
    Canonical key for a subject's baseline values.

    Every declared factor must be supplied with one of its declared values;
    keys that are not declared factors are ignored.
    """
    if not factors:
        return DEFAULT_STRATUM

    stratum_values = stratum_values or {}
    parts = []
    for name, values in factors:
        value = stratum_values.get(name)
        if value is None or value == "":
            raise ValidationError(
                f"Missing stratification value for factor: {name}", {"factor": name}
            )
        value = str(value)
        if value not in values:
            raise ValidationError(
                f"Invalid value '{value}' for stratification factor {name}",
                {"factor": name, "allowed": list(values)},
            )
        parts.append(f"{name}:{value}")
    return "|".join(parts)


# =============================================================================
# GENERATION
# =============================================================================

@dataclass(frozen=True)
class GenerationPlan:
    """Everything the generator needs, independent of persistence."""
    ratios: Tuple[Tuple[str, int], ...]
    randomization_type: RandomizationType
    block_size: int
    block_size_varied: bool
    block_sizes: Tuple[int, ...]
    factors: Tuple[Tuple[str, Tuple[str, ...]], ...]
    total_slots: int
    slot_policy: SlotPolicy
    seed: str
    drug_kit_management: bool = False
    drug_kit_prefix: Optional[str] = None

    @classmethod
    def from_scheme(cls, scheme: RandomizationScheme) -> "GenerationPlan":
        return cls(
            ratios=tuple(scheme.ratios),
            randomization_type=RandomizationType(scheme.randomization_type),
            block_size=scheme.block_size,
            block_size_varied=bool(scheme.block_size_varied),
            block_sizes=tuple(scheme.block_sizes_list or ()),
            factors=tuple(
                (f["name"], tuple(str(v) for v in f["values"]))
                for f in scheme.stratification_factors or []
            ),
            total_slots=scheme.total_slots,
            slot_policy=SlotPolicy(scheme.slot_policy),
            seed=scheme.seed,
            drug_kit_management=bool(scheme.drug_kit_management),
            drug_kit_prefix=scheme.drug_kit_prefix,
        )

    @classmethod
    def from_definition(cls, definition: SchemeDefinition, seed: str) -> "GenerationPlan":
        return cls(
            ratios=tuple(definition.ratio_pairs),
            randomization_type=definition.randomization_type,
            block_size=definition.block_size,
            block_size_varied=definition.block_size_varied,
            block_sizes=tuple(definition.block_sizes_list),
            factors=tuple((f.name, tuple(f.values)) for f in definition.stratification_factors),
            total_slots=definition.total_slots,
            slot_policy=definition.slot_policy,
            seed=definition.seed or seed,
            drug_kit_management=definition.drug_kit_management,
            drug_kit_prefix=definition.drug_kit_prefix,
        )

    @property
    def ratio_sum(self) -> int:
        return sum(weight for _, weight in self.ratios)

    @property
    def candidate_block_sizes(self) -> Tuple[int, ...]:
        if self.block_size_varied and self.block_sizes:
            return self.block_sizes
        return (self.block_size,)

    @property
    def strata(self) -> List[str]:
        return enumerate_strata(self.factors)

    def stratum_target(self) -> int:
        """Slots to generate per stratum under the scheme's slot policy."""
        if self.slot_policy == SlotPolicy.PER_STRATUM:
            return self.total_slots
        return math.ceil(self.total_slots / len(self.strata))


@dataclass
class GeneratedEntry:
    """One position of the sealed list, before persistence."""
    stratum_key: str
    stratum_index: int
    block_number: int
    sequence_number: int
    arm_id: str
    randomization_number: str


@dataclass
class RetainedStratum:
    """Already-claimed entries of a stratum that survive regeneration."""
    count: int = 0
    max_sequence: int = 0
    max_block: int = 0


@dataclass
class GeneratedList:
    entries: List[GeneratedEntry] = field(default_factory=list)
    strata: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def by_stratum(self) -> Dict[str, List[GeneratedEntry]]:
        grouped: Dict[str, List[GeneratedEntry]] = {key: [] for key in self.strata}
        for entry in self.entries:
            grouped.setdefault(entry.stratum_key, []).append(entry)
        return grouped


def validate_plan(plan: GenerationPlan) -> None:
    """Raise ConfigError unless every block can balance exactly."""
    if len(plan.ratios) < 2:
        raise ConfigError("At least 2 treatment arms with allocation ratios are required")
    if any(weight <= 0 for _, weight in plan.ratios):
        raise ConfigError("Allocation ratios must be positive integers")
    if plan.randomization_type == RandomizationType.SIMPLE:
        return

    unit = plan.ratio_sum
    bad = [size for size in plan.candidate_block_sizes if size % unit != 0]
    if bad:
        raise ConfigError(
            f"Block size {bad[0]} is not a multiple of the allocation ratio sum {unit}",
            {"block_sizes": list(bad), "ratio_sum": unit},
        )


def format_randomization_number(
    config_id: int,
    stratum_index: int,
    sequence_number: int,
    drug_kit_prefix: Optional[str] = None,
) -> str:
    """RND-<config>-<stratum>-<sequence>, drug-kit-prefixed when requested."""
    number = f"RND-{config_id:03d}-{stratum_index:02d}-{sequence_number:05d}"
    if drug_kit_prefix:
        return f"{drug_kit_prefix}-{number}"
    return number


def build_block(rng: SeededRandom, ratios: Sequence[Tuple[str, int]], block_size: int) -> List[str]:
    """One balanced block in shuffled order."""
    multiplier = block_size // sum(weight for _, weight in ratios)
    block = [arm_id for arm_id, weight in ratios for _ in range(weight * multiplier)]
    return rng.shuffle(block)


def _stratum_arms(
    plan: GenerationPlan,
    rng: SeededRandom,
    slots: int,
    first_block: int,
) -> List[Tuple[int, str]]:
    """(block_number, arm_id) pairs for one stratum."""
    if slots <= 0:
        return []

    if plan.randomization_type == RandomizationType.SIMPLE:
        return [(0, rng.weighted_choice(plan.ratios)) for _ in range(slots)]

    sizes = plan.candidate_block_sizes
    arms: List[Tuple[int, str]] = []
    block_number = first_block
    # Whole blocks only, so the last block may run past the target
    while len(arms) < slots:
        size = sizes[rng.randbelow(len(sizes))] if len(sizes) > 1 else sizes[0]
        arms.extend((block_number, arm_id) for arm_id in build_block(rng, plan.ratios, size))
        block_number += 1
    return arms


def generate(
    plan: GenerationPlan,
    config_id: int,
    retained: Optional[Mapping[str, RetainedStratum]] = None,
    strata_limit: Optional[int] = None,
    slot_cap: Optional[int] = None,
) -> GeneratedList:
    """
    Generate the sealed list for a plan.

    Args:
        plan: Scheme parameters and seed
        config_id: Scheme id, part of every randomization number
        retained: Claimed entries that survive regeneration, per stratum
        strata_limit: Only generate the first N strata (preview)
        slot_cap: Upper bound on slots per stratum (preview)
    """
    validate_plan(plan)
    retained = retained or {}
    prefix = None
    if plan.drug_kit_management:
        prefix = plan.drug_kit_prefix or get_settings().DEFAULT_DRUG_KIT_PREFIX

    strata = plan.strata
    if strata_limit is not None:
        strata = strata[:strata_limit]

    target = plan.stratum_target()
    if slot_cap is not None:
        target = min(target, slot_cap)

    result = GeneratedList(strata=list(strata))
    for stratum_index, stratum_key in enumerate(strata):
        kept = retained.get(stratum_key, RetainedStratum())
        rng = SeededRandom(f"{plan.seed}:{stratum_key}:{kept.max_sequence}")
        arms = _stratum_arms(plan, rng, target - kept.count, kept.max_block + 1)

        for offset, (block_number, arm_id) in enumerate(arms, start=1):
            sequence_number = kept.max_sequence + offset
            result.entries.append(GeneratedEntry(
                stratum_key=stratum_key,
                stratum_index=stratum_index,
                block_number=block_number,
                sequence_number=sequence_number,
                arm_id=arm_id,
                randomization_number=format_randomization_number(
                    config_id, stratum_index, sequence_number, prefix
                ),
            ))

    logger.debug(f"Generated {len(result)} entries across {len(strata)} strata for config {config_id}")
    return result
