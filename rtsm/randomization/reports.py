"""
RTSM - List Reports
===================
Read-only aggregation over a sealed list and the dry-run preview used while
authoring a scheme.
"""

import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd
from sqlalchemy.orm import Session

from rtsm.config import get_settings
from rtsm.database.models import RandomizationScheme
from rtsm.database.repositories import ListEntryRepository, StudyGroupRepository

from .generator import GenerationPlan, generate
from .schemas import SchemeDefinition

logger = logging.getLogger(__name__)

# Placeholder scheme id for preview randomization numbers
PREVIEW_CONFIG_ID = 0


def list_stats(session: Session, scheme: RandomizationScheme) -> Dict[str, Any]:
    """
    Used/available counts for a scheme's list, overall, per arm and per stratum.

    Every arm of the scheme is reported, including arms with no entries.
    """
    entries = ListEntryRepository(session)
    by_arm = {arm_id: (total, used) for arm_id, total, used in entries.stats_by_arm(scheme.config_id)}
    arm_ids = list(scheme.arm_ids) + sorted(set(by_arm) - set(scheme.arm_ids))
    names = StudyGroupRepository(session).get_names(arm_ids)

    by_group = []
    for arm_id in arm_ids:
        total, used = by_arm.get(arm_id, (0, 0))
        by_group.append({
            "arm_id": arm_id,
            "arm_name": names.get(arm_id, arm_id),
            "total": total,
            "used": used,
            "available": total - used,
        })

    by_stratum = [
        {"stratum_key": stratum, "total": total, "used": used, "available": total - used}
        for stratum, total, used in entries.stats_by_stratum(scheme.config_id)
    ]

    total = sum(group["total"] for group in by_group)
    used = sum(group["used"] for group in by_group)
    return {
        "config_id": scheme.config_id,
        "total": total,
        "used": used,
        "available": total - used,
        "by_group": by_group,
        "by_stratum": by_stratum,
    }


def _arm_distribution(arm_ids: List[str], preview: List[Dict[str, Any]],
                      names: Mapping[str, str]) -> List[Dict[str, Any]]:
    df = pd.DataFrame(preview, columns=["sequence", "arm_id"])
    counts = df["arm_id"].value_counts().reindex(arm_ids, fill_value=0)

    stats = counts.rename("count").rename_axis("arm_id").reset_index()
    total = int(stats["count"].sum())
    stats["percentage"] = (stats["count"] / total * 100).round(1) if total else 0.0
    stats["arm_name"] = stats["arm_id"].map(lambda arm_id: names.get(arm_id, arm_id))

    return [
        {
            "arm_id": record["arm_id"],
            "arm_name": record["arm_name"],
            "count": int(record["count"]),
            "percentage": float(record["percentage"]),
        }
        for record in stats.to_dict(orient="records")
    ]


def preview(definition: SchemeDefinition,
            arm_names: Optional[Mapping[str, str]] = None,
            limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Dry-run the generator for an unsaved scheme.

    Uses a throwaway seed unless the definition carries one, covers the first
    stratum only and never touches the database.
    """
    limit = limit or get_settings().PREVIEW_LIMIT
    arm_names = arm_names or {}
    plan = GenerationPlan.from_definition(definition, seed=secrets.token_hex(32))
    generated = generate(plan, PREVIEW_CONFIG_ID, strata_limit=1, slot_cap=limit)

    rows = [
        {
            "sequence": entry.sequence_number,
            "arm_id": entry.arm_id,
            "arm_name": arm_names.get(entry.arm_id, entry.arm_id),
            "block": entry.block_number,
            "stratum": entry.stratum_key,
        }
        for entry in generated.entries[:limit]
    ]
    arm_ids = [arm_id for arm_id, _ in plan.ratios]

    logger.debug(f"Preview generated: {len(rows)} entries, arms={arm_ids}")
    return {
        "success": True,
        "preview": rows,
        "stats": _arm_distribution(arm_ids, rows, arm_names),
    }
