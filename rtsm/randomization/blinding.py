"""
RTSM - Blinding Presenter
=========================
Maps an assigned arm to what the caller is allowed to see.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from rtsm.database.enums import BlindingLevel

BLINDED_LABEL = "[Blinded]"

# Roles kept from the arm identity at each level. Every blinded level masks
# the response identically; this records who the mask is for.
MASKED_FROM: Dict[BlindingLevel, Tuple[str, ...]] = {
    BlindingLevel.OPEN_LABEL: (),
    BlindingLevel.SINGLE_BLIND: ("subject",),
    BlindingLevel.DOUBLE_BLIND: ("subject", "investigator"),
    BlindingLevel.TRIPLE_BLIND: ("subject", "investigator", "assessor"),
}


@dataclass(frozen=True)
class BlindedArm:
    arm_id: str
    label: str
    is_blinded: bool
    masked_from: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arm_id": self.arm_id,
            "label": self.label,
            "is_blinded": self.is_blinded,
            "masked_from": list(self.masked_from),
        }


def present(arm_id: str, arm_name: Optional[str], blinding_level: Any) -> BlindedArm:
    """
    Caller-visible view of an arm.

    The arm id is always returned (systems with unblinding rights need it);
    the human-readable name is withheld at every blinded level.
    """
    level = BlindingLevel(blinding_level)
    if level == BlindingLevel.OPEN_LABEL:
        return BlindedArm(arm_id=arm_id, label=arm_name or arm_id, is_blinded=False)
    return BlindedArm(
        arm_id=arm_id,
        label=BLINDED_LABEL,
        is_blinded=True,
        masked_from=MASKED_FROM[level],
    )
