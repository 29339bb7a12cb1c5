"""Map free-text requests onto detected region labels, and pick inpainting prompts."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_FACE_PARTS = ["skin", "nose", "l_eye", "r_eye", "l_brow", "r_brow", "l_ear", "r_ear", "mouth", "u_lip", "l_lip"]

# keyword -> face-parsing labels it stands for
FEATURE_GROUPS: Dict[str, List[str]] = {
    "eyes": ["l_eye", "r_eye"],
    "eye": ["l_eye", "r_eye"],
    "eyebrows": ["l_brow", "r_brow"],
    "eyebrow": ["l_brow", "r_brow"],
    "brows": ["l_brow", "r_brow"],
    "brow": ["l_brow", "r_brow"],
    "ears": ["l_ear", "r_ear"],
    "ear": ["l_ear", "r_ear"],
    "lips": ["u_lip", "l_lip"],
    "lip": ["u_lip", "l_lip"],
    "mouth": ["mouth", "u_lip", "l_lip"],
    "face": list(_FACE_PARTS),
    "facial features": ["nose", "l_eye", "r_eye", "l_brow", "r_brow", "mouth"],
    "nose": ["nose"],
    "hair": ["hair"],
    "neck": ["neck"],
    "cloth": ["cloth"],
    "clothes": ["cloth"],
    "clothing": ["cloth"],
    "skin": ["skin"],
    "head": _FACE_PARTS + ["hair"],
}

SKIN_PROMPT = "smooth natural human skin, realistic skin texture, natural skin tone, seamless"
GENERIC_FILL_PROMPT = "natural texture matching surrounding area, seamless blend"
FACE_LABEL_TOKENS = ("face", "eye", "nose", "mouth", "skin")


def match_labels(prompt: str, available_labels: Sequence[str]) -> List[str]:
    """Keyword-table and direct-label matching, in order of first appearance in ``available_labels``."""
    text = (prompt or "").lower().strip()
    if not text:
        return []
    wanted = set()
    for keyword, labels in FEATURE_GROUPS.items():
        if keyword in text:
            wanted.update(labels)
    for label in available_labels:
        low = label.lower()
        if low in text or low.replace("_", " ", 1) in text or low.replace("_", "", 1) in text:
            wanted.add(label)
    return [label for label in dict.fromkeys(available_labels) if label in wanted]


def resolve_labels(
    prompt: str,
    available_labels: Sequence[str],
    parsed: Optional[Tuple[Iterable[str], str]] = None,
) -> List[str]:
    """Prefer labels from the prompt parser; fall back to keyword matching.

    ``parsed`` is ``(labels, confidence)`` as returned by the parser client; a
    ``fallback`` confidence or an empty label list triggers keyword matching.
    """
    if parsed is not None:
        labels, confidence = parsed
        allowed = set(available_labels)
        chosen = [l for l in labels if l in allowed]
        if confidence != "fallback" and chosen:
            return [l for l in dict.fromkeys(available_labels) if l in set(chosen)]
        logger.warning("Prompt parser gave no usable labels (%s); using keyword matching", confidence)
    return match_labels(prompt, available_labels)


def fill_prompt(labels: Iterable[str], user_prompt: str = "", auto_prompt: bool = True) -> str:
    user_prompt = (user_prompt or "").strip()
    if not auto_prompt and user_prompt:
        return user_prompt
    if any(token in label for label in labels for token in FACE_LABEL_TOKENS):
        return SKIN_PROMPT
    return user_prompt or GENERIC_FILL_PROMPT
