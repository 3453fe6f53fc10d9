"""
type_resolver.py — Map a frame's detections to the reported alarm ``type``.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .config_manager import ClassMapType, DetectedClassType, FixedType, TypePolicy
from .data_models import Detection
from .json_logging import get_logger

log = get_logger("type_resolver")


def first_valid_class_id(detections: Iterable[Optional[Detection]]) -> Optional[int]:
    """Return the class id of the first non-null detection with ``class_id >= 0``."""
    for det in detections:
        if det is not None and det.class_id >= 0:
            return det.class_id
    return None


def resolve_type(policy: TypePolicy, detections: Sequence[Optional[Detection]]) -> int:
    """Resolve the report type for one frame.

    Precedence is fixed value, then explicit class-id mode, then the class
    map, then the default (first valid class id).  Every fallback path logs
    a warning; the function itself never raises.

    Args:
        policy: The configured type policy variant.
        detections: Current-frame detections in scan order.  ``None``
            entries are skipped.

    Returns:
        The resolved integer type; ``0`` when nothing applies.
    """
    if isinstance(policy, FixedType):
        return policy.value

    if isinstance(policy, DetectedClassType):
        class_id = first_valid_class_id(detections)
        if class_id is None:
            log.warning("class_id type mode but no valid detections; fallback to 0")
            return 0
        return class_id

    if isinstance(policy, ClassMapType) and policy.mapping:
        for det in detections:
            if det is None or det.class_id < 0:
                continue
            mapped = policy.mapping.get(det.class_id)
            if mapped is not None:
                log.info("Mapped class_id to type", extra={"class_id": det.class_id, "type": mapped})
                return mapped
        class_id = first_valid_class_id(detections)
        if class_id is None:
            log.warning("Mapping mode but no valid detections; fallback to 0")
            return 0
        log.warning("Mapping miss; fallback to class_id", extra={"class_id": class_id})
        return class_id

    # DefaultType, or a ClassMapType with nothing in it
    class_id = first_valid_class_id(detections)
    if class_id is None:
        log.warning("No detections and no fixed type; fallback to 0")
        return 0
    return class_id
