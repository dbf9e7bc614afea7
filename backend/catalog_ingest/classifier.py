"""
Detail payload classification.

A detail payload is either a list of three arrays or an object whose first
three list-valued properties play the same roles. The first array decides
which product family the payload belongs to.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ProductFamily(Enum):
    """Product families with distinct detail schemas."""
    REGULAR = "regular"
    ROLL_LABEL = "roll_label"
    UNKNOWN = "unknown"


ROLL_LABEL_KEYS = ("opt_val_id", "option_id", "option_val", "name")
REGULAR_KEYS = ("id", "group", "name")


@dataclass
class DetailArrays:
    """The three positional arrays of a detail payload."""
    arr1: List[Any] = field(default_factory=list)
    arr2: List[Any] = field(default_factory=list)
    arr3: List[Any] = field(default_factory=list)

    def sizes(self) -> str:
        return f"[{len(self.arr1)},{len(self.arr2)},{len(self.arr3)}]"


@dataclass
class ClassifiedDetail:
    family: ProductFamily
    arrays: DetailArrays

    @property
    def is_unknown(self) -> bool:
        return self.family is ProductFamily.UNKNOWN


def split_detail_arrays(payload: Any) -> DetailArrays:
    """
    Decompose a detail payload into three arrays.

    Lists contribute their first three elements by position (non-list
    elements become empty arrays); dicts contribute their first three
    list-valued properties in insertion order; anything else is empty.
    """
    if isinstance(payload, list):
        parts = [item if isinstance(item, list) else [] for item in payload[:3]]
    elif isinstance(payload, dict):
        parts = [value for value in payload.values() if isinstance(value, list)][:3]
    else:
        parts = []

    parts += [[] for _ in range(3 - len(parts))]
    return DetailArrays(arr1=parts[0], arr2=parts[1], arr3=parts[2])


def first_dict(items: List[Any]) -> Optional[Dict[str, Any]]:
    for item in items:
        if isinstance(item, dict):
            return item
    return None


def detect_family(arr1: List[Any]) -> ProductFamily:
    # Only the first object is inspected; a mixed array is classified by it
    sample = first_dict(arr1)
    if sample is None:
        return ProductFamily.UNKNOWN
    if all(key in sample for key in ROLL_LABEL_KEYS):
        return ProductFamily.ROLL_LABEL
    if all(key in sample for key in REGULAR_KEYS) and "opt_val_id" not in sample:
        return ProductFamily.REGULAR
    return ProductFamily.UNKNOWN


def classify(payload: Any) -> ClassifiedDetail:
    """Split a detail payload and tag it with its product family."""
    arrays = split_detail_arrays(payload)
    return ClassifiedDetail(family=detect_family(arrays.arr1), arrays=arrays)
