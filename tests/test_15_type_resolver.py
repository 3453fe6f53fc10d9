# tests/test_15_type_resolver.py
import pytest

from alarm_recorder.config_manager import ClassMapType, DefaultType, DetectedClassType, FixedType
from alarm_recorder.data_models import Detection
from alarm_recorder.type_resolver import first_valid_class_id, resolve_type


def dets(*class_ids):
    return [None if cid is None else Detection(class_id=cid) for cid in class_ids]


@pytest.mark.parametrize("detections", [[], dets(3), dets(None, -1, 5)])
def test_fixed_type_ignores_detections(detections):
    assert resolve_type(FixedType(7), detections) == 7


def test_map_uses_first_mapped_detection():
    policy = ClassMapType({0: 10, 1: 2})
    assert resolve_type(policy, dets(5, 1)) == 2
    assert resolve_type(policy, dets(0, 1)) == 10


def test_map_miss_falls_back_to_class_id():
    policy = ClassMapType({0: 10})
    assert resolve_type(policy, dets(None, -2, 4)) == 4
    assert resolve_type(policy, []) == 0


def test_detected_class_mode():
    assert resolve_type(DetectedClassType(), dets(None, -1, 6, 2)) == 6
    assert resolve_type(DetectedClassType(), []) == 0


def test_default_behaves_like_detected_class():
    assert resolve_type(DefaultType(), dets(9)) == 9
    assert resolve_type(DefaultType(), dets(None)) == 0


def test_empty_map_behaves_like_default():
    assert resolve_type(ClassMapType({}), dets(3)) == 3


def test_first_valid_class_id_skips_invalid():
    assert first_valid_class_id(dets(None, -1, 0)) == 0
    assert first_valid_class_id(dets(-1)) is None
