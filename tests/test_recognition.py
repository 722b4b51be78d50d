import math

import numpy as np
import pytest

from errors import InvalidInput
from recognition import MATCH_THRESHOLD, as_vector, euclidean_distance, match


def test_default_threshold():
    assert MATCH_THRESHOLD == 0.6


def test_distance_is_symmetric():
    a = [0.12, -0.4, 0.33, 0.9]
    b = [0.5, 0.1, -0.25, 0.0]
    assert euclidean_distance(a, b) == euclidean_distance(b, a)
    assert match(a, [("x", b)]).distance == match(b, [("x", a)]).distance


def test_distance_value():
    assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)


def test_match_below_threshold():
    result = match([0.1, 0, 0], [("1VE22IS001", [0, 0, 0])])
    assert result.identity_id == "1VE22IS001"
    assert result.matched
    assert result.distance == pytest.approx(0.1)


def test_distance_equal_to_threshold_is_not_a_match():
    result = match([0.6, 0, 0], [("1VE22IS001", [0, 0, 0])])
    assert result.identity_id is None
    assert result.distance == pytest.approx(0.6)


def test_custom_threshold():
    assert match([0.5, 0], [("a", [0, 0])], threshold=0.4).identity_id is None
    assert match([0.5, 0], [("a", [0, 0])], threshold=0.51).identity_id == "a"


def test_closest_candidate_wins():
    candidates = [("far", [1.0, 1.0]), ("near", [0.1, 0.0]), ("middle", [0.3, 0.0])]
    result = match([0.0, 0.0], candidates)
    assert result.identity_id == "near"
    assert result.distance == pytest.approx(0.1)


def test_first_candidate_wins_ties():
    candidates = [("first", [0.2, 0.0]), ("second", [-0.2, 0.0]), ("third", [0.0, 0.2])]
    assert match([0.0, 0.0], candidates).identity_id == "first"


def test_no_match_reports_minimum_distance():
    result = match([0.0, 0.0], [("a", [3.0, 4.0]), ("b", [0.0, 2.0])])
    assert result.identity_id is None
    assert result.distance == pytest.approx(2.0)


def test_no_candidates():
    result = match([0.0, 1.0], [])
    assert result.identity_id is None
    assert math.isinf(result.distance)


def test_length_mismatch_is_invalid():
    with pytest.raises(InvalidInput):
        match([0.0, 0.0, 0.0], [("a", [0.0, 0.0])])


def test_match_has_no_side_effects():
    probe = np.array([0.1, 0.2])
    reference = np.array([0.1, 0.25])
    match(probe, [("a", reference)])
    assert probe.tolist() == [0.1, 0.2]
    assert reference.tolist() == [0.1, 0.25]


@pytest.mark.parametrize("bad", [
    [],
    ["a", "b"],
    ["0.1", "0.2"],
    [0.1, None],
    [[0.1, 0.2], [0.3, 0.4]],
    [0.1, float("nan")],
    [float("inf")],
    "0.1,0.2",
])
def test_as_vector_rejects_malformed_embeddings(bad):
    with pytest.raises(InvalidInput):
        as_vector(bad)


def test_as_vector_accepts_ints_and_floats():
    vector = as_vector([0, 1, 2.5])
    assert vector.dtype == np.float64
    assert vector.tolist() == [0.0, 1.0, 2.5]
