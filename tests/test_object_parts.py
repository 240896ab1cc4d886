"""Tests for object_parts module."""
import numpy as np
import pytest

from extrusion_geometry import ExtrusionLine
from island_graph import Island, IslandConnection
from object_parts import (
    STABLE,
    ActiveObjectParts,
    ObjectPart,
    compute_directional_xy_variance,
    compute_elastic_section_modulus,
)


def _island(volume, z=1.0):
    return Island(volume=volume, volume_centroid_accumulator=volume * np.array([0.0, 0.0, z]))


def _connection(area, variance, z):
    return IslandConnection(
        area=area,
        centroid_accumulator=area * np.array([0.0, 0.0, z]),
        second_moment_of_area_accumulator=area * np.array([variance, variance]),
    )


@pytest.fixture
def heavy_part():
    """1000mm^3 part centred at (0, 0, 10), not touching the bed."""
    return ObjectPart.from_island(_island(1000.0, z=10.0))


@pytest.fixture
def x_line():
    return ExtrusionLine((0.0, 0.0), (1.0, 0.0))


class TestActiveObjectParts:

    def test_merge_sums_parts(self):
        parts = ActiveObjectParts()
        ids = [parts.insert(_island(v)) for v in (1.0, 2.0, 3.0)]
        parts.merge(ids[1], ids[0])
        parts.merge(ids[2], ids[1])
        assert parts.part_count == 1
        assert parts.total_volume() == pytest.approx(6.0)
        assert parts.access(ids[2]).get_volume() == pytest.approx(6.0)
        assert {parts.get_flat_id(i) for i in ids} == {ids[0]}
        assert list(parts.parts()) == [ids[0]]

    def test_merge_into_self_is_noop(self):
        parts = ActiveObjectParts()
        part_id = parts.insert(_island(2.0))
        parts.merge(part_id, part_id)
        assert parts.part_count == 1
        assert parts.total_volume() == pytest.approx(2.0)

    def test_path_compression(self):
        parts = ActiveObjectParts()
        ids = [parts.insert(_island(1.0)) for _ in range(4)]
        for a, b in zip(ids[1:], ids[:-1]):
            parts.merge(a, b)
        root = parts.get_flat_id(ids[-1])
        assert root == ids[0]
        assert parts._id_mapping[ids[-1]] == root

    def test_unknown_id_raises(self):
        with pytest.raises(KeyError):
            ActiveObjectParts().get_flat_id(5)

    def test_support_point_adds_sticking(self):
        part = ObjectPart.from_island(_island(1.0))
        part.add_support_point(np.array([2.0, 0.0, 1.0]), 0.5)
        part.add_support_point(np.array([-2.0, 0.0, 1.0]), 0.5)
        assert part.sticking_area == pytest.approx(1.0)
        np.testing.assert_allclose(part.sticking_centroid_accumulator, [0.0, 0.0, 1.0])


class TestSectionModulus:

    def test_directional_variance(self):
        conn = IslandConnection()
        for x in (-1.0, 1.0):
            conn.add_contact(np.array([x, 0.0, 0.0]), 1.0)
        args = (
            conn.centroid_accumulator,
            conn.second_moment_of_area_accumulator,
            conn.second_moment_of_area_covariance_accumulator,
            conn.area,
        )
        assert compute_directional_xy_variance(np.array([1.0, 0.0]), *args) == pytest.approx(1.0)
        assert compute_directional_xy_variance(np.array([0.0, 1.0]), *args) == pytest.approx(0.0)

    def test_zero_variance_gives_zero_modulus(self):
        conn = _connection(1.0, 0.0, 0.0)
        modulus = compute_elastic_section_modulus(
            np.array([1.0, 0.0]),
            np.array([1.0, 0.0, 0.0]),
            conn.centroid_accumulator,
            conn.second_moment_of_area_accumulator,
            conn.second_moment_of_area_covariance_accumulator,
            conn.area,
        )
        assert modulus == 0.0


class TestTorqueBalance:

    def test_weak_connection_needs_support(self, heavy_part, x_line, params):
        force = heavy_part.is_stable_while_extruding(
            _connection(1.0, 0.01, 10.0), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force > 0

    def test_wide_connection_is_stable(self, heavy_part, x_line, params):
        force = heavy_part.is_stable_while_extruding(
            _connection(100.0, 100.0, 10.0), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force <= 0

    def test_connection_close_below_is_not_evaluated(self, heavy_part, x_line, params):
        force = heavy_part.is_stable_while_extruding(
            _connection(1.0, 0.01, 18.0), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force == STABLE

    def test_infinitely_strong_connection(self, heavy_part, x_line, params):
        force = heavy_part.is_stable_while_extruding(
            IslandConnection.infinitely_strong(), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force == STABLE

    def test_malformation_raises_force(self, heavy_part, params):
        clean = ExtrusionLine((0.0, 0.0), (1.0, 0.0))
        malformed = ExtrusionLine((0.0, 0.0), (1.0, 0.0), malformation=1.0)
        connection = _connection(1.0, 0.01, 10.0)
        extreme = np.array([1.0, 0.0, 20.0])
        f_clean = heavy_part.is_stable_while_extruding(connection, clean, extreme, 20.0, params)
        f_malformed = heavy_part.is_stable_while_extruding(connection, malformed, extreme, 20.0, params)
        assert f_malformed > f_clean

    def test_narrow_bed_contact_tips_over(self, x_line, params):
        part = ObjectPart.from_island(_island(1000.0, z=10.0))
        # tiny bed contact directly under the part
        for x in (-0.1, 0.1):
            part.add_support_point(np.array([x, 0.0, 0.1]), 0.001)
        force = part.is_stable_while_extruding(
            IslandConnection.infinitely_strong(), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force > 0

    def test_empty_part_is_stable(self, x_line, params):
        force = ObjectPart().is_stable_while_extruding(
            _connection(1.0, 0.01, 10.0), x_line, np.array([1.0, 0.0, 20.0]), 20.0, params
        )
        assert force == STABLE
