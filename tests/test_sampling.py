"""Tests for OD sampling module."""

import itertools

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest

from nori.config import RunConfig
from nori.density import DensityClusters
from nori.exceptions import ConfigurationError, DrawRejected, SamplerExhausted
from nori.geo import BoundingBox, haversine_m
from nori.sampling import (
    LogNormalTripLength,
    Sampler,
    Uniform2D,
    WeightedDensity,
    make_distribution,
)

BOUNDS = BoundingBox(south=52.0, west=13.0, north=53.0, east=14.0)


def write_density_csv(path, points):
    """Write (lon, lat, weight) points as an EPSG:3035 density CSV."""
    lon, lat, weight = zip(*points)
    proj = gpd.GeoSeries(gpd.points_from_xy(lon, lat), crs="EPSG:4326").to_crs("EPSG:3035")
    pd.DataFrame({
        "x_mp_100m": proj.x,
        "y_mp_100m": proj.y,
        "weight": weight,
    }).to_csv(path, index=False)
    return path


class TestUniformSampler:
    """Tests for uniform sampling in a bounding box."""

    def test_samples_within_bounds(self):
        """10,000 draws stay inside the box and never repeat the origin."""
        sampler = Sampler(Uniform2D(BOUNDS), seed=1)

        for pair in itertools.islice(sampler, 10_000):
            for lon, lat in (pair.origin, pair.destination):
                assert 13.0 <= lon <= 14.0
                assert 52.0 <= lat <= 53.0
            assert pair.origin != pair.destination

        assert sampler.n_drawn == 10_000

    def test_indices_sequential(self):
        """Sample indices count up from zero."""
        sampler = Sampler(Uniform2D(BOUNDS), seed=1)
        assert [sampler.next().index for _ in range(5)] == [0, 1, 2, 3, 4]

    def test_same_seed_same_sequence(self):
        """Equal seeds reproduce the same OD sequence."""
        a = Sampler(Uniform2D(BOUNDS), seed=42)
        b = Sampler(Uniform2D(BOUNDS), seed=42)

        assert list(itertools.islice(a, 100)) == list(itertools.islice(b, 100))

    def test_different_seed_different_sequence(self):
        """Different seeds give different sequences."""
        a = Sampler(Uniform2D(BOUNDS), seed=1)
        b = Sampler(Uniform2D(BOUNDS), seed=2)

        assert a.next().origin != b.next().origin

    def test_trip_distance_limits(self):
        """Accepted pairs respect min and max straight-line distance."""
        sampler = Sampler(
            Uniform2D(BOUNDS),
            seed=3,
            min_trip_distance_m=5_000,
            max_trip_distance_m=20_000,
        )

        for pair in itertools.islice(sampler, 500):
            assert 5_000 <= pair.straight_distance_m <= 20_000


class TestRetryBudgets:
    """Tests for rejected draws and sampler exhaustion."""

    @pytest.fixture
    def impossible_sampler(self):
        """Tiny box with a minimum trip distance no pair can reach."""
        tiny = BoundingBox(south=52.0, west=13.0, north=52.0001, east=13.0001)
        return Sampler(
            Uniform2D(tiny),
            seed=0,
            min_trip_distance_m=100_000,
            max_retries=5,
            max_failed_draws=3,
        )

    def test_draw_rejected_then_exhausted(self, impossible_sampler):
        """Failed draws raise DrawRejected until the budget is used up."""
        with pytest.raises(DrawRejected):
            impossible_sampler.next()
        with pytest.raises(DrawRejected):
            impossible_sampler.next()
        with pytest.raises(SamplerExhausted):
            impossible_sampler.next()

        # stays exhausted
        with pytest.raises(SamplerExhausted):
            impossible_sampler.next()

        assert impossible_sampler.n_failed_draws == 3
        assert impossible_sampler.n_rejected_candidates == 15
        assert impossible_sampler.n_drawn == 0

    def test_invalid_budgets(self):
        """Budgets must be positive."""
        with pytest.raises(ConfigurationError):
            Sampler(Uniform2D(BOUNDS), max_retries=0)
        with pytest.raises(ConfigurationError):
            Sampler(Uniform2D(BOUNDS), max_failed_draws=0)

    def test_max_not_above_min(self):
        """Maximum trip distance must exceed the minimum."""
        with pytest.raises(ConfigurationError):
            Sampler(Uniform2D(BOUNDS), min_trip_distance_m=1000, max_trip_distance_m=1000)


class TestSnapping:
    """Tests for snapping sampled points to the network."""

    def test_snapped_pairs_are_nodes(self, network):
        """Snapped endpoints are distinct network nodes."""
        sampler = Sampler(Uniform2D(network.bounds()), seed=7, snap_index=network.spatial_index())
        coords = {node_id: (lon, lat) for node_id, lon, lat in network.nodes()}

        for pair in itertools.islice(sampler, 200):
            assert pair.origin_node != pair.destination_node
            assert pair.origin == coords[pair.origin_node]
            assert pair.destination == coords[pair.destination_node]

    def test_max_snap_distance(self, network):
        """Points too far from the network are rejected."""
        far_box = BoundingBox(south=53.0, west=14.0, north=53.1, east=14.1)
        sampler = Sampler(
            Uniform2D(far_box),
            seed=7,
            snap_index=network.spatial_index(),
            max_snap_distance_m=1_000,
            max_retries=3,
            max_failed_draws=1,
        )

        with pytest.raises(SamplerExhausted):
            sampler.next()


class TestLogNormal:
    """Tests for log-normal trip length sampling."""

    def test_destinations_inside_bounds(self):
        """Destinations outside the box are redrawn."""
        sampler = Sampler(LogNormalTripLength(BOUNDS, median_m=5_000, sigma=0.5), seed=11)

        for pair in itertools.islice(sampler, 1_000):
            assert BOUNDS.contains(*pair.destination)

    def test_median_trip_length(self):
        """Median straight-line distance is near the configured median."""
        sampler = Sampler(LogNormalTripLength(BOUNDS, median_m=5_000, sigma=0.5), seed=11)
        distances = [p.straight_distance_m for p in itertools.islice(sampler, 2_000)]

        assert 4_000 < np.median(distances) < 6_000

    def test_invalid_parameters(self):
        """Median and sigma must be positive."""
        with pytest.raises(ConfigurationError):
            LogNormalTripLength(BOUNDS, median_m=0)
        with pytest.raises(ConfigurationError):
            LogNormalTripLength(BOUNDS, sigma=-1)


class TestWeightedDensity:
    """Tests for sampling from weighted density clusters."""

    @pytest.fixture
    def density_csv(self, tmp_path):
        return write_density_csv(tmp_path / "density.csv", [
            (13.40, 52.50, 5.0),
            (13.41, 52.50, 1.0),
            (13.60, 52.60, 2.0),
            (13.45, 52.55, 0.0),
        ])

    def test_from_csv_drops_zero_weights(self, density_csv):
        """Clusters without weight are never loaded."""
        clusters = DensityClusters.from_csv(density_csv)
        assert len(clusters) == 3

    def test_from_csv_bounds_filter(self, density_csv):
        """Clusters outside the bounds are dropped."""
        bounds = BoundingBox(south=52.4, west=13.3, north=52.55, east=13.5)
        clusters = DensityClusters.from_csv(density_csv, bounds=bounds)
        assert len(clusters) == 2

    def test_from_csv_missing_file(self, tmp_path):
        """Missing density file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            DensityClusters.from_csv(tmp_path / "missing.csv")

    def test_from_csv_wrong_columns(self, tmp_path):
        """Density files need exactly three columns."""
        path = tmp_path / "bad.csv"
        path.write_text("a,b\n1,2\n")
        with pytest.raises(ConfigurationError):
            DensityClusters.from_csv(path)

    def test_samples_are_cluster_points(self, density_csv):
        """Every sampled point is one of the clusters."""
        clusters = DensityClusters.from_csv(density_csv)
        rng = np.random.default_rng(0)

        for _ in range(100):
            lon, lat = clusters.sample_point(rng)
            assert min(haversine_m(lon, lat, x, y) for x, y in zip(clusters.lon, clusters.lat)) < 1.0

    def test_sample_within_radius(self, density_csv):
        """Radius-limited sampling only returns nearby clusters."""
        clusters = DensityClusters.from_csv(density_csv)
        rng = np.random.default_rng(0)

        for _ in range(50):
            point = clusters.sample_point_within(rng, (13.40, 52.50), 2_000)
            assert haversine_m(13.40, 52.50, *point) <= 2_000

    def test_sample_within_radius_none(self, density_csv):
        """No cluster within the radius yields None."""
        clusters = DensityClusters.from_csv(density_csv)
        rng = np.random.default_rng(0)

        assert clusters.sample_point_within(rng, (10.0, 50.0), 100) is None

    def test_sampler_pairs(self, density_csv):
        """Weighted sampler produces distinct cluster endpoints."""
        clusters = DensityClusters.from_csv(density_csv)
        sampler = Sampler(WeightedDensity(clusters), seed=5)

        for pair in itertools.islice(sampler, 100):
            assert pair.origin != pair.destination

    def test_no_positive_weight(self):
        """All-zero weights are rejected."""
        with pytest.raises(ConfigurationError):
            DensityClusters(np.array([13.4]), np.array([52.5]), np.array([0.0]))


class TestMakeDistribution:
    """Tests for distribution selection by name."""

    def test_known_names(self, tmp_path):
        """Each name builds its distribution."""
        csv = write_density_csv(tmp_path / "d.csv", [(13.4, 52.5, 1.0), (13.5, 52.5, 1.0)])

        assert isinstance(make_distribution("uniform2d", bounds=BOUNDS), Uniform2D)
        assert isinstance(make_distribution("lognormal", bounds=BOUNDS), LogNormalTripLength)
        assert isinstance(make_distribution("weighted", density_csv=str(csv)), WeightedDensity)

    def test_unknown_name(self):
        """Unknown names raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            make_distribution("gravity", bounds=BOUNDS)

    def test_missing_bounds(self):
        """Box-based distributions need bounds."""
        with pytest.raises(ConfigurationError):
            make_distribution("uniform2d")

    def test_from_config(self, network):
        """Sampler.from_config honours the snap option."""
        config = RunConfig(bounds=(52.0, 13.0, 53.0, 14.0), seed=9, snap=False)
        sampler = Sampler.from_config(config, snap_index=network.spatial_index())

        assert sampler.snap_index is None
        assert sampler.seed == 9
        assert isinstance(sampler.distribution, Uniform2D)
