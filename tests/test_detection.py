# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the distance classes and the half-normal detection function."""

import numpy as np
import pytest

from ecostanpy.simulation.detection import (
    bin_detection_probabilities,
    bin_probabilities_given_detection,
    distance_bins,
    distance_class,
    exact_detection_probability,
    half_normal,
    overall_detection_probability,
)


def test_default_bins_have_forty_classes():
    bins = distance_bins(1000, 25)
    assert bins.nbins == 40
    assert len(bins.midpoints) == 40
    np.testing.assert_allclose(bins.midpoints, np.arange(12.5, 1000, 25))
    assert bins.midpoints[0] == 12.5
    assert bins.midpoints[-1] == 987.5
    np.testing.assert_allclose(bins.edges[[0, -1]], [0.0, 1000.0])


@pytest.mark.parametrize("b, width", [(1000, 30), (0, 25), (100, -5)])
def test_invalid_bins(b, width):
    with pytest.raises(ValueError):
        distance_bins(b, width)


def test_half_normal_is_one_at_zero_and_non_increasing():
    d = np.linspace(0, 1000, 201)
    for sigma in (10.0, 148.4, 1e4):
        p = half_normal(d, sigma)
        assert p[0] == 1.0
        assert np.all(np.diff(p) <= 0)
        assert np.all((p >= 0) & (p <= 1))


def test_half_normal_vanishes_far_beyond_the_scale():
    assert half_normal(1000.0, 50.0) < 1e-40


def test_half_normal_broadcasts_over_species():
    p = half_normal(np.array([[0.0], [100.0]]), np.array([50.0, 100.0, 200.0]))
    assert p.shape == (2, 3)
    sigma = np.array([50.0, 100.0, 200.0])
    np.testing.assert_allclose(p[1], np.exp(-(100.0**2) / (2 * sigma**2)))


def test_distance_class_matches_floor_rule(rng):
    d = rng.uniform(0, 1000, size=5000)
    classes = distance_class(d, 25.0, 40)
    np.testing.assert_array_equal(classes, np.floor(d / 25.0).astype(int) + 1)
    assert classes.min() >= 1
    assert classes.max() <= 40


def test_distance_class_boundaries():
    np.testing.assert_array_equal(
        distance_class(np.array([0.0, 24.999, 25.0, 1000.0]), 25.0, 40), [1, 1, 2, 40]
    )


def test_distance_class_rejects_out_of_range():
    with pytest.raises(ValueError):
        distance_class(np.array([-1.0]), 25.0, 40)
    with pytest.raises(ValueError):
        distance_class(np.array([1000.1]), 25.0, 40)


def test_bin_probabilities_shapes_and_sums():
    bins = distance_bins(1000, 25)
    sigma = np.exp(np.array([5.0, 5.5, 4.0]))
    pie = bin_detection_probabilities(sigma, bins)
    assert pie.shape == (40, 3)
    np.testing.assert_allclose(
        pie.sum(axis=0), overall_detection_probability(sigma, bins)
    )
    np.testing.assert_allclose(
        bin_probabilities_given_detection(sigma, bins).sum(axis=0), np.ones(3)
    )

    # A scalar scale gives one probability per class
    assert bin_detection_probabilities(150.0, bins).shape == (40,)
    assert isinstance(overall_detection_probability(150.0, bins), float)


def test_midpoint_rule_approximates_exact_average():
    bins = distance_bins(1000, 25)
    for sigma in (np.exp(4.0), np.exp(5.0), np.exp(5.5), np.exp(7.0)):
        assert overall_detection_probability(sigma, bins) == pytest.approx(
            exact_detection_probability(sigma, 1000.0), rel=1e-3
        )


def test_detection_probability_in_unit_interval():
    bins = distance_bins(1000, 25)
    pie = overall_detection_probability(np.exp(np.linspace(2, 9, 15)), bins)
    assert np.all((pie > 0) & (pie <= 1))
    assert np.all(np.diff(pie) > 0)
