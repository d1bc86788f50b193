import numpy as np
import pytest
from forestvar import ConfigurationError, resolve_block_design
from forestvar.sampling import draw_bootstrap, draw_subsamples, resolve_subsample_size


def test_subsample_size_resolution():
    assert resolve_subsample_size(300) == 17
    assert resolve_subsample_size(300, 50) == 50
    assert resolve_subsample_size(300, 0.1) == 30
    for bad in (0, 301, 1.5, 0.0, "half"):
        with pytest.raises(ConfigurationError):
            resolve_subsample_size(300, bad)


def test_bootstrap_counts():
    inbag = draw_bootstrap(40, 25, random_state=0)
    assert inbag.shape == (25, 40)
    np.testing.assert_array_equal(inbag.sum(axis=1), np.full(25, 40))
    assert inbag.min() >= 0
    # with replacement: some row is drawn more than once
    assert inbag.max() > 1


def test_subsamples_share_block_pivot():
    design = resolve_block_design(n_blocks=4, block_size=5)
    inbag, pivots = draw_subsamples(50, 8, design, pivot_size=2, random_state=3)
    assert inbag.shape == (20, 50)
    assert pivots.shape == (4, 2)
    np.testing.assert_array_equal(inbag.sum(axis=1), np.full(20, 8))
    assert set(np.unique(inbag)) <= {0, 1}
    for b in range(design.n_blocks):
        members = design.members(b)
        assert np.all(inbag[np.ix_(members, pivots[b])] == 1)


def test_subsamples_are_reproducible():
    design = resolve_block_design(n_blocks=3, block_size=2)
    a, pa = draw_subsamples(30, 5, design, random_state=11)
    b, pb = draw_subsamples(30, 5, design, random_state=11)
    np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(pa, pb)


def test_pivot_must_be_smaller_than_subsample():
    design = resolve_block_design(n_blocks=2, block_size=2)
    with pytest.raises(ConfigurationError):
        draw_subsamples(30, 5, design, pivot_size=5)
    with pytest.raises(ConfigurationError):
        draw_subsamples(30, 5, design, pivot_size=0)
    with pytest.raises(ConfigurationError):
        draw_subsamples(4, 5, design, pivot_size=1)
