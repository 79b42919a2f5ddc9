"""Tests for the thread helpers."""

from multiprocessing import cpu_count

import numpy as np
import numpy.testing as npt
import pytest

from symreg.utils.multiproc import (determine_num_threads, region_slices,
                                    RegionPool)


def test_determine_num_threads():
    # Test that the correct number of effective num_threads is returned

    # 0 should raise an error
    with pytest.raises(ValueError):
        determine_num_threads(0)

    # A string should raise an error
    with pytest.raises(TypeError):
        determine_num_threads("0")

    # 1 should be 1
    npt.assert_equal(determine_num_threads(1), 1)

    # A positive integer should not change
    npt.assert_equal(determine_num_threads(4), 4)

    # None and -1 should be equal (all cores)
    npt.assert_equal(determine_num_threads(None), determine_num_threads(-1))
    if cpu_count() > 1:
        npt.assert_equal(determine_num_threads(None),
                         determine_num_threads(-2) + 1)


def test_region_slices_cover_grid():
    slices = region_slices((10, 4, 4), 3)
    npt.assert_equal(len(slices), 3)
    covered = np.concatenate([np.arange(10)[s[0]] for s in slices])
    npt.assert_array_equal(covered, np.arange(10))

    # never more slabs than planes
    npt.assert_equal(len(region_slices((2, 5, 5), 8)), 2)


def test_region_pool_map_reduces_to_full_sum():
    data = np.arange(7 * 3 * 2, dtype=float).reshape(7, 3, 2)
    for num_threads in [1, 3]:
        with RegionPool(num_threads, regions_per_thread=2) as pool:
            partial = pool.map(lambda region: data[region].sum(), data.shape)
        npt.assert_almost_equal(np.sum(partial), data.sum())


def test_region_pool_propagates_errors():
    def fail(region):
        raise ArithmeticError("bad region")

    with RegionPool(2) as pool:
        with pytest.raises(ArithmeticError):
            pool.map(fail, (4, 4, 4))
