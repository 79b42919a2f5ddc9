"""Thread pools evaluating functions over spatial regions of an image."""

from concurrent.futures import ThreadPoolExecutor
from multiprocessing import cpu_count
from warnings import warn

import numpy as np


def determine_num_threads(num_threads):
    """Determine the effective number of threads for parallelization.

    - For ``num_threads = None`` return the maximum number of cores retrieved
    by cpu_count().

    - For ``num_threads > 0``, return this value.

    - For ``num_threads < 0``, return the maximal number of cores minus
    ``num_threads + 1``. In particular ``num_threads = -1`` will use as
    many cores as possible.

    - For ``num_threads = 0`` a ValueError is raised.

    Parameters
    ----------
    num_threads : int or None
        Desired number of threads to be used.
    """
    if not isinstance(num_threads, (int, np.integer)) and \
            num_threads is not None:
        raise TypeError("num_threads must be an int or None")

    if num_threads == 0:
        raise ValueError("num_threads cannot be 0")

    try:
        if num_threads is None:
            return cpu_count()

        if num_threads < 0:
            return max(1, cpu_count() + num_threads + 1)
    except NotImplementedError:
        warn("Cannot determine number of cores. Using only 1.")
        return 1

    return int(num_threads)


def region_slices(shape, num_regions):
    """Split the first axis of a grid into contiguous slabs

    Parameters
    ----------
    shape : sequence of ints
        shape of the grid
    num_regions : int
        desired number of slabs; fewer are returned for small grids

    Returns
    -------
    slices : list of tuples of slices
        each tuple indexes one slab of an array of the given shape
    """
    num_regions = max(1, min(int(num_regions), int(shape[0])))
    bounds = np.linspace(0, shape[0], num_regions + 1).astype(int)
    return [(slice(start, stop),)
            for start, stop in zip(bounds[:-1], bounds[1:]) if stop > start]


class RegionPool:

    def __init__(self, num_threads=None, regions_per_thread=1):
        """ Fixed-size pool of threads mapping a function over image slabs

        Each call of the mapped function receives one slab and returns a
        private partial result; the caller reduces the partial results.
        numpy and scipy.ndimage release the GIL in their inner loops, so
        threads give real parallelism while sharing read-only images.

        Parameters
        ----------
        num_threads : int or None, optional
            see `determine_num_threads`
        regions_per_thread : int, optional
            number of slabs given to each thread
        """
        self.num_threads = determine_num_threads(num_threads)
        self.regions_per_thread = regions_per_thread
        self._executor = None

    def __enter__(self):
        self._executor = ThreadPoolExecutor(max_workers=self.num_threads)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def regions(self, shape):
        return region_slices(shape,
                             self.num_threads * self.regions_per_thread)

    def map(self, func, shape):
        """Evaluate ``func(region)`` for every slab of a grid of `shape`

        Returns the list of partial results, in slab order. Exceptions
        raised by `func` propagate to the caller.
        """
        regions = self.regions(shape)
        if self._executor is None or self.num_threads == 1:
            return [func(region) for region in regions]
        return list(self._executor.map(func, regions))
