""" Direction sets on the unit sphere

The default set of directions used to reorient orientation-dependent images
is obtained by electrostatic repulsion of 60 antipodally symmetric charges.
"""
import functools

import numpy as np


def _tangential_forces(points):
    r"""Repulsion between unit charges placed at `points` and at their
    antipodes

    Returns the force on each point projected onto the tangent plane of the
    sphere, and the total potential. The force between two charges
    separated by $\vec{r}$ is $\vec{r}/r^3$.
    """
    n_points = len(points)
    sources = np.concatenate((points, -points))
    separation = points[None, :, :] - sources[:, None, :]
    distance = np.linalg.norm(separation, axis=-1)
    own = np.arange(n_points)
    distance[own, own] = np.inf
    force = (separation / distance[..., None] ** 3).sum(0)
    radial = (force * points).sum(-1)
    potential = 2 * (1. / distance).sum()
    return force - radial[:, None] * points, potential


def disperse_charges(points, iters, const=.2):
    """Spread points over the unit sphere by electrostatic repulsion

    A step along the tangential forces is kept when it lowers the potential,
    otherwise the step length is halved.

    Parameters
    ----------
    points : array, shape (N, 3)
        starting points on the unit sphere, no two of them antipodal
    iters : int
    const : float, optional
        length of the first step relative to the initial force; smaller
        values converge more slowly

    Returns
    -------
    points : array, shape (N, 3)
    potential : array, shape (iters,)
        the potential after each iteration, never increasing
    """
    points = np.array(points, dtype=np.float64)
    forces, lowest = _tangential_forces(points)
    step = const / np.linalg.norm(forces)
    potential = np.empty(iters)
    for i in range(iters):
        trial = points + step * forces
        trial /= np.linalg.norm(trial, axis=1)[:, None]
        trial_forces, energy = _tangential_forces(trial)
        if energy <= lowest:
            points, forces, lowest = trial, trial_forces, energy
        else:
            step /= 2.
        potential[i] = lowest
    return points, potential


def fibonacci_hemisphere(n_points):
    """Deterministic, roughly uniform points on the y > 0 hemisphere."""
    total = 2 * n_points
    y = (2. * np.arange(total) + 1) / total - 1
    radius = np.sqrt(1 - y ** 2)
    phi = np.arange(total) * np.pi * (3. - np.sqrt(5.))
    points = np.column_stack((np.cos(phi) * radius, y, np.sin(phi) * radius))
    return points[y > 0]


@functools.lru_cache(maxsize=None)
def _repulsion_directions(n_points, iters):
    points, _ = disperse_charges(fibonacci_hemisphere(n_points), iters)
    return points


def electrostatic_repulsion_60():
    """The default set of 60 unit directions, shape (60, 3)."""
    return _repulsion_directions(60, 200).copy()


def spherical2cartesian(spherical):
    """Unit vectors from (azimuth, inclination) pairs in radians

    Parameters
    ----------
    spherical : array, shape (N, 2)
        azimuth (about z, from x) and inclination (from z)

    Returns
    -------
    xyz : array, shape (N, 3)
    """
    spherical = np.asarray(spherical, dtype=np.float64)
    azimuth, inclination = spherical[:, 0], spherical[:, 1]
    return np.column_stack((np.sin(inclination) * np.cos(azimuth),
                            np.sin(inclination) * np.sin(azimuth),
                            np.cos(inclination)))


def load_directions(fname):
    """Load a direction set from a text file

    The file holds one direction per row, either as (azimuth, inclination)
    in radians or as cartesian (x, y, z) coordinates.

    Returns
    -------
    directions : array, shape (N, 3)
        unit vectors
    """
    values = np.loadtxt(fname, ndmin=2)
    if values.shape[1] == 2:
        return spherical2cartesian(values)
    if values.shape[1] != 3:
        raise ValueError("Direction file %s must have 2 (spherical) or 3 "
                         "(cartesian) columns, found %d"
                         % (fname, values.shape[1]))
    norms = np.sqrt((values ** 2).sum(-1))
    if np.any(norms == 0):
        raise ValueError("Direction file %s contains null vectors" % fname)
    return values / norms[:, None]
