""" Operations on dense displacement fields

A displacement field is an array of shape (X, Y, Z, 3) holding, for each
voxel x of a grid with grid-to-world transform `grid2world`, the world-space
(mm) displacement d(x); the corresponding deformation maps x to x + d(x).
Fields are sampled with trilinear interpolation and clamped at the border of
their grid.
"""

import numpy as np
import numpy.linalg as npl
from scipy import ndimage


def world_grid(shape, grid2world):
    """World coordinates of the voxel centres of a grid, shape (X, Y, Z, 3).
    """
    shape = tuple(int(s) for s in shape[:3])
    indices = np.indices(shape, dtype=np.float64)
    indices = np.moveaxis(indices, 0, -1)
    grid2world = np.asarray(grid2world, dtype=np.float64)
    return indices.dot(grid2world[:3, :3].T) + grid2world[:3, 3]


def _world_to_voxel(points, grid2world):
    world2grid = npl.inv(grid2world)
    voxels = points.dot(world2grid[:3, :3].T) + world2grid[:3, 3]
    return np.moveaxis(voxels, -1, 0)


def interpolate_image(image, grid2world, points, order=1, cval=0,
                      mode='constant'):
    """Sample a 3D or 4D image at world-space points

    Parameters
    ----------
    image : array, shape (X, Y, Z) or (X, Y, Z, V)
    grid2world : array, shape (4, 4)
        grid-to-world transform of `image`
    points : array, shape (..., 3)
        world coordinates to sample at
    order : int, optional
        spline interpolation order
    cval : float, optional
        value outside the image (with mode 'constant')
    mode : str, optional
        boundary mode of scipy.ndimage.map_coordinates

    Returns
    -------
    samples : array, shape points.shape[:-1] or points.shape[:-1] + (V,)
    """
    coords = _world_to_voxel(np.asarray(points, dtype=np.float64),
                             grid2world)
    if image.ndim == 3:
        return ndimage.map_coordinates(image, coords, order=order, cval=cval,
                                       mode=mode)
    out = np.empty(points.shape[:-1] + image.shape[3:], dtype=np.float64)
    for v in range(image.shape[3]):
        out[..., v] = ndimage.map_coordinates(image[..., v], coords,
                                              order=order, cval=cval,
                                              mode=mode)
    return out


def inside_field_of_view(shape, grid2world, points):
    """Whether world points fall within the voxel grid of an image."""
    coords = _world_to_voxel(np.asarray(points, dtype=np.float64),
                             grid2world)
    inside = np.ones(coords.shape[1:], dtype=bool)
    for axis in range(3):
        inside &= (coords[axis] >= -0.5) & (coords[axis] <= shape[axis] - 0.5)
    return inside


def interpolate_vector_field(field, grid2world, points):
    """Sample a displacement field at world points (clamped at the border).
    """
    return interpolate_image(field, grid2world, points, order=1,
                             mode='nearest')


def compose_vector_fields(d1, d2, grid2world):
    r"""Displacement of the composition of two deformations

    Computes c(x) = d1(x) + d2(x + d1(x)), the displacement of the
    deformation that first applies x + d1(x), then y + d2(y).

    Parameters
    ----------
    d1, d2 : array, shape (X, Y, Z, 3)
        displacement fields on the same grid
    grid2world : array, shape (4, 4)

    Returns
    -------
    composition : array, shape (X, Y, Z, 3)
    """
    points = world_grid(d1.shape, grid2world) + d1
    return d1 + interpolate_vector_field(d2, grid2world, points)


def invert_vector_field_fixed_point(d, grid2world, max_iter=20,
                                    tolerance=1e-3, start=None):
    r"""Computes the inverse of a displacement field by fixed point iteration

    The inverse displacement q satisfies q(x) = -d(x + q(x)); starting from
    `start` (or zero), the iteration q <- -d(x + q) is repeated until the
    largest residual |q(x) + d(x + q(x))| falls below `tolerance` (mm).

    Parameters
    ----------
    d : array, shape (X, Y, Z, 3)
        the displacement field to invert
    grid2world : array, shape (4, 4)
    max_iter : int, optional
        maximum number of iterations
    tolerance : float, optional
        stopping residual, in mm
    start : array, shape (X, Y, Z, 3), optional
        warm start, typically the inverse estimated at the previous
        iteration of the registration

    Returns
    -------
    q : array, shape (X, Y, Z, 3)
        the inverse displacement field
    """
    grid = world_grid(d.shape, grid2world)
    q = np.zeros_like(d, dtype=np.float64) if start is None \
        else np.array(start, dtype=np.float64)
    for _ in range(max_iter):
        q_new = -interpolate_vector_field(d, grid2world, grid + q)
        residual = np.sqrt(np.max(np.sum((q_new - q) ** 2, axis=-1)))
        q = q_new
        if residual < tolerance:
            break
    return q


def compute_inversion_error(d, d_inv, grid2world):
    """Round-trip residual of a displacement field and its inverse

    Returns
    -------
    residual : array, shape (X, Y, Z, 3)
        d_inv(x + d(x)) + d(x), the displacement of the composition, which
        is zero for an exact inverse
    stats : tuple
        (mean, max) of the residual norm
    """
    residual = compose_vector_fields(d, d_inv, grid2world)
    norms = np.sqrt(np.sum(residual ** 2, axis=-1))
    return residual, (float(norms.mean()), float(norms.max()))


def expand_field(d, grid2world, new_shape, new_grid2world):
    """Resample a displacement field onto a (finer) grid

    Displacements are stored in world units, so components are interpolated
    without rescaling.
    """
    points = world_grid(new_shape, new_grid2world)
    return interpolate_vector_field(d, grid2world, points)


def smooth_field(d, sigma):
    """Gaussian smoothing of each component of a field, sigma in voxels."""
    if sigma is None or sigma <= 0:
        return np.array(d, dtype=np.float64)
    sigmas = (sigma, sigma, sigma, 0)
    return ndimage.gaussian_filter(np.asarray(d, dtype=np.float64), sigmas)


def _grid_gradient(image):
    grad = np.zeros(image.shape + (3,), dtype=np.float64)
    for axis in range(3):
        if image.shape[axis] > 1:
            grad[..., axis] = np.gradient(image, axis=axis)
    return grad


def gradient_world(image, grid2world):
    r"""World-space gradient of a 3D or 4D image

    Returns
    -------
    gradient : array, shape image.shape + (3,)
        partial derivatives w.r.t. the world coordinates (per mm)
    """
    image = np.asarray(image, dtype=np.float64)
    grid_grad = _grid_gradient(image)
    # df/dworld = inv(A)^T df/dgrid
    world2grid = npl.inv(np.asarray(grid2world)[:3, :3])
    return grid_grad.dot(world2grid)


def field_jacobian(d, grid2world):
    """Jacobian of the deformation x + d(x), shape (X, Y, Z, 3, 3)

    Element [..., i, j] is the derivative of component i w.r.t. the world
    coordinate j.
    """
    world2grid = npl.inv(np.asarray(grid2world)[:3, :3])
    jacobian = np.empty(d.shape[:3] + (3, 3), dtype=np.float64)
    for i in range(3):
        grid_grad = _grid_gradient(d[..., i])
        jacobian[..., i, :] = grid_grad.dot(world2grid)
    jacobian += np.eye(3)
    return jacobian


def warp_image(image, grid2world, deformation, order=1, cval=0):
    """Sample an image at the world points of a deformation

    Parameters
    ----------
    image : array, shape (X, Y, Z) or (X, Y, Z, V)
    grid2world : array, shape (4, 4)
        grid-to-world transform of `image`
    deformation : array, shape (A, B, C, 3)
        world point, in the space of `image`, for each output voxel

    Returns
    -------
    warped : array, shape (A, B, C) or (A, B, C, V)
    """
    return interpolate_image(image, grid2world, deformation, order=order,
                             cval=cval)
