""" Linear transforms with symmetric (half-way) decompositions

    LinearTransform: a 3D linear transform defined by a linear part, a
        translation and a centre of rotation. Every time one of them changes,
        the offset of the transform and the two half-way transforms (the
        principal square roots of the transform and of its inverse) are
        recomputed, never updated incrementally.

    RigidTransform, AffineTransform: the parameterizations optimized by the
        linear registration engine. They know how to turn per-point forces
        into a parameter gradient and how to apply a parameter increment.

All transforms map points in the space of image 2 (the template) to points in
the space of image 1 (the moving image), so resampling image 1 with the
transform brings it onto the grid of image 2.
"""

import copy
import logging

import numpy as np
import numpy.linalg as npl
import scipy.linalg as spl
from scipy.spatial.transform import Rotation

from symreg.align import RegistrationConfigError, TransformDegenerateError

logger = logging.getLogger(__name__)

_SQRT_IMAG_TOL = 1e-8
_SQRT_RESIDUAL_TOL = 1e-6


def matrix_sqrt(affine):
    r"""Principal square root of a homogeneous transform

    The root is computed with the Schur method (scipy.linalg.sqrtm), which is
    numerically stable for the matrices found in registration. A transform
    with a non-positive determinant (a reflection or a degenerate transform)
    has no meaningful real principal root, so it is rejected before
    attempting the decomposition.

    Parameters
    ----------
    affine : array, shape (4, 4)
        homogeneous transform whose last row is (0, 0, 0, 1)

    Returns
    -------
    root : array, shape (4, 4)
        homogeneous transform such that root.dot(root) equals `affine`

    Raises
    ------
    TransformDegenerateError
        if det(affine) <= 0, or if the principal root is not real (e.g. a
        rotation by exactly 180 degrees)
    """
    affine = np.asarray(affine, dtype=np.float64)
    if affine.shape != (4, 4):
        raise ValueError("Expected a (4, 4) homogeneous matrix, got shape %s"
                         % (affine.shape,))
    det = npl.det(affine)
    if not det > 0:
        raise TransformDegenerateError(
            "Cannot split a transform with non-positive determinant "
            "(det = %g) into half-way transforms" % det)

    root = spl.sqrtm(affine)
    if np.iscomplexobj(root):
        scale = max(1.0, np.max(np.abs(root.real)))
        if np.max(np.abs(root.imag)) > _SQRT_IMAG_TOL * scale:
            raise TransformDegenerateError(
                "The transform has no real principal square root")
        root = root.real
    root = np.array(root, dtype=np.float64)
    root[3, :] = (0, 0, 0, 1)

    residual = np.max(np.abs(root.dot(root) - affine))
    if residual > _SQRT_RESIDUAL_TOL * max(1.0, np.max(np.abs(affine))):
        raise TransformDegenerateError(
            "Matrix square root did not converge (residual %g)" % residual)
    return root


def rotation_matrix(rotation_vector):
    """Rotation matrix for a rotation vector (axis times angle, radians)."""
    return Rotation.from_rotvec(np.asarray(rotation_vector,
                                           dtype=np.float64)).as_matrix()


def _as_homogeneous(transform):
    transform = np.asarray(transform, dtype=np.float64)
    if transform.shape == (3, 4):
        transform = np.vstack([transform, (0, 0, 0, 1)])
    if transform.shape != (4, 4):
        raise RegistrationConfigError(
            "A linear transform must be a (3, 4) or (4, 4) matrix, got shape"
            " %s" % (transform.shape,))
    if not np.all(np.isfinite(transform)):
        raise RegistrationConfigError("Transform contains invalid elements")
    if not np.allclose(transform[3], (0, 0, 0, 1)):
        raise RegistrationConfigError(
            "Last row of a homogeneous transform must be (0, 0, 0, 1)")
    return transform


class SumOfEstimates:
    """No robust estimator: gradient estimates are simply added up"""
    name = 'sum'

    def combine(self, estimates):
        return np.sum(np.asarray(estimates, dtype=np.float64), axis=0)


class MedianOfEstimates:
    """Per-parameter median of the gradient estimates

    The median is scaled by the number of estimates so that its magnitude is
    comparable with the sum of the estimates.
    """
    name = 'median'

    def combine(self, estimates):
        estimates = np.asarray(estimates, dtype=np.float64)
        return estimates.shape[0] * np.median(estimates, axis=0)


class LinearTransform:

    robust_estimator = SumOfEstimates()

    def __init__(self, number_of_parameters=12):
        """ Linear transform rotating about a centre

        The transform maps a point x to L.dot(x - c) + c + t, where L is the
        (3, 3) linear part, t the translation and c the centre of rotation.
        Internally it is stored as L.dot(x) + o with the offset
        o = t + c - L.dot(c), which is kept consistent whenever L, t or c
        changes. The half-way transforms `half` and `half_inverse` satisfy
        half . half = T and half_inverse . half_inverse = inv(T).

        Parameters
        ----------
        number_of_parameters : int, optional
            number of free parameters of this transform (used to size the
            optimizer weights)
        """
        self.number_of_parameters = number_of_parameters
        self._matrix = np.eye(3)
        self._translation = np.zeros(3)
        self._centre = np.zeros(3)
        self._offset = np.zeros(3)
        self._half = np.eye(4)
        self._half_inverse = np.eye(4)
        self._optimiser_weights = np.ones(number_of_parameters)

    def __repr__(self):
        return "%s(\n%s)" % (self.__class__.__name__,
                             np.array_str(self.get_transform()))

    def copy(self):
        """Deep copy of this transform."""
        return copy.deepcopy(self)

    def size(self):
        return self.number_of_parameters

    def set_matrix(self, matrix):
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (3, 3):
            raise ValueError("The linear part must be (3, 3)")
        self._matrix = matrix.copy()
        self._compute_offset()
        self._compute_halfspace_transformations()

    def get_matrix(self):
        return self._matrix.copy()

    def set_translation(self, translation):
        self._translation = np.asarray(translation,
                                       dtype=np.float64).reshape(3).copy()
        self._compute_offset()
        self._compute_halfspace_transformations()

    def get_translation(self):
        return self._translation.copy()

    def set_centre(self, centre):
        self._centre = np.asarray(centre, dtype=np.float64).reshape(3).copy()
        self._compute_offset()
        self._compute_halfspace_transformations()

    def get_centre(self):
        return self._centre.copy()

    def set_offset(self, offset):
        """Set the offset directly, deriving the matching translation."""
        self._offset = np.asarray(offset, dtype=np.float64).reshape(3).copy()
        self._translation = (self._offset - self._centre +
                             self._matrix.dot(self._centre))
        self._compute_halfspace_transformations()

    def get_offset(self):
        return self._offset.copy()

    def set_transform(self, transform):
        """Set the whole transform from a (3, 4) or (4, 4) matrix

        The centre is kept; the translation is derived from the offset of
        the given matrix.
        """
        transform = _as_homogeneous(transform)
        self._matrix = transform[:3, :3].copy()
        self.set_offset(transform[:3, 3])

    def get_transform(self):
        """The (4, 4) homogeneous matrix of the transform (a copy)."""
        affine = np.eye(4)
        affine[:3, :3] = self._matrix
        affine[:3, 3] = self._offset
        return affine

    def get_transform_half(self):
        return self._half.copy()

    def get_transform_half_inverse(self):
        return self._half_inverse.copy()

    def transform(self, points):
        """Apply the transform to an array of points of shape (..., 3)."""
        return _apply(self.get_transform(), points)

    def transform_half(self, points):
        return _apply(self._half, points)

    def transform_half_inverse(self, points):
        return _apply(self._half_inverse, points)

    def set_optimiser_weights(self, weights):
        weights = np.asarray(weights, dtype=np.float64).ravel()
        if weights.size != self.size():
            raise ValueError("Expected %d optimizer weights, got %d"
                             % (self.size(), weights.size))
        self._optimiser_weights = weights.copy()

    def get_optimiser_weights(self):
        return self._optimiser_weights.copy()

    def robust_estimate(self, estimates):
        """Combine per-region gradient estimates into a single gradient."""
        if isinstance(self.robust_estimator, SumOfEstimates):
            logger.debug("robust estimator for %s is not implemented, "
                         "summing the gradient estimates",
                         self.__class__.__name__)
        return self.robust_estimator.combine(estimates)

    def _compute_offset(self):
        self._offset = (self._translation + self._centre -
                        self._matrix.dot(self._centre))

    def _compute_halfspace_transformations(self):
        affine = self.get_transform()
        self._half = matrix_sqrt(affine)
        self._half_inverse = npl.inv(self._half)


class RigidTransform(LinearTransform):
    def __init__(self):
        """ Rigid transform: 3 rotation and 3 translation parameters

        The rotation parameters are the components of a rotation vector
        applied on the left of the current rotation, about the centre.
        """
        super(RigidTransform, self).__init__(6)

    def gradient(self, points, forces):
        """Parameter gradient from the forces dC/dx' at the given points."""
        arms = (points - self._centre).dot(self._matrix.T)
        return np.concatenate([np.cross(arms, forces).sum(axis=0),
                               forces.sum(axis=0)])

    def increment(self, delta):
        """Return a copy of this transform updated by `delta`."""
        delta = np.asarray(delta, dtype=np.float64)
        updated = self.copy()
        updated._matrix = rotation_matrix(delta[:3]).dot(self._matrix)
        updated._translation = self._translation + delta[3:]
        updated._compute_offset()
        updated._compute_halfspace_transformations()
        return updated


class AffineTransform(LinearTransform):

    robust_estimator = MedianOfEstimates()

    def __init__(self):
        """ Affine transform: 9 linear and 3 translation parameters"""
        super(AffineTransform, self).__init__(12)

    def gradient(self, points, forces):
        """Parameter gradient from the forces dC/dx' at the given points."""
        arms = points - self._centre
        return np.concatenate([forces.T.dot(arms).ravel(),
                               forces.sum(axis=0)])

    def increment(self, delta):
        """Return a copy of this transform updated by `delta`."""
        delta = np.asarray(delta, dtype=np.float64)
        updated = self.copy()
        updated._matrix = self._matrix + delta[:9].reshape(3, 3)
        updated._translation = self._translation + delta[9:]
        updated._compute_offset()
        updated._compute_halfspace_transformations()
        return updated


def _apply(affine, points):
    points = np.asarray(points, dtype=np.float64)
    return points.dot(affine[:3, :3].T) + affine[:3, 3]


def save_transform(transform, fname):
    """Save a linear transform as a (4, 4) text matrix

    Parameters
    ----------
    transform : LinearTransform or array, shape (3, 4) or (4, 4)
    fname : str
    """
    if isinstance(transform, LinearTransform):
        transform = transform.get_transform()
    np.savetxt(fname, _as_homogeneous(transform), fmt='%.17g')


def load_transform(fname):
    """Load a (3, 4) or (4, 4) text matrix as a (4, 4) homogeneous transform.
    """
    return _as_homogeneous(np.loadtxt(fname, ndmin=2))
