""" Similarity metrics for linear and symmetric diffeomorphic registration

A metric compares a static image with a moving image that has already been
resampled onto the static grid. For each voxel it provides the contribution
to the cost and the force dC/dx' (the derivative of the cost w.r.t. the
position the moving image was sampled at), which the registration engines
turn into a transform or displacement update.

The set of metrics is closed: `select_metric` maps a (metric, estimator,
number of dimensions) triplet to one variant once per stage, and invalid
combinations are rejected before any optimization starts.
"""

import abc

import numpy as np
from scipy import ndimage

from symreg.align import RegistrationConfigError


class RobustEstimator(metaclass=abc.ABCMeta):
    name = None

    @abc.abstractmethod
    def __call__(self, residual):
        """Return (rho(residual), d rho / d residual)."""


class NoRobustEstimator(RobustEstimator):
    """Plain squared residuals."""
    name = 'none'

    def __call__(self, residual):
        return residual ** 2, 2.0 * residual


class L1(RobustEstimator):
    name = 'l1'

    def __call__(self, residual):
        return np.abs(residual), np.sign(residual)


class L2(RobustEstimator):
    name = 'l2'

    def __call__(self, residual):
        return residual ** 2, 2.0 * residual


class LP(RobustEstimator):
    name = 'lp'

    def __init__(self, power=1.2, epsilon=1e-6):
        r""" Lp-norm-like estimator, rho(d) = |d|^p

        Parameters
        ----------
        power : float, optional
            the exponent p; 1 < p < 2 behaves between L1 and L2
        epsilon : float, optional
            keeps the derivative finite at d = 0 when p < 1
        """
        self.power = power
        self.epsilon = epsilon

    def __call__(self, residual):
        magnitude = np.abs(residual)
        rho = magnitude ** self.power
        psi = (self.power * np.sign(residual) *
               (magnitude + self.epsilon) ** (self.power - 1.0))
        return rho, psi


class SimilarityMetric(metaclass=abc.ABCMeta):
    name = None
    multivolume = False

    def precompute(self, static, moving):
        """Statistics over whole images needed before region evaluation

        Returns a dictionary of arrays sharing the spatial shape of the
        images. Voxel-wise metrics need nothing.
        """
        return {}

    @abc.abstractmethod
    def evaluate(self, static, moving, moving_grad, mask, extra=None):
        r"""Cost and forces over a region

        Parameters
        ----------
        static : array, shape (..., ) or (..., V)
            static image samples
        moving : array, shape like `static`
            moving image sampled at the transformed static positions
        moving_grad : array, shape (..., 3) or (..., V, 3)
            world-space gradient of the moving image at those positions
        mask : array of bool, shape (...)
            voxels contributing to the cost
        extra : dict, optional
            the region's share of the output of `precompute`

        Returns
        -------
        cost : float
            the sum of the cost over the masked voxels
        forces : array, shape (..., 3)
            dC/dx' at each voxel (zero outside the mask)
        count : int
            number of voxels contributing
        """


def _voxelwise(estimator, static, moving, moving_grad, mask, multivolume):
    residual = moving - static
    rho, psi = estimator(residual)
    weights = mask.astype(np.float64)
    if multivolume:
        cost = np.sum(rho.sum(axis=-1) * weights)
        forces = np.einsum('...v,...vk->...k', psi, moving_grad)
    else:
        cost = np.sum(rho * weights)
        forces = psi[..., None] * moving_grad
    forces *= weights[..., None]
    return cost, forces, int(np.count_nonzero(mask))


class MeanSquaredMetric(SimilarityMetric):
    name = 'mean squared difference'

    def evaluate(self, static, moving, moving_grad, mask, extra=None):
        return _voxelwise(NoRobustEstimator(), static, moving, moving_grad,
                          mask, self.multivolume)


class MeanSquared4DMetric(MeanSquaredMetric):
    name = 'mean squared difference (4D)'
    multivolume = True


class DifferenceRobustMetric(SimilarityMetric):
    def __init__(self, estimator):
        """ Robust difference metric

        Residuals are reweighted by an M-estimator before being accumulated,
        reducing the influence of outliers (noise, lesions).

        Parameters
        ----------
        estimator : RobustEstimator
        """
        self.estimator = estimator
        self.name = 'robust difference (%s)' % estimator.name

    def evaluate(self, static, moving, moving_grad, mask, extra=None):
        return _voxelwise(self.estimator, static, moving, moving_grad, mask,
                          self.multivolume)


class DifferenceRobust4DMetric(DifferenceRobustMetric):
    multivolume = True

    def __init__(self, estimator):
        super(DifferenceRobust4DMetric, self).__init__(estimator)
        self.name = 'robust difference (%s, 4D)' % estimator.name


class CrossCorrelationMetric(SimilarityMetric):
    name = 'cross correlation'

    def __init__(self, extent=(3, 3, 3)):
        r""" Local normalized cross correlation

        The correlation between the static and moving images is computed
        over a small neighbourhood around each voxel; the cost is the
        negative sum of the squared local correlations.

        Parameters
        ----------
        extent : sequence of 3 ints, optional
            size of the neighbourhood along each axis
        """
        self.extent = tuple(int(e) for e in extent)
        if len(self.extent) != 3 or min(self.extent) < 1:
            raise RegistrationConfigError(
                "The cross correlation extent must be 3 positive integers")
        self.window = float(np.prod(self.extent))

    def precompute(self, static, moving):
        if static.ndim > 3:
            raise RegistrationConfigError(
                "cross correlation metric not implemented for data with more"
                " than 3 dimensions")
        static = static.astype(np.float64)
        moving = moving.astype(np.float64)
        mean_static = ndimage.uniform_filter(static, self.extent)
        mean_moving = ndimage.uniform_filter(moving, self.extent)
        sff = ndimage.uniform_filter(static * static, self.extent)
        smm = ndimage.uniform_filter(moving * moving, self.extent)
        sfm = ndimage.uniform_filter(static * moving, self.extent)
        return {'centred_static': static - mean_static,
                'centred_moving': moving - mean_moving,
                'sff': sff - mean_static ** 2,
                'smm': smm - mean_moving ** 2,
                'sfm': sfm - mean_static * mean_moving}

    def evaluate(self, static, moving, moving_grad, mask, extra=None):
        if extra is None:
            extra = self.precompute(static, moving)
        sff, smm, sfm = extra['sff'], extra['smm'], extra['sfm']
        denom = sff * smm
        valid = mask & (denom > 1e-10)
        safe = np.where(valid, denom, 1.0)
        cc = np.where(valid, sfm ** 2 / safe, 0.0)
        # d cc / d moving at the centre voxel of each window
        dcc = np.where(valid,
                       2.0 * sfm / (self.window * safe) *
                       (extra['centred_static'] - sfm /
                        np.where(valid, smm, 1.0) * extra['centred_moving']),
                       0.0)
        forces = -dcc[..., None] * moving_grad
        return -np.sum(cc), forces, int(np.count_nonzero(valid))


class SyNDemonsMetric:
    name = 'symmetric demons'

    def __init__(self, threshold=1e-9):
        r""" Symmetric demons update for the SyN engine

        Given both images warped to the midway space and their gradients,
        computes the update u = sum_v s_v g_v / sum_v (s_v^2 + |g_v|^2)
        with s = w2 - w1 and g = grad(w1) + grad(w2). Image 1's field is
        moved along +u and image 2's field along -u.

        Parameters
        ----------
        threshold : float, optional
            voxels whose denominator falls below this value get no update
        """
        self.threshold = threshold

    def compute_update(self, warped1, warped2, grad1, grad2, mask):
        """Return the update field of image 1 and the energy

        Parameters
        ----------
        warped1, warped2 : array, shape (X, Y, Z) or (X, Y, Z, V)
        grad1, grad2 : array, shape (X, Y, Z, 3) or (X, Y, Z, V, 3)
        mask : array of bool, shape (X, Y, Z)

        Returns
        -------
        update : array, shape (X, Y, Z, 3)
        energy : float
            mean squared difference over the mask
        """
        speed = warped2 - warped1
        grad = grad1 + grad2
        if speed.ndim == 4:
            numerator = np.einsum('...v,...vk->...k', speed, grad)
            sq_speed = np.sum(speed ** 2, axis=-1)
            denominator = sq_speed + np.sum(grad ** 2, axis=(-2, -1))
        else:
            numerator = speed[..., None] * grad
            sq_speed = speed ** 2
            denominator = sq_speed + np.sum(grad ** 2, axis=-1)
        valid = mask & (denominator > self.threshold)
        update = np.zeros(numerator.shape, dtype=np.float64)
        update[valid] = numerator[valid] / denominator[valid][:, None]
        count = np.count_nonzero(mask)
        energy = float(np.sum(sq_speed[mask]) / count) if count else 0.0
        return update, energy


_ESTIMATORS = {'none': NoRobustEstimator,
               'l1': L1,
               'l2': L2,
               'lp': LP}

# (metric, estimator given, multi-volume) -> factory
_METRIC_VARIANTS = {
    ('diff', False, False): lambda est, extent: MeanSquaredMetric(),
    ('diff', False, True): lambda est, extent: MeanSquared4DMetric(),
    ('diff', True, False): lambda est, extent: DifferenceRobustMetric(est),
    ('diff', True, True): lambda est, extent: DifferenceRobust4DMetric(est),
    ('ncc', False, False): lambda est, extent: CrossCorrelationMetric(extent),
}


def select_metric(metric='diff', estimator=None, ndim=3, extent=(3, 3, 3)):
    r"""Select the metric variant for a linear registration stage

    Parameters
    ----------
    metric : {'diff', 'ncc'}
        voxel-wise intensity difference or local cross correlation
    estimator : {None, 'none', 'l1', 'l2', 'lp'}, optional
        robust estimator reweighting the differences. Only valid with
        'diff'. None and 'none' select the plain squared difference.
    ndim : int
        number of dimensions of the input images (3, or 4 for multi-volume
        images)
    extent : sequence of 3 ints, optional
        neighbourhood of the cross correlation metric

    Returns
    -------
    metric : SimilarityMetric

    Raises
    ------
    RegistrationConfigError
        for unknown names, cross correlation on 4D data or an estimator
        combined with cross correlation
    """
    metric = str(metric).lower()
    key = 'none' if estimator is None else str(estimator).lower()
    if metric not in ('diff', 'ncc'):
        raise RegistrationConfigError(
            "Unknown metric %r, valid choices are 'diff' and 'ncc'" % metric)
    if key not in _ESTIMATORS:
        raise RegistrationConfigError(
            "Unknown robust estimator %r, valid choices are %s"
            % (estimator, sorted(_ESTIMATORS)))
    if ndim not in (3, 4):
        raise RegistrationConfigError(
            "Only 3D and 4D images are supported, got %dD" % ndim)
    if metric == 'ncc' and ndim == 4:
        raise RegistrationConfigError(
            "cross correlation metric not implemented for data with more "
            "than 3 dimensions")
    variant = (metric, key != 'none', ndim == 4)
    if variant not in _METRIC_VARIANTS:
        raise RegistrationConfigError(
            "Robust estimator %r cannot be combined with the %r metric"
            % (estimator, metric))
    return _METRIC_VARIANTS[variant](_ESTIMATORS[key](), extent)
