""" Multi-resolution linear (rigid and affine) image registration

    LinearRegistration: runs the multi-resolution registration of a moving
        image (image 1) to a static template (image 2). The transform maps
        points of the template into the moving image, and is initialised
        from the image centres, centres of mass or moments. At each level of
        the pyramid the template is smoothed and sub-sampled, the moving
        image is smoothed at full resolution and sampled at the transformed
        template points. Image regions are evaluated in parallel and their
        contributions to the cost gradient are either summed or combined by
        the robust estimate of the transform.

    transform_image, transform_midway: resample image 1 onto the template
        grid, or both images onto the midway grid, reorienting spherical
        harmonic content when directions are given.
"""

import logging

import numpy as np
import numpy.linalg as npl
from scipy import ndimage

from symreg.align import (VerbosityLevels, RegistrationConfigError,
                          TransformDegenerateError)
from symreg.align.config import LinearStageConfig
from symreg.align.metrics import select_metric
from symreg.align.reorient import (SHReorientation, apsf_coefficients,
                                   reorient_sh)
from symreg.align.scalespace import (ScaleSpace, smooth_image,
                                     smoothing_sigmas, voxel_spacing)
from symreg.align.transforms import (AffineTransform, RigidTransform,
                                     rotation_matrix)
from symreg.align import vector_fields as vf
from symreg.core.optimize import GradientDescent
from symreg.core.sh import lmax_from_ncoef
from symreg.core.sphere import fibonacci_hemisphere
from symreg.utils.multiproc import RegionPool

logger = logging.getLogger(__name__)


def check_image_pair(static, moving, static_mask=None, moving_mask=None):
    """Reject image pairs and masks that cannot be registered together."""
    if static.ndim != moving.ndim:
        raise RegistrationConfigError(
            "input images do not have the same number of dimensions "
            "(%d and %d)" % (moving.ndim, static.ndim))
    if static.ndim not in (3, 4):
        raise RegistrationConfigError(
            "only 3D and 4D images are supported, got %dD" % static.ndim)
    if static.ndim == 4 and static.shape[3] != moving.shape[3]:
        raise RegistrationConfigError(
            "input images do not have the same number of volumes in the 4th"
            " dimension (%d and %d)" % (moving.shape[3], static.shape[3]))
    for name, mask, image in (('mask2', static_mask, static),
                              ('mask1', moving_mask, moving)):
        if mask is not None and tuple(mask.shape) != tuple(image.shape[:3]):
            raise RegistrationConfigError(
                "%s has shape %s, which does not match the image shape %s"
                % (name, mask.shape, image.shape[:3]))


def geometric_centre(shape, grid2world):
    """World coordinates of the centre of a grid."""
    centre = (np.asarray(shape[:3], dtype=np.float64) - 1) / 2.0
    return np.asarray(grid2world)[:3, :3].dot(centre) + grid2world[:3, 3]


def _weights(image, mask):
    weights = np.asarray(image if image.ndim == 3 else image[..., 0],
                         dtype=np.float64)
    weights = np.clip(weights, 0, None)
    if mask is not None:
        weights = weights * (mask != 0)
    if not weights.sum() > 0:
        raise TransformDegenerateError(
            "the image has no positive intensity inside its mask")
    return weights


def centre_of_mass(image, grid2world, mask=None):
    """World coordinates of the centre of mass of an image

    Negative intensities are ignored. For 4D images the first volume is
    used.
    """
    centre = np.array(ndimage.center_of_mass(_weights(image, mask)))
    return np.asarray(grid2world)[:3, :3].dot(centre) + grid2world[:3, 3]


def principal_axes(image, grid2world, mask=None, tolerance=1e-6):
    r"""Centre of mass and principal axes of an image

    The axes are the eigenvectors of the intensity weighted covariance of
    the voxel positions, sorted by increasing eigenvalue. The sign of each
    axis is chosen so that the third moment along it is positive, and the
    axes form a right-handed frame.

    Returns
    -------
    centre : array, shape (3,)
    axes : array, shape (3, 3)
        one axis per column

    Raises
    ------
    TransformDegenerateError
        if the covariance is singular (e.g. a planar or linear object)
    """
    weights = _weights(image, mask)
    indices = np.nonzero(weights)
    w = weights[indices]
    points = np.column_stack(indices).astype(np.float64)
    points = points.dot(np.asarray(grid2world)[:3, :3].T) + grid2world[:3, 3]
    centre = np.sum(points * w[:, None], axis=0) / w.sum()
    arms = points - centre
    covariance = (arms * w[:, None]).T.dot(arms) / w.sum()
    evals, evecs = npl.eigh(covariance)
    if not evals[0] > tolerance * max(evals[-1], np.finfo(float).tiny):
        raise TransformDegenerateError(
            "the image covariance is singular (eigenvalues %s), moments "
            "initialisation is undefined" % (evals,))
    third = np.sum(w[:, None] * arms.dot(evecs) ** 3, axis=0)
    evecs = evecs * np.where(third < 0, -1.0, 1.0)
    if npl.det(evecs) < 0:
        evecs[:, 0] = -evecs[:, 0]
    return centre, evecs


def initialise_transform(transform, init, static, static_grid2world, moving,
                         moving_grid2world, static_mask=None,
                         moving_mask=None, seed=None):
    """Set the centre and starting point of a transform

    Parameters
    ----------
    transform : LinearTransform
        modified in place
    init : {'identity', 'mass', 'geometric', 'moments', 'none'}
        'identity' rotates about the template centre with no translation,
        'mass' and 'geometric' align the centres of mass or the grid
        centres, 'moments' also aligns the principal axes and 'none' keeps
        `seed` (or the identity).
    seed : LinearTransform or array, shape (4, 4), optional
        starting transform, only valid with 'none'. A LinearTransform also
        provides the centre of rotation.
    """
    if seed is not None and init != 'none':
        raise RegistrationConfigError(
            "a starting transform cannot be combined with the %r "
            "initialisation" % (init,))
    static_centre = geometric_centre(static.shape, static_grid2world)
    if init == 'none':
        if hasattr(seed, 'get_centre'):
            transform.set_centre(seed.get_centre())
            transform.set_transform(seed.get_transform())
        else:
            transform.set_centre(static_centre)
            if seed is not None:
                transform.set_transform(seed)
        return transform
    if init == 'identity':
        transform.set_centre(static_centre)
        return transform
    if init == 'geometric':
        c_static = static_centre
        c_moving = geometric_centre(moving.shape, moving_grid2world)
    elif init == 'mass':
        c_static = centre_of_mass(static, static_grid2world, static_mask)
        c_moving = centre_of_mass(moving, moving_grid2world, moving_mask)
    elif init == 'moments':
        c_static, axes_static = principal_axes(static, static_grid2world,
                                               static_mask)
        c_moving, axes_moving = principal_axes(moving, moving_grid2world,
                                               moving_mask)
        transform.set_matrix(axes_moving.dot(axes_static.T))
    else:
        raise RegistrationConfigError("Unknown initialisation %r" % (init,))
    transform.set_centre(c_static)
    transform.set_translation(c_moving - c_static)
    return transform


class _Level:
    """The images of one pyramid level, as seen by the cost function."""

    def __init__(self, static, points, mask, moving, moving_grad,
                 moving_grid2world, moving_mask):
        self.static = static
        self.points = points
        self.mask = mask
        self.moving = moving
        self.moving_grad = moving_grad
        self.moving_grid2world = moving_grid2world
        self.moving_mask = moving_mask


class LinearRegistration:

    def __init__(self, config, num_threads=None, directions=None,
                 step_size=1.0, min_step=1e-3, sigma_factor=0.5, rng=None,
                 verbosity=VerbosityLevels.STATUS):
        r""" Multi-resolution rigid or affine registration

        Parameters
        ----------
        config : LinearStageConfig
            the stage configuration (kind, levels, metric, initialisation)
        num_threads : int, optional
            threads evaluating image regions (see
            `symreg.utils.multiproc.determine_num_threads`)
        directions : array, shape (N, 3), optional
            when given and the images hold SH series, the sampled moving
            series is reoriented by the current linear part
        step_size : float, optional
            initial gradient descent step, in voxels of each level
        min_step : float, optional
            smallest step, in voxels of each level
        sigma_factor : float, optional
            smoothing of the pyramid (see `symreg.align.scalespace`)
        rng : numpy.random.Generator, optional
            random generator of the sparse sampling of `loop_density`
        verbosity : int, optional
            one of the `VerbosityLevels`. Default STATUS.
        """
        if not isinstance(config, LinearStageConfig):
            raise TypeError("config must be a LinearStageConfig")
        self.config = config
        self.num_threads = num_threads
        self.directions = directions
        self.step_size = step_size
        self.min_step = min_step
        self.sigma_factor = sigma_factor
        self.rng = np.random.default_rng() if rng is None else rng
        self.verbosity = verbosity
        self.transform = None
        self.cost = None
        self.level_costs = []

    def _new_transform(self):
        if self.config.kind == 'rigid':
            return RigidTransform()
        return AffineTransform()

    def _reorientation(self, static):
        if self.directions is None or static.ndim != 4:
            return None
        return SHReorientation(self.directions,
                               lmax_from_ncoef(static.shape[3]))

    def _prepare_level(self, level, static_ss, moving, moving_grid2world,
                       moving_mask):
        static = static_ss.get_image(level).astype(np.float64)
        grid2world = static_ss.get_affine(level)
        points = vf.world_grid(static.shape, grid2world)
        mask = static_ss.get_mask(level)
        if mask is None:
            mask = np.ones(static.shape[:3], dtype=bool)
        sigmas = smoothing_sigmas(voxel_spacing(moving_grid2world),
                                  static_ss.get_spacing(level),
                                  self.sigma_factor)
        smooth_moving = smooth_image(moving, sigmas).astype(np.float64)
        moving_grad = vf.gradient_world(smooth_moving, moving_grid2world)
        return _Level(static, points, mask, smooth_moving, moving_grad,
                      moving_grid2world, moving_mask)

    def _sample(self, lvl, transform, region, operator):
        points = lvl.points[region]
        mapped = transform.transform(points)
        moving = vf.interpolate_image(lvl.moving, lvl.moving_grid2world,
                                      mapped, order=1)
        grad = vf.interpolate_image(
            lvl.moving_grad.reshape(lvl.moving_grad.shape[:3] + (-1,)),
            lvl.moving_grid2world, mapped, order=1)
        grad = grad.reshape(moving.shape + (3,))
        mask = lvl.mask[region] & vf.inside_field_of_view(
            lvl.moving.shape, lvl.moving_grid2world, mapped)
        if lvl.moving_mask is not None:
            mask &= vf.interpolate_image(lvl.moving_mask, lvl.moving_grid2world,
                                         mapped, order=0) > 0
        if operator is not None:
            moving = moving.dot(operator.T)
            grad = np.einsum('kv,...vj->...kj', operator, grad)
        return moving, grad, mask

    def _reorientation_operator(self, reorienter, transform):
        if reorienter is None:
            return None
        inverse = npl.inv(transform.get_matrix())
        directions = reorienter.directions.dot(inverse.T)
        directions /= np.sqrt(np.sum(directions ** 2, axis=-1))[:, None]
        psf = apsf_coefficients(directions, reorienter.lmax)
        return psf.T.dot(reorienter.weights)

    def _cost_function(self, lvl, pool, metric, reorienter, density_mask):
        robust = self.config.robust_median

        def cost_and_gradient(transform):
            operator = self._reorientation_operator(reorienter, transform)

            def sample(region):
                return self._sample(lvl, transform, region, operator)

            samples = pool.map(sample, lvl.static.shape)
            moving = np.concatenate([s[0] for s in samples])
            grad = np.concatenate([s[1] for s in samples])
            mask = np.concatenate([s[2] for s in samples])
            if density_mask is not None:
                mask &= density_mask
            extra = metric.precompute(lvl.static, moving)

            def evaluate(region):
                region_extra = {key: value[region]
                                for key, value in extra.items()}
                cost, forces, count = metric.evaluate(
                    lvl.static[region], moving[region], grad[region],
                    mask[region], region_extra)
                region_mask = mask[region]
                gradient = transform.gradient(lvl.points[region][region_mask],
                                              forces[region_mask])
                return cost, gradient, count

            partial = pool.map(evaluate, lvl.static.shape)
            count = sum(p[2] for p in partial)
            if count == 0:
                return np.inf, np.zeros(transform.size())
            cost = sum(p[0] for p in partial)
            estimates = [p[1] for p in partial]
            if robust:
                gradient = transform.robust_estimate(estimates)
            else:
                gradient = np.sum(estimates, axis=0)
            return cost / count, gradient / count

        return cost_and_gradient

    def _optimiser_weights(self, lvl, transform):
        arms = lvl.points[lvl.mask] - transform.get_centre()
        radius_sq = np.mean(np.sum(arms ** 2, axis=-1)) if len(arms) else 1.0
        n_linear = transform.size() - 3
        return np.concatenate([np.full(n_linear, 1.0 / max(radius_sq, 1e-6)),
                               np.ones(3)])

    def _global_search(self, transform, cost_function, lvl, n_axes=6,
                       angles=(-30, -15, 15, 30), shift=0.1):
        """Best of candidate rotations and translations around `transform`.
        """
        axes = fibonacci_hemisphere(n_axes)
        extent = np.ptp(lvl.points.reshape(-1, 3), axis=0)
        rotations = [np.eye(3)]
        for axis in axes:
            for angle in angles:
                rotations.append(rotation_matrix(axis * np.deg2rad(angle)))
        shifts = [np.zeros(3)]
        for axis in range(3):
            for sign in (-1, 1):
                offset = np.zeros(3)
                offset[axis] = sign * shift * extent[axis]
                shifts.append(offset)

        best = transform
        best_cost = cost_function(transform)[0]
        matrix = transform.get_matrix()
        translation = transform.get_translation()
        for rotation in rotations:
            for offset in shifts:
                candidate = transform.copy()
                try:
                    candidate.set_matrix(rotation.dot(matrix))
                    candidate.set_translation(translation + offset)
                except TransformDegenerateError:
                    continue
                cost = cost_function(candidate)[0]
                if cost < best_cost:
                    best, best_cost = candidate, cost
        if self.verbosity >= VerbosityLevels.DIAGNOSE:
            logger.info("Global search: best cost %g (initial %g)",
                        best_cost, cost_function(transform)[0])
        return best

    def run(self, static, moving, static_grid2world, moving_grid2world,
            static_mask=None, moving_mask=None, seed=None):
        r""" Estimate the transform mapping the static (template) image onto
        the moving image

        Parameters
        ----------
        static : array, shape (X, Y, Z) or (X, Y, Z, V)
            image 2, the template
        moving : array, shape (X', Y', Z') or (X', Y', Z', V)
            image 1, the moving image
        static_grid2world : array, shape (4, 4)
        moving_grid2world : array, shape (4, 4)
        static_mask : array, shape (X, Y, Z), optional
        moving_mask : array, shape (X', Y', Z'), optional
        seed : LinearTransform or array, shape (4, 4), optional
            starting transform, used when the initialisation is 'none'.
            Defaults to the `init_transform` of the configuration.

        Returns
        -------
        transform : RigidTransform or AffineTransform
            the best transform found
        """
        config = self.config
        static = np.asarray(static)
        moving = np.asarray(moving)
        check_image_pair(static, moving, static_mask, moving_mask)
        metric = select_metric(config.metric, config.estimator, static.ndim,
                               config.extent)
        if seed is None:
            seed = config.init_transform
        static_grid2world = np.asarray(static_grid2world, dtype=np.float64)
        moving_grid2world = np.asarray(moving_grid2world, dtype=np.float64)

        transform = initialise_transform(
            self._new_transform(), config.init, static, static_grid2world,
            moving, moving_grid2world, static_mask, moving_mask, seed)
        if self.verbosity >= VerbosityLevels.DIAGNOSE:
            logger.info("Initial %s transform (%s):\n%s", config.kind,
                        config.init, transform.get_transform())

        static_ss = ScaleSpace(static, static_grid2world,
                               config.scale_factors, static_mask,
                               self.sigma_factor)
        if self.verbosity >= VerbosityLevels.DIAGNOSE:
            logger.info('Template scale space:')
            for level in range(config.num_levels):
                static_ss.print_level(level)
        if moving_mask is not None:
            moving_mask = (np.asarray(moving_mask) != 0).astype(np.float64)
        reorienter = self._reorientation(static)

        self.level_costs = []
        cost = np.inf
        with RegionPool(self.num_threads) as pool:
            for level in range(config.num_levels):
                max_iter = config.max_iter[level]
                if self.verbosity >= VerbosityLevels.STATUS:
                    logger.info('Optimizing level %d [scale: %g, max iter: '
                                '%d]', level, config.scale_factors[level],
                                max_iter)
                lvl = self._prepare_level(level, static_ss, moving,
                                          moving_grid2world, moving_mask)
                spacing = np.min(static_ss.get_spacing(level))
                weights = self._optimiser_weights(lvl, transform)
                transform.set_optimiser_weights(weights)

                if level == 0 and config.global_search:
                    search_cost = self._cost_function(lvl, pool, metric,
                                                      reorienter, None)
                    transform = self._global_search(transform, search_cost,
                                                    lvl)

                for repetition in range(config.repetitions[level]):
                    density_mask = None
                    if config.loop_density[level] < 1:
                        density_mask = self.rng.random(lvl.mask.shape) < \
                            config.loop_density[level]
                    cost_function = self._cost_function(
                        lvl, pool, metric, reorienter, density_mask)
                    opt = GradientDescent(
                        cost_function, transform,
                        lambda t, delta: t.increment(delta),
                        weights=transform.get_optimiser_weights(),
                        step=self.step_size * spacing, max_iter=max_iter,
                        min_step=self.min_step * spacing)
                    transform = opt.xopt
                    cost = opt.fopt
                    if self.verbosity >= VerbosityLevels.DIAGNOSE:
                        logger.info("Level %d, repetition %d: cost %g after "
                                    "%d iterations (%s)", level, repetition,
                                    cost, opt.nit, opt.message)
                self.level_costs.append(cost)

        logger.debug("Final %s cost: %g", config.kind, cost)
        self.transform = transform
        self.cost = cost
        return transform


def transform_image(moving, moving_grid2world, transform, static_shape,
                    static_grid2world, order=3, directions=None):
    """Resample image 1 onto the template grid

    Parameters
    ----------
    moving : array, shape (X', Y', Z') or (X', Y', Z', V)
    moving_grid2world : array, shape (4, 4)
    transform : LinearTransform or array, shape (4, 4)
        maps template points to moving points
    static_shape : sequence of ints
        shape of the template grid (the first 3 entries are used)
    static_grid2world : array, shape (4, 4)
    order : int, optional
        interpolation order. Default 3 (cubic).
    directions : array, shape (N, 3), optional
        reorient SH content with these directions

    Returns
    -------
    resampled : array, shape static_shape[:3] (+ (V,))
    """
    affine = transform.get_transform() if hasattr(transform,
                                                   'get_transform') \
        else np.asarray(transform)
    points = vf.world_grid(static_shape, static_grid2world)
    points = points.dot(affine[:3, :3].T) + affine[:3, 3]
    out = vf.warp_image(moving, moving_grid2world, points, order=order)
    if directions is not None and moving.ndim == 4:
        out = reorient_sh(out, affine, directions)
    return out


def transform_midway(moving, moving_grid2world, static, static_grid2world,
                     transform, order=3, directions=None):
    """Resample both images onto the midway grid

    The midway grid is the template grid moved half way by the transform:
    midway_grid2world = half . static_grid2world. Image 1 is sampled at
    half(x) and image 2 at half_inverse(x).

    Returns
    -------
    moving_midway, static_midway : arrays on the midway grid
    midway_grid2world : array, shape (4, 4)
    """
    half = transform.get_transform_half()
    half_inverse = transform.get_transform_half_inverse()
    midway_grid2world = half.dot(static_grid2world)
    shape = static.shape[:3]
    moving_midway = transform_image(moving, moving_grid2world, half, shape,
                                    midway_grid2world, order, directions)
    static_midway = transform_image(static, static_grid2world, half_inverse,
                                    shape, midway_grid2world, order,
                                    directions)
    return moving_midway, static_midway, midway_grid2world
