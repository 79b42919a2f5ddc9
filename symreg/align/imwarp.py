""" Symmetric diffeomorphic registration (SyN) in a midway space

Both images are deformed towards a midway space, reached from each image by
half of the incoming linear transform followed by a dense displacement
field. The engine owns four fields on the midway grid: the displacement of
image 1 and its inverse, and the displacement of image 2 and its inverse.
"""

import json
import logging

import nibabel as nib
import numpy as np
import numpy.linalg as npl

from symreg.align import VerbosityLevels, RegistrationConfigError
from symreg.align.config import SynStageConfig
from symreg.align.linear import check_image_pair, geometric_centre
from symreg.align.metrics import SyNDemonsMetric
from symreg.align.reorient import reorient_warp
from symreg.align.scalespace import (level_grid, smooth_image,
                                     smoothing_sigmas, voxel_spacing)
from symreg.align.transforms import AffineTransform
from symreg.align import vector_fields as vf
from symreg.io.image import save_nifti
from symreg.utils.multiproc import RegionPool

logger = logging.getLogger(__name__)

# order of the fields along the last axis of a warp bundle
WARP_ORDER = ('im1_disp', 'im1_disp_inv', 'im2_disp', 'im2_disp_inv')


def _apply(affine, points):
    return points.dot(affine[:3, :3].T) + affine[:3, 3]


def compose_linear_displacement(linear, disp, grid2world):
    r"""Deformation x -> linear(x + disp(x)) on the grid of `disp`

    Parameters
    ----------
    linear : array, shape (4, 4)
    disp : array, shape (X, Y, Z, 3)
        displacement field
    grid2world : array, shape (4, 4)
        grid-to-world transform of `disp`

    Returns
    -------
    deformation : array, shape (X, Y, Z, 3)
        world point reached from each voxel
    """
    points = vf.world_grid(disp.shape, grid2world) + disp
    return _apply(np.asarray(linear), points)


def compose_halfway_transforms(linear2_inv, disp2_inv, disp1, linear1,
                               disp_grid2world, out_shape, out_grid2world):
    r"""Deformation taking points of the template grid to image 1

    For a template point y, the midway point is m = linear2_inv(y), moved
    back through the inverse field of image 2, m' = m + disp2_inv(m), and
    finally mapped to image 1 as linear1(m' + disp1(m')).

    Parameters
    ----------
    linear2_inv : array, shape (4, 4)
        inverse of the linear transform from the midway space to image 2
    disp2_inv : array, shape (X, Y, Z, 3)
        inverse displacement field of image 2
    disp1 : array, shape (X, Y, Z, 3)
        displacement field of image 1
    linear1 : array, shape (4, 4)
        linear transform from the midway space to image 1
    disp_grid2world : array, shape (4, 4)
        grid-to-world transform of the midway grid of the fields
    out_shape : sequence of ints
        shape of the output (template) grid
    out_grid2world : array, shape (4, 4)

    Returns
    -------
    deformation : array, out_shape[:3] + (3,)
    """
    points = vf.world_grid(out_shape, out_grid2world)
    midway = _apply(np.asarray(linear2_inv), points)
    midway = midway + vf.interpolate_vector_field(disp2_inv, disp_grid2world,
                                                  midway)
    midway = midway + vf.interpolate_vector_field(disp1, disp_grid2world,
                                                  midway)
    return _apply(np.asarray(linear1), midway)


def _check_bundle(warps):
    warps = np.asarray(warps)
    if warps.ndim != 5:
        raise RegistrationConfigError(
            "syn initialisation input is not 5D. Input must be from previous"
            " syn output")
    if warps.shape[3] != 3 or warps.shape[4] != 4:
        raise RegistrationConfigError(
            "syn initialisation input must have shape (X, Y, Z, 3, 4), got "
            "%s" % (warps.shape,))
    return warps


def load_warps(fname):
    """Load a warp bundle saved by `SymmetricDiffeomorphicRegistration`

    Returns
    -------
    warps : array, shape (X, Y, Z, 3, 4)
    grid2world : array, shape (4, 4)
    im1_linear, im2_linear : arrays, shape (4, 4)
        linear transforms from the midway space to each image
    """
    img = nib.load(fname)
    warps = _check_bundle(np.asanyarray(img.dataobj)).astype(np.float64)
    linear = None
    for extension in img.header.extensions:
        if extension.get_code() != 6:
            continue
        content = extension.get_content()
        if isinstance(content, bytes):
            content = content.decode('utf-8')
        try:
            linear = json.loads(content)
        except ValueError:
            continue
        if 'im1_linear' in linear and 'im2_linear' in linear:
            break
        linear = None
    if linear is None:
        raise RegistrationConfigError(
            "%s does not hold the linear transforms of a syn warp" % fname)
    return (warps, img.affine, np.array(linear['im1_linear']),
            np.array(linear['im2_linear']))


class SymmetricDiffeomorphicRegistration:

    def __init__(self, config=None, num_threads=None, directions=None,
                 metric=None, sigma_factor=0.5,
                 verbosity=VerbosityLevels.STATUS):
        r""" Symmetric Diffeomorphic Registration (SyN) Algorithm

        At each iteration both images are warped to the midway space, the
        symmetric demons update is computed, smoothed and normalised so that
        its largest vector equals `grad_step` times the smallest voxel size,
        and composed into the displacement field of image 1 (and, negated,
        into the one of image 2). The fields are then smoothed and their
        inverses re-estimated, starting from the previous inverses.

        Parameters
        ----------
        config : SynStageConfig, optional
            the stage configuration. Default SynStageConfig().
        num_threads : int, optional
            threads warping image regions
        directions : array, shape (N, 3), optional
            reorient SH images through the local Jacobian of the warps
        metric : SyNDemonsMetric, optional
        sigma_factor : float, optional
            smoothing of the images at each level
        verbosity : int, optional
            one of the `VerbosityLevels`. Default STATUS.
        """
        if config is None:
            config = SynStageConfig()
        if not isinstance(config, SynStageConfig):
            raise TypeError("config must be a SynStageConfig")
        self.config = config
        self.num_threads = num_threads
        self.directions = directions
        self.metric = SyNDemonsMetric() if metric is None else metric
        self.sigma_factor = sigma_factor
        self.verbosity = verbosity
        self.energy_window = 12
        self.energy_list = []
        self.full_energy_profile = []
        self.im1_disp = None
        self.im1_disp_inv = None
        self.im2_disp = None
        self.im2_disp_inv = None
        self.im1_linear = None
        self.im2_linear = None
        self.midway_shape = None
        self.midway_grid2world = None
        self.grid2world = None
        self._initialised = False
        if config.init_warps is not None:
            self.initialise(*config.init_warps)

    def initialise(self, warps, grid2world, im1_linear, im2_linear):
        """Resume from a warp bundle of a previous run

        Parameters
        ----------
        warps : array, shape (X, Y, Z, 3, 4)
            the four fields, in the order of `WARP_ORDER`
        grid2world : array, shape (4, 4)
            grid-to-world transform of the midway grid
        im1_linear, im2_linear : arrays, shape (4, 4)
            linear transforms from the midway space to each image
        """
        warps = _check_bundle(warps)
        self.im1_disp, self.im1_disp_inv, self.im2_disp, self.im2_disp_inv = \
            [np.array(warps[..., i], dtype=np.float64) for i in range(4)]
        self.midway_grid2world = np.asarray(grid2world, dtype=np.float64)
        self.grid2world = self.midway_grid2world
        self.midway_shape = warps.shape[:3]
        self.im1_linear = np.asarray(im1_linear, dtype=np.float64)
        self.im2_linear = np.asarray(im2_linear, dtype=np.float64)
        self._initialised = True

    def _approximate_derivative_direct(self, x, y):
        """Derivative of the degree-2 polynomial fit of the given x, y pairs

        Returns the derivative of the least-squares-fit quadratic at
        x0 = 0.5 * len(x)
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        X = np.vstack((x ** 2, x, np.ones_like(x)))
        beta = npl.solve(X.dot(X.T), X.dot(y))
        x0 = 0.5 * len(x)
        return 2.0 * beta[0] * x0 + beta[1]

    def _get_energy_derivative(self):
        """Approximate derivative of the energy profile

        Returns the derivative of the estimated energy as a function of "time"
        (iterations) at the last iteration
        """
        n_iter = len(self.energy_list)
        if n_iter < self.energy_window:
            raise ValueError('Not enough data to fit the energy profile')
        x = range(self.energy_window)
        y = self.energy_list[(n_iter - self.energy_window):n_iter]
        ss = sum(y)
        if not ss == 0:
            ss = - ss if ss > 0 else ss
            y = [v / ss for v in y]
        return self._approximate_derivative_direct(x, y)

    def _set_level_grid(self, shape, grid2world):
        if self.im1_disp is None:
            zeros = np.zeros(tuple(shape) + (3,), dtype=np.float64)
            self.im1_disp, self.im1_disp_inv = zeros, zeros.copy()
            self.im2_disp, self.im2_disp_inv = zeros.copy(), zeros.copy()
        elif tuple(self.im1_disp.shape[:3]) != tuple(shape) or \
                not np.allclose(self.grid2world, grid2world):
            for name in WARP_ORDER:
                setattr(self, name, vf.expand_field(
                    getattr(self, name), self.grid2world, shape, grid2world))
        self.grid2world = grid2world

    def _warp(self, pool, image, image_grid2world, image_mask, linear, disp):
        points = vf.world_grid(disp.shape, self.grid2world)

        def warp_region(region):
            deformation = _apply(linear, points[region] + disp[region])
            warped = vf.interpolate_image(image, image_grid2world,
                                          deformation, order=1)
            inside = vf.inside_field_of_view(image.shape, image_grid2world,
                                             deformation)
            if image_mask is not None:
                inside &= vf.interpolate_image(image_mask, image_grid2world,
                                               deformation, order=0) > 0
            return deformation, warped, inside

        parts = pool.map(warp_region, disp.shape)
        deformation, warped, inside = [np.concatenate([p[i] for p in parts])
                                       for i in range(3)]
        if self.directions is not None and image.ndim == 4:
            warped = reorient_warp(warped, deformation, self.grid2world,
                                   self.directions)
        return warped, inside

    def _iterate(self, pool, im1, im1_grid2world, im1_mask, im2,
                 im2_grid2world, im2_mask):
        """One iteration of the symmetric update, returns the energy."""
        config = self.config
        warped1, inside1 = self._warp(pool, im1, im1_grid2world, im1_mask,
                                      self.im1_linear, self.im1_disp)
        warped2, inside2 = self._warp(pool, im2, im2_grid2world, im2_mask,
                                      self.im2_linear, self.im2_disp)
        grad1 = vf.gradient_world(warped1, self.grid2world)
        grad2 = vf.gradient_world(warped2, self.grid2world)
        update, energy = self.metric.compute_update(
            warped1, warped2, grad1, grad2, inside1 & inside2)

        update = vf.smooth_field(update, config.update_smoothing)
        max_norm = np.sqrt(np.max(np.sum(update ** 2, axis=-1)))
        if max_norm > 0:
            step = config.grad_step * np.min(voxel_spacing(self.grid2world))
            update *= step / max_norm

        self.im1_disp = vf.smooth_field(
            vf.compose_vector_fields(update, self.im1_disp, self.grid2world),
            config.disp_smoothing)
        self.im2_disp = vf.smooth_field(
            vf.compose_vector_fields(-update, self.im2_disp, self.grid2world),
            config.disp_smoothing)
        self.im1_disp_inv = vf.invert_vector_field_fixed_point(
            self.im1_disp, self.grid2world, config.inversion_iter,
            config.inversion_tolerance, start=self.im1_disp_inv)
        self.im2_disp_inv = vf.invert_vector_field_fixed_point(
            self.im2_disp, self.grid2world, config.inversion_iter,
            config.inversion_tolerance, start=self.im2_disp_inv)
        return energy

    def run(self, static, moving, static_grid2world, moving_grid2world,
            static_mask=None, moving_mask=None, linear=None):
        r""" Estimate the symmetric warps between two images

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
        linear : LinearTransform, optional
            the incoming linear transform (template to image 1). Its half
            transforms define the midway space. Ignored when resuming from
            saved warps. Default identity.

        Returns
        -------
        warps : array, shape (X'', Y'', Z'', 3, 4)
            the output bundle (see `get_output_warps`)
        """
        config = self.config
        static = np.asarray(static)
        moving = np.asarray(moving)
        check_image_pair(static, moving, static_mask, moving_mask)
        static_grid2world = np.asarray(static_grid2world, dtype=np.float64)
        moving_grid2world = np.asarray(moving_grid2world, dtype=np.float64)

        if not self._initialised:
            if linear is None:
                linear = AffineTransform()
                linear.set_centre(geometric_centre(static.shape,
                                                   static_grid2world))
            self.im1_linear = linear.get_transform_half()
            self.im2_linear = linear.get_transform_half_inverse()
            self.midway_grid2world = self.im1_linear.dot(static_grid2world)
            self.midway_shape = static.shape[:3]
            self.grid2world = self.midway_grid2world

        masks = []
        for mask in (moving_mask, static_mask):
            masks.append(None if mask is None
                         else (np.asarray(mask) != 0).astype(np.float64))

        self.full_energy_profile = []
        with RegionPool(self.num_threads) as pool:
            for level, scale in enumerate(config.scale_factors):
                max_iter = config.max_iter[level]
                if self.verbosity >= VerbosityLevels.STATUS:
                    logger.info('Optimizing level %d [scale: %g, max iter: '
                                '%d]', level, scale, max_iter)
                shape, grid2world = level_grid(self.midway_shape,
                                               self.midway_grid2world, scale)
                self._set_level_grid(shape, grid2world)
                level_spacing = voxel_spacing(grid2world)
                im1 = smooth_image(moving, smoothing_sigmas(
                    voxel_spacing(moving_grid2world), level_spacing,
                    self.sigma_factor)).astype(np.float64)
                im2 = smooth_image(static, smoothing_sigmas(
                    voxel_spacing(static_grid2world), level_spacing,
                    self.sigma_factor)).astype(np.float64)

                self.energy_list = []
                derivative = np.inf
                niter = 0
                while niter < max_iter and config.tolerance < derivative:
                    energy = self._iterate(pool, im1, moving_grid2world,
                                           masks[0], im2, static_grid2world,
                                           masks[1])
                    self.energy_list.append(energy)
                    if len(self.energy_list) >= self.energy_window:
                        derivative = self._get_energy_derivative()
                    niter += 1
                if self.verbosity >= VerbosityLevels.DIAGNOSE:
                    logger.info('Level %d: %d iterations, energy %s', level,
                                niter, self.energy_list[-1:])
                self.full_energy_profile.extend(self.energy_list)

        # The fields are returned on the full resolution midway grid
        self._set_level_grid(self.midway_shape, self.midway_grid2world)
        if self.verbosity >= VerbosityLevels.DIAGNOSE:
            for name, disp, disp_inv in (
                    ('Image 1', self.im1_disp, self.im1_disp_inv),
                    ('Image 2', self.im2_disp, self.im2_disp_inv)):
                _, stats = vf.compute_inversion_error(disp, disp_inv,
                                                      self.grid2world)
                logger.info('%s residual error: %0.6f (max %0.6f)', name,
                            stats[0], stats[1])
        return self.get_output_warps()

    def get_output_warps(self):
        """The four fields as a (X, Y, Z, 3, 4) bundle, in `WARP_ORDER`."""
        if self.im1_disp is None:
            raise ValueError("No warps have been estimated or loaded")
        return np.stack([getattr(self, name) for name in WARP_ORDER],
                        axis=-1)

    def save_warps(self, fname):
        """Save the warp bundle, with the linear transforms in a comment
        extension of the NIfTI header."""
        linear = json.dumps({'im1_linear': self.im1_linear.tolist(),
                             'im2_linear': self.im2_linear.tolist()})
        extension = nib.nifti1.Nifti1Extension('comment',
                                               linear.encode('utf-8'))
        save_nifti(fname, self.get_output_warps().astype(np.float32),
                   self.midway_grid2world, extensions=[extension])

    def get_im1_deformation(self):
        """Deformation from the midway grid to image 1."""
        return compose_linear_displacement(self.im1_linear, self.im1_disp,
                                           self.midway_grid2world)

    def get_im2_deformation(self):
        """Deformation from the midway grid to image 2."""
        return compose_linear_displacement(self.im2_linear, self.im2_disp,
                                           self.midway_grid2world)

    def get_template_deformation(self, out_shape, out_grid2world):
        """Deformation from the grid of image 2 (template) to image 1."""
        return compose_halfway_transforms(
            npl.inv(self.im2_linear), self.im2_disp_inv, self.im1_disp,
            self.im1_linear, self.midway_grid2world, out_shape,
            out_grid2world)
