import logging
import os
from os.path import join as pjoin

import numpy as np

from symreg.align import RegistrationConfigError
from symreg.align.config import build_registration_config
from symreg.align.imwarp import load_warps
from symreg.align.linear import (check_image_pair, transform_image,
                                 transform_midway)
from symreg.align.pipeline import RegistrationPipeline
from symreg.align.reorient import reorient_warp
from symreg.align.transforms import load_transform, save_transform
from symreg.align.vector_fields import warp_image
from symreg.core.sh import is_sh_series, lmax_from_ncoef, n_coeffs_from_lmax
from symreg.core.sphere import electrostatic_repulsion_60, load_directions
from symreg.io.image import load_mask, load_nifti, save_nifti
from symreg.utils.logging import verbosity_from_level
from symreg.workflows.workflow import Workflow

logger = logging.getLogger(__name__)


def sh_order(image, lmax=None, noreorientation=False):
    """ Maximum SH order used to register and reorient `image`

    A 4D image whose number of volumes is the size of an even spherical
    harmonic series is treated as SH coefficients.

    Parameters
    ----------
    image : array
    lmax : int, optional
        requested order. Must be even and at most the order of the data.
        Default min(4, order of the data).
    noreorientation : bool, optional
        treat the volumes as independent images

    Returns
    -------
    lmax : int or None
        None when the image is not reoriented
    """
    if image.ndim != 4 or noreorientation or not is_sh_series(image.shape[3]):
        if lmax is not None:
            logger.info("-lmax ignored since the input images are not "
                        "reoriented")
        return None
    data_lmax = lmax_from_ncoef(image.shape[3])
    if lmax is None:
        return min(4, data_lmax)
    if lmax < 0 or lmax % 2:
        raise RegistrationConfigError(
            "the input lmax must be a positive even number, got %d" % lmax)
    if lmax > data_lmax:
        raise RegistrationConfigError(
            "the requested lmax (%d) exceeds the lmax of the input images "
            "(%d)" % (lmax, data_lmax))
    return lmax


class RegistrationFlow(Workflow):
    """
    Symmetric registration of image 1 (moving) onto image 2 (template).

    Rigid, affine and SyN registration run in sequence, each seeded by the
    previous one. Images whose volumes hold an even spherical harmonic
    series are reoriented with the estimated transformation, unless
    reorientation is disabled.
    """

    argument_groups = (('rigid_', 'rigid registration options'),
                       ('affine_', 'affine registration options'),
                       ('syn_', 'SyN registration options'))

    @classmethod
    def get_short_name(cls):
        return 'register'

    def run(self, image1, image2, type='affine_syn', mask1='', mask2='',
            rigid_init='', rigid_centre='', rigid_scale=None,
            rigid_niter=None, rigid_metric='', rigid_global_search=False,
            affine_init='', affine_centre='', affine_scale=None,
            affine_niter=None, affine_metric='', affine_robust_estimator='',
            affine_robust_median=False, affine_repetitions=None,
            affine_loop_density=None, affine_global_search=False,
            syn_init='', syn_scale=None, syn_niter=None,
            syn_update_smooth=None, syn_disp_smooth=None, syn_grad_step=None,
            directions='', lmax=None, noreorientation=False,
            num_threads=None, out_dir='', out_transformed='',
            out_midway1='', out_midway2='', out_rigid='', out_affine='',
            out_affine_1tomidway='', out_affine_2tomidway='',
            out_syn_warp=''):
        """Register two images symmetrically.

        Parameters
        ----------
        image1 : string
            Path to the moving image.
        image2 : string
            Path to the template image.
        type : string, optional
            Registration stages to run: rigid, affine, syn, rigid_affine,
            rigid_syn, affine_syn or rigid_affine_syn.
        mask1 : string, optional
            Mask of image 1 in its own space.
        mask2 : string, optional
            Mask of image 2 in its own space.
        rigid_init : string, optional
            Text file with the matrix seeding the rigid registration.
        rigid_centre : {'identity', 'mass', 'geometric', 'moments', 'none'}, optional
            Rigid initialisation. 'none' starts from the identity.
        rigid_scale : variable float, optional
            Scale factor of each rigid level, coarsest first.
        rigid_niter : variable int, optional
            Maximum number of rigid iterations, one value or one per level.
        rigid_metric : {'diff', 'ncc'}, optional
            Rigid similarity metric.
        rigid_global_search : bool, optional
            Search rotations and translations before the rigid optimization.
        affine_init : string, optional
            Text file with the matrix seeding the affine registration.
        affine_centre : {'identity', 'mass', 'geometric', 'moments', 'none'}, optional
            Affine initialisation. 'none' starts from the identity.
        affine_scale : variable float, optional
            Scale factor of each affine level, coarsest first.
        affine_niter : variable int, optional
            Maximum number of affine iterations, one value or one per level.
        affine_metric : {'diff', 'ncc'}, optional
            Affine similarity metric.
        affine_robust_estimator : {'l1', 'l2', 'lp', 'none'}, optional
            Robust estimator of the diff metric.
        affine_robust_median : bool, optional
            Combine the gradients of the image regions with their median.
        affine_repetitions : variable int, optional
            Number of optimizations of each affine level.
        affine_loop_density : variable float, optional
            Fraction of the voxels sampled at each affine level.
        affine_global_search : bool, optional
            Search rotations and translations before the affine optimization.
        syn_init : string, optional
            Warp bundle of a previous run to resume from.
        syn_scale : variable float, optional
            Scale factor of each SyN level, coarsest first.
        syn_niter : variable int, optional
            Maximum number of SyN iterations, one value or one per level.
        syn_update_smooth : float, optional
            Smoothing (voxels) of the update field.
        syn_disp_smooth : float, optional
            Smoothing (voxels) of the displacement fields.
        syn_grad_step : float, optional
            Largest update, in units of the smallest voxel size.
        directions : string, optional
            Text file of directions used to reorient SH images, as azimuth
            and elevation pairs or cartesian vectors (default 60 directions).
        lmax : int, optional
            Maximum SH order used to register and reorient SH images.
        noreorientation : bool, optional
            Do not reorient 4D images holding SH coefficients.
        num_threads : int, optional
            Number of threads. If None (default) all cores are used.
        out_dir : string, optional
            Output directory (default current directory).
        out_transformed : string, optional
            Image 1 resampled onto the grid of image 2.
        out_midway1 : string, optional
            Image 1 resampled onto the midway grid.
        out_midway2 : string, optional
            Image 2 resampled onto the midway grid.
        out_rigid : string, optional
            Text file of the rigid transform.
        out_affine : string, optional
            Text file of the affine transform.
        out_affine_1tomidway : string, optional
            Text file of the half affine transform of image 1.
        out_affine_2tomidway : string, optional
            Text file of the half affine transform of image 2.
        out_syn_warp : string, optional
            Warp bundle with the four SyN displacement fields.
        """
        if bool(out_midway1) != bool(out_midway2):
            raise RegistrationConfigError(
                "out_midway1 and out_midway2 must be given together")

        image1_data, image1_affine = load_nifti(image1)
        image2_data, image2_affine = load_nifti(image2)
        check_image_pair(image2_data, image1_data)

        order = sh_order(image1_data, lmax, noreorientation)
        sh_directions = None
        if order is not None:
            n_coeffs = n_coeffs_from_lmax(order)
            image1_data = image1_data[..., :n_coeffs]
            image2_data = image2_data[..., :n_coeffs]
            if directions:
                sh_directions = load_directions(directions)
            else:
                sh_directions = electrostatic_repulsion_60()
            logger.info("SH series detected, reorienting up to lmax=%d with "
                        "%d directions", order, len(sh_directions))

        mask1_data = load_mask(mask1, image1_data.shape, 'mask1') \
            if mask1 else None
        mask2_data = load_mask(mask2, image2_data.shape, 'mask2') \
            if mask2 else None

        config = build_registration_config(
            type,
            rigid_init=load_transform(rigid_init) if rigid_init else None,
            rigid_centre=rigid_centre or None,
            rigid_scale=rigid_scale or None,
            rigid_niter=rigid_niter or None,
            rigid_metric=rigid_metric or None,
            rigid_global_search=rigid_global_search,
            affine_init=load_transform(affine_init) if affine_init else None,
            affine_centre=affine_centre or None,
            affine_scale=affine_scale or None,
            affine_niter=affine_niter or None,
            affine_metric=affine_metric or None,
            affine_robust_estimator=affine_robust_estimator or None,
            affine_robust_median=affine_robust_median,
            affine_repetitions=affine_repetitions or None,
            affine_loop_density=affine_loop_density or None,
            affine_global_search=affine_global_search,
            syn_init=load_warps(syn_init) if syn_init else None,
            syn_scale=syn_scale or None,
            syn_niter=syn_niter or None,
            syn_update_smooth=syn_update_smooth,
            syn_disp_smooth=syn_disp_smooth,
            syn_grad_step=syn_grad_step)

        requested = {'out_rigid': (out_rigid, config.do_rigid, 'rigid'),
                     'out_affine': (out_affine, config.do_affine, 'affine'),
                     'out_affine_1tomidway': (out_affine_1tomidway,
                                              config.do_affine, 'affine'),
                     'out_affine_2tomidway': (out_affine_2tomidway,
                                              config.do_affine, 'affine'),
                     'out_syn_warp': (out_syn_warp, config.do_syn, 'syn')}
        for name, (path, selected, stage) in requested.items():
            if path and not selected:
                raise RegistrationConfigError(
                    "%s output requested when no %s registration is "
                    "performed" % (name, stage))

        outputs = dict(
            (name, pjoin(out_dir, path) if path else '')
            for name, path in (('out_transformed', out_transformed),
                               ('out_midway1', out_midway1),
                               ('out_midway2', out_midway2),
                               ('out_rigid', out_rigid),
                               ('out_affine', out_affine),
                               ('out_affine_1tomidway', out_affine_1tomidway),
                               ('out_affine_2tomidway', out_affine_2tomidway),
                               ('out_syn_warp', out_syn_warp)))
        if not self.set_outputs(outputs):
            return
        if out_dir and not os.path.isdir(out_dir):
            os.makedirs(out_dir)

        verbosity = verbosity_from_level(
            logging.getLogger('symreg').getEffectiveLevel())
        pipeline = RegistrationPipeline(config, num_threads=num_threads,
                                        directions=sh_directions,
                                        verbosity=verbosity)
        result = pipeline.run(image2_data, image1_data, image2_affine,
                              image1_affine, mask2_data, mask1_data)
        for stage, cost in result.costs.items():
            logger.info("Final %s cost: %g", stage, cost)

        if outputs['out_rigid']:
            save_transform(result.rigid, outputs['out_rigid'])
        if outputs['out_affine']:
            save_transform(result.affine, outputs['out_affine'])
        if outputs['out_affine_1tomidway']:
            save_transform(result.affine.get_transform_half(),
                           outputs['out_affine_1tomidway'])
        if outputs['out_affine_2tomidway']:
            save_transform(result.affine.get_transform_half_inverse(),
                           outputs['out_affine_2tomidway'])
        if outputs['out_syn_warp']:
            result.syn.save_warps(outputs['out_syn_warp'])

        if outputs['out_transformed']:
            if result.syn is not None:
                deformation = result.syn.get_template_deformation(
                    image2_data.shape[:3], image2_affine)
                transformed = self._warp(image1_data, image1_affine,
                                         deformation, image2_affine,
                                         sh_directions)
            elif result.linear is not None:
                transformed = transform_image(
                    image1_data, image1_affine, result.linear,
                    image2_data.shape, image2_affine,
                    directions=sh_directions)
            else:
                raise RegistrationConfigError(
                    "no registration produced a transformation")
            save_nifti(outputs['out_transformed'],
                       transformed.astype(np.float32), image2_affine)

        if outputs['out_midway1']:
            if result.syn is not None:
                syn = result.syn
                midway1 = self._warp(image1_data, image1_affine,
                                     syn.get_im1_deformation(),
                                     syn.midway_grid2world, sh_directions)
                midway2 = self._warp(image2_data, image2_affine,
                                     syn.get_im2_deformation(),
                                     syn.midway_grid2world, sh_directions)
                midway_affine = syn.midway_grid2world
            else:
                midway1, midway2, midway_affine = transform_midway(
                    image1_data, image1_affine, image2_data, image2_affine,
                    result.linear, directions=sh_directions)
            save_nifti(outputs['out_midway1'], midway1.astype(np.float32),
                       midway_affine)
            save_nifti(outputs['out_midway2'], midway2.astype(np.float32),
                       midway_affine)

    def _warp(self, image, image_grid2world, deformation, grid2world,
              directions):
        warped = warp_image(image, image_grid2world, deformation, order=3)
        if directions is not None and warped.ndim == 4:
            warped = reorient_warp(warped, deformation, grid2world,
                                   directions)
        return warped
