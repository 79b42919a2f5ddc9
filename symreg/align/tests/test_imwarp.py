import nibabel as nib
import numpy as np
import numpy.testing as npt
import pytest

from symreg.align import RegistrationConfigError, VerbosityLevels
from symreg.align.config import SynStageConfig
from symreg.align.imwarp import (SymmetricDiffeomorphicRegistration,
                                 compose_halfway_transforms,
                                 compose_linear_displacement, load_warps)
from symreg.align.transforms import AffineTransform
from symreg.align.vector_fields import (compose_vector_fields,
                                        compute_inversion_error, world_grid)
from symreg.io.image import save_nifti


def blob(shape=(16, 16, 16), centre=(7.5, 7.5, 7.5), sigma=3.):
    arms = world_grid(shape, np.eye(4)) - centre
    return 100 * np.exp(-0.5 * np.sum(arms ** 2, axis=-1) / sigma ** 2)


def _syn(static, moving, linear=None, **options):
    options.setdefault('scale_factors', (0.5, 1.0))
    options.setdefault('max_iter', 15)
    config = SynStageConfig(**options)
    engine = SymmetricDiffeomorphicRegistration(
        config, num_threads=2, verbosity=VerbosityLevels.NONE)
    engine.run(static, moving, np.eye(4), np.eye(4), linear=linear)
    return engine


def test_identical_images():
    image = blob()
    engine = _syn(image, image)
    warps = engine.get_output_warps()
    npt.assert_equal(warps.shape, (16, 16, 16, 3, 4))
    npt.assert_array_almost_equal(warps, 0)
    npt.assert_array_almost_equal(engine.im1_linear, np.eye(4))
    npt.assert_array_almost_equal(engine.midway_grid2world, np.eye(4))


def test_symmetric_registration():
    image1 = blob(centre=(8., 7.5, 7.5))
    image2 = blob(centre=(7., 7.5, 7.5))
    forward = _syn(image2, image1, scale_factors=(1.0,), max_iter=20)
    energy = forward.full_energy_profile
    npt.assert_(energy[-1] < energy[0])

    # swapping the images swaps the roles of the two fields
    backward = _syn(image1, image2, scale_factors=(1.0,), max_iter=20)
    npt.assert_array_almost_equal(backward.im1_disp, forward.im2_disp,
                                  decimal=5)
    npt.assert_array_almost_equal(backward.im2_disp, forward.im1_disp,
                                  decimal=5)

    # image 1 is moved towards +x (where it is brighter) at the centre
    npt.assert_(forward.im1_disp[7, 7, 7, 0] > 0)
    npt.assert_(forward.im2_disp[7, 7, 7, 0] < 0)

    for disp, disp_inv in ((forward.im1_disp, forward.im1_disp_inv),
                           (forward.im2_disp, forward.im2_disp_inv)):
        _, (mean_error, max_error) = compute_inversion_error(
            disp, disp_inv, np.eye(4))
        npt.assert_(mean_error < 0.05)


@pytest.mark.parametrize("tolerance", [0.1])
def test_inverse_consistency(tolerance):
    # template -> midway -> image 1, and image 1 -> midway -> template
    image1 = blob(centre=(8., 7.5, 7.5))
    image2 = blob(centre=(7., 7.5, 7.5))
    engine = _syn(image2, image1, scale_factors=(1.0,), max_iter=20)
    grid2world = np.eye(4)
    two_to_one = compose_vector_fields(engine.im2_disp_inv, engine.im1_disp,
                                       grid2world)
    one_to_two = compose_vector_fields(engine.im1_disp_inv, engine.im2_disp,
                                       grid2world)
    # each half carries part of the mapping, so the full one is larger
    norm = np.sqrt(np.sum(two_to_one ** 2, axis=-1))
    npt.assert_(norm.max() > np.abs(engine.im1_disp).max())

    for first, second in ((two_to_one, one_to_two), (one_to_two, two_to_one)):
        residual = compose_vector_fields(first, second, grid2world)
        mean_error = np.sqrt(np.sum(residual ** 2, axis=-1)).mean()
        npt.assert_(mean_error < tolerance)


def test_energy_derivative():
    engine = SymmetricDiffeomorphicRegistration()
    engine.energy_list = list(range(5))
    npt.assert_raises(ValueError, engine._get_energy_derivative)
    # a decreasing energy has a positive normalised derivative
    engine.energy_list = [100 - 2 * i for i in range(12)]
    npt.assert_(engine._get_energy_derivative() > 0)
    engine.energy_list = [5.] * 12
    npt.assert_almost_equal(engine._get_energy_derivative(), 0)


def test_linear_midway():
    image = blob()
    linear = AffineTransform()
    linear.set_translation([2., 0., 0.])
    engine = _syn(image, image, linear=linear, scale_factors=(1.0,),
                  max_iter=1)
    npt.assert_array_almost_equal(engine.im1_linear[:3, 3], [1, 0, 0])
    npt.assert_array_almost_equal(engine.im2_linear[:3, 3], [-1, 0, 0])
    npt.assert_array_almost_equal(engine.midway_grid2world[:3, 3],
                                  [1, 0, 0])

    # with zero fields the deformations are the half transforms
    engine.im1_disp[:] = 0
    engine.im2_disp[:] = 0
    engine.im2_disp_inv[:] = 0
    midway_points = world_grid(image.shape, engine.midway_grid2world)
    npt.assert_array_almost_equal(engine.get_im1_deformation(),
                                  midway_points + [1, 0, 0])
    npt.assert_array_almost_equal(engine.get_im2_deformation(),
                                  midway_points - [1, 0, 0])
    template = engine.get_template_deformation((8, 8, 8), np.eye(4))
    npt.assert_array_almost_equal(
        template, world_grid((8, 8, 8), np.eye(4)) + [2, 0, 0])


def test_compose_halfway_transforms():
    shape = (6, 6, 6)
    grid2world = np.eye(4)
    zero = np.zeros(shape + (3,))
    shift = np.zeros(shape + (3,))
    shift[..., 1] = 0.5
    linear1 = np.eye(4)
    linear1[:3, 3] = [0, 0, 1]
    points = world_grid((4, 4, 4), grid2world)

    deformation = compose_halfway_transforms(np.eye(4), zero, shift, linear1,
                                             grid2world, (4, 4, 4),
                                             grid2world)
    npt.assert_array_almost_equal(deformation, points + [0, 0.5, 1])
    deformation = compose_linear_displacement(linear1, shift, grid2world)
    npt.assert_array_almost_equal(deformation,
                                  world_grid(shape, grid2world) +
                                  [0, 0.5, 1])


def test_save_load_resume(tmp_path):
    image1 = blob(centre=(8., 7.5, 7.5))
    image2 = blob(centre=(7., 7.5, 7.5))
    engine = _syn(image2, image1, scale_factors=(1.0,), max_iter=5)
    fname = str(tmp_path / 'warps.nii.gz')
    engine.save_warps(fname)

    warps, grid2world, im1_linear, im2_linear = load_warps(fname)
    npt.assert_array_almost_equal(warps, engine.get_output_warps(),
                                  decimal=5)
    npt.assert_array_almost_equal(grid2world, engine.midway_grid2world)
    npt.assert_array_almost_equal(im1_linear, engine.im1_linear)
    npt.assert_array_almost_equal(im2_linear, engine.im2_linear)

    # resuming with no iterations returns the saved warps
    config = SynStageConfig(init_warps=load_warps(fname), max_iter=0)
    npt.assert_equal(config.scale_factors, (1.0,))
    resumed = SymmetricDiffeomorphicRegistration(
        config, verbosity=VerbosityLevels.NONE)
    out = resumed.run(image2, image1, np.eye(4), np.eye(4))
    npt.assert_array_almost_equal(out, warps)


def test_bad_bundles(tmp_path):
    engine = SymmetricDiffeomorphicRegistration()
    npt.assert_raises(RegistrationConfigError, engine.initialise,
                      np.zeros((4, 4, 4, 3)), np.eye(4), np.eye(4),
                      np.eye(4))
    npt.assert_raises(RegistrationConfigError, engine.initialise,
                      np.zeros((4, 4, 4, 3, 2)), np.eye(4), np.eye(4),
                      np.eye(4))
    npt.assert_raises(ValueError, engine.get_output_warps)

    fname = str(tmp_path / 'plain.nii.gz')
    save_nifti(fname, np.zeros((4, 4, 4, 3, 4), dtype=np.float32),
               np.eye(4))
    npt.assert_raises(RegistrationConfigError, load_warps, fname)

    fname = str(tmp_path / 'image.nii.gz')
    nib.save(nib.Nifti1Image(np.zeros((4, 4, 4), dtype=np.float32),
                             np.eye(4)), fname)
    npt.assert_raises(RegistrationConfigError, load_warps, fname)
