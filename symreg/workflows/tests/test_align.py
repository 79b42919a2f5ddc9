import os
from os.path import join as pjoin
from tempfile import TemporaryDirectory

import numpy as np
import numpy.testing as npt
import pytest

from symreg.align import RegistrationConfigError, StageSupersededWarning
from symreg.align.imwarp import load_warps
from symreg.align.transforms import load_transform
from symreg.align.vector_fields import world_grid
from symreg.io.image import load_nifti, save_nifti
from symreg.workflows.align import RegistrationFlow, sh_order
from symreg.workflows.flow_runner import run_flow


def blob(shape=(16, 16, 16), centre=(7.5, 7.5, 7.5), sigmas=(3., 3.5, 4.)):
    arms = (world_grid(shape, np.eye(4)) - centre) / sigmas
    return 100 * np.exp(-0.5 * np.sum(arms ** 2, axis=-1))


def write_pair(out_dir, shift=(1., 0., 0.)):
    image1 = pjoin(out_dir, 'image1.nii.gz')
    image2 = pjoin(out_dir, 'image2.nii.gz')
    save_nifti(image1, blob(centre=np.array([7.5, 7.5, 7.5]) + shift)
               .astype(np.float32), np.eye(4))
    save_nifti(image2, blob().astype(np.float32), np.eye(4))
    return image1, image2


def test_incompatible_dimensions():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        image4d = pjoin(out_dir, 'image4d.nii.gz')
        save_nifti(image4d, np.stack([blob(), blob()], axis=-1)
                   .astype(np.float32), np.eye(4))
        flow = RegistrationFlow()
        with pytest.raises(RegistrationConfigError, match='dimensions'):
            flow.run(image4d, image2, type='rigid', out_dir=out_dir,
                     out_rigid='rigid.txt')
        npt.assert_(not os.path.exists(pjoin(out_dir, 'rigid.txt')))


def test_centre_none_starts_from_identity():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        flow = RegistrationFlow()
        flow.run(image1, image2, type='rigid', rigid_centre='none',
                 rigid_scale=[1.0], rigid_niter=[0], out_dir=out_dir,
                 out_rigid='rigid.txt')
        npt.assert_array_almost_equal(
            load_transform(pjoin(out_dir, 'rigid.txt')), np.eye(4))


def test_sh_order():
    npt.assert_equal(sh_order(np.zeros((4, 4, 4))), None)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 5))), None)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 6))), 2)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 45))), 4)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 45)), lmax=8), 8)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 45)), lmax=0), 0)
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 45)),
                              noreorientation=True), None)
    # lmax is ignored when the volumes are not reoriented
    npt.assert_equal(sh_order(np.zeros((4, 4, 4, 5)), lmax=4), None)
    npt.assert_raises(RegistrationConfigError, sh_order,
                      np.zeros((4, 4, 4, 15)), lmax=3)
    npt.assert_raises(RegistrationConfigError, sh_order,
                      np.zeros((4, 4, 4, 15)), lmax=6)


def test_rigid_flow():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        flow = RegistrationFlow()
        flow.run(image1, image2, type='rigid', rigid_centre='geometric',
                 rigid_scale=[0.5, 1.0], rigid_niter=[100],
                 num_threads=2, out_dir=out_dir,
                 out_transformed='transformed.nii.gz',
                 out_rigid='rigid.txt')
        outputs = flow.last_generated_outputs
        npt.assert_equal(sorted(outputs),
                         ['out_rigid', 'out_transformed'])
        npt.assert_(os.path.isfile(outputs['out_rigid']))

        rigid = load_transform(outputs['out_rigid'])
        npt.assert_array_almost_equal(rigid[:3, 3], [1, 0, 0], decimal=1)
        transformed, affine = load_nifti(outputs['out_transformed'])
        npt.assert_equal(transformed.shape, (16, 16, 16))
        npt.assert_array_equal(affine, np.eye(4))
        target = blob()
        npt.assert_(np.abs(transformed - target).mean() < 2.0)


def test_affine_midway_flow():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir, shift=(2., 0., 0.))
        flow = RegistrationFlow()
        flow.run(image1, image2, type='affine', affine_centre='geometric',
                 affine_scale=[0.5, 1.0], affine_niter=[100], num_threads=2,
                 out_dir=out_dir, out_midway1='midway1.nii.gz',
                 out_midway2='midway2.nii.gz', out_affine='affine.txt',
                 out_affine_1tomidway='half1.txt',
                 out_affine_2tomidway='half2.txt')
        outputs = flow.last_generated_outputs
        affine = load_transform(outputs['out_affine'])
        half1 = load_transform(outputs['out_affine_1tomidway'])
        half2 = load_transform(outputs['out_affine_2tomidway'])
        npt.assert_array_almost_equal(half1.dot(half1), affine)
        npt.assert_array_almost_equal(half1.dot(half2), np.eye(4))

        midway1, midway_affine = load_nifti(outputs['out_midway1'])
        midway2, midway_affine2 = load_nifti(outputs['out_midway2'])
        npt.assert_equal(midway1.shape, midway2.shape)
        npt.assert_array_almost_equal(midway_affine, midway_affine2)
        npt.assert_allclose(midway_affine[:3, 3], [1, 0, 0], atol=0.3)


def test_syn_flow_and_resume():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        flow = RegistrationFlow()
        flow.run(image1, image2, type='syn', syn_scale=[1.0],
                 syn_niter=[5], num_threads=2, out_dir=out_dir,
                 out_syn_warp='warp.nii.gz',
                 out_transformed='transformed.nii.gz')
        warp_file = flow.last_generated_outputs['out_syn_warp']
        warps, grid2world, im1_linear, im2_linear = load_warps(warp_file)
        npt.assert_equal(warps.shape, (16, 16, 16, 3, 4))
        npt.assert_array_almost_equal(im1_linear, np.eye(4))
        npt.assert_array_almost_equal(im2_linear, np.eye(4))
        transformed = load_nifti(
            flow.last_generated_outputs['out_transformed'])[0]
        npt.assert_equal(transformed.shape, (16, 16, 16))

        with pytest.warns(StageSupersededWarning):
            flow.run(image1, image2, type='affine_syn', syn_init=warp_file,
                     syn_niter=[2], num_threads=2, out_dir=out_dir,
                     out_syn_warp='resumed.nii.gz')
        resumed = load_warps(pjoin(out_dir, 'resumed.nii.gz'))[0]
        npt.assert_equal(resumed.shape, warps.shape)


def test_invalid_outputs():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        flow = RegistrationFlow()
        with pytest.raises(RegistrationConfigError,
                           match='no affine registration'):
            flow.run(image1, image2, type='rigid', out_dir=out_dir,
                     out_affine='affine.txt')
        with pytest.raises(RegistrationConfigError, match='together'):
            flow.run(image1, image2, type='rigid', out_dir=out_dir,
                     out_midway1='midway1.nii.gz')
        npt.assert_(not os.path.exists(pjoin(out_dir, 'affine.txt')))


def test_run_flow_command_line():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        flow = RegistrationFlow()
        run_flow(flow, args=[image1, image2, '--type', 'rigid',
                             '--rigid_scale', '0.5', '1',
                             '--rigid_niter', '50',
                             '--rigid_centre', 'geometric',
                             '--num_threads', '2',
                             '--out_dir', out_dir,
                             '--out_rigid', 'rigid.txt',
                             '--log_level', 'WARNING'])
        npt.assert_(os.path.isfile(pjoin(out_dir, 'rigid.txt')))
        npt.assert_(not flow._force_overwrite)
