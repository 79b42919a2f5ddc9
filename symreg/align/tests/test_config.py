import numpy as np
import numpy.testing as npt
import pytest

from symreg.align import RegistrationConfigError, StageSupersededWarning
from symreg.align.config import (LinearStageConfig, SynStageConfig,
                                 build_registration_config)
from symreg.align.transforms import RigidTransform


def saved_warps():
    return (np.zeros((4, 4, 4, 3, 4)), np.eye(4), np.eye(4), np.eye(4))


def test_default_config():
    config = build_registration_config()
    npt.assert_(not config.do_rigid)
    npt.assert_(config.do_affine)
    npt.assert_(config.do_syn)
    npt.assert_equal(config.affine.init, 'mass')
    npt.assert_equal(config.affine.scale_factors, (0.25, 0.5, 1.0))
    npt.assert_equal(config.affine.max_iter, (500, 500, 500))
    npt.assert_equal(config.syn.scale_factors, (0.25, 0.5, 1.0))
    npt.assert_equal(config.syn.max_iter, (50, 50, 50))

    config = build_registration_config('rigid_affine_syn')
    npt.assert_(config.do_rigid and config.do_affine and config.do_syn)
    npt.assert_raises(RegistrationConfigError, build_registration_config,
                      'nonlinear')


def test_stage_options():
    config = build_registration_config(
        'rigid_affine', rigid_scale=[0.5, 1], rigid_niter=[100, 50],
        rigid_metric='ncc', affine_robust_estimator='l1',
        affine_repetitions=[1, 2, 3], affine_loop_density=0.5,
        affine_global_search=True)
    npt.assert_equal(config.rigid.scale_factors, (0.5, 1.0))
    npt.assert_equal(config.rigid.max_iter, (100, 50))
    npt.assert_equal(config.rigid.metric, 'ncc')
    npt.assert_equal(config.affine.estimator, 'l1')
    npt.assert_equal(config.affine.repetitions, (1, 2, 3))
    npt.assert_equal(config.affine.loop_density, (0.5, 0.5, 0.5))
    npt.assert_(config.affine.global_search)
    npt.assert_(not config.rigid.global_search)

    # options set to None or False are ignored
    config = build_registration_config('rigid', affine_niter=None,
                                       affine_robust_median=False)
    npt.assert_(not config.do_affine)


def test_options_of_unselected_stages():
    for registration_type, options in (
            ('rigid', {'affine_niter': 10}),
            ('affine', {'rigid_scale': [1.0]}),
            ('rigid_affine', {'syn_grad_step': 0.1}),
            ('syn', {'affine_robust_median': True})):
        with pytest.raises(RegistrationConfigError, match='no .* '
                           'registration is requested'):
            build_registration_config(registration_type, **options)
    npt.assert_raises(RegistrationConfigError, build_registration_config,
                      'affine', affine_speed=2)


def test_invalid_stage_values():
    for options in ({'affine_scale': [0.5, 2.0]},
                    {'affine_scale': []},
                    {'affine_niter': [10, 10]},
                    {'affine_niter': -1},
                    {'affine_centre': 'random'},
                    {'affine_repetitions': 0},
                    {'affine_loop_density': 1.5},
                    {'syn_grad_step': 0},
                    {'syn_update_smooth': -1},
                    {'syn_niter': [10, 10]}):
        npt.assert_raises(RegistrationConfigError,
                          build_registration_config, 'affine_syn', **options)

    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'rigid',
                      estimator='l1')
    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'rigid',
                      robust_median=True)
    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'rigid',
                      repetitions=2)
    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'rigid',
                      loop_density=0.5)
    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'similarity')


def test_seed_options():
    seed = np.eye(4)
    seed[:3, 3] = [1, 2, 3]
    config = build_registration_config('rigid_affine', rigid_init=seed)
    npt.assert_equal(config.rigid.init, 'none')
    npt.assert_array_equal(config.rigid.init_transform, seed)

    config = build_registration_config('affine', affine_init=seed)
    npt.assert_equal(config.affine.init, 'none')

    npt.assert_raises(RegistrationConfigError, build_registration_config,
                      'rigid_affine', affine_init=seed)
    npt.assert_raises(RegistrationConfigError, build_registration_config,
                      'affine', affine_init=seed, affine_centre='mass')
    npt.assert_raises(RegistrationConfigError, LinearStageConfig, 'rigid',
                      init='geometric', init_transform=seed)


def test_seeded_copy():
    config = LinearStageConfig('affine', max_iter=10, init='moments')
    seed = RigidTransform()
    seeded = config.seeded(seed)
    npt.assert_equal(seeded.init, 'none')
    npt.assert_(seeded.init_transform is seed)
    npt.assert_equal(seeded.max_iter, config.max_iter)
    # the unseeded configuration is unchanged
    npt.assert_equal(config.init, 'moments')
    npt.assert_(config.init_transform is None)
    npt.assert_('init_transform' not in repr(seeded))


def test_syn_resume():
    with pytest.warns(StageSupersededWarning):
        config = build_registration_config('affine_syn',
                                           syn_init=saved_warps())
    npt.assert_(not config.do_affine)
    npt.assert_(config.do_syn)
    npt.assert_equal(config.syn.scale_factors, (1.0,))
    npt.assert_equal(config.syn.max_iter, (50,))

    with pytest.warns(StageSupersededWarning, match='syn_scale'):
        config = build_registration_config('syn', syn_init=saved_warps(),
                                           syn_scale=[0.5, 1.0])
    npt.assert_equal(config.syn.scale_factors, (1.0,))

    with pytest.warns(StageSupersededWarning):
        build_registration_config('rigid_syn', syn_init=saved_warps(),
                                  rigid_init=np.eye(4))

    config = build_registration_config('syn', syn_init=saved_warps(),
                                       syn_niter=20)
    npt.assert_equal(config.syn.max_iter, (20,))
    with pytest.raises(RegistrationConfigError, match='single level'):
        build_registration_config('syn', syn_init=saved_warps(),
                                  syn_niter=[20, 10])


def test_syn_config():
    config = SynStageConfig(scale_factors=[0.5, 1.0], max_iter=[10, 5],
                            update_smoothing=1.0, disp_smoothing=0.5,
                            grad_step=0.25)
    npt.assert_equal(config.num_levels, 2)
    npt.assert_equal(config.max_iter, (10, 5))
    npt.assert_almost_equal(config.grad_step, 0.25)
    npt.assert_(config.init_warps is None)
