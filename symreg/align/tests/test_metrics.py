import numpy as np
import numpy.testing as npt

from symreg.align import RegistrationConfigError
from symreg.align.metrics import (L1, L2, LP, CrossCorrelationMetric,
                                  DifferenceRobust4DMetric,
                                  DifferenceRobustMetric, MeanSquared4DMetric,
                                  MeanSquaredMetric, NoRobustEstimator,
                                  SyNDemonsMetric, select_metric)
from symreg.testing.decorators import set_random_number_generator


def test_select_metric():
    npt.assert_(isinstance(select_metric('diff'), MeanSquaredMetric))
    npt.assert_(isinstance(select_metric('diff', ndim=4),
                           MeanSquared4DMetric))
    npt.assert_(isinstance(select_metric('diff', 'none'), MeanSquaredMetric))
    robust = select_metric('diff', 'l1')
    npt.assert_(isinstance(robust, DifferenceRobustMetric))
    npt.assert_(isinstance(robust.estimator, L1))
    npt.assert_(isinstance(select_metric('DIFF', 'lp', ndim=4),
                           DifferenceRobust4DMetric))
    npt.assert_(isinstance(select_metric('ncc'), CrossCorrelationMetric))

    npt.assert_raises(RegistrationConfigError, select_metric, 'mi')
    npt.assert_raises(RegistrationConfigError, select_metric, 'diff', 'huber')
    npt.assert_raises(RegistrationConfigError, select_metric, 'ncc', 'l2')
    npt.assert_raises(RegistrationConfigError, select_metric, 'ncc', None, 4)
    npt.assert_raises(RegistrationConfigError, select_metric, 'diff', None, 2)
    npt.assert_raises(RegistrationConfigError, CrossCorrelationMetric,
                      (3, 3))


@set_random_number_generator()
def test_estimator_derivatives(rng=None):
    residual = rng.uniform(0.1, 2, 20) * np.sign(rng.standard_normal(20))
    eps = 1e-6
    for estimator in (NoRobustEstimator(), L1(), L2(), LP(power=1.5,
                                                          epsilon=0)):
        rho, psi = estimator(residual)
        numerical = (estimator(residual + eps)[0] -
                     estimator(residual - eps)[0]) / (2 * eps)
        npt.assert_array_almost_equal(psi, numerical, decimal=4)
        npt.assert_(np.all(rho >= 0))


@set_random_number_generator()
def test_mean_squared_metric(rng=None):
    static = rng.standard_normal((6, 7, 8))
    grad = rng.standard_normal((6, 7, 8, 3))
    mask = np.ones(static.shape, dtype=bool)
    metric = MeanSquaredMetric()

    cost, forces, count = metric.evaluate(static, static, grad, mask)
    npt.assert_equal(cost, 0)
    npt.assert_array_equal(forces, 0)
    npt.assert_equal(count, static.size)

    moving = static + 0.5
    mask[0] = False
    cost, forces, count = metric.evaluate(static, moving, grad, mask)
    npt.assert_equal(count, mask.sum())
    npt.assert_almost_equal(cost, 0.25 * mask.sum())
    npt.assert_array_almost_equal(forces[1:], grad[1:])
    npt.assert_array_equal(forces[0], 0)


@set_random_number_generator()
def test_multivolume_metric(rng=None):
    static = rng.standard_normal((5, 5, 5, 4))
    moving = static + 1
    grad = rng.standard_normal((5, 5, 5, 4, 3))
    mask = np.ones((5, 5, 5), dtype=bool)
    cost, forces, count = MeanSquared4DMetric().evaluate(static, moving,
                                                         grad, mask)
    npt.assert_almost_equal(cost, 4 * 125)
    npt.assert_array_almost_equal(forces, 2 * grad.sum(axis=3))
    npt.assert_equal(count, 125)

    cost, forces, _ = DifferenceRobust4DMetric(L1()).evaluate(
        static, moving, grad, mask)
    npt.assert_almost_equal(cost, 4 * 125)
    npt.assert_array_almost_equal(forces, grad.sum(axis=3))


@set_random_number_generator()
def test_cross_correlation(rng=None):
    static = rng.standard_normal((8, 8, 8))
    grad = np.zeros((8, 8, 8, 3))
    mask = np.ones(static.shape, dtype=bool)
    metric = CrossCorrelationMetric((3, 3, 3))

    # a linear function of the static image is perfectly correlated
    cost, forces, count = metric.evaluate(static, 2 * static + 1, grad, mask)
    npt.assert_almost_equal(cost / count, -1)
    npt.assert_array_equal(forces, 0)

    extra = metric.precompute(static, rng.standard_normal((8, 8, 8)))
    cost, _, count = metric.evaluate(static, None, grad, mask, extra)
    npt.assert_(-1 < cost / count < 0)

    npt.assert_raises(RegistrationConfigError, metric.precompute,
                      np.zeros((4, 4, 4, 2)), np.zeros((4, 4, 4, 2)))


def test_demons_update():
    metric = SyNDemonsMetric()
    shape = (6, 6, 6)
    mask = np.ones(shape, dtype=bool)
    image = np.zeros(shape)
    grad = np.zeros(shape + (3,))

    update, energy = metric.compute_update(image, image, grad, grad, mask)
    npt.assert_array_equal(update, 0)
    npt.assert_equal(energy, 0)

    # image 2 is brighter, image 1 increases along x: image 1 moves along +x
    warped1 = np.zeros(shape)
    warped2 = np.ones(shape)
    grad1 = np.zeros(shape + (3,))
    grad1[..., 0] = 1
    update, energy = metric.compute_update(warped1, warped2, grad1,
                                           np.zeros(shape + (3,)), mask)
    npt.assert_array_almost_equal(update[..., 0], 0.5)
    npt.assert_array_almost_equal(update[..., 1:], 0)
    npt.assert_almost_equal(energy, 1)

    mask[:3] = False
    update, _ = metric.compute_update(warped1, warped2, grad1,
                                      np.zeros(shape + (3,)), mask)
    npt.assert_array_equal(update[:3], 0)
