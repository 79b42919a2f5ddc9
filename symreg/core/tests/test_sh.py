import numpy as np
import numpy.testing as npt
import pytest

from symreg.core.sh import (cart2sphere, is_sh_series, lmax_from_ncoef,
                            n_coeffs_from_lmax, sh_basis, sph_harm_ind_list)
from symreg.core.sphere import fibonacci_hemisphere


def test_number_of_coefficients():
    for lmax, ncoef in ((0, 1), (2, 6), (4, 15), (6, 28), (8, 45)):
        npt.assert_equal(n_coeffs_from_lmax(lmax), ncoef)
        npt.assert_equal(lmax_from_ncoef(ncoef), lmax)


def test_is_sh_series():
    for nvolumes in (6, 15, 28, 45):
        npt.assert_(is_sh_series(nvolumes))
    for nvolumes in (1, 3, 5, 7, 10, 16, 30):
        npt.assert_(not is_sh_series(nvolumes))


def test_sph_harm_ind_list():
    m_list, l_list = sph_harm_ind_list(2)
    npt.assert_array_equal(m_list, [0, -2, -1, 0, 1, 2])
    npt.assert_array_equal(l_list, [0, 2, 2, 2, 2, 2])
    npt.assert_raises(ValueError, sph_harm_ind_list, 3)


def test_cart2sphere():
    r, theta, phi = cart2sphere(np.array([0., 1., 0.]),
                                np.array([0., 0., 2.]),
                                np.array([1., 0., 0.]))
    npt.assert_array_almost_equal(r, [1, 1, 2])
    npt.assert_array_almost_equal(theta, [0, np.pi / 2, np.pi / 2])
    npt.assert_array_almost_equal(phi[1:], [0, np.pi / 2])


def test_sh_basis_values():
    basis = sh_basis(np.array([[0., 0., 1.]]), 2)
    expected = np.zeros(6)
    expected[0] = 0.5 / np.sqrt(np.pi)
    expected[3] = np.sqrt(5 / (4 * np.pi))
    npt.assert_array_almost_equal(basis[0], expected)


@pytest.mark.parametrize("lmax", [2, 4, 6])
def test_sh_basis_orthonormal(lmax):
    half = fibonacci_hemisphere(2000)
    points = np.concatenate((half, -half))
    basis = sh_basis(points, lmax)
    gram = basis.T.dot(basis) * 4 * np.pi / len(points)
    npt.assert_array_almost_equal(gram, np.eye(n_coeffs_from_lmax(lmax)),
                                  decimal=2)
