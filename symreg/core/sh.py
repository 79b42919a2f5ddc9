""" Real, even-order spherical harmonic basis

The basis follows the MRtrix3 definition, where the real harmonic $Y^m_l$ is:

    Real($Y^m_l$) * sqrt(2)      if m > 0
    $Y^0_l$                      if m = 0
    Imag($Y^|m|_l$) * sqrt(2)    if m < 0

and the coefficients of a series are ordered by increasing l, then by m from
-l to l.
"""
import numpy as np
import scipy.special as sps


def n_coeffs_from_lmax(lmax):
    """Number of coefficients of an even-order series of maximum order lmax.
    """
    return (lmax + 1) * (lmax + 2) // 2


def lmax_from_ncoef(ncoef):
    """
    Given a number ``n`` of coefficients, calculate back the maximum order

    Parameters
    ----------
    ncoef : int
        number of coefficients

    Returns
    -------
    lmax : int
        maximum order (l) of the SH series
    """
    # ncoef = (lmax + 2) * (lmax + 1) / 2
    return -1 + int(np.sqrt(9 - 4 * (2 - 2 * ncoef)) // 2)


def is_sh_series(nvolumes):
    """Whether a number of volumes can hold an even-order SH series

    Only series with at least one order above zero (6 coefficients or more)
    are considered.
    """
    if nvolumes < 6:
        return False
    root = (np.sqrt(1 + 8 * nvolumes) - 3) / 4.0
    return root == np.floor(root)


def sph_harm_ind_list(lmax):
    """
    Returns the phase factor (``m``) and order (``l``) of all the even
    spherical harmonics of order less than or equal to ``lmax``.

    Parameters
    ----------
    lmax : int
        Even int >= 0, max order to return

    Returns
    -------
    m_list : array of int
        phase factors (m) of even spherical harmonics
    l_list : array of int
        orders (l) of even spherical harmonics
    """
    if lmax % 2 != 0 or lmax < 0:
        raise ValueError('lmax must be an even integer >= 0')
    l_range = np.arange(0, lmax + 1, 2, dtype=int)
    l_list = np.repeat(l_range, l_range * 2 + 1)
    m_list = np.concatenate([np.arange(-ll, ll + 1) for ll in l_range])
    return m_list, l_list


def cart2sphere(x, y, z):
    r""" Return angles for Cartesian 3D coordinates `x`, `y`, and `z`

    $0\le\theta\mathrm{(theta)}\le\pi$ and $-\pi\le\phi\mathrm{(phi)}\le\pi$

    Returns
    -------
    r : array
       radius
    theta : array
       inclination (polar) angle
    phi : array
       azimuth angle
    """
    r = np.sqrt(x * x + y * y + z * z)
    theta = np.arccos(np.divide(z, r, out=np.zeros_like(r), where=r > 0))
    theta = np.where(r > 0, theta, 0.)
    phi = np.arctan2(y, x)
    r, theta, phi = np.broadcast_arrays(r, theta, phi)
    return r, theta, phi


def spherical_harmonics(m_values, l_values, theta, phi):
    """Complex spherical harmonics $Y^m_l$, for m >= 0

    Parameters
    ----------
    m_values : array of int ``0 <= m <= l``
    l_values : array of int ``l >= 0``
    theta : float [0, pi]
        The polar (colatitudinal) coordinate.
    phi : float [0, 2*pi]
        The azimuthal (longitudinal) coordinate.
    """
    x = np.cos(theta)
    val = sps.lpmv(m_values, l_values, x).astype(complex)
    val *= np.sqrt((2 * l_values + 1) / 4.0 / np.pi)
    val *= np.exp(0.5 * (sps.gammaln(l_values - m_values + 1) -
                         sps.gammaln(l_values + m_values + 1)))
    return val * np.exp(1j * m_values * phi)


def sh_basis(directions, lmax):
    """Real SH basis sampled at a set of directions

    Parameters
    ----------
    directions : array, shape (N, 3)
        unit vectors
    lmax : int
        even maximum order

    Returns
    -------
    basis : array, shape (N, n_coeffs_from_lmax(lmax))
        basis[i, j] is harmonic j evaluated at direction i
    """
    directions = np.asarray(directions, dtype=np.float64)
    m_list, l_list = sph_harm_ind_list(lmax)
    _, theta, phi = cart2sphere(directions[:, 0], directions[:, 1],
                                directions[:, 2])
    sh = spherical_harmonics(np.abs(m_list), l_list,
                             theta[:, None], phi[:, None])
    real_sh = np.where(m_list < 0, sh.imag, sh.real)
    real_sh *= np.where(m_list == 0, 1., np.sqrt(2))
    return real_sh
