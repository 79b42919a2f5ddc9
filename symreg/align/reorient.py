""" Reorientation of spherical harmonic images

When an image whose volumes hold the coefficients of an SH series (e.g. a
fibre orientation distribution) is resampled under a transform with a
rotational, shearing or scaling component, the orientation content of each
voxel must be reoriented as well. The series is decomposed into a weighted
sum of apodised point spread functions (aPSFs) centred on a fixed set of
directions; reorientation moves each aPSF to its transformed direction and
sums them back.
"""

import logging

import numpy as np
import numpy.linalg as npl
from tqdm import tqdm

from symreg.core.sh import lmax_from_ncoef, n_coeffs_from_lmax, \
    sh_basis, sph_harm_ind_list
from symreg.align.vector_fields import field_jacobian, world_grid

logger = logging.getLogger(__name__)


def apsf_weights(lmax):
    r"""Apodisation weights of each order of the point spread function

    A Hann window over the orders, h_l = (1 + cos(pi l / (lmax + 2))) / 2,
    which is strictly positive for every order up to lmax.

    Returns
    -------
    weights : array, shape (lmax // 2 + 1,)
        weight of orders 0, 2, ..., lmax
    """
    orders = np.arange(0, lmax + 1, 2)
    return 0.5 * (1.0 + np.cos(np.pi * orders / (lmax + 2.0)))


def apsf_coefficients(directions, lmax):
    """SH coefficients of the aPSFs centred on each direction

    Returns
    -------
    psf : array, shape (N, n_coeffs_from_lmax(lmax))
    """
    _, l_list = sph_harm_ind_list(lmax)
    weights = apsf_weights(lmax)[l_list // 2]
    return sh_basis(directions, lmax) * weights


def _normalize(vectors):
    norms = np.sqrt(np.sum(vectors ** 2, axis=-1, keepdims=True))
    return vectors / np.where(norms > 0, norms, 1.0)


class SHReorientation:

    def __init__(self, directions, lmax):
        r""" Precomputed aPSF decomposition for a direction set

        The decomposition weights of a series c are w = A M0^{-1} c, with A
        the SH basis sampled at the directions d and M0 = P(d)^T A, where
        P(d) holds the aPSF coefficients. By construction P(d)^T w = c, and
        the reoriented series is P(d')^T w, with d' the transformed
        directions.

        Parameters
        ----------
        directions : array, shape (N, 3)
            unit vectors; N must be at least the number of coefficients
        lmax : int
            even maximum order of the series
        """
        self.directions = np.asarray(directions, dtype=np.float64)
        self.lmax = lmax
        self.n_coeffs = n_coeffs_from_lmax(lmax)
        if self.directions.shape[0] < self.n_coeffs:
            raise ValueError(
                "%d directions cannot reorient a series with %d coefficients"
                " (lmax %d)" % (self.directions.shape[0], self.n_coeffs,
                                lmax))
        basis = sh_basis(self.directions, lmax)
        psf = apsf_coefficients(self.directions, lmax)
        self.weights = basis.dot(npl.inv(psf.T.dot(basis)))

    def _transformed(self, matrices):
        # Fibres along d in the moving image appear along inv(L) d once the
        # image is resampled onto the template grid
        inverses = npl.inv(matrices)
        return _normalize(np.einsum('...ij,nj->...ni', inverses,
                                    self.directions))

    def linear(self, coeffs, matrix):
        """Reorient coefficients of shape (..., K) under one linear part."""
        new_dirs = self._transformed(np.asarray(matrix)[:3, :3])
        psf = apsf_coefficients(new_dirs, self.lmax)
        operator = psf.T.dot(self.weights)
        return coeffs.dot(operator.T)

    def local(self, coeffs, matrices):
        """Reorient coefficients of shape (M, K) under M linear parts."""
        decomposition = coeffs.dot(self.weights.T)
        new_dirs = self._transformed(matrices)
        n_voxels, n_dirs = new_dirs.shape[:2]
        psf = apsf_coefficients(new_dirs.reshape(-1, 3), self.lmax)
        psf = psf.reshape(n_voxels, n_dirs, -1)
        return np.einsum('mn,mnk->mk', decomposition, psf)


def _truncate(coeffs, lmax):
    data_lmax = lmax_from_ncoef(coeffs.shape[-1])
    if lmax is None:
        lmax = data_lmax
    if lmax > data_lmax or lmax % 2:
        raise ValueError("lmax must be even and not exceed the lmax of the "
                         "data (%d), got %d" % (data_lmax, lmax))
    return lmax, coeffs[..., :n_coeffs_from_lmax(lmax)]


def reorient_sh(coeffs, linear, directions, lmax=None):
    """Reorient an SH image under a linear transform

    Parameters
    ----------
    coeffs : array, shape (..., K)
        SH coefficients, last axis
    linear : array, shape (3, 3), (3, 4) or (4, 4)
        the transform mapping template points to points of the image the
        coefficients were sampled from; only its linear part is used
    directions : array, shape (N, 3)
        aPSF directions
    lmax : int, optional
        maximum order to reorient. Higher orders of the data are dropped.
        Default: the order of the data.

    Returns
    -------
    reoriented : array, shape (..., n_coeffs_from_lmax(lmax))
    """
    lmax, coeffs = _truncate(np.asarray(coeffs, dtype=np.float64), lmax)
    out = np.zeros_like(coeffs)
    nonzero = np.any(coeffs != 0, axis=-1)
    reorienter = SHReorientation(directions, lmax)
    out[nonzero] = reorienter.linear(coeffs[nonzero], linear)
    return out


def reorient_warp(coeffs, deformation, grid2world, directions, lmax=None,
                  show_progress=False):
    """Reorient an SH image under a deformation, using its local Jacobian

    Parameters
    ----------
    coeffs : array, shape (X, Y, Z, K)
        SH image already resampled through the deformation
    deformation : array, shape (X, Y, Z, 3)
        world point sampled for each voxel of the output grid
    grid2world : array, shape (4, 4)
        grid-to-world transform of the output grid
    directions : array, shape (N, 3)
        aPSF directions
    lmax : int, optional
        maximum order to reorient
    show_progress : bool, optional
        report progress over the slices of the first axis with tqdm

    Returns
    -------
    reoriented : array, shape (X, Y, Z, n_coeffs_from_lmax(lmax))
    """
    lmax, coeffs = _truncate(np.asarray(coeffs, dtype=np.float64), lmax)
    displacement = deformation - world_grid(deformation.shape, grid2world)
    jacobians = field_jacobian(displacement, grid2world)
    reorienter = SHReorientation(directions, lmax)
    out = np.zeros_like(coeffs)
    slices = tqdm(range(coeffs.shape[0]), desc='reorienting',
                  disable=not show_progress)
    for x in slices:
        nonzero = np.any(coeffs[x] != 0, axis=-1)
        if not np.any(nonzero):
            continue
        out[x][nonzero] = reorienter.local(coeffs[x][nonzero],
                                           jacobians[x][nonzero])
    return out
