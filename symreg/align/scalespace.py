import logging

import numpy as np
import numpy.linalg as npl
from scipy import ndimage

from symreg.align import floating

logger = logging.getLogger(__name__)


def voxel_spacing(grid2world):
    """Voxel size along each axis of a grid."""
    return np.sqrt(np.sum(np.asarray(grid2world)[:3, :3] ** 2, axis=0))


def smoothing_sigmas(spacing, target_spacing, sigma_factor=0.5):
    """Gaussian sigmas (in voxels) to apply before resampling to a coarser
    grid

    Parameters
    ----------
    spacing : array, shape (3,)
        voxel size of the image to be smoothed
    target_spacing : array, shape (3,)
        voxel size of the grid the image will be sampled at
    sigma_factor : float, optional
        sigma = sigma_factor * (target_spacing / spacing - 1), along each axis

    Returns
    -------
    sigmas : array, shape (3,)
        zero along axes where the target is not coarser than the image
    """
    ratio = np.asarray(target_spacing, dtype=np.float64) / spacing
    return sigma_factor * np.maximum(ratio - 1.0, 0.0)


def smooth_image(image, sigmas):
    """Gaussian smoothing of the spatial axes of a 3D or 4D image."""
    sigmas = tuple(sigmas) + (0,) * (image.ndim - 3)
    if not np.any(sigmas):
        return np.asarray(image, dtype=floating)
    return ndimage.gaussian_filter(np.asarray(image, dtype=floating), sigmas)


def level_grid(shape, grid2world, scale):
    """Shape and grid-to-world transform of a sub-sampled grid

    The sub-sampled grid covers the same field of view as the input grid,
    with about `scale` times as many voxels along each axis.

    Parameters
    ----------
    shape : sequence of 3 ints
        shape of the input grid
    grid2world : array, shape (4, 4)
        grid-to-world transform of the input grid
    scale : float, 0 < scale <= 1
        resolution of the level relative to the input grid

    Returns
    -------
    level_shape : array of 3 ints
    level_grid2world : array, shape (4, 4)
    """
    shape = np.asarray(shape[:3], dtype=np.int64)
    level_shape = np.maximum(1, (shape * scale + 0.5).astype(np.int64))
    factors = shape / level_shape
    # Voxel i of the level is centred on input voxel i * f + (f - 1) / 2
    level2grid = np.eye(4)
    level2grid[:3, :3] = np.diag(factors)
    level2grid[:3, 3] = (factors - 1) / 2.0
    return level_shape, np.asarray(grid2world).dot(level2grid)


def resample_to_grid(image, grid2world, out_shape, out_grid2world, order=1,
                     cval=0):
    """Resample a 3D or 4D image onto another grid with the same orientation

    Parameters
    ----------
    image : array, shape (X, Y, Z) or (X, Y, Z, V)
    grid2world : array, shape (4, 4)
        grid-to-world transform of `image`
    out_shape : sequence of 3 ints
    out_grid2world : array, shape (4, 4)
    order : int, optional
        spline interpolation order
    """
    out2in = npl.inv(grid2world).dot(out_grid2world)
    out_shape = tuple(int(s) for s in out_shape[:3])

    def _resample(volume):
        return ndimage.affine_transform(volume, out2in[:3, :3],
                                        offset=out2in[:3, 3],
                                        output_shape=out_shape, order=order,
                                        mode='constant', cval=cval)

    if image.ndim == 3:
        return _resample(image).astype(floating)
    out = np.empty(out_shape + image.shape[3:], dtype=floating)
    for v in range(image.shape[3]):
        out[..., v] = _resample(image[..., v])
    return out


class ScaleSpace:
    def __init__(self, image, grid2world, scale_factors, mask=None,
                 sigma_factor=0.5):
        """ ScaleSpace.

        Multi-resolution representation of an image and its mask. Level `i`
        is the image smoothed with a Gaussian kernel whose width grows with
        1 / scale_factors[i], sub-sampled on a grid covering the same field
        of view. The smoothed image at full resolution is kept as well, so
        an image can be sampled at arbitrary positions with the smoothing of
        a given level.

        Parameters
        ----------
        image : array, shape (X, Y, Z) or (X, Y, Z, V)
            the input image. Multi-volume images are smoothed along the
            spatial axes only.
        grid2world : array, shape (4, 4)
            the grid-to-space transform of the image grid
        scale_factors : sequence of floats in (0, 1]
            resolution of each level, coarsest first (e.g. [0.25, 0.5, 1.0])
        mask : array, shape (X, Y, Z), optional
            voxels eligible for the cost function (non-zero). None means all
            voxels.
        sigma_factor : float, optional
            the smoothing factor (see `smoothing_sigmas`). The default is
            0.5
        """
        self.grid2world = np.asarray(grid2world, dtype=np.float64)
        self.spacing = voxel_spacing(self.grid2world)
        self.scale_factors = [float(s) for s in scale_factors]
        self.num_levels = len(self.scale_factors)
        self.sigma_factor = sigma_factor
        image = np.asarray(image)
        if mask is not None:
            mask = np.asarray(mask) != 0

        self.images = []
        self.smoothed = []
        self.masks = []
        self.domain_shapes = []
        self.affines = []
        self.spacings = []
        self.sigmas = []
        for scale in self.scale_factors:
            shape, affine = level_grid(image.shape, self.grid2world, scale)
            spacing = voxel_spacing(affine)
            sigmas = smoothing_sigmas(self.spacing, spacing, sigma_factor)
            smoothed = smooth_image(image, sigmas)
            if scale == 1.0:
                level_image = smoothed
                level_mask = mask
            else:
                level_image = resample_to_grid(smoothed, self.grid2world,
                                               shape, affine)
                level_mask = None
                if mask is not None:
                    level_mask = resample_to_grid(
                        mask.astype(floating), self.grid2world, shape,
                        affine) > 0.5
            self.images.append(level_image)
            self.smoothed.append(smoothed)
            self.masks.append(level_mask)
            self.domain_shapes.append(np.asarray(shape))
            self.affines.append(affine)
            self.spacings.append(spacing)
            self.sigmas.append(sigmas)

    def _get_attribute(self, attribute, level):
        if 0 <= level < self.num_levels:
            return attribute[level]
        raise ValueError('Invalid pyramid level: ' + str(level))

    def get_image(self, level):
        """Smoothed, sub-sampled image at a given level."""
        return self._get_attribute(self.images, level)

    def get_smoothed(self, level):
        """Image smoothed as level `level`, on the input grid."""
        return self._get_attribute(self.smoothed, level)

    def get_mask(self, level):
        """Boolean mask on the level grid, or None."""
        return self._get_attribute(self.masks, level)

    def get_domain_shape(self, level):
        return self._get_attribute(self.domain_shapes, level)

    def get_affine(self, level):
        """Grid-to-space transform of the level grid."""
        return self._get_attribute(self.affines, level)

    def get_spacing(self, level):
        return self._get_attribute(self.spacings, level)

    def get_sigmas(self, level):
        return self._get_attribute(self.sigmas, level)

    def print_level(self, level):
        """Log the properties of a pyramid level."""
        logger.info('Domain shape: ' + str(self.get_domain_shape(level)))
        logger.info('Spacing: ' + str(self.get_spacing(level)))
        logger.info('Sigmas: ' + str(self.get_sigmas(level)))
