""" NIfTI input and output of registration images and masks

Images are returned as arrays together with their grid-to-world transform
(the NIfTI affine), which is all the registration engines need to know
about the file.
"""

import nibabel as nib
import numpy as np

from symreg.align import RegistrationConfigError


def load_nifti(fname, return_img=False, dtype=None):
    """Load an image and its grid-to-world transform.

    Parameters
    ----------
    fname : str
        Full path to a nifti file.
    return_img : bool, optional
        Whether to also return the nibabel image (e.g. to read its header
        extensions). Default: False
    dtype : data-type, optional
        Cast the data to this type. Default: the on-disk type.

    Returns
    -------
    data : ndarray
    affine : array, shape (4, 4)
    img : nibabel.Nifti1Image
        only when `return_img` is True

    See Also
    --------
    load_nifti_data, load_mask
    """
    img = nib.load(fname)
    data = np.asanyarray(img.dataobj)
    if dtype is not None:
        data = data.astype(dtype)
    if return_img:
        return data, img.affine, img
    return data, img.affine


def load_nifti_data(fname, dtype=None):
    """Load only the data array of a nifti file."""
    return load_nifti(fname, dtype=dtype)[0]


def load_mask(fname, shape=None, name='mask'):
    """Load a registration mask

    Non-zero voxels are eligible for the cost. A 4D mask holding a single
    volume is accepted as 3D.

    Parameters
    ----------
    fname : str
        Full path to a nifti file.
    shape : sequence of ints, optional
        spatial shape of the image the mask belongs to
    name : str, optional
        name of the mask in error messages

    Returns
    -------
    mask : array of bool, shape (X, Y, Z)

    Raises
    ------
    RegistrationConfigError
        if the mask is not 3D or its shape differs from `shape`
    """
    mask = load_nifti_data(fname)
    if mask.ndim == 4 and mask.shape[3] == 1:
        mask = mask[..., 0]
    if mask.ndim != 3:
        raise RegistrationConfigError(
            "%s must be a 3D image, got shape %s" % (name, mask.shape))
    if shape is not None and tuple(mask.shape) != tuple(shape[:3]):
        raise RegistrationConfigError(
            "%s has shape %s, which does not match the image shape %s"
            % (name, mask.shape, tuple(shape[:3])))
    return mask != 0


def save_nifti(fname, data, affine, hdr=None, dtype=None, extensions=None):
    """Save a data array into a nifti file.

    Parameters
    ----------
    fname : str
        The full path to the file to be saved.
    data : ndarray
        The array with the data to save.
    affine : 4x4 array
        The grid-to-world transform of the data.
    hdr : nifti header, optional
        May contain additional information to store in the file header.
    dtype : data-type, optional
        On-disk data type. Required for 64-bit integer data when no header
        is given, since Analyze formats did not support it.
    extensions : sequence of nib.nifti1.Nifti1Extension, optional
        Header extensions added to the file (e.g. the linear transforms of
        a warp bundle).
    """
    if hdr is None and dtype is None and \
            data.dtype in (np.dtype('int64'), np.dtype('uint64')):
        raise ValueError(
            "Image data has type %s, which may cause incompatibilities with "
            "other tools. Specify the on-disk `dtype` (e.g. np.int32) or a "
            "header." % data.dtype)

    result_img = nib.Nifti1Image(data, affine, header=hdr, dtype=dtype)
    for extension in extensions or ():
        result_img.header.extensions.append(extension)
    result_img.to_filename(fname)
