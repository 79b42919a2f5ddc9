""" This file contains defines parameters for symreg that we use to fill
settings in setup.py, the symreg top-level docstring, and for building the
docs.  In setup.py in particular, we exec this file, so it cannot import symreg
"""

# symreg version information.  An empty _version_extra corresponds to a
# full release.  '.dev' as a _version_extra string means this is a development
# version
_version_major = 0
_version_minor = 3
_version_micro = 0
_version_extra = 'dev0'
# _version_extra = ''

# Format expected by setup.py and doc/source/conf.py: string of form "X.Y.Z"
__version__ = f"{_version_major}.{_version_minor}.{_version_micro}{_version_extra}"

CLASSIFIERS = ["Development Status :: 3 - Alpha",
               "Environment :: Console",
               "Intended Audience :: Science/Research",
               "License :: OSI Approved :: BSD License",
               "Operating System :: OS Independent",
               "Programming Language :: Python",
               "Programming Language :: Python :: 3",
               "Topic :: Scientific/Engineering"]

description = 'Symmetric rigid, affine and diffeomorphic image registration'

# Note: this long_description is actually a restructured text document.
long_description = """
======
symreg
======

symreg estimates the spatial transformation aligning two 3D (or 4D,
multi-volume) images. It runs rigid, affine and symmetric diffeomorphic (SyN)
registration in sequence, each stage seeded by the previous one, and warps
both inputs towards a common midway space. Images whose volumes hold
spherical harmonic coefficients (e.g. fibre orientation distributions) are
reoriented under the estimated transformation.

License
=======

symreg is licensed under the terms of the BSD license.
"""

# versions for dependencies
NUMPY_MIN_VERSION = '1.22.4'
SCIPY_MIN_VERSION = '1.8'
NIBABEL_MIN_VERSION = '4.0.0'
TQDM_MIN_VERSION = '4.30.0'
NUMPYDOC_MIN_VERSION = '1.1'
PYTEST_MIN_VERSION = '6.0'

# Main setup parameters
NAME = 'symreg'
MAINTAINER = "symreg developers"
MAINTAINER_EMAIL = "symreg@python.org"
DESCRIPTION = description
LONG_DESCRIPTION = long_description
URL = "https://github.com/symreg/symreg"
DOWNLOAD_URL = "https://github.com/symreg/symreg/releases"
LICENSE = "BSD license"
CLASSIFIERS = CLASSIFIERS
AUTHOR = "symreg developers"
AUTHOR_EMAIL = "symreg@python.org"
PLATFORMS = "OS Independent"
MAJOR = _version_major
MINOR = _version_minor
MICRO = _version_micro
ISRELEASE = _version_extra == ''
VERSION = __version__
PROVIDES = ["symreg"]
REQUIRES = ["numpy (>=%s)" % NUMPY_MIN_VERSION,
            "scipy (>=%s)" % SCIPY_MIN_VERSION,
            "nibabel (>=%s)" % NIBABEL_MIN_VERSION,
            "tqdm (>=%s)" % TQDM_MIN_VERSION,
            "numpydoc (>=%s)" % NUMPYDOC_MIN_VERSION]
INSTALL_REQUIRES = ["numpy>=%s" % NUMPY_MIN_VERSION,
                    "scipy>=%s,<1.16" % SCIPY_MIN_VERSION,
                    "nibabel>=%s" % NIBABEL_MIN_VERSION,
                    "tqdm>=%s" % TQDM_MIN_VERSION,
                    "numpydoc>=%s" % NUMPYDOC_MIN_VERSION]
EXTRAS_REQUIRE = {
    "test": ["pytest>=%s" % PYTEST_MIN_VERSION],
}
