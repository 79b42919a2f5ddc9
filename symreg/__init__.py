"""
Symmetric image registration in Python
======================================

Subpackages
-----------
::

 align         -- Linear and symmetric diffeomorphic registration, metrics,
                  pyramids, displacement fields, SH reorientation
 core          -- Spherical harmonics, direction sets, optimizers
 io            -- Loading/saving of NIfTI images
 testing       -- Testing helpers
 utils         -- Logging and threading helpers
 workflows     -- Predefined command line for registration

Utilities
---------
::

 __version__   -- symreg version

"""
from symreg.info import __version__

submodules = [
    'align',
    'core',
    'io',
    'testing',
    'utils',
    'workflows',
]

__all__ = submodules + ['__version__']
