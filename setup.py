#!/usr/bin/env python
""" Installation script for symreg package """

import os
from os.path import join as pjoin, exists
from glob import glob

# BEFORE importing setuptools, remove MANIFEST. setuptools doesn't properly
# update it when the contents of directories change.
if exists('MANIFEST'):
    os.remove('MANIFEST')

from setuptools import setup


class Bunch(object):
    def __init__(self, vars):
        for key, name in vars.items():
            if key.startswith('__'):
                continue
            self.__dict__[key] = name


def read_vars_from(ver_file):
    """ Read variables from Python text file

    Parameters
    ----------
    ver_file : str
        Filename of file to read

    Returns
    -------
    info_vars : Bunch instance
        Bunch object where variables read from `ver_file` appear as
        attributes
    """
    ns = {}
    with open(ver_file, 'rt') as fobj:
        exec(fobj.read(), ns)
    return Bunch(ns)


# Get version and release info, which is all stored in symreg/info.py
info = read_vars_from(pjoin('symreg', 'info.py'))

extra_setuptools_args = dict(
    zip_safe=False,
    install_requires=info.INSTALL_REQUIRES,
    extras_require=info.EXTRAS_REQUIRE,
    python_requires=">= 3.8",
    )


def main(**extra_args):
    setup(name=info.NAME,
          maintainer=info.MAINTAINER,
          maintainer_email=info.MAINTAINER_EMAIL,
          description=info.DESCRIPTION,
          long_description=info.LONG_DESCRIPTION,
          url=info.URL,
          download_url=info.DOWNLOAD_URL,
          license=info.LICENSE,
          classifiers=info.CLASSIFIERS,
          author=info.AUTHOR,
          author_email=info.AUTHOR_EMAIL,
          platforms=info.PLATFORMS,
          version=info.VERSION,
          requires=info.REQUIRES,
          provides=info.PROVIDES,
          packages=['symreg',
                    'symreg.align',
                    'symreg.align.tests',
                    'symreg.core',
                    'symreg.core.tests',
                    'symreg.io',
                    'symreg.io.tests',
                    'symreg.testing',
                    'symreg.utils',
                    'symreg.utils.tests',
                    'symreg.workflows',
                    'symreg.workflows.tests'],
          scripts=glob(pjoin('bin', 'symreg_*')),
          **extra_args
          )


# simple way to test what setup will do
# python setup.py install --prefix=/tmp
if __name__ == "__main__":
    main(**extra_setuptools_args)
