""" Stage objects and the orchestrator of a complete registration

A registration runs up to three stages in sequence: rigid, then affine seeded
by the rigid result, then SyN seeded by the affine result, else the rigid
result, else the identity. Each stage receives the images and exactly the
seed it needs from the previous stage.
"""

import logging

from symreg.align import VerbosityLevels
from symreg.align.config import RegistrationConfig
from symreg.align.imwarp import SymmetricDiffeomorphicRegistration
from symreg.align.linear import LinearRegistration

logger = logging.getLogger(__name__)


class RegistrationResult:
    """Outcome of a registration

    Attributes
    ----------
    rigid, affine : LinearTransform or None
        the transforms estimated by the linear stages that ran
    syn : SymmetricDiffeomorphicRegistration or None
        the SyN engine holding the four displacement fields
    costs : dict
        final cost of each linear stage
    """

    def __init__(self, rigid=None, affine=None, syn=None, costs=None):
        self.rigid = rigid
        self.affine = affine
        self.syn = syn
        self.costs = {} if costs is None else costs

    @property
    def linear(self):
        """The last linear transform estimated, or None."""
        return self.affine if self.affine is not None else self.rigid


class _Stage:
    name = None

    def __init__(self, config, num_threads=None, directions=None,
                 verbosity=VerbosityLevels.STATUS):
        self.config = config
        self.num_threads = num_threads
        self.directions = directions
        self.verbosity = verbosity

    def _log_start(self):
        if self.verbosity >= VerbosityLevels.STATUS:
            logger.info("running %s registration", self.name)


class RigidStage(_Stage):
    name = 'rigid'

    def run(self, images, seed=None):
        """Estimate a rigid transform. `images` is an `_ImagePair`."""
        self._log_start()
        engine = LinearRegistration(self.config, self.num_threads,
                                    verbosity=self.verbosity)
        transform = engine.run(*images.arguments(), seed=seed)
        return transform, engine.cost


class AffineStage(_Stage):
    name = 'affine'

    def run(self, images, seed=None):
        """Estimate an affine transform, seeded by a rigid transform if given.
        """
        self._log_start()
        config = self.config if seed is None else self.config.seeded(seed)
        engine = LinearRegistration(config, self.num_threads,
                                    directions=self.directions,
                                    verbosity=self.verbosity)
        transform = engine.run(*images.arguments())
        return transform, engine.cost


class SynStage(_Stage):
    name = 'SyN'

    def run(self, images, seed=None):
        """Estimate the symmetric warps, from the linear `seed` if given."""
        self._log_start()
        engine = SymmetricDiffeomorphicRegistration(
            self.config, self.num_threads, directions=self.directions,
            verbosity=self.verbosity)
        engine.run(*images.arguments(), linear=seed)
        return engine


class _ImagePair:
    def __init__(self, static, moving, static_grid2world, moving_grid2world,
                 static_mask, moving_mask):
        self._arguments = (static, moving, static_grid2world,
                           moving_grid2world, static_mask, moving_mask)

    def arguments(self):
        return self._arguments


class RegistrationPipeline:

    def __init__(self, config, num_threads=None, directions=None,
                 verbosity=VerbosityLevels.STATUS):
        """ Orchestrator of the rigid, affine and SyN stages

        Parameters
        ----------
        config : RegistrationConfig
            as returned by `symreg.align.config.build_registration_config`
        num_threads : int, optional
            threads used by every stage
        directions : array, shape (N, 3), optional
            SH reorientation directions, used by the affine and SyN stages
        verbosity : int, optional
            one of the `VerbosityLevels`
        """
        if not isinstance(config, RegistrationConfig):
            raise TypeError("config must be a RegistrationConfig")
        self.config = config
        self.stages = []
        kwargs = dict(num_threads=num_threads, directions=directions,
                      verbosity=verbosity)
        if config.do_rigid:
            self.stages.append(RigidStage(config.rigid, **kwargs))
        if config.do_affine:
            self.stages.append(AffineStage(config.affine, **kwargs))
        if config.do_syn:
            self.stages.append(SynStage(config.syn, **kwargs))

    def run(self, static, moving, static_grid2world, moving_grid2world,
            static_mask=None, moving_mask=None):
        """Run the stages in sequence

        Parameters
        ----------
        static : array
            image 2, the template
        moving : array
            image 1, the moving image
        static_grid2world, moving_grid2world : arrays, shape (4, 4)
        static_mask, moving_mask : arrays, optional

        Returns
        -------
        result : RegistrationResult
        """
        images = _ImagePair(static, moving, static_grid2world,
                            moving_grid2world, static_mask, moving_mask)
        result = RegistrationResult()
        for stage in self.stages:
            if isinstance(stage, RigidStage):
                result.rigid, result.costs['rigid'] = stage.run(images)
            elif isinstance(stage, AffineStage):
                result.affine, result.costs['affine'] = stage.run(
                    images, seed=result.rigid)
            else:
                result.syn = stage.run(images, seed=result.linear)
        return result
