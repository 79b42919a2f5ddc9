""" Validated configuration of the registration stages

Every stage is described by one value object that checks its own
consistency when constructed; `build_registration_config` combines the
stage objects for a registration type and resolves the interactions between
stages (seeds, resumed warps) before anything runs.
"""

import logging
import warnings

import numpy as np

from symreg.align import RegistrationConfigError, StageSupersededWarning

logger = logging.getLogger(__name__)

REGISTRATION_TYPES = ('rigid', 'affine', 'syn', 'rigid_affine', 'rigid_syn',
                      'affine_syn', 'rigid_affine_syn')
INIT_TYPES = ('identity', 'mass', 'geometric', 'moments', 'none')
DEFAULT_SCALE_FACTORS = (0.25, 0.5, 1.0)


def _warn(msg):
    logger.warning(msg)
    warnings.warn(msg, StageSupersededWarning, stacklevel=3)


def _as_tuple(values, cast):
    if np.isscalar(values):
        values = [values]
    return tuple(cast(v) for v in values)


def _scale_factors(values, name):
    factors = _as_tuple(values, float)
    if not factors:
        raise RegistrationConfigError("%s cannot be empty" % name)
    for factor in factors:
        if not 0 < factor <= 1:
            raise RegistrationConfigError(
                "%s must be in the range (0, 1], got %g" % (name, factor))
    return factors


def _per_level(values, num_levels, name, cast):
    """Broadcast a single value to all levels, or check one value per level.
    """
    values = _as_tuple(values, cast)
    if len(values) == 1:
        return values * num_levels
    if len(values) != num_levels:
        raise RegistrationConfigError(
            "the number of %s (%d) must be 1 or equal the number of "
            "multi-resolution levels (%d)" % (name, len(values), num_levels))
    return values


class LinearStageConfig:

    def __init__(self, kind, scale_factors=DEFAULT_SCALE_FACTORS,
                 max_iter=500, metric='diff', estimator=None, init=None,
                 init_transform=None, global_search=False,
                 robust_median=False, repetitions=1, loop_density=1.0,
                 extent=(3, 3, 3)):
        """ Configuration of a rigid or affine stage

        Parameters
        ----------
        kind : {'rigid', 'affine'}
        scale_factors : sequence of floats, optional
            resolution of each level relative to the template, coarsest
            first
        max_iter : int or sequence of ints, optional
            iteration cap, one for all levels or one per level
        metric : {'diff', 'ncc'}, optional
        estimator : {None, 'l1', 'l2', 'lp'}, optional
            robust estimator of the difference metric (affine only)
        init : {'identity', 'mass', 'geometric', 'moments', 'none'}, optional
            initialisation of the centre and translation (and rotation for
            'moments'). Default 'mass', or 'none' when `init_transform` is
            given.
        init_transform : array, shape (4, 4), optional
            seed transform
        global_search : bool, optional
            score candidate rotations and translations at the coarsest level
            before descending
        robust_median : bool, optional
            combine the gradients of image regions with the robust estimate
            of the transform (affine only)
        repetitions : int or sequence of ints, optional
            gradient descent repetitions per level (affine only)
        loop_density : float or sequence of floats, optional
            fraction of the voxels used per level (affine only)
        extent : sequence of 3 ints, optional
            neighbourhood of the cross correlation metric
        """
        if kind not in ('rigid', 'affine'):
            raise RegistrationConfigError(
                "Unknown linear stage %r, expected 'rigid' or 'affine'"
                % (kind,))
        self.kind = kind
        self.scale_factors = _scale_factors(scale_factors,
                                            '%s_scale' % kind)
        levels = len(self.scale_factors)
        self.max_iter = _per_level(max_iter, levels, '%s_niter' % kind, int)
        if min(self.max_iter) < 0:
            raise RegistrationConfigError(
                "%s_niter must not be negative" % kind)

        self.metric = str(metric).lower()
        self.estimator = None if estimator in (None, 'none') \
            else str(estimator).lower()
        self.extent = tuple(extent)

        if init_transform is not None:
            if init not in (None, 'none'):
                raise RegistrationConfigError(
                    "options -%s_init and -%s_centre are mutually exclusive"
                    % (kind, kind))
            init = 'none'
            init_transform = np.array(init_transform, dtype=np.float64)
        elif init is None:
            init = 'mass'
        if init not in INIT_TYPES:
            raise RegistrationConfigError(
                "Unknown %s initialisation %r, valid choices are %s"
                % (kind, init, ', '.join(INIT_TYPES)))
        self.init = init
        self.init_transform = init_transform
        self.global_search = bool(global_search)

        if kind == 'rigid':
            if self.estimator is not None:
                raise RegistrationConfigError(
                    "robust estimators are only available for affine "
                    "registration")
            if robust_median:
                raise RegistrationConfigError(
                    "the robust median is only available for affine "
                    "registration")
            if np.any(np.asarray(repetitions) != 1):
                raise RegistrationConfigError(
                    "gradient descent repetitions are only available for "
                    "affine registration")
            if np.any(np.asarray(loop_density) != 1):
                raise RegistrationConfigError(
                    "the loop density is only available for affine "
                    "registration")
        self.robust_median = bool(robust_median)
        self.repetitions = _per_level(repetitions, levels,
                                      'affine_repetitions', int)
        if min(self.repetitions) < 1:
            raise RegistrationConfigError(
                "affine_repetitions must be positive")
        self.loop_density = _per_level(loop_density, levels,
                                       'affine_loop_density', float)
        for density in self.loop_density:
            if not 0 < density <= 1:
                raise RegistrationConfigError(
                    "affine_loop_density must be in the range (0, 1], "
                    "got %g" % density)

    @property
    def num_levels(self):
        return len(self.scale_factors)

    def seeded(self, transform):
        """Copy of this configuration seeded by `transform` (init 'none')

        `transform` is a LinearTransform, whose centre is kept, or a (4, 4)
        matrix.
        """
        other = object.__new__(LinearStageConfig)
        other.__dict__.update(self.__dict__)
        other.init = 'none'
        other.init_transform = transform
        return other

    def __repr__(self):
        return "LinearStageConfig(%s)" % ", ".join(
            "%s=%r" % item for item in sorted(self.__dict__.items())
            if item[0] != 'init_transform')


class SynStageConfig:

    def __init__(self, scale_factors=None, max_iter=None,
                 update_smoothing=2.0, disp_smoothing=1.0, grad_step=0.5,
                 init_warps=None, tolerance=1e-6, inversion_iter=10,
                 inversion_tolerance=1e-3):
        """ Configuration of the symmetric diffeomorphic (SyN) stage

        Parameters
        ----------
        scale_factors : sequence of floats, optional
            resolution of each level, coarsest first. Default
            (0.25, 0.5, 1.0), or (1.0,) when resuming from saved warps.
        max_iter : int or sequence of ints, optional
            iteration cap, one for all levels or one per level. Default 50.
        update_smoothing : float, optional
            sigma (voxels) of the smoothing of the update field
        disp_smoothing : float, optional
            sigma (voxels) of the smoothing of the displacement fields
        grad_step : float, optional
            largest update displacement, in units of the smallest voxel size
        init_warps : tuple, optional
            (warps, grid2world, im1_linear, im2_linear) of a previous run, as
            returned by `symreg.align.imwarp.load_warps`. Only the full
            resolution runs when resuming.
        tolerance : float, optional
            iterations stop when the slope of the energy over the last 12
            iterations is above -tolerance
        inversion_iter : int, optional
            fixed point iterations of each field inversion
        inversion_tolerance : float, optional
            residual (mm) below which the inversion stops
        """
        self.init_warps = init_warps
        if init_warps is not None:
            if scale_factors is not None and \
                    len(_as_tuple(scale_factors, float)) > 1:
                _warn("-syn_scale option ignored since only the full "
                      "resolution will be performed when initialising with "
                      "syn warp")
            scale_factors = (1.0,)
            if max_iter is not None and len(_as_tuple(max_iter, int)) > 1:
                raise RegistrationConfigError(
                    "when initialising the syn registration the max number "
                    "of iterations can only be defined for a single level")
        if scale_factors is None:
            scale_factors = DEFAULT_SCALE_FACTORS
        if max_iter is None:
            max_iter = 50
        self.scale_factors = _scale_factors(scale_factors, 'syn_scale')
        self.max_iter = _per_level(max_iter, len(self.scale_factors),
                                   'syn_niter', int)
        if min(self.max_iter) < 0:
            raise RegistrationConfigError("syn_niter must not be negative")
        for name, value in (('syn_update_smooth', update_smoothing),
                            ('syn_disp_smooth', disp_smoothing)):
            if value < 0:
                raise RegistrationConfigError(
                    "%s must not be negative, got %g" % (name, value))
        if not grad_step > 0:
            raise RegistrationConfigError(
                "syn_grad_step must be positive, got %g" % grad_step)
        self.update_smoothing = float(update_smoothing)
        self.disp_smoothing = float(disp_smoothing)
        self.grad_step = float(grad_step)
        self.tolerance = float(tolerance)
        self.inversion_iter = int(inversion_iter)
        self.inversion_tolerance = float(inversion_tolerance)

    @property
    def num_levels(self):
        return len(self.scale_factors)


class RegistrationConfig:
    """The stages to run, each with its configuration (or None)."""

    def __init__(self, registration_type, rigid=None, affine=None,
                 syn=None):
        self.registration_type = registration_type
        self.rigid = rigid
        self.affine = affine
        self.syn = syn

    @property
    def do_rigid(self):
        return self.rigid is not None

    @property
    def do_affine(self):
        return self.affine is not None

    @property
    def do_syn(self):
        return self.syn is not None


# option name -> (stage, keyword of the stage configuration)
_STAGE_OPTIONS = {
    'rigid_init': ('rigid', 'init_transform'),
    'rigid_centre': ('rigid', 'init'),
    'rigid_scale': ('rigid', 'scale_factors'),
    'rigid_niter': ('rigid', 'max_iter'),
    'rigid_metric': ('rigid', 'metric'),
    'rigid_global_search': ('rigid', 'global_search'),
    'affine_init': ('affine', 'init_transform'),
    'affine_centre': ('affine', 'init'),
    'affine_scale': ('affine', 'scale_factors'),
    'affine_niter': ('affine', 'max_iter'),
    'affine_metric': ('affine', 'metric'),
    'affine_robust_estimator': ('affine', 'estimator'),
    'affine_robust_median': ('affine', 'robust_median'),
    'affine_repetitions': ('affine', 'repetitions'),
    'affine_loop_density': ('affine', 'loop_density'),
    'affine_global_search': ('affine', 'global_search'),
    'syn_init': ('syn', 'init_warps'),
    'syn_scale': ('syn', 'scale_factors'),
    'syn_niter': ('syn', 'max_iter'),
    'syn_update_smooth': ('syn', 'update_smoothing'),
    'syn_disp_smooth': ('syn', 'disp_smoothing'),
    'syn_grad_step': ('syn', 'grad_step'),
}


def build_registration_config(registration_type='affine_syn', **options):
    """Validate the options of a registration and build its configuration

    Parameters
    ----------
    registration_type : str, optional
        one of 'rigid', 'affine', 'syn', 'rigid_affine', 'rigid_syn',
        'affine_syn' (default) and 'rigid_affine_syn'
    options : dict
        stage options named after their command line flags (e.g.
        ``affine_niter=[500, 200]``, ``syn_grad_step=0.3``). Options set to
        None or False are ignored.

    Returns
    -------
    config : RegistrationConfig

    Raises
    ------
    RegistrationConfigError
        for unknown types or options, options of a stage that is not
        selected, and conflicting initialisations

    Warns
    -----
    StageSupersededWarning
        when resuming from saved warps makes other options irrelevant
    """
    if registration_type not in REGISTRATION_TYPES:
        raise RegistrationConfigError(
            "Unknown registration type %r, valid choices are %s"
            % (registration_type, ', '.join(REGISTRATION_TYPES)))
    stages = registration_type.split('_')
    kwargs = {'rigid': {}, 'affine': {}, 'syn': {}}
    for name, value in options.items():
        if name not in _STAGE_OPTIONS:
            raise RegistrationConfigError("Unknown registration option %r"
                                          % name)
        if value is None or value is False:
            continue
        stage, keyword = _STAGE_OPTIONS[name]
        if stage not in stages:
            raise RegistrationConfigError(
                "option %s was given when no %s registration is requested"
                % (name, stage))
        kwargs[stage][keyword] = value

    rigid_seeded = 'init_transform' in kwargs['rigid']
    affine_seeded = 'init_transform' in kwargs['affine']
    if affine_seeded:
        if rigid_seeded:
            raise RegistrationConfigError(
                "you cannot initialise registrations with both a rigid and "
                "affine transformation")
        if 'rigid' in stages:
            raise RegistrationConfigError(
                "you cannot initialise with -affine_init since a rigid "
                "registration is being performed")

    if 'init_warps' in kwargs['syn']:
        if 'affine' in stages:
            _warn("no affine registration will be performed when "
                  "initialising with syn non-linear warps")
        if 'rigid' in stages:
            _warn("no rigid registration will be performed when "
                  "initialising with syn non-linear warps")
        if affine_seeded:
            _warn("-affine_init has no effect since the syn init warp also "
                  "contains the linear transform")
        if rigid_seeded:
            _warn("-rigid_init has no effect since the syn init warp also "
                  "contains the linear transform")
        return RegistrationConfig(registration_type,
                                  syn=SynStageConfig(**kwargs['syn']))

    config = RegistrationConfig(registration_type)
    if 'rigid' in stages:
        config.rigid = LinearStageConfig('rigid', **kwargs['rigid'])
    if 'affine' in stages:
        config.affine = LinearStageConfig('affine', **kwargs['affine'])
    if 'syn' in stages:
        config.syn = SynStageConfig(**kwargs['syn'])
    return config
