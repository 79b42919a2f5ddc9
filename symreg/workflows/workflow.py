import logging
import os

logger = logging.getLogger(__name__)


class Workflow:
    """Base class of the command line workflows

    A workflow implements ``run``, whose numpy-style docstring is turned into
    a command line by `symreg.workflows.base.IntrospectiveArgumentParser`.
    Before writing anything, ``run`` hands its output paths to
    `set_outputs`, which refuses to overwrite existing files unless the
    workflow was created with ``force=True`` (``--force`` on the command
    line).

    Attributes
    ----------
    argument_groups : tuple of (str, str)
        ``(prefix, title)`` pairs grouping the options of the command line
        help by name prefix
    """

    argument_groups = ()

    def __init__(self, force=False):
        self._force_overwrite = force
        self.last_generated_outputs = None
        self.flat_outputs = []

    def set_outputs(self, outputs):
        """Register the output files a run is about to write

        Parameters
        ----------
        outputs : dict
            output parameter name -> path. Empty paths are outputs that were
            not requested and are dropped.

        Returns
        -------
        proceed : bool
            False when some outputs exist and overwriting is not allowed
        """
        self.last_generated_outputs = dict(
            (key, path) for key, path in outputs.items() if path)
        self.flat_outputs = list(self.last_generated_outputs.values())
        return self.manage_output_overwrite()

    def manage_output_overwrite(self):
        """Whether the registered outputs may be written."""
        existing = [path for path in self.flat_outputs if os.path.isfile(path)]
        if not existing:
            return True

        if self._force_overwrite:
            logger.info("Overwriting existing output files:")
        else:
            logger.info("Output files already exist, nothing is written. "
                        "Use --force to overwrite them:")
        for path in existing:
            logger.info(path)
        return self._force_overwrite

    def run(self, *args, **kwargs):
        raise NotImplementedError(
            "%s does not implement run" % self.__class__.__name__)

    @classmethod
    def get_short_name(cls):
        """Name of the workflow on the command line, the class name unless
        overridden."""
        return cls.__name__
