import numpy as np

floating = np.float32


class Bunch:
    def __init__(self, **kwds):
        r"""A 'bunch' of values (a replacement of Enum)
        """
        self.__dict__.update(kwds)


VerbosityLevels = Bunch(NONE=0, STATUS=1, DIAGNOSE=2, DEBUG=3)
r""" VerbosityLevels
This enum defines the four levels of verbosity we use in the align
module.
NONE : do not print anything
STATUS : print information about the current status of the algorithm
DIAGNOSE : print high level information of the components involved in the
registration that can be used to detect a failing component.
DEBUG : print as much information as possible to isolate the cause of a bug.
"""


class RegistrationConfigError(ValueError):
    """Invalid option, option combination or input shape.

    Raised before any optimization starts.
    """


class TransformDegenerateError(ArithmeticError):
    """The transform (or the data used to build it) is numerically degenerate.
    """


class StageSupersededWarning(UserWarning):
    """A requested option or stage has no effect and is ignored."""
